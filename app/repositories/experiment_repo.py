import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.models.orm.experiment import ExperimentORM, VariantORM
from app.models.schemas.experiment import ExperimentCreateModel, VariantConfig


class DuplicateExperimentError(ValueError):
    pass


def _resolve_allocations(variants: List[VariantConfig]) -> List[float]:
    """Variants without an explicit allocation share the remaining traffic equally."""
    explicit = sum(
        v.traffic_allocation_percent for v in variants if v.traffic_allocation_percent is not None
    )
    unset = [v for v in variants if v.traffic_allocation_percent is None]
    share = (100.0 - explicit) / len(unset) if unset else 0.0
    return [
        v.traffic_allocation_percent if v.traffic_allocation_percent is not None else share
        for v in variants
    ]


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentORM:
        """
        Creates an experiment and its variants in one transaction.

        Raises:
            ValueError: the allocations don't total 100%.
            DuplicateExperimentError: an experiment with this name already exists.
        """
        allocations = _resolve_allocations(experiment_data.variants)
        total_allocation = sum(allocations)
        if abs(total_allocation - 100.0) > 0.001 or min(allocations) < 0:
            raise ValueError(
                f"Total traffic allocation must be 100%. Got: {total_allocation}%"
            )

        experiment_id = str(uuid.uuid4())
        experiment_data_dict = experiment_data.model_dump(exclude={"variants"})
        experiment_data_dict["experiment_id"] = experiment_id

        db_experiment = ExperimentORM(**experiment_data_dict)
        try:
            self.db.add(db_experiment)

            for variant_data, allocation in zip(experiment_data.variants, allocations):
                self.db.add(
                    VariantORM(
                        variant_id=str(uuid.uuid4()),
                        variant_name=variant_data.variant_name,
                        traffic_allocation_percent=allocation,
                        is_control=bool(variant_data.is_control),
                        experiment_id=experiment_id,
                    )
                )

            self.db.commit()

        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateExperimentError(
                f"Experiment {experiment_data.name!r} already exists"
            ) from e

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(
                f"A database error occurred during experiment creation: {e}"
            ) from e

        self.db.refresh(db_experiment)
        return db_experiment

    def get_experiment_by_name(self, name: str) -> Optional[ExperimentORM]:
        """
        Fetches a single Experiment by name and eagerly loads its variants.
        """
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.name == name)
            .options(selectinload(ExperimentORM.variants))
        )
        return self.db.scalars(stmt).one_or_none()

    def list_experiments(self) -> List[ExperimentORM]:
        stmt = (
            select(ExperimentORM)
            .order_by(ExperimentORM.name)
            .options(selectinload(ExperimentORM.variants))
        )
        return list(self.db.scalars(stmt).all())

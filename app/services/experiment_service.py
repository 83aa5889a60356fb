# services/experiment_service.py

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.settings import Settings
from app.models.orm.base import utcnow
from app.models.orm.event import EventORM
from app.models.orm.experiment import ExperimentORM, ExperimentStatus
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentDefinition,
    ExperimentResponseModel,
    ExperimentResultsModel,
    VariantDefinition,
    VariantResultModel,
)
from app.repositories.event_repo import EventRepository
from app.repositories.experiment_repo import DuplicateExperimentError, ExperimentRepository

logger = logging.getLogger(__name__)


class ExperimentService:
    def __init__(self, db: Session, settings: Settings):
        self.experiment_repo = ExperimentRepository(db)
        self.event_repo = EventRepository(db)
        self.settings = settings

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentResponseModel:
        """
        Stores a new experiment definition.

        Allocation problems become a 400 and a taken name a 409.
        """
        try:
            experiment_orm = self.experiment_repo.create_experiment(experiment_data)
        except DuplicateExperimentError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except RuntimeError as e:
            logger.exception("Failed to create experiment %s", experiment_data.name)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to create experiment: {e}",
            )

        logger.info("Created experiment %s", experiment_orm)
        return ExperimentResponseModel.model_validate(experiment_orm)

    def list_experiments(self) -> List[ExperimentResponseModel]:
        return [
            ExperimentResponseModel.model_validate(experiment)
            for experiment in self.experiment_repo.list_experiments()
        ]

    def find_definition(self, experiment_name: str) -> Optional[ExperimentDefinition]:
        """Looks the experiment up in the database, then in the settings."""
        experiment_orm = self.experiment_repo.get_experiment_by_name(experiment_name)
        if experiment_orm is not None and experiment_orm.variants:
            return ExperimentDefinition(
                name=experiment_orm.name,
                variants=[
                    VariantDefinition(
                        name=v.variant_name,
                        weight=v.traffic_allocation_percent,
                        is_control=bool(v.is_control),
                    )
                    for v in experiment_orm.variants
                ],
                primary_metric_name=experiment_orm.primary_metric_name,
                is_running=experiment_orm.status == ExperimentStatus.RUNNING,
            )

        variant_names = self.settings.EXPERIMENTS.get(experiment_name)
        if variant_names:
            return ExperimentDefinition.with_equal_split(experiment_name, variant_names)

        return None

    def get_definition(self, experiment_name: str) -> ExperimentDefinition:
        """Like find_definition, but unknown experiments get the default variants."""
        definition = self.find_definition(experiment_name)
        if definition is None:
            definition = ExperimentDefinition.with_equal_split(
                experiment_name, self.settings.DEFAULT_VARIANTS
            )
        return definition

    def _generate_variant_agg_stats(
        self,
        definition: ExperimentDefinition,
        events: List[EventORM],
    ) -> Dict[str, VariantResultModel]:
        # handle cases where a variant has no events yet
        variant_stats = {}
        for variant in definition.variants:
            variant_stats[variant.name] = {
                "visitors": set(),
                "event_type_counts": defaultdict(int),
                "conversion_visitors": set(),
                "traffic_allocation": variant.weight,
            }

        for event in events:
            # Labels outside the definition still get reported
            stats = variant_stats.setdefault(
                event.variant,
                {
                    "visitors": set(),
                    "event_type_counts": defaultdict(int),
                    "conversion_visitors": set(),
                    "traffic_allocation": None,
                },
            )
            stats["event_type_counts"][event.action] += 1
            if event.visitor_id:
                stats["visitors"].add(event.visitor_id)
                if event.action == definition.primary_metric_name:
                    stats["conversion_visitors"].add(event.visitor_id)

        agg_variant_stats = {}
        for variant_name, stats in variant_stats.items():
            total_visitors = len(stats["visitors"])
            conversions = len(stats["conversion_visitors"])
            agg_variant_stats[variant_name] = VariantResultModel(
                variant_name=variant_name,
                total_visitors=total_visitors,
                conversion_count=conversions,
                conversion_rate=conversions / total_visitors if total_visitors else 0.0,
                event_counts=dict(stats["event_type_counts"]),
                traffic_allocation=stats["traffic_allocation"],
            )

        return agg_variant_stats

    def get_experiment_results(
        self,
        experiment_name: str,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> ExperimentResultsModel:
        """
        Aggregates the stored events of an experiment per variant.

        Conversion rate is the share of visitors seen in a variant who also
        performed the experiment's primary metric action.
        """
        definition = self.find_definition(experiment_name)
        if definition is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Experiment {experiment_name} not found.",
            )
        experiment_orm: Optional[ExperimentORM] = self.experiment_repo.get_experiment_by_name(
            experiment_name
        )

        events = [
            event
            for event in self.event_repo.get_events_for_experiment(
                experiment_name, event_type=event_type, start_date=start_date, end_date=end_date
            )
            if event.variant
        ]

        variant_agg_stats = self._generate_variant_agg_stats(definition, events)

        visitors = {event.visitor_id for event in events if event.visitor_id}
        converted = {
            event.visitor_id
            for event in events
            if event.visitor_id and event.action == definition.primary_metric_name
        }

        result = ExperimentResultsModel(
            name=definition.name,
            primary_metric_name=definition.primary_metric_name,
            total_variants=len(variant_agg_stats),
            total_events=len(events),
            total_visitors=len(visitors),
            global_conversion_rate=len(converted) / len(visitors) if visitors else 0.0,
            variant_stats=variant_agg_stats,
        )

        if experiment_orm is not None:
            now = utcnow()
            end = experiment_orm.end_time if experiment_orm.end_time and now > experiment_orm.end_time else now
            result.description = experiment_orm.description
            result.status = experiment_orm.status
            result.start_time = experiment_orm.start_time
            result.end_time = experiment_orm.end_time
            if experiment_orm.start_time:
                result.experiment_days_running = (end - experiment_orm.start_time).days

        return result

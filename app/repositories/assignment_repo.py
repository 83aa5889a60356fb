# repositories/assignment_repo.py
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import FlushError

from app.models.orm.assignment import AssignmentORM
from app.models.orm.base import utcnow

logger = logging.getLogger(__name__)


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, experiment_name: str, visitor_id: str) -> Optional[AssignmentORM]:
        """Retrieves a persistent assignment for a visitor in a specific experiment."""
        stmt = select(AssignmentORM).where(
            AssignmentORM.experiment_name == experiment_name,
            AssignmentORM.visitor_id == visitor_id,
        )
        return self.db.scalars(stmt).one_or_none()

    def create_assignment(self, experiment_name: str, visitor_id: str, variant: str) -> AssignmentORM:
        """
        Creates a new assignment record.

        An assignment is never overwritten: if one already exists (another
        request got there first), the stored row is returned instead.
        """
        db_assignment = AssignmentORM(
            experiment_name=experiment_name,
            visitor_id=visitor_id,
            variant=variant,
            assignment_timestamp=utcnow(),
        )
        try:
            self.db.add(db_assignment)
            self.db.commit()
        except (IntegrityError, FlushError):
            self.db.rollback()
            existing = self.get_assignment(experiment_name, visitor_id)
            if existing is None:
                raise
            logger.info(
                "Visitor %s already assigned to %s for %s, keeping it",
                visitor_id, existing.variant, experiment_name,
            )
            return existing
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(db_assignment)
        return db_assignment

    def delete_assignment(self, experiment_name: str, visitor_id: str) -> bool:
        """Clears a visitor's stored assignment. Returns False if there was none."""
        existing = self.get_assignment(experiment_name, visitor_id)
        if existing is None:
            return False
        self.db.delete(existing)
        self.db.commit()
        return True

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.orm.event import EventORM
from app.models.schemas.event import TrackingEvent


class EventRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def get_events_for_experiment(
        self,
        experiment_name: str,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[EventORM]:
        """
        Retrieves events for a specific experiment, applying optional filters
        for action and time range.
        """
        stmt = select(EventORM).where(EventORM.experiment_name == experiment_name)

        if event_type:
            stmt = stmt.where(EventORM.action == event_type)

        if start_date:
            stmt = stmt.where(EventORM.timestamp >= start_date)

        if end_date:
            stmt = stmt.where(EventORM.timestamp <= end_date)

        return list(self.db.scalars(stmt.order_by(EventORM.timestamp)).all())

    def create_event(self, event: TrackingEvent) -> EventORM:
        """
        Stores a dispatched tracking event.

        Raises:
            RuntimeError: the insert failed; the session is rolled back.
        """
        db_event = EventORM(
            event_id=str(uuid.uuid4()),
            visitor_id=event.visitor_id,
            action=event.action,
            experiment_name=event.experiment,
            variant=event.variant,
            timestamp=event.timestamp,
            properties=event.properties,
        )
        try:
            self.db.add(db_event)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"Failed to store {event.action!r} event: {e}") from e

        self.db.refresh(db_event)
        return db_event

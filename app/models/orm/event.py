from sqlalchemy import Column, String, DateTime

from .base import Base, JSON_TYPE, utcnow


class EventORM(Base):
    __tablename__ = "events"

    event_id = Column(String, primary_key=True, index=True)

    # Missing when the event was dispatched before a visitor id was minted
    visitor_id = Column(String, nullable=True, index=True)

    # e.g. "impression", "click", "page_view"
    action = Column(String, nullable=False, index=True)

    # Empty for events that are not tied to an experiment
    experiment_name = Column(String, nullable=True, index=True)
    variant = Column(String, nullable=True)

    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    properties = Column(JSON_TYPE, default=dict, nullable=False)

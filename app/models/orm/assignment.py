from sqlalchemy import Column, String, DateTime, PrimaryKeyConstraint

from .base import Base, utcnow


class AssignmentORM(Base):
    """Server-side copy of a visitor's sticky variant for one experiment."""

    __tablename__ = "assignments"

    visitor_id = Column(String, nullable=False, index=True)
    # Not a foreign key: experiments may be defined in settings only
    experiment_name = Column(String, nullable=False, index=True)
    variant = Column(String, nullable=False)

    assignment_timestamp = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("visitor_id", "experiment_name", name="assignment_pk"),
    )

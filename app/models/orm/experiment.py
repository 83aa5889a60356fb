from sqlalchemy import Column, String, Float, Boolean, ForeignKey, DateTime, Text, Enum
from sqlalchemy.orm import relationship
import enum

from .base import Base, utcnow


# Use Python Enum for constrained choices like Experiment Status
class ExperimentStatus(enum.Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


# --- Experiment Model ---
class ExperimentORM(Base):
    __tablename__ = "experiments"

    # --- Core Identifiers ---
    experiment_id = Column(String, primary_key=True, index=True)
    # Experiments are addressed by name from pages and cookies
    name = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text)

    # --- Lifecycle ---
    status = Column(Enum(ExperimentStatus), default=ExperimentStatus.RUNNING, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    start_time = Column(DateTime, default=utcnow)
    end_time = Column(DateTime, nullable=True)

    # --- Analysis ---
    # Action counted as a conversion in results reporting
    primary_metric_name = Column(String, nullable=False, default="click")

    # One Experiment has Many Variants
    variants = relationship(
        "VariantORM", back_populates="experiment", order_by="VariantORM.variant_name"
    )


# --- Variant Configuration Model ---
class VariantORM(Base):
    __tablename__ = "variants"

    variant_id = Column(String, primary_key=True)
    # Label stored in the visitor's assignment, e.g. "A"
    variant_name = Column(String, nullable=False)
    traffic_allocation_percent = Column(Float, nullable=False)
    is_control = Column(Boolean, default=False)

    experiment_id = Column(
        String, ForeignKey("experiments.experiment_id"), nullable=False, index=True
    )

    experiment = relationship("ExperimentORM", back_populates="variants")

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.orm.base import utcnow
from app.models.orm.experiment import ExperimentStatus


class VariantConfig(BaseModel):
    """Configuration for a single variant in an experiment."""

    variant_name: str = Field(..., min_length=1, description="Label shown to the visitor, e.g. 'A'.")
    traffic_allocation_percent: Optional[float] = Field(
        None,
        ge=0.0,
        le=100.0,
        description="Percentage of traffic allocated to this variant. "
        "Variants without one share the remaining traffic equally.",
    )
    is_control: Optional[bool] = None


def _default_variant_configs() -> List[VariantConfig]:
    return [VariantConfig(variant_name="A", is_control=True), VariantConfig(variant_name="B")]


class ExperimentCreateModel(BaseModel):
    """Admin input for defining an experiment."""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.RUNNING
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    variants: List[VariantConfig] = Field(default_factory=_default_variant_configs)
    primary_metric_name: str = Field("click", min_length=1, description="Action counted as a conversion")

    @field_validator("variants")
    @classmethod
    def check_variants(cls, variants: List[VariantConfig]) -> List[VariantConfig]:
        if len(variants) < 2:
            raise ValueError("Experiment must have at least 2 variants")
        names = [v.variant_name for v in variants]
        if len(names) != len(set(names)):
            raise ValueError("Variant names must be unique")
        return variants


class ExperimentVariantResponseModel(BaseModel):
    variant_id: str
    variant_name: str
    traffic_allocation_percent: float
    is_control: bool = False

    model_config = ConfigDict(from_attributes=True)


class ExperimentResponseModel(BaseModel):
    experiment_id: str
    name: str
    description: Optional[str] = None
    status: ExperimentStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    variants: List[ExperimentVariantResponseModel]
    primary_metric_name: str

    model_config = ConfigDict(from_attributes=True)


# --- Resolved definitions used by the tracker ---


class VariantDefinition(BaseModel):
    name: str
    weight: float
    is_control: bool = False


class ExperimentDefinition(BaseModel):
    """Variants an experiment can assign, wherever it was defined."""

    name: str
    variants: List[VariantDefinition]
    primary_metric_name: str = "click"
    # Only running experiments hand out new assignments
    is_running: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def variant_names(self) -> List[str]:
        return [variant.name for variant in self.variants]

    def fallback_variant(self, preferred: str) -> str:
        """
        The variant served when no assignment can be made: ``preferred`` if
        the experiment defines it, else the control, else the first variant.
        """
        if not self.variants or preferred in self.variant_names:
            return preferred
        for variant in self.variants:
            if variant.is_control:
                return variant.name
        return self.variants[0].name

    @classmethod
    def with_equal_split(cls, name: str, variant_names: List[str]) -> "ExperimentDefinition":
        weight = 100.0 / len(variant_names)
        return cls(
            name=name,
            variants=[VariantDefinition(name=v, weight=weight) for v in variant_names],
        )


# --- Reporting ---


class VariantResultModel(BaseModel):
    """Metrics aggregated for a single variant."""

    variant_name: str
    total_visitors: int = Field(..., description="Distinct visitors with at least one event.")
    conversion_count: int
    conversion_rate: float
    event_counts: Dict[str, int]
    traffic_allocation: Optional[float] = None


class ExperimentResultsModel(BaseModel):
    name: str
    description: Optional[str] = None
    status: Optional[ExperimentStatus] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    experiment_days_running: Optional[int] = None
    primary_metric_name: str
    total_variants: int
    total_events: int
    total_visitors: int
    global_conversion_rate: float
    variant_stats: Dict[str, VariantResultModel]

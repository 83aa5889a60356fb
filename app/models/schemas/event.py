from pydantic import BaseModel, Field
from typing import Dict, Optional
from datetime import datetime

from app.models.orm.base import utcnow


#  visitor event posting flow


class TrackEventCreateModel(BaseModel):
    """Schema for an experiment interaction (API Input)."""

    action: str = Field(..., min_length=1, description="e.g., 'impression', 'click', 'apply_financing'")
    properties: Dict = Field(default_factory=dict, description="Flexible JSON object.")


class PageViewCreateModel(BaseModel):
    path: str = Field(..., min_length=1)
    # Query string of the landing URL; utm_* keys are captured on first touch
    query: Dict[str, str] = Field(default_factory=dict)


class EventAcceptedModel(BaseModel):
    # False when consent is missing and the event was skipped
    accepted: bool


class TrackingEvent(BaseModel):
    """Payload handed to the analytics collaborator."""

    action: str
    experiment: Optional[str] = None
    variant: Optional[str] = None
    visitor_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    properties: Dict = Field(default_factory=dict)

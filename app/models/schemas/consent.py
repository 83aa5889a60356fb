import enum
from typing import Optional

from pydantic import BaseModel, field_validator


class ConsentPreferences(BaseModel):
    """Cookie categories a visitor allows. Necessary cookies cannot be refused."""

    necessary: bool = True
    analytics: bool = False
    marketing: bool = False
    personalization: bool = False

    @field_validator("necessary")
    @classmethod
    def necessary_always_on(cls, value: bool) -> bool:
        return True

    @property
    def any_optional(self) -> bool:
        return self.analytics or self.marketing or self.personalization


class ConsentChoice(str, enum.Enum):
    ACCEPT_ALL = "accept_all"
    DECLINE = "decline"
    CUSTOM = "custom"


class ConsentUpdateModel(BaseModel):
    choice: ConsentChoice
    # Only read for the "custom" choice
    preferences: Optional[ConsentPreferences] = None


class ConsentStateModel(BaseModel):
    has_consented: bool
    preferences: ConsentPreferences

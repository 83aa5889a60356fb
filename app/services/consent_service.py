# services/consent_service.py
import logging
from typing import Mapping

from starlette.responses import Response

from app.models.schemas.consent import (
    ConsentChoice,
    ConsentPreferences,
    ConsentStateModel,
    ConsentUpdateModel,
)

logger = logging.getLogger(__name__)

CONSENT_COOKIE = "cookie_consent"
# Enabled categories joined with ".", e.g. "necessary.analytics"
PREFERENCES_COOKIE = "cookie_preferences"
_CATEGORIES = ("necessary", "analytics", "marketing", "personalization")


def encode_preferences(preferences: ConsentPreferences) -> str:
    return ".".join(c for c in _CATEGORIES if getattr(preferences, c))


def decode_preferences(raw: str) -> ConsentPreferences:
    enabled = set(raw.split("."))
    unknown = enabled - set(_CATEGORIES)
    if unknown:
        raise ValueError(f"unknown cookie categories {sorted(unknown)}")
    return ConsentPreferences(**{c: c in enabled for c in _CATEGORIES})


class ConsentService:
    """Reads and records the visitor's cookie consent.

    Both cookies are essential and may be written without consent.
    """

    def __init__(self, max_age: int):
        self.max_age = max_age

    def read_consent(self, cookies: Mapping[str, str]) -> ConsentStateModel:
        has_consented = cookies.get(CONSENT_COOKIE) == "true"

        preferences = ConsentPreferences()
        raw_preferences = cookies.get(PREFERENCES_COOKIE)
        if raw_preferences:
            try:
                preferences = decode_preferences(raw_preferences)
            except ValueError as e:
                logger.warning("Ignoring unreadable cookie preferences: %s", e)

        return ConsentStateModel(has_consented=has_consented, preferences=preferences)

    def accept_all(self) -> ConsentStateModel:
        return ConsentStateModel(
            has_consented=True,
            preferences=ConsentPreferences(analytics=True, marketing=True, personalization=True),
        )

    def decline(self) -> ConsentStateModel:
        return ConsentStateModel(has_consented=False, preferences=ConsentPreferences())

    def save_preferences(self, preferences: ConsentPreferences) -> ConsentStateModel:
        # Any optional category switched on counts as consenting
        return ConsentStateModel(has_consented=preferences.any_optional, preferences=preferences)

    def apply_choice(self, update: ConsentUpdateModel) -> ConsentStateModel:
        if update.choice == ConsentChoice.ACCEPT_ALL:
            return self.accept_all()
        if update.choice == ConsentChoice.DECLINE:
            return self.decline()
        return self.save_preferences(update.preferences or ConsentPreferences())

    def write_consent(self, response: Response, state: ConsentStateModel) -> None:
        response.set_cookie(
            CONSENT_COOKIE,
            "true" if state.has_consented else "false",
            max_age=self.max_age,
            samesite="lax",
        )
        response.set_cookie(
            PREFERENCES_COOKIE,
            encode_preferences(state.preferences),
            max_age=self.max_age,
            samesite="lax",
        )

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from app.core.db import get_db
from app.core.settings import Settings, config_settings
from app.models.schemas.consent import ConsentStateModel
from app.repositories.assignment_repo import AssignmentRepository
from app.repositories.assignment_store import (
    AssignmentStore,
    CookieAssignmentStore,
    DatabaseAssignmentStore,
)
from app.services.consent_service import ConsentService

VISITOR_COOKIE = "visitor_id"


@dataclass
class TrackingContext:
    """Everything the trackers may touch for one visitor during one request."""

    consent: ConsentStateModel
    store: Optional[AssignmentStore] = None
    visitor_id: Optional[str] = None

    @property
    def has_consented(self) -> bool:
        return self.consent.has_consented


def get_settings() -> Settings:
    return config_settings


def get_consent_service(settings: Settings = Depends(get_settings)) -> ConsentService:
    return ConsentService(max_age=settings.CONSENT_COOKIE_MAX_AGE)


def build_tracking_context(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    consent_service: ConsentService = Depends(get_consent_service),
) -> TrackingContext:
    """
    Builds the tracking context at the start of a request.

    Without consent the context carries no store and no visitor id, so no
    tracking cookie can be read or written further down.
    """
    consent = consent_service.read_consent(request.cookies)
    if not consent.has_consented:
        return TrackingContext(consent=consent)

    visitor_id = request.cookies.get(VISITOR_COOKIE)
    if not visitor_id:
        visitor_id = str(uuid.uuid4())
        response.set_cookie(
            VISITOR_COOKIE, visitor_id, max_age=settings.ASSIGNMENT_COOKIE_MAX_AGE, samesite="lax"
        )

    if settings.ASSIGNMENT_STORE == "database":
        store = DatabaseAssignmentStore(AssignmentRepository(db), visitor_id)
    else:
        store = CookieAssignmentStore(
            request.cookies, response, max_age=settings.ASSIGNMENT_COOKIE_MAX_AGE
        )

    return TrackingContext(consent=consent, store=store, visitor_id=visitor_id)

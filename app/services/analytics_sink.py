"""Analytics collaborators that tracking events are dispatched to.

Dispatch is fire-and-forget from the visitor's point of view: sinks may
raise, and callers are expected to log and drop the failure.
"""
import logging
from typing import Callable, Protocol

import requests
from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from app.core.settings import Settings
from app.models.schemas.event import TrackingEvent
from app.repositories.event_repo import EventRepository

logger = logging.getLogger(__name__)


class AnalyticsSink(Protocol):
    def dispatch(self, event: TrackingEvent) -> None:
        ...


class DatabaseAnalyticsSink:
    """Stores events in the events table read by results reporting."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def dispatch(self, event: TrackingEvent) -> None:
        # Own session: this usually runs after the request's session is closed
        db = self.session_factory()
        try:
            EventRepository(db).create_event(event)
        finally:
            db.close()


class HttpAnalyticsSink:
    def __init__(self, endpoint: str, timeout: float = 2.0):
        self.endpoint = endpoint
        self.timeout = timeout

    def dispatch(self, event: TrackingEvent) -> None:
        response = requests.post(
            self.endpoint,
            json=event.model_dump(mode="json"),
            timeout=self.timeout,
        )
        response.raise_for_status()


class LoggingAnalyticsSink:
    def dispatch(self, event: TrackingEvent) -> None:
        logger.info("analytics event: %s", event.model_dump_json())


def dispatch_safely(sink: AnalyticsSink, event: TrackingEvent) -> bool:
    """Dispatches one event, logging instead of raising on failure."""
    try:
        sink.dispatch(event)
        return True
    except Exception:
        logger.exception(
            "Dropping %r event for experiment %r", event.action, event.experiment
        )
        return False


class BackgroundDispatchSink:
    """Defers dispatch until after the response has been sent."""

    def __init__(self, inner: AnalyticsSink, background_tasks: BackgroundTasks):
        self.inner = inner
        self.background_tasks = background_tasks

    def dispatch(self, event: TrackingEvent) -> None:
        self.background_tasks.add_task(dispatch_safely, self.inner, event)


def build_sink(settings: Settings, session_factory: Callable[[], Session]) -> AnalyticsSink:
    if settings.ANALYTICS_SINK == "http":
        return HttpAnalyticsSink(settings.ANALYTICS_ENDPOINT, settings.ANALYTICS_TIMEOUT_SECONDS)
    if settings.ANALYTICS_SINK == "log":
        return LoggingAnalyticsSink()
    return DatabaseAnalyticsSink(session_factory)

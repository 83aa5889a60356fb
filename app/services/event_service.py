# services/event_service.py
import logging
from typing import Dict, Mapping

from starlette.responses import Response

from app.core.context import TrackingContext
from app.models.schemas.event import TrackingEvent
from app.services.analytics_sink import AnalyticsSink

logger = logging.getLogger(__name__)

UTM_COOKIE = "utm_params"
UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


def _encode_utm(params: Mapping[str, str]) -> str:
    # "&" and "=" can't appear in cookie-safe values, so use "|" and ":"
    return "|".join(f"{key}:{params[key]}" for key in UTM_KEYS if params.get(key))


def _decode_utm(raw: str) -> Dict[str, str]:
    params = {}
    for pair in raw.split("|"):
        key, sep, value = pair.partition(":")
        if sep and key in UTM_KEYS and value:
            params[key] = value
    return params


class EventService:
    """Page-level tracking: page views and first-touch UTM capture."""

    def __init__(
        self,
        context: TrackingContext,
        sink: AnalyticsSink,
        request_cookies: Mapping[str, str],
        response: Response,
        max_age: int,
    ):
        self.context = context
        self.sink = sink
        self.request_cookies = request_cookies
        self.response = response
        self.max_age = max_age
        self._utm: Dict[str, str] = {}

    def capture_utm(self, query_params: Mapping[str, str]) -> Dict[str, str]:
        """
        Remembers the campaign that first brought the visitor here.
        An earlier capture is never overwritten.
        """
        if not self.context.has_consented:
            return {}

        existing = _decode_utm(self.request_cookies.get(UTM_COOKIE, ""))
        if existing:
            self._utm = existing
            return existing

        captured = {
            key: str(query_params[key]).replace("|", "")[:200]
            for key in UTM_KEYS
            if query_params.get(key)
        }
        encoded = _encode_utm(captured)
        if encoded:
            self.response.set_cookie(UTM_COOKIE, encoded, max_age=self.max_age, samesite="lax")
            logger.info("Captured UTM parameters %s for visitor %s", captured, self.context.visitor_id)
        self._utm = _decode_utm(encoded)
        return self._utm

    def track_page_view(self, path: str) -> bool:
        if not path:
            logger.warning("Ignoring page view without a path")
            return False
        if not self.context.has_consented:
            return False

        event = TrackingEvent(
            action="page_view",
            visitor_id=self.context.visitor_id,
            properties={"path": path, "utm": dict(self._utm)},
        )
        try:
            self.sink.dispatch(event)
        except Exception:
            logger.exception("Failed to dispatch page view for %s", path)
            return False
        return True

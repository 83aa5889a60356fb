import pytest
from starlette.responses import Response

from app.services.event_service import UTM_COOKIE, EventService

LANDING_QUERY = {
    "utm_source": "google",
    "utm_medium": "cpc",
    "utm_campaign": "spring_mclaren",
    "page": "2",
}


def utm_cookie_headers(response):
    return [h for h in response.headers.getlist("set-cookie") if h.startswith(UTM_COOKIE + "=")]


@pytest.fixture
def response():
    return Response()


def make_service(context, sink, response, cookies=None):
    return EventService(context, sink, cookies or {}, response, max_age=3600)


class TestCaptureUtm:
    def test_first_touch_is_captured(self, consented_context, recording_sink, response):
        service = make_service(consented_context, recording_sink, response)

        captured = service.capture_utm(LANDING_QUERY)

        assert captured == {"utm_source": "google", "utm_medium": "cpc", "utm_campaign": "spring_mclaren"}
        assert len(utm_cookie_headers(response)) == 1

    def test_existing_capture_is_kept(self, consented_context, recording_sink, response):
        cookies = {UTM_COOKIE: "utm_source:facebook|utm_campaign:bmw_m_series"}
        service = make_service(consented_context, recording_sink, response, cookies)

        captured = service.capture_utm(LANDING_QUERY)

        assert captured == {"utm_source": "facebook", "utm_campaign": "bmw_m_series"}
        assert utm_cookie_headers(response) == []

    def test_no_utm_parameters(self, consented_context, recording_sink, response):
        service = make_service(consented_context, recording_sink, response)
        assert service.capture_utm({"page": "2"}) == {}
        assert utm_cookie_headers(response) == []

    def test_nothing_captured_without_consent(self, declined_context, recording_sink, response):
        service = make_service(declined_context, recording_sink, response)
        assert service.capture_utm(LANDING_QUERY) == {}
        assert response.headers.getlist("set-cookie") == []


class TestTrackPageView:
    def test_page_view_carries_path_and_utm(self, consented_context, recording_sink, response):
        service = make_service(consented_context, recording_sink, response)
        service.capture_utm(LANDING_QUERY)

        assert service.track_page_view("/inventory") is True

        event = recording_sink.events[0]
        assert event.action == "page_view"
        assert event.experiment is None
        assert event.visitor_id == "visitor-1"
        assert event.properties["path"] == "/inventory"
        assert event.properties["utm"]["utm_source"] == "google"

    def test_no_page_view_without_consent(self, declined_context, recording_sink, response):
        service = make_service(declined_context, recording_sink, response)
        assert service.track_page_view("/inventory") is False
        assert recording_sink.events == []

    def test_empty_path_is_ignored(self, consented_context, recording_sink, response):
        service = make_service(consented_context, recording_sink, response)
        assert service.track_page_view("") is False
        assert recording_sink.events == []

    def test_sink_failure_is_swallowed(self, consented_context, failing_sink, response):
        service = make_service(consented_context, failing_sink, response)
        assert service.track_page_view("/services") is False

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from starlette.responses import Response

from app.models.orm.base import utcnow
from app.repositories.assignment_repo import AssignmentRepository
from app.repositories.assignment_store import (
    CookieAssignmentStore,
    DatabaseAssignmentStore,
    InMemoryAssignmentStore,
    StorageUnavailableError,
    assignment_cookie_name,
)


def set_cookie_headers(response):
    return response.headers.getlist("set-cookie")


class TestInMemoryAssignmentStore:
    def test_get_set_clear(self):
        store = InMemoryAssignmentStore({"home_layout": "A"})
        assert store.get("home_layout") == "A"
        assert store.get("cta_banner") is None

        assert store.set("cta_banner", "B") == "B"
        assert store.get("cta_banner") == "B"

        store.clear("cta_banner")
        store.clear("never_assigned")
        assert store.assignments == {"home_layout": "A"}


class TestCookieAssignmentStore:
    def test_reads_request_cookies(self):
        store = CookieAssignmentStore({"ab_test_cta_banner": "B"}, Response(), max_age=60)
        assert store.get("cta_banner") == "B"
        assert store.get("home_layout") is None

    def test_set_writes_cookie_and_is_readable(self):
        response = Response()
        store = CookieAssignmentStore({}, response, max_age=60)

        store.set("cta_banner", "A")

        assert store.get("cta_banner") == "A"
        headers = set_cookie_headers(response)
        assert len(headers) == 1
        assert headers[0].startswith("ab_test_cta_banner=A;")
        assert "Max-Age=60" in headers[0]

    def test_clear_deletes_cookie(self):
        response = Response()
        store = CookieAssignmentStore({"ab_test_cta_banner": "B"}, response, max_age=60)

        store.clear("cta_banner")

        assert store.get("cta_banner") is None
        assert any(h.startswith("ab_test_cta_banner=") and "Max-Age=0" in h for h in set_cookie_headers(response))

    def test_empty_cookie_counts_as_unassigned(self):
        store = CookieAssignmentStore({"ab_test_cta_banner": ""}, Response(), max_age=60)
        assert store.get("cta_banner") is None

    @pytest.mark.parametrize(
        "experiment_name,cookie_name",
        [
            ("cta_banner", "ab_test_cta_banner"),
            ("home layout", "ab_test_home%20layout"),
            ("promo;v2", "ab_test_promo%3Bv2"),
        ],
    )
    def test_cookie_names_are_safe(self, experiment_name, cookie_name):
        assert assignment_cookie_name(experiment_name) == cookie_name

    def test_similar_names_keep_separate_cookies(self):
        assert assignment_cookie_name("home layout") != assignment_cookie_name("home_layout")

        response = Response()
        store = CookieAssignmentStore({}, response, max_age=60)
        store.set("home_layout", "B")

        assert store.get("home layout") is None
        assert store.set("home layout", "A") == "A"
        assert store.get("home_layout") == "B"
        assert len(set_cookie_headers(response)) == 2


class TestDatabaseAssignmentStore:
    def test_round_trip(self, db_session):
        store = DatabaseAssignmentStore(AssignmentRepository(db_session), "visitor-1")
        assert store.get("cta_banner") is None

        assert store.set("cta_banner", "B") == "B"

        assert store.get("cta_banner") == "B"
        other_visitor = DatabaseAssignmentStore(AssignmentRepository(db_session), "visitor-2")
        assert other_visitor.get("cta_banner") is None

    def test_first_write_wins(self, db_session):
        repository = AssignmentRepository(db_session)
        repository.create_assignment("cta_banner", "visitor-1", "A")

        stored = repository.create_assignment("cta_banner", "visitor-1", "B")

        assert stored.variant == "A"
        assert DatabaseAssignmentStore(repository, "visitor-1").get("cta_banner") == "A"

    def test_set_returns_the_variant_already_stored(self, db_session):
        repository = AssignmentRepository(db_session)
        repository.create_assignment("cta_banner", "visitor-1", "A")

        store = DatabaseAssignmentStore(repository, "visitor-1")

        assert store.set("cta_banner", "B") == "A"
        assert store.get("cta_banner") == "A"

    def test_assignment_timestamp_is_naive_utc(self, db_session):
        stored = AssignmentRepository(db_session).create_assignment("cta_banner", "visitor-1", "A")
        assert stored.assignment_timestamp.tzinfo is None
        assert abs(utcnow() - stored.assignment_timestamp) < timedelta(minutes=1)

    def test_clear(self, db_session):
        store = DatabaseAssignmentStore(AssignmentRepository(db_session), "visitor-1")
        store.set("cta_banner", "B")

        store.clear("cta_banner")

        assert store.get("cta_banner") is None

    def test_database_errors_become_storage_unavailable(self):
        repository = MagicMock(spec=AssignmentRepository)
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))
        repository.get_assignment.side_effect = error
        repository.create_assignment.side_effect = error

        store = DatabaseAssignmentStore(repository, "visitor-1")

        with pytest.raises(StorageUnavailableError):
            store.get("cta_banner")
        with pytest.raises(StorageUnavailableError):
            store.set("cta_banner", "A")

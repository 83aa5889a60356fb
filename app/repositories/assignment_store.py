"""Where a visitor's sticky variant assignments live.

The tracker only talks to the ``AssignmentStore`` protocol. ``set`` returns
the variant that actually ended up stored, which differs from the one asked
for when a concurrent request assigned the visitor first. Stores raise
``StorageUnavailableError`` when they can't be read or written; the tracker
turns that into an assignment for the current request only.
"""
from typing import Dict, Mapping, Optional, Protocol
from urllib.parse import quote

from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from app.repositories.assignment_repo import AssignmentRepository

ASSIGNMENT_COOKIE_PREFIX = "ab_test_"


class StorageUnavailableError(Exception):
    pass


class AssignmentStore(Protocol):
    def get(self, experiment_name: str) -> Optional[str]:
        ...

    def set(self, experiment_name: str, variant: str) -> str:
        ...

    def clear(self, experiment_name: str) -> None:
        ...


class InMemoryAssignmentStore:
    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self.assignments: Dict[str, str] = dict(initial or {})

    def get(self, experiment_name: str) -> Optional[str]:
        return self.assignments.get(experiment_name)

    def set(self, experiment_name: str, variant: str) -> str:
        self.assignments[experiment_name] = variant
        return variant

    def clear(self, experiment_name: str) -> None:
        self.assignments.pop(experiment_name, None)


def assignment_cookie_name(experiment_name: str) -> str:
    # Percent-encoding keeps distinct experiments in distinct cookies
    return ASSIGNMENT_COOKIE_PREFIX + quote(experiment_name, safe="")


class CookieAssignmentStore:
    """
    Keeps assignments on the visitor's browser, one cookie per experiment.

    Reads come from the request cookies; writes go onto the outgoing
    response and are also visible to later reads in the same request.
    """

    def __init__(self, request_cookies: Mapping[str, str], response: Response, max_age: int):
        self._cookies: Dict[str, str] = dict(request_cookies)
        self._response = response
        self._max_age = max_age

    def get(self, experiment_name: str) -> Optional[str]:
        return self._cookies.get(assignment_cookie_name(experiment_name)) or None

    def set(self, experiment_name: str, variant: str) -> str:
        name = assignment_cookie_name(experiment_name)
        self._cookies[name] = variant
        self._response.set_cookie(
            name, variant, max_age=self._max_age, httponly=False, samesite="lax"
        )
        return variant

    def clear(self, experiment_name: str) -> None:
        name = assignment_cookie_name(experiment_name)
        self._cookies.pop(name, None)
        self._response.delete_cookie(name)


class DatabaseAssignmentStore:
    """Keeps assignments server-side, keyed by the visitor id cookie."""

    def __init__(self, repository: AssignmentRepository, visitor_id: str):
        self._repository = repository
        self._visitor_id = visitor_id

    def get(self, experiment_name: str) -> Optional[str]:
        try:
            assignment = self._repository.get_assignment(experiment_name, self._visitor_id)
        except SQLAlchemyError as e:
            raise StorageUnavailableError(str(e)) from e
        return assignment.variant if assignment else None

    def set(self, experiment_name: str, variant: str) -> str:
        try:
            assignment = self._repository.create_assignment(
                experiment_name, self._visitor_id, variant
            )
        except SQLAlchemyError as e:
            raise StorageUnavailableError(str(e)) from e
        return assignment.variant

    def clear(self, experiment_name: str) -> None:
        try:
            self._repository.delete_assignment(experiment_name, self._visitor_id)
        except SQLAlchemyError as e:
            raise StorageUnavailableError(str(e)) from e

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure category attached where the store boundary raises."""
    AUTH = 'auth'
    NETWORK = 'network'
    PERMISSION = 'permission'
    SCHEMA = 'schema'
    NOT_FOUND = 'not_found'
    CONFLICT = 'conflict'
    VALIDATION = 'validation'
    UNKNOWN = 'unknown'


class Severity(Enum):
    CRITICAL = 'critical'
    QUERY = 'query'
    REALTIME = 'realtime'


SEVERITY_BY_KIND = {
    ErrorKind.AUTH: Severity.CRITICAL,
    ErrorKind.NETWORK: Severity.CRITICAL,
    ErrorKind.PERMISSION: Severity.QUERY,
    ErrorKind.SCHEMA: Severity.QUERY,
    ErrorKind.NOT_FOUND: Severity.QUERY,
    ErrorKind.CONFLICT: Severity.QUERY,
    ErrorKind.VALIDATION: Severity.QUERY,
    ErrorKind.UNKNOWN: Severity.QUERY,
}


def classify(kind: ErrorKind) -> Severity:
    return SEVERITY_BY_KIND[ErrorKind(kind)]


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code == 401:
        return ErrorKind.AUTH
    if status_code == 403:
        return ErrorKind.PERMISSION
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.CONFLICT
    if status_code in (400, 422):
        return ErrorKind.VALIDATION
    if status_code in (502, 503, 504):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


class StoreError(Exception):
    """A fetch, write or subscribe against the club store failed."""

    def __init__(self, kind: ErrorKind, message: str, collection: Optional[str] = None,
                 status: Optional[int] = None):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.collection = collection
        self.status = status

    @property
    def severity(self) -> Severity:
        return classify(self.kind)

    def __repr__(self):
        return f'StoreError({self.kind.value}, {self.message!r}, collection={self.collection!r})'


class MutationsBlocked(RuntimeError):
    """Raised while the blocking overlay is open; recover before mutating."""


class ActionInFlight(RuntimeError):
    """The same action on the same table is still waiting for its write."""

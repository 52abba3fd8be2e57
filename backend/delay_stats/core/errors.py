"""Error taxonomy for the scrape-reconcile-aggregate pipeline.

Pipeline stages return these as values inside their result objects; the cycle
runner tallies them as anomalies instead of letting them escape a route's
pipeline.
"""

import enum

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError


class AnomalyKind(str, enum.Enum):
    """Recoverable processing exceptions counted in the cycle report."""

    FETCH_FAILED = "fetch_failed"
    PARSE_ERROR = "parse_error"
    NO_ROUTE = "no_route"
    NO_STOP = "no_stop"
    AMBIGUOUS = "ambiguous"
    MONOTONICITY_VIOLATION = "monotonicity_violation"
    PERSISTENCE_FAILED = "persistence_failed"


class PipelineError(Exception):
    """Base exception for scrape cycle errors."""

    anomaly_kind: AnomalyKind


class FetchError(PipelineError):
    """Live status could not be fetched for a route number."""

    anomaly_kind = AnomalyKind.FETCH_FAILED

    def __init__(
        self,
        route_number: int,
        reason: str,
        *,
        transient: bool,
        status_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        self.route_number = route_number
        self.reason = reason
        self.transient = transient
        self.status_code = status_code
        self.attempts = attempts
        kind = "transient" if transient else "permanent"
        super().__init__(f"{kind} fetch failure for train {route_number} after {attempts} attempt(s): {reason}")


class ParseError(PipelineError):
    """A malformed fragment of a live status payload."""

    anomaly_kind = AnomalyKind.PARSE_ERROR

    def __init__(self, fragment: str, reason: str) -> None:
        self.fragment = fragment
        self.reason = reason
        super().__init__(f"Malformed fragment ({reason}): {fragment[:120]!r}")


class MatchErrorKind(str, enum.Enum):
    """Why an observation could not be bound to a timetable stop."""

    NO_ROUTE = "no_route"
    NO_STOP = "no_stop"
    AMBIGUOUS = "ambiguous"


class MatchError(PipelineError):
    """An observation could not be reconciled with the timetable."""

    def __init__(self, kind: MatchErrorKind, route_number: int, station_code: str, reason: str) -> None:
        self.kind = kind
        self.route_number = route_number
        self.station_code = station_code
        self.reason = reason
        super().__init__(f"{kind.value} for train {route_number} at '{station_code}': {reason}")

    @property
    def anomaly_kind(self) -> AnomalyKind:  # type: ignore[override]
        return AnomalyKind(self.kind.value)


class MonotonicityViolation(PipelineError):
    """An update would break the ordering of real times along a route."""

    anomaly_kind = AnomalyKind.MONOTONICITY_VIOLATION

    def __init__(self, route_id: str, sequence: int, reason: str) -> None:
        self.route_id = route_id
        self.sequence = sequence
        self.reason = reason
        super().__init__(f"Route {route_id} stop {sequence}: {reason}")


class PersistenceError(PipelineError):
    """A route transaction failed to commit."""

    anomaly_kind = AnomalyKind.PERSISTENCE_FAILED

    def __init__(self, reason: str, *, transient: bool) -> None:
        self.reason = reason
        self.transient = transient
        super().__init__(reason)


def classify_persistence_error(exc: SQLAlchemyError) -> PersistenceError:
    """
    Map a SQLAlchemy exception onto the persistence error taxonomy.

    Connection-level failures are transient and worth retrying; constraint
    violations and anything else are not.

    Example:
        >>> classify_persistence_error(OperationalError("SELECT 1", {}, Exception("gone"))).transient
        True
    """
    if isinstance(exc, IntegrityError):
        return PersistenceError(f"constraint violation: {exc.orig}", transient=False)
    if isinstance(exc, OperationalError | InterfaceError):
        return PersistenceError(f"database unavailable: {exc.orig}", transient=True)
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return PersistenceError(f"connection invalidated: {exc.orig}", transient=True)
    return PersistenceError(str(exc), transient=False)


def is_transient_database_error(exc: BaseException) -> bool:
    """Retry predicate for route transactions: SQLAlchemy errors classified as transient."""
    return isinstance(exc, SQLAlchemyError) and classify_persistence_error(exc).transient

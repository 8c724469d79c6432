"""Error taxonomy for fetch, extraction, pagination and state failures."""

from enum import Enum
from typing import Optional, Sequence


class HarvestError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(HarvestError):
    pass


class FetchErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"


class FetchError(HarvestError):
    def __init__(self, kind: FetchErrorKind, message: str, url: str = "",
                 status_code: Optional[int] = None, attempts: int = 0,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status_code = status_code
        self.attempts = attempts
        self.retry_after = retry_after

    @property
    def permanent(self) -> bool:
        return self.kind == FetchErrorKind.PERMANENT

    def __str__(self) -> str:
        status = f" HTTP {self.status_code}" if self.status_code else ""
        return f"{self.kind.value}{status} after {self.attempts} attempt(s): {self.args[0]}"


class ExtractionErrorKind(str, Enum):
    AMBIGUOUS_CONTAINER = "ambiguous_container"
    FIELD_MISSING = "field_missing"


class ExtractionError(HarvestError):
    def __init__(self, kind: ExtractionErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.args[0]}"


class AnomalyKind(str, Enum):
    SUSPICIOUS_UNIFORM_COUNT = "suspicious_uniform_count"
    DUPLICATE_PAGE = "duplicate_page"


class PaginationAnomaly(HarvestError):
    def __init__(self, kind: AnomalyKind, query_signature: str, page_index: int,
                 message: str = "", signatures: Sequence[str] = ()):
        super().__init__(message or kind.value)
        self.kind = kind
        self.query_signature = query_signature
        self.page_index = page_index
        # Every signature in the uniform-count streak, oldest first.
        self.signatures = list(signatures) or [query_signature]

    def __str__(self) -> str:
        return f"{self.kind.value} [{self.query_signature}] page {self.page_index}: {self.args[0]}"


class StateErrorKind(str, Enum):
    CONFLICTING_TRANSITION = "conflicting_transition"
    UNKNOWN_UNIT = "unknown_unit"


class StateError(HarvestError):
    def __init__(self, kind: StateErrorKind, unit_id: str, current: Optional[str] = None,
                 requested: Optional[str] = None):
        msg = f"{kind.value}: unit {unit_id} is {current or 'missing'}, cannot move to {requested}"
        super().__init__(msg)
        self.kind = kind
        self.unit_id = unit_id
        self.current = current
        self.requested = requested

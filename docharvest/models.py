"""Data models for the harvest pipeline."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


class Stage(str, Enum):
    LISTING = "listing"
    DETAIL = "detail"
    DOCUMENT = "document"


STAGE_ORDER = (Stage.LISTING, Stage.DETAIL, Stage.DOCUMENT)


class UnitStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


class ContentKind(str, Enum):
    HTML = "html"
    BINARY = "binary"


_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonical_url(url: str) -> str:
    """Normalize a URL so that equivalent spellings produce the same key."""
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    netloc = host
    if port and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    path = parts.path or "/"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def make_unit_id(natural_key: str) -> str:
    """Stable unit id derived from a canonical natural key."""
    return hashlib.sha256(natural_key.encode("utf-8")).hexdigest()[:24]


@dataclass(frozen=True)
class URLSpec:
    url: str
    method: str = "GET"
    form: Optional[Dict[str, str]] = None
    kind: ContentKind = ContentKind.HTML
    # Browser adapter only: click this control instead of replaying the request.
    control: Optional[str] = None

    def natural_key(self) -> str:
        key = canonical_url(self.url)
        if self.method.upper() != "GET" and self.form:
            key += "#" + urlencode(sorted(self.form.items()))
        return key

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "method": self.method,
            "form": dict(self.form) if self.form else None,
            "kind": self.kind.value,
            "control": self.control,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "URLSpec":
        return cls(
            url=raw["url"],
            method=raw.get("method", "GET"),
            form=raw.get("form"),
            kind=ContentKind(raw.get("kind", ContentKind.HTML.value)),
            control=raw.get("control"),
        )


@dataclass(frozen=True)
class ClientIdentity:
    """Who we claim to be on the wire. Passed explicitly to every fetch."""
    user_agent: str
    cookies: Dict[str, str] = field(default_factory=dict)
    verify_tls: bool = True
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Record:
    fields: Tuple[Tuple[str, str], ...]
    source_unit_id: str
    # Dedup key in the sink; empty means always written.
    key: str = ""

    def as_dict(self) -> Dict[str, str]:
        return dict(self.fields)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        for key, value in self.fields:
            if key == name:
                return value
        return default

    def names(self) -> List[str]:
        return [key for key, _ in self.fields]


@dataclass(frozen=True)
class PageFetchResult:
    body: bytes
    final_url: str
    status_code: int
    fetched_at: datetime
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""


@dataclass
class WorkUnit:
    id: str
    stage: Stage
    source_url: str
    status: UnitStatus = UnitStatus.PENDING
    attempts: int = 0
    payload: Optional[dict] = None
    method: str = "GET"
    form: Optional[Dict[str, str]] = None
    parent_id: Optional[str] = None
    meta: dict = field(default_factory=dict)
    last_error: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def for_target(cls, stage: Stage, target: URLSpec, parent_id: Optional[str] = None,
                   meta: Optional[dict] = None) -> "WorkUnit":
        return cls(
            id=make_unit_id(target.natural_key()),
            stage=stage,
            source_url=target.url,
            method=target.method,
            form=target.form,
            parent_id=parent_id,
            meta=meta or {},
        )

    def target(self) -> URLSpec:
        kind = ContentKind.BINARY if self.stage == Stage.DOCUMENT else ContentKind.HTML
        return URLSpec(url=self.source_url, method=self.method, form=self.form, kind=kind)


class CursorState(str, Enum):
    START = "start"
    FETCHING = "fetching"
    ADVANCING = "advancing"
    SUBDIVIDING = "subdividing"
    TERMINAL = "terminal"


@dataclass
class PaginationCursor:
    query_signature: str
    page_index: int = 0
    expected_total_pages: Optional[int] = None
    last_fingerprint: Optional[str] = None
    next_request: Optional[URLSpec] = None
    state: CursorState = CursorState.START
    degraded_pages: List[int] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in (CursorState.TERMINAL, CursorState.SUBDIVIDING)

    def to_dict(self) -> dict:
        return {
            "query_signature": self.query_signature,
            "page_index": self.page_index,
            "expected_total_pages": self.expected_total_pages,
            "last_fingerprint": self.last_fingerprint,
            "next_request": self.next_request.to_dict() if self.next_request else None,
            "state": self.state.value,
            "degraded_pages": list(self.degraded_pages),
            "anomalies": list(self.anomalies),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "PaginationCursor":
        nxt = raw.get("next_request")
        return cls(
            query_signature=raw["query_signature"],
            page_index=raw.get("page_index", 0),
            expected_total_pages=raw.get("expected_total_pages"),
            last_fingerprint=raw.get("last_fingerprint"),
            next_request=URLSpec.from_dict(nxt) if nxt else None,
            state=CursorState(raw.get("state", CursorState.START.value)),
            degraded_pages=list(raw.get("degraded_pages", [])),
            anomalies=list(raw.get("anomalies", [])),
        )


@dataclass
class StageReport:
    stage: Stage
    done: int = 0
    failed: int = 0
    pending: int = 0
    fetches: int = 0
    records: int = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

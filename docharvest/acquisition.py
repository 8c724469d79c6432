"""Acquisition capabilities: direct HTTP (FetchClient) or a rendered-browser adapter.

The orchestrator only needs something with `fetch(target, identity, attempt)`.
BrowserAcquisition adapts any browser automation session to that shape for
sites that need client-side rendering or a browser-bootstrapped session.
No browser driver ships with this package.
"""

import logging
import threading
from typing import Optional, Protocol

from .errors import FetchError, FetchErrorKind
from .models import ClientIdentity, PageFetchResult, URLSpec, utcnow
from .ratelimit import HostRateLimiter

logger = logging.getLogger("docharvest")


class Fetcher(Protocol):
    def fetch(self, target: URLSpec, identity: ClientIdentity, attempt: int = 1) -> PageFetchResult: ...


class BrowserSession(Protocol):
    def navigate(self, url: str) -> None: ...

    def current_html(self) -> bytes: ...

    def click_control(self, selector: str) -> None: ...

    def fill_field(self, selector: str, text: str) -> None: ...


class BrowserAcquisition:
    """Fetcher backed by a live browser session.

    A target carrying a `control` selector is reached by clicking that control
    on the current page (how a "Next" postback is driven in a browser);
    anything else is a plain navigation. The session's own cookies apply, so
    the identity argument is ignored. One session drives one page at a time.
    """

    def __init__(self, session: BrowserSession, limiter: Optional[HostRateLimiter] = None,
                 fields: Optional[dict] = None):
        self.session = session
        self.limiter = limiter or HostRateLimiter(min_interval=0)
        # selector -> text typed in before a control is clicked (search boxes)
        self.fields = dict(fields or {})
        self._lock = threading.Lock()
        self._current_url: Optional[str] = None

    def fetch(self, target: URLSpec, identity: ClientIdentity, attempt: int = 1) -> PageFetchResult:
        with self._lock:
            self.limiter.acquire(target.url)
            try:
                if target.control and self._current_url is not None:
                    for selector, text in self.fields.items():
                        self.session.fill_field(selector, text)
                    self.session.click_control(target.control)
                else:
                    self.session.navigate(target.url)
                    self._current_url = target.url
                body = self.session.current_html()
            except Exception as e:
                logger.warning(f"Browser acquisition failed for {target.url}: {e}")
                raise FetchError(FetchErrorKind.TRANSIENT, f"browser error: {e}", url=target.url,
                                 attempts=attempt) from e

        return PageFetchResult(
            body=body,
            final_url=target.url,
            status_code=200,
            fetched_at=utcnow(),
            headers={"content-type": "text/html; charset=utf-8"},
        )

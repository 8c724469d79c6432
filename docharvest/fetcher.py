"""HTTP fetch client with per-host politeness, retries with backoff, and streaming reads."""

import logging
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

import httpx

from .config import FetchConfig
from .errors import FetchError, FetchErrorKind
from .models import ClientIdentity, ContentKind, PageFetchResult, URLSpec, utcnow
from .ratelimit import HostRateLimiter

logger = logging.getLogger("docharvest")

ACCEPT_HEADERS = {
    ContentKind.HTML: "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    ContentKind.BINARY: "application/pdf,application/octet-stream,*/*;q=0.8",
}


def retry_after_seconds(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given either as seconds or as an HTTP-date."""
    value = (value or "").strip()
    if not value:
        return None
    try:
        seconds = float(value)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class FetchClient:
    """Single-request retrieval of pages and binaries.

    The client holds no session state of its own: each call builds an
    httpx client from the given ClientIdentity and discards it afterwards, so
    cookies set by the server never bleed into later calls. The only thing
    shared between calls (and threads) is the host rate limiter.
    """

    def __init__(self, config: FetchConfig, limiter: Optional[HostRateLimiter] = None,
                 transport: Optional[httpx.BaseTransport] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Optional[random.Random] = None):
        self.config = config
        self.limiter = limiter or HostRateLimiter(config.min_interval, config.host_intervals)
        self._transport = transport
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _client(self, identity: ClientIdentity) -> httpx.Client:
        headers = {"User-Agent": identity.user_agent}
        headers.update(identity.headers)
        return httpx.Client(
            timeout=httpx.Timeout(self.config.timeout, connect=self.config.connect_timeout),
            follow_redirects=True,
            headers=headers,
            cookies=identity.cookies,
            verify=identity.verify_tls,
            transport=self._transport,
        )

    def backoff(self, attempt: int) -> float:
        delay = self.config.backoff_base * self.config.backoff_factor ** (attempt - 1)
        delay = min(self.config.max_backoff, delay)
        if self.config.jitter > 0:
            delay += self._rng.uniform(0.0, self.config.jitter)
        return delay

    def fetch(self, target: URLSpec, identity: ClientIdentity, attempt: int = 1) -> PageFetchResult:
        """Fetch `target`, retrying transient failures.

        `attempt` is the 1-based attempt to start from. Raises FetchError when
        the request fails permanently or the attempts run out.
        """
        max_attempts = self.config.max_attempts
        if attempt > max_attempts:
            raise FetchError(FetchErrorKind.TRANSIENT, "no attempts left", url=target.url,
                             attempts=attempt - 1)

        last_error: Optional[FetchError] = None
        with self._client(identity) as client:
            for n in range(attempt, max_attempts + 1):
                self.limiter.acquire(target.url)
                try:
                    return self._send(client, target)
                except FetchError as e:
                    e.attempts = n
                    if e.kind == FetchErrorKind.PERMANENT:
                        raise
                    last_error = e
                    if n >= max_attempts:
                        break
                    if e.retry_after is not None:
                        # a server hint never parks a worker longer than max_backoff
                        wait = min(e.retry_after, self.config.max_backoff)
                    else:
                        wait = self.backoff(n)
                    logger.warning(f"Retry {n}/{max_attempts} for {target.url}: {e.args[0]} "
                                   f"(wait {wait:.1f}s)")
                    self._sleep(wait)

        raise last_error

    def _send(self, client: httpx.Client, target: URLSpec) -> PageFetchResult:
        url = target.url
        try:
            with client.stream(target.method.upper(), url, data=target.form or None,
                               headers={"Accept": ACCEPT_HEADERS[target.kind]}) as resp:
                status = resp.status_code
                if status == 429:
                    raise FetchError(FetchErrorKind.RATE_LIMITED, "rate limited by server", url, status,
                                     retry_after=retry_after_seconds(resp.headers.get("retry-after")))
                if status >= 500:
                    raise FetchError(FetchErrorKind.TRANSIENT, f"server error {status}", url, status)
                if status >= 400:
                    raise FetchError(FetchErrorKind.PERMANENT, f"client error {status}", url, status)

                # An HTML page where a document was expected is an error page or a gate, not the file
                ct = resp.headers.get("content-type", "")
                if target.kind == ContentKind.BINARY and "text/html" in ct:
                    raise FetchError(FetchErrorKind.PERMANENT,
                                     f"expected binary but got HTML (content-type: {ct})", url, status)

                content_length = resp.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > self.config.max_bytes:
                    raise FetchError(FetchErrorKind.PERMANENT, f"body too large: {content_length} bytes",
                                     url, status)

                body = bytearray()
                for chunk in resp.iter_bytes(chunk_size=65536):
                    body.extend(chunk)
                    if len(body) > self.config.max_bytes:
                        raise FetchError(FetchErrorKind.PERMANENT,
                                         f"body exceeded max size during download: {len(body)} bytes",
                                         url, status)

                return PageFetchResult(
                    body=bytes(body),
                    final_url=str(resp.url),
                    status_code=status,
                    fetched_at=utcnow(),
                    headers=dict(resp.headers),
                )
        except httpx.UnsupportedProtocol as e:
            raise FetchError(FetchErrorKind.PERMANENT, f"unsupported URL: {e}", url)
        except httpx.TimeoutException as e:
            raise FetchError(FetchErrorKind.TRANSIENT, f"timeout: {e}", url)
        except httpx.TransportError as e:
            raise FetchError(FetchErrorKind.TRANSIENT, f"transport error: {e}", url)
        except (httpx.TooManyRedirects, httpx.DecodingError, httpx.InvalidURL) as e:
            raise FetchError(FetchErrorKind.PERMANENT, str(e), url)

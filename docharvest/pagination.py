"""Pagination controller: walks one query signature through its result pages.

Per signature the cursor moves

    start -> fetching(i) -> advancing -> fetching(i+1) | subdividing | terminal

and two integrity checks run on every advance:

- duplicate page: the new page's fingerprint (hash of its first K record
  identities) equals the previous page's. The advance is refused and the
  cursor left untouched so the same request can be resubmitted.
- uniform count: the first page reports exactly the suspicious ceiling of
  total pages, for the N-th distinct signature in a row. The listing is
  probably truncated and the caller should subdivide the query.

Duplicate detection runs first, so it wins when both would fire.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from .config import PaginationConfig
from .errors import AnomalyKind, PaginationAnomaly
from .extractor import Extractor, fingerprint
from .models import CursorState, PageFetchResult, PaginationCursor, Record, URLSpec
from .plans import SelectionPlan

logger = logging.getLogger("docharvest")


@dataclass
class ListingPage:
    page_index: int
    result: PageFetchResult
    records: List[Record]
    links: List[URLSpec]
    fingerprint: str


class PrefixSubdivider:
    """Narrows a prefix signature by one letter: "a" -> "aa", "ab", ..."""

    def __init__(self, alphabet: str = "abcdefghijklmnopqrstuvwxyz", max_length: int = 3):
        self.alphabet = alphabet
        self.max_length = max_length

    def children(self, signature: str) -> List[str]:
        if len(signature) >= self.max_length:
            return []
        return [signature + c for c in self.alphabet]


class PaginationController:
    def __init__(self, fetch: Callable[[URLSpec], PageFetchResult], extractor: Extractor,
                 plan: SelectionPlan, config: PaginationConfig,
                 sleep: Callable[[float], None] = time.sleep):
        self.fetch = fetch
        self.extractor = extractor
        self.plan = plan
        self.config = config
        self._sleep = sleep
        self._streak: List[str] = []
        self._lock = threading.Lock()

    def open(self, signature: str, request: URLSpec) -> PaginationCursor:
        return PaginationCursor(query_signature=signature, next_request=request)

    def advance(self, cursor: PaginationCursor, check_uniform: bool = True,
                source_unit_id: str = "") -> Optional[ListingPage]:
        """Fetch and verify the next page. Returns None once the cursor is terminal."""
        if cursor.finished:
            return None
        if cursor.next_request is None or cursor.page_index >= self.config.max_pages:
            cursor.state = CursorState.TERMINAL
            return None

        prior_state = cursor.state
        cursor.state = CursorState.FETCHING
        result = self.fetch(cursor.next_request)

        cursor.state = CursorState.ADVANCING
        try:
            records, links = self.extractor.extract(result.body, self.plan, result.final_url, source_unit_id)
            info = self.extractor.paging(result.body, self.plan, result.final_url)
        except Exception:
            cursor.state = prior_state
            raise
        head = [self.extractor.record_identity(r, self.plan) for r in records[:self.config.fingerprint_size]]
        fp = fingerprint(head)
        index = cursor.page_index + 1

        if cursor.page_index > 0 and records and fp == cursor.last_fingerprint:
            cursor.state = prior_state
            raise PaginationAnomaly(AnomalyKind.DUPLICATE_PAGE, cursor.query_signature, index,
                                    f"page {index} repeats page {cursor.page_index}")

        if cursor.page_index == 0:
            cursor.expected_total_pages = info.total_pages
            if check_uniform:
                self._check_uniform(cursor, info.total_pages)
            else:
                # an unchecked signature still breaks the run of consecutive ones
                self.reset_streak()

        cursor.page_index = index
        cursor.last_fingerprint = fp
        cursor.next_request = info.next_request

        if (info.next_request is None
                or (cursor.expected_total_pages is not None and index >= cursor.expected_total_pages)
                or (index > 1 and not records)
                or index >= self.config.max_pages):
            cursor.state = CursorState.TERMINAL
        else:
            cursor.state = CursorState.FETCHING

        return ListingPage(page_index=index, result=result, records=records, links=links, fingerprint=fp)

    def reset_streak(self):
        with self._lock:
            self._streak.clear()

    def _check_uniform(self, cursor: PaginationCursor, total: Optional[int]):
        signature = cursor.query_signature
        with self._lock:
            if total is None or total != self.config.suspicious_ceiling:
                self._streak.clear()
                return
            if signature not in self._streak:
                self._streak.append(signature)
            if len(self._streak) < self.config.uniform_streak:
                return
            signatures = list(self._streak)
            self._streak.clear()

        cursor.state = CursorState.SUBDIVIDING
        anomaly = PaginationAnomaly(
            AnomalyKind.SUSPICIOUS_UNIFORM_COUNT, signature, 1,
            f"{len(signatures)} signatures in a row report exactly {total} pages",
            signatures=signatures,
        )
        cursor.anomalies.append(str(anomaly))
        raise anomaly

    def pages(self, cursor: PaginationCursor, check_uniform: bool = True,
              source_unit_id: str = "") -> Iterator[ListingPage]:
        """Lazy, finite sequence of verified pages for one cursor.

        A duplicate page is resubmitted up to `duplicate_retries` times; if it
        keeps repeating it is recorded as degraded and the traversal stops
        there. A uniform-count anomaly propagates to the caller.
        """
        if cursor.finished:
            raise ValueError(f"cursor for '{cursor.query_signature}' is {cursor.state.value}; open a new one")
        return self._iter_pages(cursor, check_uniform, source_unit_id)

    def _iter_pages(self, cursor: PaginationCursor, check_uniform: bool,
                    source_unit_id: str) -> Iterator[ListingPage]:
        retries = 0
        while True:
            try:
                page = self.advance(cursor, check_uniform, source_unit_id)
            except PaginationAnomaly as e:
                if e.kind != AnomalyKind.DUPLICATE_PAGE:
                    raise
                retries += 1
                if retries > self.config.duplicate_retries:
                    logger.warning(f"[{cursor.query_signature}] {e}; giving up after {retries - 1} resubmits")
                    cursor.degraded_pages.append(e.page_index)
                    cursor.anomalies.append(str(e))
                    cursor.state = CursorState.TERMINAL
                    return
                logger.info(f"[{cursor.query_signature}] {e}; resubmitting ({retries}/"
                            f"{self.config.duplicate_retries})")
                self._sleep(self.config.duplicate_retry_delay)
                continue

            if page is None:
                return
            retries = 0
            yield page
            if cursor.finished:
                return

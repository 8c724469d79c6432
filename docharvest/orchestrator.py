"""Stage orchestrator: listing -> detail -> document, each a restartable pass over the run state."""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Iterable, List, Optional
from urllib.parse import urljoin

from .acquisition import Fetcher
from .config import AppConfig
from .db import RunStateStore
from .errors import AnomalyKind, ExtractionError, FetchError, PaginationAnomaly, StateError
from .extractor import Extractor
from .models import (STAGE_ORDER, ClientIdentity, ContentKind, PageFetchResult, Stage,
                     StageReport, UnitStatus, URLSpec, WorkUnit, make_unit_id)
from .pagination import ListingPage, PaginationController, PrefixSubdivider
from .plans import SitePlan
from .sink import Sink, filename_from_url

logger = logging.getLogger("docharvest")


def listing_unit_id(signature: str) -> str:
    return make_unit_id(f"listing:{signature}")


class StageOrchestrator:
    def __init__(self, config: AppConfig, site: SitePlan, store: RunStateStore, fetcher: Fetcher,
                 sink: Sink, extractor: Optional[Extractor] = None,
                 subdivider: Optional[PrefixSubdivider] = None,
                 identity: Optional[ClientIdentity] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.site = site
        self.store = store
        self.fetcher = fetcher
        self.sink = sink
        self.extractor = extractor or Extractor()
        self.subdivider = subdivider or PrefixSubdivider(config.subdivision.alphabet,
                                                         config.subdivision.max_length)
        self.identity = identity or config.identity()
        self.controller = PaginationController(self._fetch, self.extractor, site.listing,
                                               config.pagination, sleep=sleep)
        self._cancel = threading.Event()
        self._counter_lock = threading.Lock()
        self._fetches = 0
        self._records = 0

        reset = self.store.reconcile()
        if reset:
            logger.warning(f"Reset {reset} unit(s) left in flight by an earlier run")

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self):
        """Stop dispatching new work; in-flight fetches finish or time out."""
        self._cancel.set()

    def _fetch(self, target: URLSpec) -> PageFetchResult:
        with self._counter_lock:
            self._fetches += 1
        return self.fetcher.fetch(target, self.identity)

    def _count_records(self, n: int):
        with self._counter_lock:
            self._records += n

    # Seeding

    def _listing_unit(self, signature: str, parent_id: Optional[str] = None) -> WorkUnit:
        target = self.site.listing.request_for(signature)
        return WorkUnit(
            id=listing_unit_id(signature),
            stage=Stage.LISTING,
            source_url=target.url,
            method=target.method,
            form=target.form,
            parent_id=parent_id,
            meta={"signature": signature},
        )

    def seed(self, signatures: Optional[Iterable[str]] = None) -> int:
        """Create listing units for the seed signatures. Returns how many were new."""
        sigs = list(signatures or self.config.seeds or self.site.listing.seeds)
        if not sigs:
            sigs = list(self.config.subdivision.alphabet) if self.site.listing.uses_signature else [""]
        created = sum(1 for sig in sigs if self.store.upsert(self._listing_unit(sig)))
        logger.info(f"[{Stage.LISTING.value}] Seeded {created} new of {len(sigs)} signature(s)")
        return created

    # Stage runs

    def run_stage(self, stage: Stage, concurrency: Optional[int] = None) -> StageReport:
        concurrency = max(1, concurrency or self.config.stages.concurrency_for(stage))
        handler = {
            Stage.LISTING: self._process_listing,
            Stage.DETAIL: self._process_detail,
            Stage.DOCUMENT: self._process_document,
        }[stage]
        with self._counter_lock:
            fetches_before, records_before = self._fetches, self._records

        logger.info(f"[{stage.value}] Starting (concurrency {concurrency})")
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=stage.value) as pool:
            running = set()
            while True:
                while len(running) < concurrency and not self.cancelled:
                    unit = self.store.next_pending(stage)
                    if unit is None:
                        break
                    running.add(pool.submit(self._run_unit, handler, unit))
                if not running:
                    break
                finished, running = wait(running, return_when=FIRST_COMPLETED)
                for future in finished:
                    future.result()

        counts = self.store.counts(stage)
        with self._counter_lock:
            report = StageReport(
                stage=stage,
                done=counts[UnitStatus.DONE],
                failed=counts[UnitStatus.FAILED],
                pending=counts[UnitStatus.PENDING] + counts[UnitStatus.IN_FLIGHT],
                fetches=self._fetches - fetches_before,
                records=self._records - records_before,
            )
        logger.info(
            f"[{stage.value}] Done: {report.done} done, {report.failed} failed, "
            f"{report.pending} pending, {report.fetches} fetches"
        )
        return report

    def run_all(self) -> List[StageReport]:
        """Seed, then run each stage to completion before the next one starts."""
        self.seed()
        reports = []
        for stage in STAGE_ORDER:
            if self.cancelled:
                break
            reports.append(self.run_stage(stage))
        return reports

    def _run_unit(self, handler: Callable[[WorkUnit], None], unit: WorkUnit):
        stage = unit.stage
        if self.cancelled:
            self.store.release(stage, unit.id)
            return
        try:
            handler(unit)
        except (FetchError, ExtractionError) as e:
            permanent = isinstance(e, ExtractionError) or e.permanent
            self._fail(unit, str(e), permanent)
        except StateError as e:
            logger.warning(f"[{stage.value}] Lost transition race for {unit.id}: {e}")
        except Exception as e:
            logger.exception(f"[{stage.value}] Unexpected error on {unit.source_url}")
            self._fail(unit, f"{type(e).__name__}: {e}", permanent=False)

    def _fail(self, unit: WorkUnit, reason: str, permanent: bool):
        try:
            terminal = self.store.mark_failed(unit.stage, unit.id, reason, permanent=permanent)
        except StateError as e:
            logger.warning(f"[{unit.stage.value}] Could not record failure for {unit.id}: {e}")
            return
        state = "gave up" if terminal else "will retry"
        logger.error(f"[{unit.stage.value}] Failed ({state}): {unit.source_url}: {reason}")

    # Listing

    def _process_listing(self, unit: WorkUnit):
        signature = unit.meta.get("signature", "")
        cursor = self.store.load_cursor(unit.id)
        if cursor is None:
            cursor = self.controller.open(signature, self.site.listing.request_for(signature))
        else:
            logger.info(f"[{signature}] Resuming after page {cursor.page_index} ({cursor.state.value})")

        # At minimum granularity there is nothing narrower to try, so take the count as given
        check_uniform = self.site.listing.uses_signature and bool(self.subdivider.children(signature))
        try:
            pages = [] if cursor.finished else self.controller.pages(
                cursor, check_uniform=check_uniform, source_unit_id=unit.id)
            for page in pages:
                self._emit_listing_page(unit, page)
                self.store.save_cursor(unit.id, cursor)
                if self.cancelled and not cursor.finished:
                    logger.info(f"[{signature}] Cancelled after page {cursor.page_index}")
                    self.store.release(Stage.LISTING, unit.id)
                    return
        except PaginationAnomaly as e:
            if e.kind != AnomalyKind.SUSPICIOUS_UNIFORM_COUNT:
                raise
            self._subdivide(unit, e)
            return

        if cursor.degraded_pages:
            logger.warning(f"[{signature}] Degraded pages: {cursor.degraded_pages}")
        self.store.mark_done(Stage.LISTING, unit.id, {
            "signature": signature,
            "pages": cursor.page_index,
            "expected_total_pages": cursor.expected_total_pages,
            "degraded_pages": cursor.degraded_pages,
            "anomalies": cursor.anomalies,
        })
        self.store.clear_cursor(unit.id)
        logger.info(f"[{signature}] Listing complete: {cursor.page_index} page(s)")

    def _emit_listing_page(self, unit: WorkUnit, page: ListingPage):
        plan = self.site.listing
        base_url = page.result.final_url
        signature = unit.meta.get("signature", "")

        # The sink skips keys it already holds; a replayed page writes only what is missing
        keyed = [replace(r, key=self.extractor.record_identity(r, plan)) for r in page.records]
        written = self.sink.append_records(keyed, Stage.LISTING)
        self._count_records(written)

        new_units = 0
        for record in page.records:
            href = record.get(plan.link_field) if plan.link_field else None
            if not href:
                continue
            target = URLSpec(url=urljoin(base_url, href.strip()), kind=plan.link_kind)
            stage = Stage.DOCUMENT if plan.link_kind == ContentKind.BINARY else Stage.DETAIL
            child = WorkUnit.for_target(stage, target, parent_id=unit.id, meta={
                "signature": signature,
                "page": page.page_index,
                "fields": record.as_dict(),
            })
            if self.store.upsert(child):
                new_units += 1

        # Page-level links (not tied to a row)
        for rule_link in self._page_links(page):
            stage = Stage.DOCUMENT if rule_link.kind == ContentKind.BINARY else Stage.DETAIL
            self.store.upsert(WorkUnit.for_target(stage, rule_link, parent_id=unit.id,
                                                  meta={"signature": signature, "page": page.page_index}))

        logger.info(f"[{signature}] Page {page.page_index}: {len(page.records)} rows, "
                    f"{written} new record(s), {new_units} new unit(s)")

    def _page_links(self, page: ListingPage) -> List[URLSpec]:
        plan = self.site.listing
        if not plan.link_field:
            return page.links
        row_links = {urljoin(page.result.final_url, (r.get(plan.link_field) or "").strip()) for r in page.records}
        return [link for link in page.links if link.url not in row_links]

    def _subdivide(self, unit: WorkUnit, anomaly: PaginationAnomaly):
        created = 0
        for signature in anomaly.signatures:
            parent = listing_unit_id(signature)
            for child in self.subdivider.children(signature):
                if self.store.upsert(self._listing_unit(child, parent_id=parent)):
                    created += 1
        signature = unit.meta.get("signature", "")
        logger.warning(f"[{signature}] {anomaly}; subdivided {anomaly.signatures} into {created} new signature(s)")
        self.store.mark_done(Stage.LISTING, unit.id, {
            "signature": signature,
            "subdivided": True,
            "children": self.subdivider.children(signature),
            "anomalies": [str(anomaly)],
        })
        self.store.clear_cursor(unit.id)

    # Detail

    def _process_detail(self, unit: WorkUnit):
        result = self._fetch(unit.target())
        records, links = self.extractor.extract(result.body, self.site.detail, result.final_url, unit.id)

        new_docs = 0
        for link in links:
            doc = WorkUnit.for_target(Stage.DOCUMENT, URLSpec(url=link.url, kind=ContentKind.BINARY),
                                      parent_id=unit.id)
            if self.store.upsert(doc):
                new_docs += 1

        keyed = [replace(r, key=f"{unit.id}:{i}") for i, r in enumerate(records)]
        written = self.sink.append_records(keyed, Stage.DETAIL)
        self._count_records(written)
        self.store.mark_done(Stage.DETAIL, unit.id, {
            "final_url": result.final_url,
            "status_code": result.status_code,
            "fetched_at": result.fetched_at.isoformat(),
            "records": [r.as_dict() for r in records],
            "documents": [link.url for link in links],
        })
        logger.info(f"[{Stage.DETAIL.value}] {unit.source_url}: {len(records)} record(s), "
                    f"{len(links)} document link(s), {new_docs} new")

    # Document

    def _process_document(self, unit: WorkUnit):
        result = self._fetch(unit.target())
        filename = filename_from_url(result.final_url, result.content_type)
        written = self.sink.write_binary(unit.id, result.body, filename)

        payload = {
            "path": written.path,
            "sha256": written.sha256,
            "size": written.size,
            "final_url": result.final_url,
            "content_type": result.content_type,
            "fetched_at": result.fetched_at.isoformat(),
        }
        existing = self.store.sha256_exists(written.sha256, exclude_id=unit.id)
        if existing and existing != written.path:
            logger.info(f"[{Stage.DOCUMENT.value}] Content dedup: {filename} matches {existing}")
            self.sink.discard(written.path)
            payload["path"] = existing
            payload["duplicate_of"] = existing

        self.store.mark_done(Stage.DOCUMENT, unit.id, payload)
        logger.info(f"[{Stage.DOCUMENT.value}] Downloaded: {filename} ({written.size:,} bytes)")

"""Plan-driven extraction of records, follow-on links and paging controls from HTML.

The extractor only knows how to walk a parsed tree by CSS selector and read
text or attributes. Anything site-specific lives in the SelectionPlan.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .errors import ExtractionError, ExtractionErrorKind
from .models import ContentKind, Record, URLSpec, canonical_url
from .plans import FieldSpec, PaginationPlan, SelectionPlan

_WS_RE = re.compile(r"\s+")
_SKIP_INPUT_TYPES = {"submit", "button", "image", "reset", "file"}


class SelectorEngine(Protocol):
    def parse(self, document: bytes) -> Any: ...

    def select(self, node: Any, selector: str) -> List[Any]: ...

    def text(self, node: Any) -> str: ...

    def attr(self, node: Any, name: str) -> Optional[str]: ...


class SoupEngine:
    """BeautifulSoup + soupsieve CSS selectors."""

    def __init__(self, parser: str = "html.parser"):
        self.parser = parser

    def parse(self, document: bytes) -> Any:
        return BeautifulSoup(document, self.parser)

    def select(self, node: Any, selector: str) -> List[Any]:
        if not selector:
            return [node]
        return list(node.select(selector))

    def text(self, node: Any) -> str:
        return _WS_RE.sub(" ", node.get_text(" ")).strip()

    def attr(self, node: Any, name: str) -> Optional[str]:
        value = node.get(name)
        if value is None:
            return None
        if isinstance(value, list):
            return " ".join(value)
        return str(value)


@dataclass
class PageInfo:
    next_request: Optional[URLSpec]
    total_pages: Optional[int]


class Extractor:
    def __init__(self, engine: Optional[SelectorEngine] = None):
        self.engine = engine or SoupEngine()

    def extract(self, document: bytes, plan: SelectionPlan, base_url: str = "",
                source_unit_id: str = "") -> Tuple[List[Record], List[URLSpec]]:
        """Return (records, links) for one document.

        Records come back in document order with fields in declared order;
        links in document order, de-duplicated by canonical URL.
        """
        root = self.engine.parse(document)
        records: List[Record] = []

        if plan.container:
            container = self._container(root, plan)
            if container is not None:
                for index, row in enumerate(self.engine.select(container, plan.row)):
                    values = tuple((spec.name, self._field(row, spec, index)) for spec in plan.fields)
                    records.append(Record(fields=values, source_unit_id=source_unit_id))

        links: List[URLSpec] = []
        seen = set()

        def add(href: str, kind: ContentKind):
            href = href.strip()
            if not href or href.startswith(("javascript:", "mailto:", "#")):
                return
            url = urljoin(base_url, href)
            key = canonical_url(url)
            if key in seen:
                return
            seen.add(key)
            links.append(URLSpec(url=url, kind=kind))

        if plan.link_field:
            for record in records:
                add(record.get(plan.link_field) or "", plan.link_kind)

        for rule in plan.links:
            pattern = re.compile(rule.href_pattern, re.IGNORECASE) if rule.href_pattern else None
            for node in self.engine.select(root, rule.selector):
                href = self.engine.attr(node, rule.attr)
                if not href:
                    continue
                if rule.text_contains and rule.text_contains.lower() not in self.engine.text(node).lower():
                    continue
                if pattern and not pattern.search(href):
                    continue
                add(href, rule.kind)

        return records, links

    def _container(self, root: Any, plan: SelectionPlan) -> Optional[Any]:
        candidates = self.engine.select(root, plan.container)
        if plan.min_rows:
            candidates = [c for c in candidates if len(self.engine.select(c, plan.row)) >= plan.min_rows]
        if plan.container_index is not None:
            try:
                candidates = [candidates[plan.container_index]]
            except IndexError:
                candidates = []

        if not candidates:
            if plan.allow_empty:
                return None
            raise ExtractionError(ExtractionErrorKind.AMBIGUOUS_CONTAINER,
                                  f"'{plan.container}' matched no container with >= {plan.min_rows} rows")
        if len(candidates) > 1:
            raise ExtractionError(ExtractionErrorKind.AMBIGUOUS_CONTAINER,
                                  f"'{plan.container}' matched {len(candidates)} containers; "
                                  "set min_rows or container_index")
        return candidates[0]

    def _field(self, row: Any, spec: FieldSpec, index: int) -> str:
        nodes = self.engine.select(row, spec.selector)
        value = None
        if nodes:
            node = nodes[0]
            value = self.engine.text(node) if spec.attr is None else self.engine.attr(node, spec.attr)
        if value is None:
            if spec.required:
                raise ExtractionError(ExtractionErrorKind.FIELD_MISSING,
                                      f"row {index}: field '{spec.name}' ({spec.selector or 'row'}) not found")
            return spec.default
        return value

    def paging(self, document: bytes, plan: SelectionPlan, base_url: str = "") -> PageInfo:
        """Read the next-page control and the reported page total."""
        root = self.engine.parse(document)
        pp = plan.pagination
        return PageInfo(
            next_request=self._next_request(root, plan, base_url) if pp.next else None,
            total_pages=self._total_pages(root, plan),
        )

    def _total_pages(self, root: Any, plan: SelectionPlan) -> Optional[int]:
        pp = plan.pagination
        if not pp.total_pages:
            return None
        nodes = self.engine.select(root, pp.total_pages)
        if not nodes:
            return None
        text = self.engine.text(nodes[0]).replace(",", "")
        if pp.total_pages_pattern:
            m = re.search(pp.total_pages_pattern, text)
            digits = m.group(1) if m else None
        else:
            m = re.search(r"\d+", text)
            digits = m.group(0) if m else None
        return int(digits) if digits and digits.isdigit() else None

    def _next_request(self, root: Any, plan: SelectionPlan, base_url: str) -> Optional[URLSpec]:
        pp = plan.pagination
        nodes = self.engine.select(root, pp.next)
        if not nodes:
            return None
        node = nodes[0]
        classes = (self.engine.attr(node, "class") or "").split()
        if pp.disabled_class in classes or self.engine.attr(node, "disabled") is not None:
            return None
        if (self.engine.attr(node, "aria-disabled") or "").lower() == "true":
            return None

        raw = self.engine.attr(node, pp.next_attr) or ""
        if pp.postback_form:
            return self._postback(root, pp, raw, base_url)

        raw = raw.strip()
        if not raw or raw == "#" or raw.startswith("javascript:"):
            return None
        return URLSpec(url=urljoin(base_url, raw), control=pp.next)

    def _postback(self, root: Any, pp: PaginationPlan, raw: str, base_url: str) -> URLSpec:
        forms = self.engine.select(root, pp.postback_form)
        if not forms:
            raise ExtractionError(ExtractionErrorKind.FIELD_MISSING,
                                  f"postback form '{pp.postback_form}' not found")
        form = forms[0]
        action = urljoin(base_url, self.engine.attr(form, "action") or "")
        data = {}
        for node in self.engine.select(form, "input[name]"):
            kind = (self.engine.attr(node, "type") or "text").lower()
            if kind in _SKIP_INPUT_TYPES:
                continue
            if kind in ("checkbox", "radio") and self.engine.attr(node, "checked") is None:
                continue
            data[self.engine.attr(node, "name")] = self.engine.attr(node, "value") or ""
        for node in self.engine.select(form, "select[name]"):
            chosen = self.engine.select(node, "option[selected]") or self.engine.select(node, "option")
            if chosen:
                value = self.engine.attr(chosen[0], "value")
                data[self.engine.attr(node, "name")] = value if value is not None else self.engine.text(chosen[0])

        m = re.search(pp.event_pattern, raw)
        if m:
            data[pp.event_target_field] = m.group(1)
            if m.lastindex and m.lastindex >= 2:
                data[pp.event_argument_field] = m.group(2)
        return URLSpec(url=action or base_url, method="POST", form=data, control=pp.next)

    def record_identity(self, record: Record, plan: SelectionPlan) -> str:
        names: Sequence[str] = plan.key_fields or record.names()
        return "\x1f".join(record.get(name) or "" for name in names)


def fingerprint(identities: Sequence[str]) -> str:
    """Hash of a page's leading record identities."""
    h = hashlib.sha256()
    for identity in identities:
        h.update(identity.encode("utf-8"))
        h.update(b"\x1e")
    return h.hexdigest()

"""Declarative, per-site selection plans.

A site plan is a YAML document versioned separately from the code:

    name: county-registry
    version: 3
    listing:
      request: {url: "https://example.org/search?q={signature}"}
      seeds: [a, b, c]
      container: "table.results tbody"
      row: "tr"
      min_rows: 1
      fields:
        - {name: name, selector: "td.name"}
        - {name: detail, selector: "td.name a", attr: href}
      key_fields: [detail]
      link_field: detail
      pagination:
        next: "a.next"
        total_pages: ".pager .count"
        total_pages_pattern: "of (\\d+)"
    detail:
      links:
        - {selector: "a[href]", text_contains: Download, kind: binary}
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from .errors import ConfigError
from .models import ContentKind, URLSpec


@dataclass
class FieldSpec:
    name: str
    selector: str = ""
    attr: Optional[str] = None
    required: bool = True
    default: str = ""


@dataclass
class LinkRule:
    selector: str = "a[href]"
    attr: str = "href"
    text_contains: Optional[str] = None
    href_pattern: Optional[str] = None
    kind: ContentKind = ContentKind.HTML


@dataclass
class PaginationPlan:
    next: Optional[str] = None
    next_attr: str = "href"
    disabled_class: str = "disabled"
    total_pages: Optional[str] = None
    total_pages_pattern: Optional[str] = None
    # Postback listings: the form to resubmit and how to read the event target
    # out of the next control.
    postback_form: Optional[str] = None
    event_target_field: str = "__EVENTTARGET"
    event_argument_field: str = "__EVENTARGUMENT"
    event_pattern: str = r"__doPostBack\(\s*'([^']*)'\s*,\s*'([^']*)'\s*\)"


@dataclass
class SelectionPlan:
    container: Optional[str] = None
    row: str = "tr"
    fields: List[FieldSpec] = field(default_factory=list)
    min_rows: int = 0
    container_index: Optional[int] = None
    allow_empty: bool = False
    key_fields: List[str] = field(default_factory=list)
    link_field: Optional[str] = None
    link_kind: ContentKind = ContentKind.HTML
    links: List[LinkRule] = field(default_factory=list)
    pagination: PaginationPlan = field(default_factory=PaginationPlan)

    @classmethod
    def from_dict(cls, raw: dict) -> "SelectionPlan":
        raw = dict(raw or {})
        fields = [FieldSpec(**f) for f in raw.pop("fields", [])]
        links = []
        for rule in raw.pop("links", []):
            rule = dict(rule)
            rule["kind"] = ContentKind(rule.get("kind", ContentKind.HTML.value))
            links.append(LinkRule(**rule))
        pagination = PaginationPlan(**(raw.pop("pagination", None) or {}))
        if "link_kind" in raw:
            raw["link_kind"] = ContentKind(raw["link_kind"])
        known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
        plan = cls(fields=fields, links=links, pagination=pagination, **known)
        names = [f.name for f in plan.fields]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate field names in plan: {names}")
        for name in list(plan.key_fields) + ([plan.link_field] if plan.link_field else []):
            if name not in names:
                raise ConfigError(f"Plan references undeclared field '{name}'")
        return plan


@dataclass
class ListingPlan(SelectionPlan):
    request: URLSpec = field(default_factory=lambda: URLSpec(url=""))
    seeds: List[str] = field(default_factory=list)

    @property
    def uses_signature(self) -> bool:
        values = [self.request.url] + list((self.request.form or {}).values())
        return any("{signature}" in v for v in values)

    def request_for(self, signature: str) -> URLSpec:
        """The first-page request for one query signature."""
        form = None
        if self.request.form:
            form = {k: v.replace("{signature}", signature) for k, v in self.request.form.items()}
        return URLSpec(
            url=self.request.url.replace("{signature}", signature),
            method=self.request.method,
            form=form,
            kind=ContentKind.HTML,
        )

    @classmethod
    def from_dict(cls, raw: dict) -> "ListingPlan":
        raw = dict(raw or {})
        req = raw.pop("request", None)
        if not req or not req.get("url"):
            raise ConfigError("listing.request.url is required")
        seeds = [str(s) for s in raw.pop("seeds", [])]
        base = SelectionPlan.from_dict(raw)
        values = {name: getattr(base, name) for name in SelectionPlan.__dataclass_fields__}
        return cls(request=URLSpec.from_dict(req), seeds=seeds, **values)


@dataclass
class SitePlan:
    name: str
    version: int
    listing: ListingPlan
    detail: SelectionPlan
    meta: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "SitePlan":
        if not isinstance(raw, dict) or "listing" not in raw:
            raise ConfigError("Site plan needs a 'listing' section")
        return cls(
            name=str(raw.get("name", "site")),
            version=int(raw.get("version", 1)),
            listing=ListingPlan.from_dict(raw["listing"]),
            detail=SelectionPlan.from_dict(raw.get("detail", {})),
            meta={str(k): str(v) for k, v in (raw.get("meta") or {}).items()},
        )


def load_site_plan(path: str) -> SitePlan:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot load site plan {path}: {e}")
    return SitePlan.from_dict(raw)

from collections import Counter
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from docharvest.config import AppConfig, FetchConfig, PaginationConfig, StageConfig, SubdivisionConfig
from docharvest.plans import SitePlan


def listing_html(rows, next_href: Optional[str] = None, total: Optional[int] = None,
                 page: int = 1) -> str:
    body = "".join(
        f'<tr><td class="case">{case}</td>'
        f'<td class="title"><a href="/case/{case}">Matter {case}</a></td></tr>'
        for case in rows
    )
    pager = ""
    if total is not None:
        pager += f'<span class="summary">Page {page} of {total}</span>'
    if next_href is not None:
        pager += f'<a class="next" href="{next_href}">Next</a>'
    else:
        pager += '<a class="next disabled" href="#">Next</a>'
    return f"""
    <html><body>
      <table class="nav"><tr><td>Home</td></tr></table>
      <table class="results"><tbody>{body}</tbody></table>
      <ul class="pager">{pager}</ul>
    </body></html>
    """


def detail_html(case: str, files: List[str]) -> str:
    links = "".join(f'<li><a href="/files/{f}">Download {f}</a></li>' for f in files)
    return f"""
    <html><body>
      <h1>Matter {case}</h1>
      <table class="docket"><tr class="entry"><td class="no">1</td><td class="desc">Complaint</td></tr></table>
      <ul>{links}<li><a href="/help">Help</a></li></ul>
    </body></html>
    """


SITE_PLAN = {
    "name": "test-registry",
    "version": 1,
    "listing": {
        "request": {"url": "https://site.test/search?name={signature}"},
        "container": "table.results tbody",
        "row": "tr",
        "allow_empty": True,
        "fields": [
            {"name": "case", "selector": "td.case"},
            {"name": "title", "selector": "td.title"},
            {"name": "detail", "selector": "td.title a", "attr": "href"},
        ],
        "key_fields": ["case"],
        "link_field": "detail",
        "pagination": {
            "next": "ul.pager a.next",
            "total_pages": "ul.pager .summary",
            "total_pages_pattern": r"of (\d+)",
        },
    },
    "detail": {
        "container": "table.docket",
        "row": "tr.entry",
        "allow_empty": True,
        "fields": [
            {"name": "entry", "selector": "td.no"},
            {"name": "description", "selector": "td.desc"},
        ],
        "links": [{"selector": "a[href]", "text_contains": "Download", "kind": "binary"}],
    },
}


@pytest.fixture
def site_plan() -> SitePlan:
    return SitePlan.from_dict(SITE_PLAN)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        data_dir=str(tmp_path / "data"),
        db_path=str(tmp_path / "harvest.db"),
        log_dir=str(tmp_path / "logs"),
        fetch=FetchConfig(min_interval=0, jitter=0, backoff_base=0.01, max_attempts=3),
        pagination=PaginationConfig(suspicious_ceiling=10, duplicate_retries=1, duplicate_retry_delay=0),
        subdivision=SubdivisionConfig(alphabet="xy", max_length=2),
        stages=StageConfig(max_attempts=2, listing_concurrency=1, detail_concurrency=2,
                           document_concurrency=2),
    )


class FakeSite:
    """Routes requests to canned responses and counts hits per URL."""

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.hits: Counter = Counter()

    def html(self, url: str, body: str):
        self.routes[url] = lambda request: httpx.Response(
            200, text=body, headers={"content-type": "text/html; charset=utf-8"})

    def binary(self, url: str, data: bytes, content_type: str = "application/pdf"):
        self.routes[url] = lambda request: httpx.Response(200, content=data, headers={"content-type": content_type})

    def status(self, url: str, code: int):
        self.routes[url] = lambda request: httpx.Response(code, text="nope")

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits[url] += 1
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="not found")
        return route(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def sleeps() -> List[float]:
    return []

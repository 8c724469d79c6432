import pytest

from conftest import detail_html, listing_html
from docharvest.errors import ExtractionError, ExtractionErrorKind
from docharvest.extractor import Extractor, fingerprint
from docharvest.models import ContentKind
from docharvest.plans import SelectionPlan

BASE = "https://site.test/search?name=a"

TWO_TABLES = b"""
<html><body>
  <table><tr><td>menu</td></tr></table>
  <table>
    <tr><td class="n">1</td><td class="t">One</td></tr>
    <tr><td class="n">2</td><td class="t">Two</td></tr>
  </table>
</body></html>
"""


def _plan(**overrides) -> SelectionPlan:
    raw = {
        "container": "table",
        "row": "tr",
        "fields": [{"name": "n", "selector": "td.n"}, {"name": "t", "selector": "td.t"}],
    }
    raw.update(overrides)
    return SelectionPlan.from_dict(raw)


def test_records_in_document_order_with_declared_fields(site_plan):
    body = listing_html(["A1", "A2", "A3"]).encode()
    records, links = Extractor().extract(body, site_plan.listing, BASE, "unit-1")

    assert [r.get("case") for r in records] == ["A1", "A2", "A3"]
    assert records[0].names() == ["case", "title", "detail"]
    assert records[0].get("title") == "Matter A1"
    assert records[0].source_unit_id == "unit-1"
    assert [l.url for l in links] == [f"https://site.test/case/A{i}" for i in (1, 2, 3)]


def test_multiple_containers_are_ambiguous():
    with pytest.raises(ExtractionError) as exc:
        Extractor().extract(TWO_TABLES, _plan())
    assert exc.value.kind == ExtractionErrorKind.AMBIGUOUS_CONTAINER


def test_min_rows_disambiguates():
    records, _ = Extractor().extract(TWO_TABLES, _plan(min_rows=2))
    assert [r.get("t") for r in records] == ["One", "Two"]


def test_container_index_disambiguates():
    records, _ = Extractor().extract(TWO_TABLES, _plan(container_index=1))
    assert len(records) == 2


def test_missing_container():
    body = b"<html><body><p>No results</p></body></html>"
    with pytest.raises(ExtractionError) as exc:
        Extractor().extract(body, _plan())
    assert exc.value.kind == ExtractionErrorKind.AMBIGUOUS_CONTAINER

    records, links = Extractor().extract(body, _plan(allow_empty=True))
    assert records == [] and links == []


def test_required_field_missing():
    body = b"<table><tr><td class='n'>1</td></tr></table>"
    with pytest.raises(ExtractionError) as exc:
        Extractor().extract(body, _plan())
    assert exc.value.kind == ExtractionErrorKind.FIELD_MISSING


def test_optional_field_gets_default():
    body = b"<table><tr><td class='n'>1</td></tr></table>"
    plan = _plan(fields=[
        {"name": "n", "selector": "td.n"},
        {"name": "t", "selector": "td.t", "required": False, "default": "-"},
    ])
    records, _ = Extractor().extract(body, plan)
    assert records[0].as_dict() == {"n": "1", "t": "-"}


def test_empty_text_is_not_missing():
    body = b"<table><tr><td class='n'>1</td><td class='t'>  </td></tr></table>"
    records, _ = Extractor().extract(body, _plan())
    assert records[0].get("t") == ""


def test_link_rules_filter_resolve_and_dedup(site_plan):
    files = ["a.pdf", "b.pdf", "a.pdf"]
    body = detail_html("A1", files).encode()
    records, links = Extractor().extract(body, site_plan.detail, "https://site.test/case/A1")

    assert [r.as_dict() for r in records] == [{"entry": "1", "description": "Complaint"}]
    assert [l.url for l in links] == ["https://site.test/files/a.pdf", "https://site.test/files/b.pdf"]
    assert all(l.kind == ContentKind.BINARY for l in links)


def test_href_pattern_and_skipped_schemes():
    body = b"""
    <a href="/x/report.PDF">r</a>
    <a href="javascript:void(0)">js</a>
    <a href="mailto:clerk@site.test">mail</a>
    <a href="/x/page.html">p</a>
    """
    plan = SelectionPlan.from_dict({"links": [{"href_pattern": r"\.pdf$"}]})
    _, links = Extractor().extract(body, plan, "https://site.test/")
    assert [l.url for l in links] == ["https://site.test/x/report.PDF"]


def test_paging_reads_next_link_and_total(site_plan):
    body = listing_html(["A1"], next_href="/search?name=a&page=2", total=4).encode()
    info = Extractor().paging(body, site_plan.listing, BASE)

    assert info.next_request.url == "https://site.test/search?name=a&page=2"
    assert info.next_request.control == "ul.pager a.next"
    assert info.total_pages == 4


def test_disabled_next_means_last_page(site_plan):
    body = listing_html(["A1"], total=1).encode()
    info = Extractor().paging(body, site_plan.listing, BASE)
    assert info.next_request is None
    assert info.total_pages == 1


def test_postback_next_rebuilds_form():
    body = b"""
    <form id="main" action="/Search.aspx" method="post">
      <input type="hidden" name="__VIEWSTATE" value="vs123">
      <input type="hidden" name="__EVENTTARGET" value="">
      <input type="text" name="q" value="smith">
      <input type="checkbox" name="closed" value="1">
      <input type="submit" name="go" value="Search">
      <select name="county"><option value="01">One</option><option value="02" selected>Two</option></select>
      <table class="grid"><tr><td>x</td></tr></table>
      <a id="next" href="javascript:__doPostBack('grid$ctl01$next','Page$2')">Next</a>
    </form>
    """
    plan = SelectionPlan.from_dict({
        "container": "table.grid",
        "fields": [{"name": "x", "selector": "td"}],
        "pagination": {"next": "a#next", "postback_form": "form#main"},
    })
    info = Extractor().paging(body, plan, "https://site.test/Search.aspx")
    req = info.next_request

    assert req.method == "POST"
    assert req.url == "https://site.test/Search.aspx"
    assert req.form == {
        "__VIEWSTATE": "vs123",
        "__EVENTTARGET": "grid$ctl01$next",
        "q": "smith",
        "county": "02",
        "__EVENTARGUMENT": "Page$2",
    }


def test_record_identity_uses_key_fields(site_plan):
    body = listing_html(["A1"]).encode()
    records, _ = Extractor().extract(body, site_plan.listing, BASE)
    assert Extractor().record_identity(records[0], site_plan.listing) == "A1"


def test_fingerprint_depends_on_order():
    assert fingerprint(["a", "b"]) == fingerprint(["a", "b"])
    assert fingerprint(["a", "b"]) != fingerprint(["b", "a"])
    assert fingerprint(["ab"]) != fingerprint(["a", "b"])

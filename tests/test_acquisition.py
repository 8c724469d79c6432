import pytest

from docharvest.acquisition import BrowserAcquisition
from docharvest.errors import FetchError, FetchErrorKind
from docharvest.models import ClientIdentity, URLSpec

IDENTITY = ClientIdentity(user_agent="ignored")


class FakeBrowser:
    def __init__(self, fail_on=None):
        self.calls = []
        self.html = b"<html></html>"
        self.fail_on = fail_on

    def navigate(self, url):
        if url == self.fail_on:
            raise RuntimeError("page crashed")
        self.calls.append(("navigate", url))
        self.html = f"<html>{url}</html>".encode()

    def current_html(self):
        return self.html

    def click_control(self, selector):
        self.calls.append(("click", selector))
        self.html = b"<html>page 2</html>"

    def fill_field(self, selector, text):
        self.calls.append(("fill", selector, text))


def test_first_request_navigates_then_controls_are_clicked():
    browser = FakeBrowser()
    acq = BrowserAcquisition(browser, fields={"input#q": "smith"})

    first = acq.fetch(URLSpec("https://site.test/search", control="a.next"), IDENTITY)
    second = acq.fetch(URLSpec("https://site.test/search", method="POST", control="a.next"), IDENTITY)

    assert browser.calls == [
        ("navigate", "https://site.test/search"),
        ("fill", "input#q", "smith"),
        ("click", "a.next"),
    ]
    assert first.body == b"<html>https://site.test/search</html>"
    assert second.body == b"<html>page 2</html>"
    assert second.status_code == 200
    assert second.content_type.startswith("text/html")


def test_plain_targets_navigate():
    browser = FakeBrowser()
    acq = BrowserAcquisition(browser)
    acq.fetch(URLSpec("https://site.test/a"), IDENTITY)
    acq.fetch(URLSpec("https://site.test/b"), IDENTITY)
    assert [c[0] for c in browser.calls] == ["navigate", "navigate"]


def test_browser_errors_become_transient_fetch_errors():
    browser = FakeBrowser(fail_on="https://site.test/boom")
    acq = BrowserAcquisition(browser)

    with pytest.raises(FetchError) as exc:
        acq.fetch(URLSpec("https://site.test/boom"), IDENTITY, attempt=2)

    assert exc.value.kind == FetchErrorKind.TRANSIENT
    assert exc.value.attempts == 2
    assert isinstance(exc.value.__cause__, RuntimeError)

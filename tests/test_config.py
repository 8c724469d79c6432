import json
import logging
import os

import pytest

from docharvest.config import load_config
from docharvest.errors import ConfigError
from docharvest.logger import setup_logger
from docharvest.models import ContentKind
from docharvest.plans import SitePlan, load_site_plan

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def test_load_config_sections_and_unknown_keys(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "data_dir: out\n"
        "seeds: [a, 7]\n"
        "fetch:\n"
        "  min_interval: 0.5\n"
        "  not_a_setting: true\n"
        "pagination:\n"
        "  suspicious_ceiling: 20\n"
        "stages:\n"
        "  detail_concurrency: 8\n"
    )
    config = load_config(str(path))

    assert config.data_dir == "out"
    assert config.seeds == ["a", "7"]
    assert config.fetch.min_interval == 0.5
    assert config.fetch.max_attempts == 3
    assert config.pagination.suspicious_ceiling == 20
    assert config.stages.detail_concurrency == 8
    assert config.subdivision.max_length == 3


def test_example_config_loads():
    config = load_config(os.path.join(ROOT, "config.example.yaml"))
    assert config.fetch.host_intervals == {"files.example.org": 0.5}


def test_missing_or_broken_config_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.yaml"))

    bad = tmp_path / "bad.yaml"
    bad.write_text("fetch: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(str(bad))


def test_identity_expands_env_and_merges_cookie_file(tmp_path, monkeypatch):
    monkeypatch.setenv("HARVEST_CONTACT", "ops@example.org")
    monkeypatch.setenv("HARVEST_SESSION_COOKIE", "s3cret")
    cookie_file = tmp_path / "cookies.json"
    cookie_file.write_text(json.dumps({"consent": "yes"}))
    path = tmp_path / "config.yaml"
    path.write_text(
        "fetch:\n"
        "  user_agent: 'harvester (+mailto:${HARVEST_CONTACT})'\n"
        "  cookies: {session: '${HARVEST_SESSION_COOKIE}'}\n"
        f"  cookie_file: '{cookie_file}'\n"
        "  verify_tls: false\n"
    )

    identity = load_config(str(path)).identity()

    assert identity.user_agent == "harvester (+mailto:ops@example.org)"
    assert identity.cookies == {"session": "s3cret", "consent": "yes"}
    assert identity.verify_tls is False


def test_unreadable_cookie_file_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"fetch: {{cookie_file: '{tmp_path / 'missing.json'}'}}\n")
    with pytest.raises(ConfigError):
        load_config(str(path)).identity()


def test_example_site_plan_loads():
    site = load_site_plan(os.path.join(ROOT, "sites", "example.yaml"))

    assert site.name == "example-registry"
    assert site.listing.uses_signature
    assert site.listing.link_field == "detail_url"
    assert [f.name for f in site.listing.fields] == ["case_number", "title", "filed", "detail_url"]
    assert site.listing.fields[2].required is False
    assert site.detail.links[0].kind == ContentKind.BINARY


def test_request_for_substitutes_signature():
    site = SitePlan.from_dict({
        "listing": {
            "request": {"url": "https://site.test/find", "method": "POST",
                        "form": {"q": "{signature}*", "type": "all"}},
        },
    })
    req = site.listing.request_for("ab")
    assert req.method == "POST"
    assert req.form == {"q": "ab*", "type": "all"}
    assert req.url == "https://site.test/find"


@pytest.mark.parametrize("listing", [
    {"container": "table"},
    {"request": {"url": "https://site.test/"},
     "fields": [{"name": "a", "selector": "td"}, {"name": "a", "selector": "th"}]},
    {"request": {"url": "https://site.test/"},
     "fields": [{"name": "a", "selector": "td"}], "key_fields": ["b"]},
])
def test_invalid_site_plans_are_rejected(listing):
    with pytest.raises(ConfigError):
        SitePlan.from_dict({"listing": listing})


def test_setup_logger_writes_rotating_file(tmp_path):
    logger = setup_logger(str(tmp_path / "logs"), logging.DEBUG)
    try:
        logger.debug("hello from the harvester")
        for handler in logger.handlers:
            handler.flush()
        with open(tmp_path / "logs" / "harvest.log") as f:
            assert "hello from the harvester" in f.read()
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

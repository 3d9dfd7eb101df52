"""Shared fixtures: a fixed clock, source configs and fake Playwright objects."""

from datetime import datetime, timezone

import pytest

import sources
from browser import DebugSink
from models import SourceConfig

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
FIXED_NOW_RFC = "Mon, 15 Jan 2024 12:00:00 GMT"


class FakeElement:
    """Minimal stand-in for a Playwright ElementHandle."""

    def __init__(self, text="", attrs=None, children=None):
        self.text = text
        self.attrs = attrs or {}
        self.children = children or {}

    def query_selector(self, sel):
        if sel.startswith("!!"):
            raise ValueError(f"unsupported selector {sel}")
        return self.children.get(sel)

    def inner_text(self):
        return self.text

    def get_attribute(self, name):
        return self.attrs.get(name)


class FakeLocator:
    def __init__(self, page, elements):
        self.page = page
        self.elements = elements

    def count(self):
        return len(self.elements)

    def element_handles(self):
        return list(self.elements)

    @property
    def first(self):
        return self

    def click(self, timeout=None):
        self.page.clicks += 1


class FakePage:
    """Minimal stand-in for a Playwright Page."""

    def __init__(self, elements=None, ld_blocks=None, html="<html></html>", bad=()):
        self.elements = elements or {}
        self.ld_blocks = ld_blocks or []
        self.html = html
        self.bad = set(bad)
        self.visited = []
        self.reloads = 0
        self.clicks = 0
        self.locator_calls = []

    def goto(self, url, **kwargs):
        self.visited.append(url)

    def reload(self, **kwargs):
        self.reloads += 1

    def set_extra_http_headers(self, headers):
        self.headers = headers

    def wait_for_timeout(self, ms):
        pass

    def locator(self, sel):
        self.locator_calls.append(sel)
        if sel in self.bad:
            raise ValueError(f"unsupported selector {sel}")
        return FakeLocator(self, self.elements.get(sel, []))

    def eval_on_selector_all(self, sel, js):
        return list(self.ld_blocks)

    def evaluate(self, js):
        return None

    def content(self):
        return self.html

    def screenshot(self, **kwargs):
        return b"\x89PNG"


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def make_cfg():
    def _make(**raw):
        raw.setdefault("key", "test-source")
        raw.setdefault("waitMs", 0)
        raw.setdefault("selectorTimeoutMs", 0)
        raw.setdefault("scroll", 0)
        return SourceConfig.from_dict(raw)
    return _make


@pytest.fixture
def sink(tmp_path):
    return DebugSink(tmp_path / "debug", screenshots=False)


class FakeHTTP:
    """Replacement for sources.http_get backed by a url -> (status, body) table."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def __call__(self, url, headers=None, timeout=30):
        self.calls.append((url, headers or {}))
        return self.routes.get(url, (404, ""))


@pytest.fixture
def fake_http(monkeypatch):
    http = FakeHTTP()
    monkeypatch.setattr(sources, "http_get", http)
    return http

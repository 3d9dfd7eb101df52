import logging
import pathlib
import re
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from models import NoSelectorMatch, SourceConfig, make_record, filter_text
from sources import USER_AGENT, events_from_jsonld, fetch_detail_image
from utils import (
    attempt,
    background_image_url,
    clean,
    first_from_srcset,
    split_selectors,
    to_abs,
)

LOG = logging.getLogger("browser")

NAV_TIMEOUT_MS = 60000
POLL_MS = 250
ACCEPT_LANGUAGE = {"Accept-Language": "en-US,en;q=0.9"}

IMAGE_ATTRS = ("src", "data-src", "data-original", "data-lazy", "data-image")

COOKIE_SELECTORS = [
    "#onetrust-accept-btn-handler",
    "button#accept-cookies",
    "button[aria-label*='Accept' i]",
    ".cookie-accept",
    ".cc-allow",
    "button:has-text('Accept all')",
    "button:has-text('Accept')",
    "button:has-text('I agree')",
]

SCROLL_JS = "() => window.scrollBy(0, document.body ? document.body.scrollHeight : 2000)"
LDJSON_JS = "els => els.map(e => e.textContent || '')"

# Masks the most common automation tells before any page script runs.
STEALTH_JS = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
Object.defineProperty(navigator, 'languages', {get: () => ['en-US', 'en']});
window.chrome = window.chrome || {runtime: {}};
"""


# ---------------- session ----------------
@contextmanager
def open_session(headless=True):
    """Yield one Playwright page shared by every dom/jsonld source of the run."""
    from playwright.sync_api import sync_playwright

    with sync_playwright() as pw:
        browser = pw.chromium.launch(headless=headless, args=["--no-sandbox"])
        ctx = browser.new_context(
            user_agent=USER_AGENT,
            locale="en-US",
            viewport={"width": 1366, "height": 900},
            extra_http_headers=ACCEPT_LANGUAGE,
        )
        ctx.add_init_script(STEALTH_JS)
        page = ctx.new_page()
        try:
            yield page
        finally:
            ctx.close()
            browser.close()


def reset_page(page):
    if page is None:
        return
    res = attempt(page.goto, "about:blank")
    if not res.ok:
        LOG.warning("could not reset page after failure: %s", res.error)


# ---------------- diagnostics ----------------
def _slug(s):
    s = re.sub(r"[^a-z0-9]+", "-", (s or "").lower()).strip("-")
    return s[:80] or "source"


class DebugSink:
    """Writes <key>-<reason>.html (and .png) so empty or failing sources can be inspected."""

    def __init__(self, out_dir="docs/debug", screenshots=True):
        self.out_dir = pathlib.Path(out_dir)
        self.screenshots = screenshots
        self.recorded = []

    def record(self, key, reason, html, screenshot=None):
        stem = f"{_slug(key)}-{_slug(reason)}"
        self.recorded.append((key, reason))
        try:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            htm = self.out_dir / (stem + ".html")
            htm.write_text(html or "", encoding="utf-8")
            if screenshot:
                (self.out_dir / (stem + ".png")).write_bytes(screenshot)
            LOG.info("Saved debug HTML → %s", htm)
        except OSError as ex:
            LOG.warning("Could not save debug snapshot for %s: %s", key, ex)

    def capture(self, key, reason, page=None):
        html, shot = "", None
        if page is not None:
            res = attempt(page.content)
            html = res.value or ""
            if self.screenshots:
                shot = attempt(page.screenshot, full_page=True).value
        self.record(key, reason, html, shot)


# ---------------- selector resolution ----------------
def _count(page, sel):
    return page.locator(sel).count()


def resolve_selector(page, candidates, timeout_ms=8000, poll_ms=POLL_MS):
    """
    Poll the page until one of the candidate selectors matches. Within a round
    candidates are checked in list order, so the earliest listed match wins.
    A selector the engine rejects counts as no match. Returns None on timeout.
    """
    cands = split_selectors(candidates)
    if not cands:
        return None
    start = time.monotonic()
    rounds = 0
    while True:
        rounds += 1
        for sel in cands:
            res = attempt(_count, page, sel)
            if res.ok and res.value:
                LOG.trace("selector %r matched %d (round %d)", sel, res.value, rounds)
                return sel
            if not res.ok:
                LOG.trace("selector %r rejected: %s", sel, res.error)
        if (time.monotonic() - start) * 1000 >= timeout_ms:
            LOG.debug("no selector matched after %d rounds: %s", rounds, cands)
            return None
        page.wait_for_timeout(poll_ms)


# ---------------- per-item fields ----------------
def _text_of(el, sel):
    node = el.query_selector(sel)
    return clean(node.inner_text()) if node else ""


def _href_of(el, sel):
    node = el.query_selector(sel)
    return clean(node.get_attribute("href")) if node else ""


def _image_of(el, sel):
    node = el.query_selector(sel)
    if not node:
        return ""
    for attr in IMAGE_ATTRS:
        v = clean(node.get_attribute(attr))
        if v:
            return v
    src = first_from_srcset(node.get_attribute("srcset"))
    if src:
        return src
    return background_image_url(node.get_attribute("style"))


def first_value(el, selectors, getter):
    """First non-empty value of ``getter`` over the selector candidates."""
    for sel in selectors:
        res = attempt(getter, el, sel)
        if res.ok and res.value:
            return res.value
        if not res.ok:
            LOG.trace("item field via %r failed: %s", sel, res.error)
    return ""


# ---------------- page conditioning ----------------
def _click_first(page, sel, timeout=1500):
    loc = page.locator(sel)
    if not loc.count():
        return False
    loc.first.click(timeout=timeout)
    return True


def condition_page(page, cfg: SourceConfig):
    """Dismiss cookie banners, scroll to trigger lazy loaders, press "load more"."""
    for sel in COOKIE_SELECTORS:
        res = attempt(_click_first, page, sel)
        if res.ok and res.value:
            LOG.debug("%s: dismissed cookie banner via %r", cfg.key, sel)
            page.wait_for_timeout(300)
            break

    for _ in range(max(0, cfg.scroll_rounds)):
        if not attempt(page.evaluate, SCROLL_JS).ok:
            break
        page.wait_for_timeout(400)

    clicks = 0
    while cfg.load_more and clicks < cfg.load_more_clicks:
        sel = resolve_selector(page, cfg.load_more, timeout_ms=0)
        if not sel or not attempt(_click_first, page, sel, 3000).value:
            break
        clicks += 1
        page.wait_for_timeout(800)
    if clicks:
        LOG.debug("%s: load-more clicked %d times", cfg.key, clicks)


# ---------------- extractors ----------------
def _open(page, cfg: SourceConfig):
    page.goto(cfg.url, wait_until="networkidle", timeout=NAV_TIMEOUT_MS)
    page.set_extra_http_headers(ACCEPT_LANGUAGE)
    page.wait_for_timeout(cfg.wait_ms)


def scrape_dom(page, cfg: SourceConfig, now: Optional[datetime] = None, condition=condition_page):
    _open(page, cfg)
    if condition:
        condition(page, cfg)

    item_sel = resolve_selector(page, cfg.item, cfg.selector_timeout_ms)
    if not item_sel:
        LOG.info("%s: no item selector matched; reloading once", cfg.key)
        res = attempt(page.reload, wait_until="networkidle", timeout=NAV_TIMEOUT_MS)
        if res.ok:
            page.wait_for_timeout(cfg.wait_ms)
            if condition:
                condition(page, cfg)
            item_sel = resolve_selector(page, cfg.item, cfg.selector_timeout_ms)
    if not item_sel:
        raise NoSelectorMatch(f"no item selector matched on {cfg.url}")

    cards = page.locator(item_sel).element_handles()
    LOG.debug("%s: item selector %r -> %d elements", cfg.key, item_sel, len(cards))

    out = []
    dropped = 0
    for el in cards:
        if len(out) >= cfg.max_items:
            break
        title = first_value(el, cfg.title, _text_of)
        link = to_abs(first_value(el, cfg.link, _href_of), cfg.url)
        date = first_value(el, cfg.date, _text_of)
        img = to_abs(first_value(el, cfg.image, _image_of), cfg.url)

        if not title and not link:
            dropped += 1
            continue
        if not cfg.filters.accepts(filter_text(title, date, cfg.venue)):
            LOG.trace("DOM filtered: %r", title)
            continue
        if not img and link:
            img = fetch_detail_image(link)
        out.append(make_record(cfg, title, link, date, venue=cfg.venue, image=img, now=now))

    if dropped:
        LOG.debug("%s: %d items had neither title nor link", cfg.key, dropped)
    return out


def scrape_jsonld(page, cfg: SourceConfig, now: Optional[datetime] = None):
    _open(page, cfg)
    blocks = page.eval_on_selector_all('script[type="application/ld+json"]', LDJSON_JS) or []
    LOG.debug("%s: %d ld+json blocks", cfg.key, len(blocks))
    return events_from_jsonld(blocks, cfg, now=now)

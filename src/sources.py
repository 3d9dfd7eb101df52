import base64
import json
import logging
import urllib.parse
from datetime import datetime
from typing import Optional

import feedparser
import requests
from bs4 import BeautifulSoup

from models import ParseError, SourceConfig, SourceFetchError, make_record, filter_text
from utils import (
    attempt,
    clean,
    clip,
    first_img_src,
    image_url,
    join_description,
    pick,
    strip_html_to_text,
    to_abs,
)

LOG = logging.getLogger("sources")
HTTP_LOG = logging.getLogger("sources.http")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/125.0.0.0 Safari/537.36"
)
JSON_HEADERS = {"User-Agent": USER_AGENT, "Accept": "application/json"}
FEED_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5",
}
HTML_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

DETAIL_IMAGE_TYPES = ("Event", "Article", "WebPage")
# Envelope keys tried when a json source has no map.path
LIST_KEYS = ("events", "data", "items", "results")


def _decode_data_url(url):
    # RFC2397 data:[<mediatype>][;base64],<data>
    try:
        meta, data_part = url.split(",", 1)
    except ValueError:
        HTTP_LOG.warning("HTTP data: malformed (no comma): %s", url[:140])
        return 400, ""
    try:
        raw_bytes = urllib.parse.unquote_to_bytes(data_part)
        body_bytes = base64.b64decode(raw_bytes) if ";base64" in meta.lower() else raw_bytes
    except ValueError as ex:
        HTTP_LOG.warning("HTTP data: decode error: %s", ex)
        return 400, ""
    return 200, body_bytes.decode("utf-8", errors="replace")


def http_get(url, headers=None, timeout=30):
    """
    Plain GET returning (status, body). Transport failures come back as status
    599 with an empty body so callers decide whether that is fatal.
    """
    if url.startswith("data:"):
        return _decode_data_url(url)
    headers = headers or {"User-Agent": USER_AGENT}
    HTTP_LOG.debug("HTTP GET %s | UA=%r accept=%r", url, headers.get("User-Agent"), headers.get("Accept"))
    try:
        resp = requests.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as ex:
        HTTP_LOG.warning("HTTP %s error: %s", url, ex)
        return 599, ""
    HTTP_LOG.debug("HTTP %s -> %d (len=%d)", url, resp.status_code, len(resp.text or ""))
    return resp.status_code, resp.text or ""


def _ok(status):
    return 200 <= status < 300


def _fetch_or_raise(url, headers, label):
    status, body = http_get(url, headers=headers)
    if not _ok(status):
        raise SourceFetchError(f"{label} {status} {url}")
    return body


# ---------------- JSON-LD ----------------
def parse_jsonld_blocks(blocks):
    """Parse each block on its own; a bad block is skipped, never fatal."""
    parsed = []
    for idx, raw in enumerate(blocks):
        res = attempt(json.loads, raw or "")
        if not res.ok:
            LOG.debug("JSON-LD block %d skipped: %s", idx, res.error)
            continue
        parsed.append(res.value)
    return parsed


def flatten_jsonld(data):
    nodes = []
    if isinstance(data, list):
        nodes.extend(data)
    elif isinstance(data, dict):
        nodes.append(data)
        graph = data.get("@graph")
        if isinstance(graph, list):
            nodes.extend(graph)
    return [n for n in nodes if isinstance(n, dict)]


def _has_type(node, *types):
    t = node.get("@type")
    if isinstance(t, list):
        return any(x in types for x in t)
    return t in types


def jsonld_event_nodes(docs):
    events = []
    for doc in docs:
        for node in flatten_jsonld(doc):
            if _has_type(node, "Event"):
                events.append(node)
            sub = node.get("event")
            if isinstance(sub, list):
                events.extend(e for e in sub if isinstance(e, dict) and _has_type(e, "Event"))
    return events


def events_from_jsonld(blocks, cfg: SourceConfig, now: Optional[datetime] = None):
    """Turn raw ld+json script texts into records for ``cfg``."""
    out = []
    for ev in jsonld_event_nodes(parse_jsonld_blocks(blocks)):
        title = clean(ev.get("name"))
        link = to_abs(clean(ev.get("url")) or cfg.url, cfg.url)
        start = clean(ev.get("startDate") or ev.get("startTime"))
        loc = ev.get("location")
        venue = clean(loc.get("name")) if isinstance(loc, dict) else ""
        venue = venue or cfg.venue
        img = image_url(ev.get("image"), cfg.url)
        if not cfg.filters.accepts(filter_text(title, start, venue, ev.get("description"))):
            LOG.trace("JSON-LD filtered: %r", title)
            continue
        out.append(make_record(cfg, title, link, start, venue=venue, image=img, now=now))
    LOG.debug("JSON-LD %s -> %d events", cfg.key, len(out))
    return out


# ---------------- detail-page image fallback ----------------
def fetch_detail_image(url) -> str:
    """
    Fetch an item's own page and mine it for an image: og:image first, then
    JSON-LD Event/Article/WebPage images. Returns '' on any failure.
    """
    if not url:
        return ""
    status, body = http_get(url, headers=HTML_HEADERS, timeout=20)
    if not _ok(status) or not body:
        LOG.debug("detail image: %s -> %s", url, status)
        return ""

    soup = BeautifulSoup(body, "html.parser")
    meta = soup.select_one('meta[property="og:image"], meta[name="og:image"]')
    if meta and clean(meta.get("content")):
        return to_abs(meta.get("content"), url)

    blocks = [tag.string or tag.get_text() for tag in soup.select('script[type="application/ld+json"]')]
    for doc in parse_jsonld_blocks(blocks):
        for node in flatten_jsonld(doc):
            if not _has_type(node, *DETAIL_IMAGE_TYPES):
                continue
            img = image_url(node.get("image"), url)
            if img:
                return img
    return ""


# ---------------- JSON API ----------------
def _default_venue(ev, cfg):
    v = ev.get("venue")
    if isinstance(v, dict):
        return clean(v.get("name")) or cfg.venue
    if isinstance(v, str) and v.strip():
        return v.strip()
    return cfg.venue


def _default_image(ev):
    raw = ev.get("image") or ev.get("featured_image")
    if not raw and isinstance(ev.get("images"), list) and ev["images"]:
        raw = ev["images"][0]
    return raw


def _default_list(data, search_keys=True):
    if isinstance(data, list):
        return data
    if search_keys and isinstance(data, dict):
        for k in LIST_KEYS:
            if isinstance(data.get(k), list):
                return data[k]
    return []


def fetch_json_api(cfg: SourceConfig, now: Optional[datetime] = None):
    body = _fetch_or_raise(cfg.api, JSON_HEADERS, "JSON")
    res = attempt(json.loads, body)
    if not res.ok:
        raise ParseError(f"JSON body unreadable for {cfg.api}: {res.error}")
    data = res.value
    fm = cfg.field_map

    seq = pick(data, fm.path)
    if not isinstance(seq, list):
        seq = _default_list(data, search_keys=not fm.path)

    out = []
    for ev in seq:
        if not isinstance(ev, dict):
            continue
        title = clean(pick(ev, fm.title) if fm.title else (ev.get("title") or ev.get("name")))
        raw_link = clean(pick(ev, fm.link) if fm.link else (ev.get("url") or ev.get("link")))
        link = to_abs(raw_link or cfg.api, cfg.api)
        date = clean(pick(ev, fm.date) if fm.date else (ev.get("start_date") or ev.get("start") or ev.get("date")))
        venue = clean(pick(ev, fm.venue) if fm.venue else _default_venue(ev, cfg)) or cfg.venue
        raw_img = pick(ev, fm.image) if fm.image else _default_image(ev)
        img = image_url(raw_img, link)

        if not cfg.filters.accepts(filter_text(title, date, venue, ev.get("description"))):
            LOG.trace("JSON filtered: %r", title)
            continue
        out.append(make_record(cfg, title, link, date, venue=venue, image=img, now=now))
    LOG.debug("JSON %s -> %d events", cfg.api, len(out))
    return out


# ---------------- ICS ----------------
def ics_unescape(s: str) -> str:
    return (
        s.replace("\\n", "\n")
        .replace("\\N", "\n")
        .replace("\\,", ",")
        .replace("\\;", ";")
        .replace("\\\\", "\\")
    )


def _ics_lines(block):
    # Unfold lines: continuation lines start with space or tab
    unfolded = []
    for ln in block.splitlines():
        if ln.startswith((" ", "\t")) and unfolded:
            unfolded[-1] += ln[1:]
        else:
            unfolded.append(ln.rstrip("\r"))
    return [ln for ln in unfolded if ln.strip()]


def _ics_prop(lines, name):
    name_u = name.upper()
    for ln in lines:
        head = ln.upper()
        if head.startswith(name_u + ":") or head.startswith(name_u + ";"):
            return ln.split(":", 1)[1].strip() if ":" in ln else ""
    return ""


def parse_ics_events(text):
    events = []
    for chunk in (text or "").split("BEGIN:VEVENT")[1:]:
        lines = _ics_lines(chunk.split("END:VEVENT")[0])
        events.append({
            "summary": ics_unescape(_ics_prop(lines, "SUMMARY")),
            "url": _ics_prop(lines, "URL"),
            "dtstart": _ics_prop(lines, "DTSTART"),
            "location": ics_unescape(_ics_prop(lines, "LOCATION")),
        })
    return events


def fetch_ics(cfg: SourceConfig, now: Optional[datetime] = None):
    body = _fetch_or_raise(cfg.ics, {"User-Agent": USER_AGENT}, "ICS")
    out = []
    for ev in parse_ics_events(body):
        link = to_abs(ev["url"], cfg.ics) or cfg.ics
        venue = ev["location"] or cfg.venue
        if not cfg.filters.accepts(filter_text(ev["summary"], ev["dtstart"], venue)):
            LOG.trace("ICS filtered: %r", ev["summary"])
            continue
        out.append(make_record(cfg, ev["summary"], link, ev["dtstart"], venue=venue, image="", now=now))
    LOG.debug("ICS %s -> %d events", cfg.ics, len(out))
    return out


# ---------------- RSS / Atom ----------------
def _text(v):
    # feedparser mostly hands back strings, but detail dicts carry "value"
    if isinstance(v, dict):
        return clean(v.get("value"))
    if isinstance(v, list):
        return _text(v[0]) if v else ""
    return clean(v)


def _entry_link(e):
    links = e.get("links") or []
    for ln in links:
        if ln.get("href") and ln.get("rel", "alternate") == "alternate":
            return clean(ln["href"])
    for ln in links:
        if ln.get("href"):
            return clean(ln["href"])
    return clean(e.get("link")) or clean(e.get("id"))


def _entry_html(e):
    content = e.get("content")
    if content:
        return _text(content)
    return clean(e.get("description")) or _text(e.get("summary_detail")) or clean(e.get("summary"))


def _entry_image(e, html):
    media = e.get("media_content") or []
    for m in media:
        if clean(m.get("url")):
            return clean(m["url"])
    enclosures = e.get("enclosures") or []
    for enc in enclosures:
        if clean(enc.get("type")).lower().startswith("image/") and clean(enc.get("href") or enc.get("url")):
            return clean(enc.get("href") or enc.get("url"))
    for enc in enclosures:
        if clean(enc.get("href") or enc.get("url")):
            return clean(enc.get("href") or enc.get("url"))
    return first_img_src(html)


def fetch_rss(cfg: SourceConfig, now: Optional[datetime] = None):
    body = _fetch_or_raise(cfg.rss, FEED_HEADERS, "RSS")
    feed = feedparser.parse(body)
    if feed.get("bozo") and not feed.entries:
        raise ParseError(f"RSS unreadable for {cfg.rss}: {feed.get('bozo_exception')}")

    out = []
    for e in feed.entries:
        title = _text(e.get("title_detail")) or clean(e.get("title"))
        link = to_abs(_entry_link(e), cfg.rss) or cfg.rss
        html = _entry_html(e)
        date = clean(e.get("published") or e.get("updated"))
        img = to_abs(_entry_image(e, html), cfg.rss)
        text = strip_html_to_text(html)
        if not cfg.filters.accepts(filter_text(title, date, cfg.venue, text)):
            LOG.trace("RSS filtered: %r", title)
            continue
        desc = join_description(cfg.venue, clip(text))
        out.append(make_record(cfg, title, link, date, venue=cfg.venue, image=img,
                               description=desc, now=now))
    LOG.debug("RSS %s -> %d events", cfg.rss, len(out))
    return out

# src/main.py
import os
import json
import logging
from contextlib import nullcontext
from datetime import datetime
from enum import Enum

import yaml

from utils import TRACE, norm


def _init_logging():
    # FEEDS_LOG_LEVEL overrides; otherwise honor FEEDS_TRACE/FEEDS_DEBUG
    env_level = os.getenv("FEEDS_LOG_LEVEL", "").upper().strip()
    if not env_level:
        if os.getenv("FEEDS_TRACE"):
            env_level = "TRACE"
        elif os.getenv("FEEDS_DEBUG"):
            env_level = "DEBUG"
        else:
            env_level = "INFO"

    level_map = {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
        "TRACE": TRACE,
        "NOTSET": logging.NOTSET,
    }
    level = level_map.get(env_level, logging.INFO)

    fmt = "%(asctime)s %(levelname)-5s %(name)s :: %(message)s"
    logging.basicConfig(level=level, format=fmt)


log = logging.getLogger("main")

# ---- Source import surface ---------------------------------------------------
from models import FeedError, NoSelectorMatch, SourceConfig, UnknownMode, MODES
from sources import fetch_json_api, fetch_ics, fetch_rss
from browser import DebugSink, condition_page, open_session, reset_page, scrape_dom, scrape_jsonld
from feed import build_rss

CONFIG_PATH = "config.yaml"
OUT_FILE = "docs/feed.xml"
DEBUG_DIR = "docs/debug"
MAX_ITEMS = 500


# ---- config ------------------------------------------------------------------
def strip_json_comments(text: str) -> str:
    """Drop // and /* */ comments outside of string literals."""
    out = []
    i, n = 0, len(text)
    in_str = False
    while i < n:
        c = text[i]
        if in_str:
            out.append(c)
            if c == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if c == '"':
                in_str = False
            i += 1
            continue
        if c == '"':
            in_str = True
            out.append(c)
            i += 1
        elif text.startswith("//", i):
            while i < n and text[i] != "\n":
                i += 1
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end < 0 else end + 2
        else:
            out.append(c)
            i += 1
    return "".join(out)


def load_config(path: str) -> dict:
    """
    Read the source list. YAML files go through yaml.safe_load; .json site lists
    are parsed as JSON and may carry // and /* */ comments. A bare list is
    treated as {"sources": [...]}.
    """
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    if path.lower().endswith(".json"):
        data = json.loads(strip_json_comments(text)) or {}
    else:
        data = yaml.safe_load(text) or {}
    if isinstance(data, list):
        data = {"sources": data}
    data["sources"] = [SourceConfig.from_dict(s) for s in (data.get("sources") or []) if isinstance(s, dict)]
    return data


# ---- per-source dispatch -----------------------------------------------------
class Stage(Enum):
    DOM = "dom"
    STRUCTURED = "jsonld"
    FAILED = "failed"


def _run_dom(page, cfg, sink, now, condition):
    stage = Stage.DOM
    while True:
        if stage is Stage.DOM:
            try:
                part = scrape_dom(page, cfg, now=now, condition=condition)
            except NoSelectorMatch as e:
                log.info("   %s: %s", cfg.key, e)
                part = []
            if part:
                return part
            stage = Stage.STRUCTURED
        elif stage is Stage.STRUCTURED:
            part = scrape_jsonld(page, cfg.structured_fallback(), now=now)
            if part:
                log.info("Fallback JSON-LD used for %s → %d items", cfg.key, len(part))
                return part
            stage = Stage.FAILED
        else:
            sink.capture(cfg.key, "empty", page)
            return []


def run_source(cfg: SourceConfig, page=None, sink=None, now=None, condition=condition_page):
    sink = sink or DebugSink(DEBUG_DIR)
    if cfg.mode not in MODES:
        raise UnknownMode(f"unknown mode {cfg.mode!r}")
    if cfg.needs_browser and page is None:
        raise FeedError(f"{cfg.mode} source needs a browser page")

    if cfg.mode == "dom":
        return _run_dom(page, cfg, sink, now, condition)
    if cfg.mode == "jsonld":
        part = scrape_jsonld(page, cfg, now=now)
        if not part:
            sink.capture(cfg.key, "jsonld-empty", page)
        return part

    fetchers = {"json": fetch_json_api, "ics": fetch_ics, "rss": fetch_rss}
    part = fetchers[cfg.mode](cfg, now=now)
    if not part:
        sink.capture(cfg.key, f"{cfg.mode}-empty")
    return part


def collect(sources, page=None, sink=None, now=None, condition=condition_page):
    sink = sink or DebugSink(DEBUG_DIR)
    parts = []
    for cfg in sources:
        log.info("→ Fetching: %s [%s] %s", cfg.key, cfg.mode, cfg.locator)
        try:
            part = run_source(cfg, page=page, sink=sink, now=now, condition=condition)
        except UnknownMode:
            log.warning("Unknown mode %r for %s; skipped", cfg.mode, cfg.key)
            continue
        except Exception as e:
            log.error("FAIL: %s → %s", cfg.key, e)
            log.debug("source failure detail", exc_info=True)
            sink.capture(cfg.key, "error", page if cfg.needs_browser else None)
            if cfg.needs_browser:
                reset_page(page)
            continue
        log.info("OK: %s → %d items", cfg.key, len(part))
        parts.append(part)
    return parts


# ---- merge -------------------------------------------------------------------
def dedup_key(rec) -> str:
    return f"{norm(rec.title)}|{norm(rec.description)}|{norm(rec.link)}"


def dedupe(records):
    seen = set()
    out = []
    for rec in records:
        k = dedup_key(rec)
        if k in seen:
            log.trace("duplicate dropped: %s", rec.title)
            continue
        seen.add(k)
        out.append(rec)
    return out


def merge_records(parts, limit=MAX_ITEMS):
    merged = [rec for part in parts for rec in part]
    unique = dedupe(merged)
    log.info("Merged %d records → %d unique (cap %d)", len(merged), len(unique), limit)
    return unique[:limit]


def write_feed(xml: str, path: str = OUT_FILE):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(xml)


def main():
    _init_logging()
    cfg = load_config(os.getenv("FEEDS_CONFIG", CONFIG_PATH))
    sources = cfg["sources"]
    out_path = os.getenv("FEEDS_OUT") or cfg.get("output") or OUT_FILE
    sink = DebugSink(os.getenv("FEEDS_DEBUG_DIR") or cfg.get("debug_dir") or DEBUG_DIR)
    limit = int(cfg.get("max_items", MAX_ITEMS))
    now = datetime.now().astimezone()

    log.info("Config: sources=%d cap=%d out=%s", len(sources), limit, out_path)

    # headless can be toggled via FEEDS_PW_HEADLESS=0
    headless = os.getenv("FEEDS_PW_HEADLESS", "1") != "0"
    session = open_session(headless=headless) if any(s.needs_browser for s in sources) else nullcontext(None)
    try:
        with session as page:
            parts = collect(sources, page=page, sink=sink, now=now)
    except Exception:
        log.critical("Could not run the browser session; aborting", exc_info=True)
        raise

    items = merge_records(parts, limit=limit)
    write_feed(build_rss(items, channel=cfg.get("feed"), now=now), out_path)
    log.info("Wrote %d items → %s", len(items), out_path)


if __name__ == "__main__":
    main()

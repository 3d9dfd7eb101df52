import logging
import re
import urllib.parse
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Callable, NamedTuple, Optional

from bs4 import BeautifulSoup
from dateutil import parser

# ---- TRACE level -------------------------------------------------------------
TRACE = 5
logging.addLevelName(TRACE, "TRACE")


def _trace(self, msg, *args, **kwargs):
    if self.isEnabledFor(TRACE):
        self._log(TRACE, msg, args, **kwargs)


logging.Logger.trace = _trace  # type: ignore[attr-defined]

LOG = logging.getLogger("utils")

WS_RE = re.compile(r"\s+")
IMG_EXT_RE = re.compile(r"\.(png|jpe?g|gif|webp|avif)$", re.I)
BG_IMAGE_RE = re.compile(r"background-image:\s*url\((['\"]?)([^'\")]+)\1\)", re.I)
IMG_SRC_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.I)

DESC_SEP = " — "


class Result(NamedTuple):
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def attempt(fn: Callable, *args, **kwargs) -> Result:
    """Run ``fn`` and capture its outcome; callers decide what a failure means."""
    try:
        return Result(fn(*args, **kwargs))
    except Exception as ex:
        LOG.trace("attempt %s failed: %s", getattr(fn, "__name__", fn), ex)
        return Result(None, ex)


def clean(v) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v.strip()
    return str(v).strip()


def norm(v) -> str:
    return WS_RE.sub(" ", clean(v).lower()).strip()


def to_abs(href, base) -> str:
    href = clean(href)
    if not href:
        return ""
    try:
        return urllib.parse.urljoin(clean(base), href)
    except ValueError:
        return href


def parse_date(text, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Best-effort parse of free-text or ISO/ICS dates ("2024-05-01",
    "20240601T190000Z", "Sat, May 4 7pm"). Missing year/month/day come from
    ``now`` (midnight UTC of that day); naive results are taken as UTC.
    """
    text = WS_RE.sub(" ", clean(text))
    if not text:
        return None
    base = now or datetime.now(timezone.utc)
    if base.tzinfo:
        base = base.astimezone(timezone.utc).replace(tzinfo=None)
    base = base.replace(hour=0, minute=0, second=0, microsecond=0)
    try:
        dt = parser.parse(text, fuzzy=True, default=base)
    except (ValueError, OverflowError, TypeError):
        return None
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def rfc822(text, now: Optional[datetime] = None) -> str:
    dt = parse_date(text, now)
    if dt is None:
        dt = now or datetime.now(timezone.utc)
        if not dt.tzinfo:
            dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


def _url_path(url) -> str:
    try:
        return urllib.parse.urlsplit(clean(url)).path
    except ValueError:
        return clean(url).split("?", 1)[0]


def image_mime(url) -> str:
    m = IMG_EXT_RE.search(_url_path(url))
    if not m:
        return "image/jpeg"
    ext = m.group(1).lower()
    return "image/" + ("jpeg" if ext == "jpg" else ext)


def pick(obj, path):
    """Deep lookup: pick(ev, "venue.name") -> ev["venue"]["name"]; digits index lists."""
    if not path:
        return None
    cur = obj
    for key in str(path).split("."):
        if isinstance(cur, dict):
            if key not in cur:
                return None
            cur = cur[key]
        elif isinstance(cur, list) and key.isdigit():
            idx = int(key)
            if idx >= len(cur):
                return None
            cur = cur[idx]
        else:
            return None
    return cur


def first_from_srcset(srcset) -> str:
    first = clean(srcset).split(",")[0].strip()
    return first.split()[0] if first else ""


def background_image_url(style) -> str:
    m = BG_IMAGE_RE.search(clean(style))
    return m.group(2).strip() if m else ""


def first_img_src(html) -> str:
    m = IMG_SRC_RE.search(html or "")
    return m.group(1).strip() if m else ""


def image_url(raw, base="") -> str:
    """
    Normalize the three shapes an image shows up in: a plain URL string,
    an object carrying ``url`` (or ``contentUrl``), or a list of either.
    Returns the first resolvable absolute URL, or ''.
    """
    if isinstance(raw, str):
        return to_abs(raw, base)
    if isinstance(raw, dict):
        return to_abs(raw.get("url") or raw.get("contentUrl"), base)
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, list):
                continue
            u = image_url(item, base)
            if u:
                return u
    return ""


def split_selectors(raw) -> list:
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = [p for p in raw if isinstance(p, str)]
    return [p.strip() for p in parts if p and p.strip()]


def join_description(*parts) -> str:
    return DESC_SEP.join(clean(p) for p in parts if clean(p))


def strip_html_to_text(html) -> str:
    if not html:
        return ""
    txt = BeautifulSoup(html, "html.parser").get_text(" ")
    return WS_RE.sub(" ", txt).strip()


def clip(text, limit=300) -> str:
    text = clean(text)
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + " …"

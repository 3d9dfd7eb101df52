import html
import logging
import re
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Optional

from utils import image_mime

LOG = logging.getLogger("feed")

MEDIA_NS = "http://search.yahoo.com/mrss/"

# characters outside the XML 1.0 Char production
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\uD800-\uDFFF\uFFFE\uFFFF]")

DEFAULT_CHANNEL = {
    "title": "North ATL Events (JS-capable Feed)",
    "link": "https://example.com",
    "description": "Combined events rendered with Playwright",
}


def _sanitize_text(s) -> str:
    return _CONTROL_RE.sub("", s or "")


def _cdata(s: str) -> str:
    # split a literal ']]>' so it cannot close the block early
    s = _sanitize_text(s).replace("]]>", "]]]]><![CDATA[>")
    return f"<![CDATA[{s}]]>"


def _esc(s) -> str:
    return html.escape(_sanitize_text(s), quote=True)


def _item(rec) -> str:
    parts = ["<item>"]
    parts.append(f"<title>{_esc(rec.title)}</title>")
    parts.append(f"<link>{_esc(rec.link)}</link>")
    parts.append(f'<guid isPermaLink="false">{_esc(rec.guid)}</guid>')
    parts.append(f"<pubDate>{_esc(rec.pub_date)}</pubDate>")
    for cat in (rec.town, rec.venue):
        if cat:
            parts.append(f"<category>{_esc(cat)}</category>")

    img_tag = f'<p><img src="{_esc(rec.image)}" alt=""/></p>' if rec.image else ""
    parts.append(f"<description>{_cdata(img_tag + _esc(rec.description))}</description>")

    if rec.image:
        parts.append(f'<media:content url="{_esc(rec.image)}" medium="image"/>')
        parts.append(f'<enclosure url="{_esc(rec.image)}" type="{image_mime(rec.image)}" length="0"/>')
    parts.append("</item>")
    return "\n".join(parts)


def build_rss(records, channel: Optional[dict] = None, now: Optional[datetime] = None) -> str:
    """Serialize records into an RSS 2.0 document with media/enclosure image tags."""
    ch = dict(DEFAULT_CHANNEL)
    ch.update({k: v for k, v in (channel or {}).items() if v})
    now = now or datetime.now(timezone.utc)
    if not now.tzinfo:
        now = now.replace(tzinfo=timezone.utc)

    out = ['<?xml version="1.0" encoding="UTF-8"?>']
    out.append(f'<rss version="2.0" xmlns:media="{MEDIA_NS}">')
    out.append("<channel>")
    out.append(f"<title>{_esc(ch['title'])}</title>")
    out.append(f"<link>{_esc(ch['link'])}</link>")
    out.append(f"<description>{_esc(ch['description'])}</description>")
    out.append(f"<lastBuildDate>{format_datetime(now.astimezone(timezone.utc), usegmt=True)}</lastBuildDate>")
    for rec in records:
        out.append(_item(rec))
    out.append("</channel>")
    out.append("</rss>")
    LOG.debug("built feed with %d items", len(records))
    return "\n".join(out) + "\n"

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from utils import clean, norm, rfc822, join_description, split_selectors

MODES = ("dom", "jsonld", "json", "ics", "rss")

DEFAULT_WAIT_MS = 2000
DEFAULT_MAX = 120
DEFAULT_SELECTOR_TIMEOUT_MS = 8000
DEFAULT_SCROLL_ROUNDS = 3
DEFAULT_LOAD_MORE_CLICKS = 5

# Used when a dom source leaves a selector list out.
DEFAULT_SELECTORS = {
    "item": [
        ".tribe-events-calendar-list__event",
        "article.type-tribe_events",
        ".event-item",
        ".event-card",
        "li.event",
        "div.event",
        "article",
    ],
    "title": ["h3", "h2", ".event-title", ".title", "h4", "a"],
    "link": ["a[href]"],
    "date": ["time", ".event-date", ".date", "[class*='date']"],
    "image": ["img", "[data-src]", "[style*='background-image']"],
}


class FeedError(Exception):
    """Base for errors raised while collecting a source."""


class NoSelectorMatch(FeedError):
    pass


class SourceFetchError(FeedError):
    pass


class ParseError(FeedError):
    pass


class UnknownMode(FeedError):
    pass


@dataclass(frozen=True)
class Filter:
    include: tuple = ()
    exclude: tuple = ()

    @classmethod
    def from_dict(cls, raw) -> "Filter":
        raw = raw or {}

        def terms(name):
            got = raw.get(name) or []
            if isinstance(got, str):
                got = [got]
            return tuple(norm(t) for t in got if norm(t))

        return cls(include=terms("include"), exclude=terms("exclude"))

    def accepts(self, text) -> bool:
        blob = norm(text)
        if any(t in blob for t in self.exclude):
            return False
        if self.include:
            return any(t in blob for t in self.include)
        return True


@dataclass(frozen=True)
class FieldMap:
    """Dotted path overrides for json-mode sources; None means "use the default field"."""
    path: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    date: Optional[str] = None
    venue: Optional[str] = None
    image: Optional[str] = None

    @classmethod
    def from_dict(cls, raw) -> "FieldMap":
        raw = raw or {}
        vals = {k: (clean(raw.get(k)) or None) for k in ("path", "title", "link", "date", "venue", "image")}
        return cls(**vals)


@dataclass(frozen=True)
class SourceConfig:
    key: str
    mode: str
    url: str = ""
    api: str = ""
    ics: str = ""
    rss: str = ""
    field_map: FieldMap = field(default_factory=FieldMap)
    item: tuple = ()
    title: tuple = ()
    link: tuple = ()
    date: tuple = ()
    image: tuple = ()
    town: str = ""
    venue: str = ""
    wait_ms: int = DEFAULT_WAIT_MS
    max_items: int = DEFAULT_MAX
    filters: Filter = field(default_factory=Filter)
    selector_timeout_ms: int = DEFAULT_SELECTOR_TIMEOUT_MS
    scroll_rounds: int = DEFAULT_SCROLL_ROUNDS
    load_more: tuple = ()
    load_more_clicks: int = DEFAULT_LOAD_MORE_CLICKS

    @classmethod
    def from_dict(cls, raw: dict) -> "SourceConfig":
        mode = norm(raw.get("mode"))
        key = clean(raw.get("key")) or clean(raw.get("name")) or clean(
            raw.get("url") or raw.get("api") or raw.get("ics") or raw.get("rss")
        )

        def sel(name):
            got = split_selectors(raw.get(name))
            return tuple(got or DEFAULT_SELECTORS[name])

        def num(name, default):
            v = raw.get(name)
            if v is None or v == "":
                return default
            return int(v)

        max_items = num("max", DEFAULT_MAX)
        if max_items <= 0:
            max_items = DEFAULT_MAX

        return cls(
            key=key,
            mode=mode,
            url=clean(raw.get("url")),
            api=clean(raw.get("api")),
            ics=clean(raw.get("ics")),
            rss=clean(raw.get("rss")),
            field_map=FieldMap.from_dict(raw.get("map")),
            item=sel("item"),
            title=sel("title"),
            link=sel("link"),
            date=sel("date"),
            image=sel("image"),
            town=clean(raw.get("town")),
            venue=clean(raw.get("venue")),
            wait_ms=num("waitMs", DEFAULT_WAIT_MS),
            max_items=max_items,
            filters=Filter.from_dict(raw.get("filters")),
            selector_timeout_ms=num("selectorTimeoutMs", DEFAULT_SELECTOR_TIMEOUT_MS),
            scroll_rounds=num("scroll", DEFAULT_SCROLL_ROUNDS),
            load_more=tuple(split_selectors(raw.get("loadMore"))),
            load_more_clicks=num("loadMoreClicks", DEFAULT_LOAD_MORE_CLICKS),
        )

    @property
    def locator(self) -> str:
        return {
            "dom": self.url,
            "jsonld": self.url,
            "json": self.api,
            "ics": self.ics,
            "rss": self.rss,
        }.get(self.mode, "")

    @property
    def needs_browser(self) -> bool:
        return self.mode in ("dom", "jsonld")

    def structured_fallback(self) -> "SourceConfig":
        return SourceConfig(
            key=self.key,
            mode="jsonld",
            url=self.url,
            town=self.town,
            venue=self.venue,
            wait_ms=self.wait_ms,
            filters=self.filters,
        )


@dataclass(frozen=True)
class EventRecord:
    title: str
    link: str
    guid: str
    pub_date: str
    description: str
    image: str = ""
    town: str = ""
    venue: str = ""


def make_record(cfg: SourceConfig, title, link, date, venue="", image="",
                description=None, now: Optional[datetime] = None) -> EventRecord:
    """
    Build the normalized record every extractor emits. ``description`` defaults
    to venue and raw date text; the guid uses the title before the town prefix.
    """
    title = clean(title)
    link = clean(link) or cfg.locator
    date = clean(date)
    venue = clean(venue)
    if description is None:
        description = join_description(venue, date)
    return EventRecord(
        title=(f"[{cfg.town}] " if cfg.town else "") + title,
        link=link,
        guid=f"{link}#{norm(title)}#{norm(date)}",
        pub_date=rfc822(date, now),
        description=description,
        image=clean(image),
        town=cfg.town,
        venue=venue,
    )


def filter_text(*parts) -> str:
    return " ".join(clean(p) for p in parts if clean(p))

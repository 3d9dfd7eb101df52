"""Tests for the RSS assembler."""

import xml.etree.ElementTree as ET

from conftest import FIXED_NOW
from feed import MEDIA_NS, build_rss
from models import EventRecord


def rec(title="Jazz Night", image="", town="", venue="", description="The Hall — 2024-05-01"):
    return EventRecord(
        title=title,
        link="https://x.example/e/1",
        guid="https://x.example/e/1#jazz night#2024-05-01",
        pub_date="Wed, 01 May 2024 00:00:00 GMT",
        description=description,
        image=image,
        town=town,
        venue=venue,
    )


def parse(xml):
    return ET.fromstring(xml.encode("utf-8"))


def test_channel_metadata():
    root = parse(build_rss([], channel={"title": "My Feed"}, now=FIXED_NOW))
    assert root.tag == "rss"
    assert root.get("version") == "2.0"
    ch = root.find("channel")
    assert ch.findtext("title") == "My Feed"
    assert ch.findtext("link") == "https://example.com"
    assert ch.findtext("lastBuildDate") == "Mon, 15 Jan 2024 12:00:00 GMT"
    assert ch.findall("item") == []


def test_item_without_image_has_no_media_tags():
    item = parse(build_rss([rec()], now=FIXED_NOW)).find("channel/item")
    assert item.findtext("title") == "Jazz Night"
    assert item.findtext("guid") == "https://x.example/e/1#jazz night#2024-05-01"
    assert item.findtext("pubDate") == "Wed, 01 May 2024 00:00:00 GMT"
    assert item.findtext("description") == "The Hall — 2024-05-01"
    assert item.find("enclosure") is None
    assert item.find(f"{{{MEDIA_NS}}}content") is None
    assert item.findall("category") == []


def test_item_with_image_and_categories():
    xml = build_rss([rec(image="https://x.example/a.jpg?w=1", town="Roswell", venue="The Hall")], now=FIXED_NOW)
    item = parse(xml).find("channel/item")

    assert item.find("enclosure").get("type") == "image/jpeg"
    assert item.find("enclosure").get("url") == "https://x.example/a.jpg?w=1"
    assert item.find(f"{{{MEDIA_NS}}}content").get("medium") == "image"
    assert [c.text for c in item.findall("category")] == ["Roswell", "The Hall"]
    desc = item.findtext("description")
    assert desc.startswith('<p><img src="https://x.example/a.jpg?w=1" alt=""/></p>')
    assert 'xmlns:media="http://search.yahoo.com/mrss/"' in xml


def test_description_is_escaped_inside_cdata():
    xml = build_rss([rec(description="Rock & Roll <live> ]]> late")], now=FIXED_NOW)
    desc = parse(xml).find("channel/item").findtext("description")
    assert desc == "Rock &amp; Roll &lt;live&gt; ]]&gt; late"


def test_png_enclosure_type():
    item = parse(build_rss([rec(image="https://x.example/a.png")], now=FIXED_NOW)).find("channel/item")
    assert item.find("enclosure").get("type") == "image/png"


def test_control_characters_are_dropped():
    bad = rec(title="Jazz\x0bNight", description="d\x08 & more\x00")
    item = parse(build_rss([bad], channel={"title": "Feed\x1f"}, now=FIXED_NOW)).find("channel/item")
    assert item.findtext("title") == "JazzNight"
    assert item.findtext("description") == "d &amp; more"

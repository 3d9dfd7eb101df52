"""Tests for the value normalizers."""

import pytest

from conftest import FIXED_NOW, FIXED_NOW_RFC
from utils import (
    attempt,
    background_image_url,
    first_from_srcset,
    first_img_src,
    image_mime,
    image_url,
    join_description,
    norm,
    pick,
    rfc822,
    split_selectors,
    to_abs,
)


def test_norm_collapses_whitespace_and_case():
    assert norm("  Jazz \n  NIGHT\t") == "jazz night"
    assert norm(None) == ""
    assert norm(42) == "42"


class TestToAbs:
    def test_relative_path(self):
        assert to_abs("/events/42", "https://x.example/list") == "https://x.example/events/42"

    def test_absolute_passthrough(self):
        assert to_abs("https://y.example/a", "https://x.example/list") == "https://y.example/a"

    def test_empty_href(self):
        assert to_abs("", "https://x.example/list") == ""
        assert to_abs(None, "https://x.example/list") == ""


class TestRfc822:
    @pytest.mark.parametrize("raw,expected", [
        ("2024-05-01", "Wed, 01 May 2024 00:00:00 GMT"),
        ("20240601T190000", "Sat, 01 Jun 2024 19:00:00 GMT"),
        ("2024-07-04T18:00:00Z", "Thu, 04 Jul 2024 18:00:00 GMT"),
    ])
    def test_parses_known_shapes(self, raw, expected):
        assert rfc822(raw, FIXED_NOW) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("7pm", "Mon, 15 Jan 2024 19:00:00 GMT"),
        ("May 4", "Sat, 04 May 2024 00:00:00 GMT"),
        ("Sat, May 4 7pm", "Sat, 04 May 2024 19:00:00 GMT"),
    ])
    def test_partial_dates_fill_from_run_clock(self, raw, expected):
        assert rfc822(raw, FIXED_NOW) == expected
        assert rfc822(raw, FIXED_NOW) == rfc822(raw, FIXED_NOW)

    @pytest.mark.parametrize("raw", ["", None, "whenever the band shows up"])
    def test_unparseable_defaults_to_now(self, raw):
        assert rfc822(raw, FIXED_NOW) == FIXED_NOW_RFC


class TestImageMime:
    @pytest.mark.parametrize("url,expected", [
        ("https://x.example/a.jpg", "image/jpeg"),
        ("https://x.example/a.JPEG", "image/jpeg"),
        ("https://x.example/a.png?w=300", "image/png"),
        ("https://x.example/a.webp", "image/webp"),
        ("https://x.example/image", "image/jpeg"),
        ("https://x.example/a.svg", "image/jpeg"),
    ])
    def test_extension_sniffing(self, url, expected):
        assert image_mime(url) == expected


class TestPick:
    def test_nested_path(self):
        assert pick({"venue": {"name": "The Hall"}}, "venue.name") == "The Hall"

    def test_list_index(self):
        assert pick({"images": ["a.jpg", "b.jpg"]}, "images.1") == "b.jpg"

    def test_missing(self):
        assert pick({"venue": "x"}, "venue.name") is None
        assert pick({"a": 1}, None) is None
        assert pick({"a": []}, "a.3") is None


class TestImageUrl:
    def test_shapes_normalize_to_same_url(self):
        base = "https://x.example/list"
        want = "https://x.example/a.jpg"
        assert image_url("https://x.example/a.jpg", base) == want
        assert image_url({"url": "https://x.example/a.jpg"}, base) == want
        assert image_url(["https://x.example/a.jpg"], base) == want
        assert image_url([{"url": "/a.jpg"}], base) == want

    def test_list_skips_unusable_entries(self):
        assert image_url([{}, "", "/b.png"], "https://x.example/") == "https://x.example/b.png"

    def test_nothing(self):
        assert image_url(None) == ""
        assert image_url({"caption": "x"}) == ""
        assert image_url([]) == ""


def test_srcset_and_background():
    assert first_from_srcset("/s.jpg 320w, /m.jpg 640w") == "/s.jpg"
    assert first_from_srcset("") == ""
    assert background_image_url("color: red; background-image: url('/bg.png')") == "/bg.png"
    assert background_image_url("background-image:url(/bg2.jpg)") == "/bg2.jpg"
    assert background_image_url("color: red") == ""


def test_first_img_src():
    assert first_img_src('<p>hi <img alt="" src="https://x.example/i.gif"></p>') == "https://x.example/i.gif"
    assert first_img_src("<p>none</p>") == ""


def test_split_selectors():
    assert split_selectors(" .a , .b,, ") == [".a", ".b"]
    assert split_selectors([".a", " .b "]) == [".a", ".b"]
    assert split_selectors(None) == []


def test_join_description_drops_empty_segments():
    assert join_description("The Hall", "2024-05-01") == "The Hall — 2024-05-01"
    assert join_description("", "2024-05-01") == "2024-05-01"
    assert join_description(None, "") == ""


def test_attempt_captures_errors():
    ok = attempt(int, "5")
    assert ok.ok and ok.value == 5
    bad = attempt(int, "x")
    assert not bad.ok
    assert isinstance(bad.error, ValueError)

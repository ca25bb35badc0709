"""Tests for gallery discovery."""

from __future__ import annotations

import random

from conftest import BASE, gallery_html
from gallery_archiver.errors import SiteDownError, TransientNetworkError
from gallery_archiver.models import Subfolder
from gallery_archiver.walker import GalleryWalker


def _walker(site, store, token) -> GalleryWalker:
    return GalleryWalker(site, store, token, rng=random.Random(0))


def _page(section: str, page: int, user: str = "someartist") -> str:
    return f"{BASE}/{section}/{user}/{page}/"


def test_page_urls(site, store, token):
    w = _walker(site, store, token)
    assert w.page_url("someartist", Subfolder.GALLERY, 2) == _page("gallery", 2)
    assert w.page_url("someartist", Subfolder.SCRAPS, 1) == _page("scraps", 1)
    assert w.page_url("someartist", Subfolder.FAVORITES, 1) == f"{BASE}/favorites/someartist/"


def test_new_links_are_persisted_and_known_ones_skipped(site, store, token):
    ids = [str(i) for i in range(100, 120)]
    for sid in ids[:5]:
        store.add(f"{BASE}/view/{sid}/", id=sid)
    site.pages[_page("gallery", 1)] = gallery_html(ids)
    site.pages[_page("gallery", 2)] = gallery_html([])

    result = _walker(site, store, token).walk("someartist")

    assert (result.found, result.new, result.known) == (20, 15, 5)
    assert result.pages == 1
    assert not result.aborted
    assert len(store.rows) == 20
    assert sorted(result.new_urls) == sorted(f"{BASE}/view/{sid}/" for sid in ids[5:])
    assert site.fetched == [_page("gallery", 1), _page("gallery", 2)]
    row = store.rows[f"{BASE}/view/110/"]
    assert row.username == "someartist" and not row.is_scrap and row.id is None


def test_rewalk_adds_nothing(site, store, token):
    site.pages[_page("gallery", 1)] = gallery_html(["1", "2"])
    site.pages[_page("gallery", 2)] = gallery_html([])
    walker = _walker(site, store, token)

    walker.walk("someartist")
    inserts = [w for w in store.writes if w[0] == "insert"]
    second = walker.walk("someartist")

    assert second.new == 0 and second.found == 2
    assert [w for w in store.writes if w[0] == "insert"] == inserts


def test_scraps_are_flagged(site, store, token):
    site.pages[_page("scraps", 1)] = gallery_html(["7"])
    site.pages[_page("scraps", 2)] = gallery_html([])

    _walker(site, store, token).walk("someartist", scraps=True)

    assert store.rows[f"{BASE}/view/7/"].is_scrap


def test_favorites_follow_cursor_and_record_owner(site, store, token):
    second = "/favorites/fan/1234/next"
    site.pages[f"{BASE}/favorites/fan/"] = gallery_html(["1", "2"], next_href=second)
    site.pages[BASE + second] = gallery_html(["3"])

    result = _walker(site, store, token).walk("fan", favorites=True)

    assert result.new == 3 and result.pages == 2
    assert store.favorites == {("fan", f"{BASE}/view/{i}/") for i in ("1", "2", "3")}
    assert all(r.is_favorite and r.favorite_username == "fan" for r in store.rows.values())


def test_transient_failure_backs_off_then_recovers(site, store, token):
    url = _page("gallery", 1)
    site.pages[url] = TransientNetworkError(url, "timeout")
    site.pages[_page("gallery", 2)] = gallery_html([])
    calls = {"n": 0}
    original = site.fetch

    def flaky(u):
        if u == url:
            calls["n"] += 1
            if calls["n"] > 2:
                site.pages[url] = gallery_html(["1"])
        return original(u)

    site.fetch = flaky
    result = _walker(site, store, token).walk("someartist")

    assert result.new == 1
    assert not token.cancelled
    # linear backoff: step * attempt
    assert token.sleeps[:2] == [30.0, 60.0]


def test_outage_aborts_and_cancels(site, store, token):
    url = _page("gallery", 1)
    site.pages[url] = TransientNetworkError(url, "connection refused")

    result = _walker(site, store, token).walk("someartist")

    assert result.aborted
    assert token.cancelled and isinstance(token.reason, SiteDownError)
    assert site.fetched.count(url) == site.cfg.walk_retries
    assert store.writes == []


def test_cancelled_token_stops_before_fetching(site, store, token):
    token.cancel("stop")
    result = _walker(site, store, token).walk("someartist")
    assert result.found == 0
    assert site.fetched == []

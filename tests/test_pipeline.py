"""End-to-end runs of the Archiver facade over fakes."""

from __future__ import annotations

import random

import pytest

from conftest import BASE, gallery_html, submission_html
from gallery_archiver.config import ArchiverConfig, DatabaseConfig
from gallery_archiver.errors import SiteDownError, TransientNetworkError
from gallery_archiver.models import ContentStatus, Subfolder
from gallery_archiver.pipeline import Archiver

CONTENT = "https://d.furaffinity.net/art/someartist/1700000000/1700000000.someartist_1.png"


@pytest.fixture
def archiver(site, store, storage, token):
    cfg = ArchiverConfig(db=DatabaseConfig(), site=site.cfg, storage=storage.cfg)
    with Archiver(cfg, api=site, db=store, storage=storage, token=token, rng=random.Random(0)) as a:
        yield a


def _serve_gallery(site) -> None:
    site.pages[f"{BASE}/gallery/someartist/1/"] = gallery_html(["1"])
    site.pages[f"{BASE}/gallery/someartist/2/"] = gallery_html([])
    site.pages[f"{BASE}/scraps/someartist/1/"] = gallery_html([])
    site.pages[f"{BASE}/favorites/someartist/"] = gallery_html([])
    site.pages[f"{BASE}/view/1/"] = submission_html("1")
    site.files[CONTENT] = b"art"


def test_full_run_over_owned_accounts(archiver, site, store, storage):
    store.accounts.add("someartist")
    _serve_gallery(site)

    stats = archiver.run()

    row = store.rows[f"{BASE}/view/1/"]
    assert row.content_status is ContentStatus.MOVED
    assert storage.path_for("someartist", Subfolder.GALLERY, row.content_name).read_bytes() == b"art"
    assert stats["new"] == 1 and stats["harvested"] == 1 and stats["content_saved"] == 1
    assert store.settings["scrape_in_progress"] is False
    assert store.settings["last_run_at"] is not None


def test_run_without_accounts_does_nothing(archiver, site, store):
    assert archiver.run() == {}
    assert site.fetched == []
    assert store.settings["last_run_at"] is None


def test_outage_aborts_run_and_clears_flag(archiver, site, store):
    url = f"{BASE}/gallery/someartist/1/"
    site.pages[url] = TransientNetworkError(url, "connection refused")

    with pytest.raises(SiteDownError):
        archiver.run(["someartist"])

    assert store.settings["scrape_in_progress"] is False
    # scraps and favorites are never walked once the token is cancelled
    assert all("/gallery/" in u for u in site.fetched)


def test_close_releases_client(site, store, storage, token):
    cfg = ArchiverConfig(db=DatabaseConfig(), site=site.cfg, storage=storage.cfg)
    with Archiver(cfg, api=site, db=store, storage=storage, token=token):
        pass
    assert site.closed


def test_schema_is_prepared_on_startup(archiver, store):
    assert store.schema_ready


def test_interrupted_download_cancels_workers(archiver, token, monkeypatch):
    def interrupted(self):
        raise KeyboardInterrupt

    monkeypatch.setattr("gallery_archiver.pipeline.DownloadOrchestrator.run", interrupted)

    with pytest.raises(KeyboardInterrupt):
        archiver.download()

    assert token.cancelled

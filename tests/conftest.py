"""Shared pytest fixtures for the gallery archiver test suite."""

from __future__ import annotations

import io
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Mapping

import pytest
from PIL import Image

from gallery_archiver.cancel import CancelToken
from gallery_archiver.config import SiteConfig, StorageConfig
from gallery_archiver.db import METADATA_COLUMNS, _validate_fields
from gallery_archiver.errors import FilesystemError, TransientNetworkError
from gallery_archiver.models import (
    Comment,
    ContentStatus,
    Submission,
    ThumbnailStatus,
)
from gallery_archiver.parser import parse_html
from gallery_archiver.storage import DiskStorageService

BASE = "https://www.furaffinity.net"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class InstantToken(CancelToken):
    """A CancelToken whose sleeps return at once and are recorded."""

    def __init__(self) -> None:
        super().__init__()
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        return not self.cancelled


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class FakeStore:
    """Keeps the same status rules as ``Database`` without PostgreSQL."""

    def __init__(self) -> None:
        self.rows: dict[str, Submission] = {}
        self.comments: dict[str, Comment] = {}
        self.favorites: set[tuple[str, str]] = set()
        self.accounts: set[str] = set()
        self.settings: dict[str, Any] = {"scrape_in_progress": False, "last_run_at": None}
        self.schema_ready = False
        self.writes: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def init_schema(self) -> None:
        self.schema_ready = True

    def add(self, url: str, **fields: Any) -> Submission:
        row = Submission(url=url, **fields)
        self.rows[url] = row
        return row

    def _write(self, op: str, url: str) -> None:
        self.writes.append((op, url))

    # discovery
    def insert_links(self, urls: Iterable[str], is_scrap: bool, username: str) -> int:
        added = 0
        with self._lock:
            for url in dict.fromkeys(urls):
                if url not in self.rows:
                    self.rows[url] = Submission(url=url, username=username, is_scrap=is_scrap)
                    self._write("insert", url)
                    added += 1
        return added

    def known_urls(self, urls: Iterable[str]) -> set[str]:
        return {u for u in urls if u in self.rows}

    def delete_submission(self, url: str) -> bool:
        with self._lock:
            self._write("delete", url)
            return self.rows.pop(url, None) is not None

    # metadata
    def update_metadata(self, url: str, fields: Mapping[str, Any]) -> bool:
        clean = _validate_fields(fields, METADATA_COLUMNS)
        with self._lock:
            row = self.rows.get(url)
            if row is None or not clean:
                return False
            if row.id is not None:
                clean.pop("id", None)
            elif "id" in clean and row.content_status is ContentStatus.DISCOVERED:
                row.content_status = ContentStatus.PENDING
            self.rows[url] = replace(row, **clean)
            self._write("metadata", url)
        return True

    def save_comments(self, comments: Iterable[Comment]) -> int:
        saved = 0
        for c in comments:
            self.comments[c.id] = c
            saved += 1
        return saved

    def save_favorites(self, username: str, urls: Iterable[Any]) -> int:
        added = 0
        with self._lock:
            for url in urls:
                if not isinstance(url, str) or url not in self.rows:
                    continue
                if (username, url) not in self.favorites:
                    self.favorites.add((username, url))
                    added += 1
                row = self.rows[url]
                row.is_favorite = True
                row.favorite_username = username
        return added

    # transitions
    def _transition(self, url: str, column: str, to: Any, allowed: tuple, **extra: Any) -> bool:
        with self._lock:
            row = self.rows.get(url)
            if row is None or getattr(row, column) not in allowed:
                return False
            setattr(row, column, to)
            for k, v in extra.items():
                setattr(row, k, v)
            self._write(f"{column}={to.value}", url)
        return True

    def mark_content_saved(self, url: str) -> bool:
        return self._transition(url, "content_status", ContentStatus.SAVED, (ContentStatus.PENDING,))

    def mark_content_missing(self, url: str) -> bool:
        return self._transition(url, "content_status", ContentStatus.MISSING, (ContentStatus.PENDING,))

    def mark_content_moved(self, url: str) -> bool:
        return self._transition(url, "content_status", ContentStatus.MOVED, (ContentStatus.SAVED,))

    def reset_content(self, url: str) -> bool:
        return self._transition(
            url, "content_status", ContentStatus.PENDING, (ContentStatus.SAVED, ContentStatus.MOVED)
        )

    def mark_thumbnail_saved(self, url: str, thumbnail_url: str, thumbnail_name: str) -> bool:
        return self._transition(
            url,
            "thumbnail_status",
            ThumbnailStatus.SAVED,
            (ThumbnailStatus.PENDING,),
            thumbnail_url=thumbnail_url,
            thumbnail_name=thumbnail_name,
        )

    def mark_thumbnail_missing(self, url: str) -> bool:
        return self._transition(url, "thumbnail_status", ThumbnailStatus.MISSING, (ThumbnailStatus.PENDING,))

    # queries
    def get_submission(self, url: str) -> Submission | None:
        return self.rows.get(url)

    def query_unharvested(self) -> list[str]:
        return sorted((u for u, r in self.rows.items() if r.id is None), reverse=True)

    def query_unsaved_content(self, name: str | None = None) -> list[Submission]:
        def wanted(r: Submission) -> bool:
            if r.content_status is not ContentStatus.PENDING or not r.content_url:
                return False
            if not r.content_name or r.content_name.endswith("."):
                return False
            if name:
                return any(name.lower() in (v or "").lower() for v in (r.username, r.account_name))
            return r.username is not None

        with self._lock:
            rows = [replace(r) for r in self.rows.values() if wanted(r)]
        rows.sort(key=lambda r: r.url)
        rows.sort(key=lambda r: r.content_name or "", reverse=True)
        return rows

    def query_unsaved_thumbnails(self) -> list[Submission]:
        with self._lock:
            return [
                replace(r)
                for r in self.rows.values()
                if r.thumbnail_status is ThumbnailStatus.PENDING
                and r.content_status is not ContentStatus.DISCOVERED
                and r.username is not None
                and r.wants_thumbnail
            ]

    def query_unmoved_content(self) -> list[Submission]:
        return [replace(r) for r in self.rows.values() if r.content_status is ContentStatus.SAVED]

    def query_invalid_files(self) -> list[Submission]:
        return [
            replace(r)
            for r in self.rows.values()
            if r.content_status in (ContentStatus.SAVED, ContentStatus.MOVED)
            and (not r.content_name or r.content_name.endswith("."))
        ]

    def query_needs_repair(self, username: str | None = None) -> list[str]:
        return sorted(
            (
                r.url
                for r in self.rows.values()
                if r.id is not None
                and (not username or username in (r.username, r.account_name))
                and (r.rating is None or r.category is None or (r.content_name or "").endswith("."))
            ),
            reverse=True,
        )

    # accounts & settings
    def owned_accounts(self) -> list[str]:
        return sorted(self.accounts)

    def get_settings(self) -> dict[str, Any]:
        return dict(self.settings)

    def update_settings(self, **fields: Any) -> None:
        self.settings.update(fields)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Scripted site client
# ---------------------------------------------------------------------------


class FakeSiteClient:
    """Serves canned pages and files.

    ``pages`` maps url to HTML or to an exception to raise; ``files`` maps
    url to bytes; ``download_failures`` makes a url fail that many times
    before it succeeds.
    """

    def __init__(self, cfg: SiteConfig | None = None) -> None:
        self.cfg = cfg or SiteConfig(base_url=BASE, request_delay=0)
        self.pages: dict[str, str | Exception] = {}
        self.files: dict[str, bytes] = {}
        self.download_failures: dict[str, int] = {}
        self.site_active = True
        self.fetched: list[str] = []
        self.downloads: list[str] = []
        self.closed = False

    def fetch(self, url: str):
        self.fetched.append(url)
        page = self.pages.get(url)
        if page is None:
            raise TransientNetworkError(url, "404 Not Found")
        if isinstance(page, Exception):
            raise page
        return parse_html(page)

    def exists(self, url: str) -> bool:
        return self.site_active and url in self.files

    def is_site_active(self) -> bool:
        return self.site_active

    def download(self, url: str, dest: Path, on_progress=None, **kwargs: Any) -> int:
        self.downloads.append(url)
        left = self.download_failures.get(url, 0)
        if left:
            self.download_failures[url] = left - 1
            raise TransientNetworkError(url, "connection reset")
        data = self.files[url]
        try:
            dest.write_bytes(data)
        except OSError as exc:
            raise FilesystemError(dest, exc) from exc
        if on_progress is not None:
            on_progress(len(data), len(data))
        return len(data)

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# HTML builders
# ---------------------------------------------------------------------------


def gallery_html(ids: Iterable[str], next_href: str | None = None) -> str:
    figures = "".join(
        f'<figure id="sid-{i}"><b><u><a href="/view/{i}/"><img src="//t.x/{i}.jpg"></a></u></b>'
        f'<figcaption><p><a href="/view/{i}/" title="Piece {i}">Piece {i}</a></p>'
        f'<p><i>by</i> <a href="/user/someartist/">someartist</a></p></figcaption></figure>'
        for i in ids
    )
    pagination = f'<div class="pagination"><a class="button right" href="{next_href}">Next</a></div>' if next_href else ""
    return f'<html><body><section class="gallery">{figures}</section>{pagination}</body></html>'


def submission_html(
    sid: str,
    *,
    username: str = "Some_Artist",
    content_url: str | None = None,
    category: str = "Artwork (Digital)",
    rating: str = "General",
    date_title: str = "Jan 1, 2024 12:00 PM",
    thumbnail: str | None = None,
    comments: str = "",
) -> str:
    content_url = content_url or f"//d.furaffinity.net/art/someartist/1700000000/1700000000.someartist_{sid}.png"
    kind = "text" if thumbnail else "image"
    preview = f'<img id="submissionImg" src="{thumbnail}">' if thumbnail else ""
    return f"""<html><body><div id="columnpage" class="page-content-type-{kind}">
      <div class="submission-content">{preview}</div>
      <div class="submission-id-sub-container">
        <div class="submission-title"><h2><p>Piece {sid}</p></h2></div>
        <a href="/user/{username.lower()}/"><strong>{username}</strong></a>
        <strong><span class="popup_date" title="{date_title}">2 days ago</span></strong>
      </div>
      <div class="submission-description">Hello <b>world</b></div>
      <section class="tags-row"><span class="tags"><a href="/search/@keywords cat">cat</a></span>
        <span class="tags"><a href="/search/@keywords dog_art">dog_art</a></span></section>
      <div class="download"><a href="{content_url}">Download</a></div>
      <div class="rating"><span class="rating-box inline">{rating}</span></div>
      <section class="info text"><div><div>{category}</div></div></section>
      <div id="comments-submission">{comments}</div>
    </div></body></html>"""


def comment_html(cid: str, username: str = "Fan_One", text: str = "Nice!", deleted: bool = False) -> str:
    if deleted:
        return (
            f'<div class="comment_container" style="width:97%"><a class="comment_anchor" id="cid:{cid}"></a>'
            f'<comment-container class="deleted-comment-container">Comment hidden</comment-container></div>'
        )
    return (
        f'<div class="comment_container" style="width:100%"><a class="comment_anchor" id="cid:{cid}"></a>'
        f"<comment-container><comment-username>{username}</comment-username>"
        f"<comment-title>Commenter</comment-title>"
        f'<comment-date><span title="Jan 2, 2024 01:00 PM">1 day ago</span></comment-date>'
        f'<comment-user-text><div class="user-submitted-links">{text}</div></comment-user-text>'
        f"</comment-container></div>"
    )


DELETED_HTML = (
    '<html><body><section class="notice-message"><div class="section-body">'
    "<h2>System Message</h2>The submission you are trying to find is not in our database."
    "</div></section></body></html>"
)


def png_bytes(size: tuple[int, int] = (8, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 50, 50)).save(buf, format="PNG")
    return buf.getvalue()


def pending_row(store: FakeStore, sid: str, *, owner: str = "someartist", **fields: Any) -> Submission:
    """A harvested row ready for download."""
    defaults: dict[str, Any] = {
        "id": sid,
        "username": owner,
        "account_name": owner,
        "content_url": f"https://d.furaffinity.net/art/{owner}/{sid}/{sid}.{owner}_art.png",
        "content_name": f"{sid}.{owner}_art.png",
        "rating": "General",
        "category": "Artwork (Digital)",
        "content_status": ContentStatus.PENDING,
    }
    defaults.update(fields)
    return store.add(f"{BASE}/view/{sid}/", **defaults)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def token() -> InstantToken:
    return InstantToken()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def site() -> FakeSiteClient:
    return FakeSiteClient()


@pytest.fixture
def storage(tmp_path: Path) -> DiskStorageService:
    return DiskStorageService(StorageConfig(root=tmp_path / "archive"))

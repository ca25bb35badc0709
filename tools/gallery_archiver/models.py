"""Domain types shared by the store and the pipeline stages."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping


class ContentStatus(str, enum.Enum):
    DISCOVERED = "discovered"  # url only, metadata not harvested
    PENDING = "pending"  # metadata harvested, content not on disk
    SAVED = "saved"
    MISSING = "missing"  # sticky: never re-attempted
    MOVED = "moved"  # saved and sitting at its canonical path


class ThumbnailStatus(str, enum.Enum):
    PENDING = "pending"
    SAVED = "saved"
    MISSING = "missing"


class Subfolder(str, enum.Enum):
    GALLERY = "gallery"
    SCRAPS = "scraps"
    FAVORITES = "favorites"
    THUMBNAIL = "thumbnail"


# Content categories whose detail page embeds an inline preview image.
THUMBNAIL_CATEGORIES: tuple[str, ...] = ("/stories/", "/music/", "/poetry/")


@dataclass
class Submission:
    url: str
    id: str | None = None
    title: str | None = None
    description: str | None = None
    tags: str | None = None
    username: str | None = None
    account_name: str | None = None
    content_url: str | None = None
    content_name: str | None = None
    thumbnail_url: str | None = None
    thumbnail_name: str | None = None
    date_uploaded: str | None = None
    rating: str | None = None
    category: str | None = None
    is_scrap: bool = False
    is_favorite: bool = False
    favorite_username: str | None = None
    content_status: ContentStatus = ContentStatus.DISCOVERED
    thumbnail_status: ThumbnailStatus = ThumbnailStatus.PENDING

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Submission:
        known = {k: row[k] for k in cls.__dataclass_fields__ if k in row}
        if "content_status" in known:
            known["content_status"] = ContentStatus(known["content_status"])
        if "thumbnail_status" in known:
            known["thumbnail_status"] = ThumbnailStatus(known["thumbnail_status"])
        for flag in ("is_scrap", "is_favorite"):
            if flag in known:
                known[flag] = bool(known[flag])
        return cls(**known)

    # ── legacy flag views ────────────────────────────────────────

    @property
    def is_content_saved(self) -> bool:
        return self.content_status in (ContentStatus.SAVED, ContentStatus.MOVED)

    @property
    def content_missing(self) -> bool:
        return self.content_status is ContentStatus.MISSING

    @property
    def moved_content(self) -> bool:
        return self.content_status is ContentStatus.MOVED

    @property
    def is_thumbnail_saved(self) -> bool:
        return self.thumbnail_status is ThumbnailStatus.SAVED

    @property
    def thumbnail_missing(self) -> bool:
        return self.thumbnail_status is ThumbnailStatus.MISSING

    @property
    def owner(self) -> str | None:
        """Whose directory the files belong in."""
        if self.is_favorite and self.favorite_username:
            return self.favorite_username
        return self.account_name or self.username

    @property
    def subfolder(self) -> Subfolder:
        if self.is_favorite:
            return Subfolder.FAVORITES
        if self.is_scrap:
            return Subfolder.SCRAPS
        return Subfolder.GALLERY

    @property
    def wants_thumbnail(self) -> bool:
        return any(c in (self.content_url or "") for c in THUMBNAIL_CATEGORIES)


@dataclass
class SubmissionMetadata:
    """Fields extracted from a detail page, ready for ``Database.update_metadata``."""
    id: str
    title: str = ""
    description: str = ""
    tags: str | None = None
    username: str = ""
    account_name: str = ""
    content_url: str | None = None
    content_name: str | None = None
    thumbnail_url: str | None = None
    date_uploaded: str = ""
    rating: str = ""
    category: str = ""

    def as_fields(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Comment:
    id: str
    submission_id: str
    username: str = ""
    account_name: str = ""
    width: str | None = None
    description: str = ""
    subtitle: str = ""
    date: str = ""


@dataclass
class WalkResult:
    found: int = 0
    new: int = 0
    pages: int = 0
    aborted: bool = False
    new_urls: list[str] = field(default_factory=list)

    @property
    def known(self) -> int:
        return self.found - self.new

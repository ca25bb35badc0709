"""Configuration and environment settings for the archiver."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "archiver"
    user: str = "archiver"
    password: str = "archiver"

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}"

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            dbname=os.getenv("DB_NAME", "archiver"),
            user=os.getenv("DB_USER", "archiver"),
            password=os.getenv("DB_PASSWORD", "archiver"),
        )


@dataclass(frozen=True)
class SiteConfig:
    """Site client configuration.  Session cookies come from a logged-in browser."""
    base_url: str = "https://www.furaffinity.net"
    cookie_a: str = ""
    cookie_b: str = ""
    request_delay: float = 1.0  # minimum seconds between requests
    page_timeout: float = 30.0
    download_timeout: float = 20.0  # response timeout for file transfers
    walk_retries: int = 6
    download_retries: int = 5
    backoff_step: float = 30.0  # linear backoff: backoff_step * attempt

    @property
    def cookies(self) -> dict[str, str]:
        return {k: v for k, v in (("a", self.cookie_a), ("b", self.cookie_b)) if v}

    @property
    def harvest_retries(self) -> int:
        return self.walk_retries // 2

    @classmethod
    def from_env(cls) -> SiteConfig:
        return cls(
            base_url=os.getenv("FA_BASE_URL", "https://www.furaffinity.net").rstrip("/"),
            cookie_a=os.getenv("FA_COOKIE_A", ""),
            cookie_b=os.getenv("FA_COOKIE_B", ""),
        )


@dataclass(frozen=True)
class StorageConfig:
    root: Path = Path("fa_gallery_downloader")
    dir_mode: int = 0o770

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls(root=Path(os.getenv("ARCHIVE_DIR", "fa_gallery_downloader")))


@dataclass
class ArchiverConfig:
    db: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    site: SiteConfig = field(default_factory=SiteConfig.from_env)
    storage: StorageConfig = field(default_factory=StorageConfig.from_env)
    download_comments: bool = True
    download_thumbnails: bool = True
    channel_size: int = 16

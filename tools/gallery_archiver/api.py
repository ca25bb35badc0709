"""Site client – rate-limited page fetcher, probes and file downloader."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable

import httpx
from bs4 import BeautifulSoup

from .config import SiteConfig
from .errors import FilesystemError, TransientNetworkError
from .parser import parse_html

logger = logging.getLogger("archiver.api")

ProgressCallback = Callable[[int, "int | None"], None]

USER_AGENT = "gallery-archiver/1.0 (+personal archive)"


class SiteClient:
    """Thin wrapper around the site's HTML pages with rate limiting.

    Pages are fetched once per call; retry policy belongs to the caller.
    The client is shared by the download workers, so throttling is locked.
    """

    def __init__(self, cfg: SiteConfig | None = None, *, transport: httpx.BaseTransport | None = None) -> None:
        self.cfg = cfg or SiteConfig()
        self._last_request: float = 0.0
        self._lock = threading.Lock()
        self._client = httpx.Client(
            timeout=self.cfg.page_timeout,
            headers={"User-Agent": USER_AGENT},
            cookies=self.cfg.cookies,
            follow_redirects=True,
            transport=transport,
        )

    # ── rate limiting ────────────────────────────────────────────
    def _throttle(self) -> None:
        with self._lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.cfg.request_delay:
                time.sleep(self.cfg.request_delay - elapsed)
            self._last_request = time.monotonic()

    # ── pages ────────────────────────────────────────────────────

    def fetch(self, url: str) -> BeautifulSoup:
        """GET a page and parse it.  Any failure raises TransientNetworkError."""
        self._throttle()
        try:
            resp = self._client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("Fetch failed for %s: %s", url, exc)
            raise TransientNetworkError(url, exc) from exc
        return parse_html(resp.text)

    # ── probes ───────────────────────────────────────────────────

    def exists(self, url: str) -> bool:
        """Header-only existence check."""
        self._throttle()
        try:
            resp = self._client.head(url)
        except httpx.HTTPError as exc:
            logger.debug("HEAD failed for %s: %s", url, exc)
            return False
        return resp.is_success

    def is_site_active(self) -> bool:
        """Used only to tell NotFound apart from an outage."""
        try:
            resp = self._client.get(self.cfg.base_url + "/")
        except httpx.HTTPError as exc:
            logger.warning("Site check failed: %s", exc)
            return False
        return resp.status_code < 500

    # ── downloads ────────────────────────────────────────────────

    def download(
        self,
        url: str,
        dest: Path,
        on_progress: ProgressCallback | None = None,
        *,
        chunk_size: int = 64 * 1024,
    ) -> int:
        """Stream ``url`` into ``dest`` via a ``.part`` file.  Returns bytes written.

        The partial file is removed on any failure, including one raised by
        ``on_progress``.
        """
        part = dest.with_name(dest.name + ".part")
        self._throttle()
        transferred = 0
        replaced = False
        try:
            with self._client.stream("GET", url, timeout=self.cfg.download_timeout) as resp:
                resp.raise_for_status()
                total = int(resp.headers["content-length"]) if "content-length" in resp.headers else None
                with open(part, "wb") as fh:
                    for chunk in resp.iter_bytes(chunk_size):
                        fh.write(chunk)
                        transferred += len(chunk)
                        if on_progress:
                            on_progress(transferred, total)
            os.replace(part, dest)
            replaced = True
        except httpx.HTTPError as exc:
            raise TransientNetworkError(url, exc) from exc
        except OSError as exc:
            raise FilesystemError(dest, exc) from exc
        finally:
            if not replaced:
                _discard(part)
        return transferred

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SiteClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.error("Could not remove partial file %s: %s", path, exc)

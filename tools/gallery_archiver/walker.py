"""Gallery walking – discover submission links page by page."""

from __future__ import annotations

import logging
import random

from .api import SiteClient
from .cancel import CancelToken
from .config import SiteConfig
from .db import Database
from .errors import SiteDownError, TransientNetworkError
from .models import Subfolder, WalkResult
from .parser import extract_gallery_links, next_page_url

logger = logging.getLogger("archiver.walker")


class GalleryWalker:
    """Paginates a user's gallery, scraps or favorites and queues new links.

    Links already in the store are filtered out before anything is written,
    so re-walking a gallery only ever adds what is new.
    """

    def __init__(
        self,
        api: SiteClient,
        db: Database,
        token: CancelToken,
        cfg: SiteConfig | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.api = api
        self.db = db
        self.token = token
        self.cfg = cfg or api.cfg
        self.rng = rng or random.Random()

    def page_url(self, username: str, section: Subfolder, page: int) -> str:
        if section is Subfolder.FAVORITES:
            return f"{self.cfg.base_url}/favorites/{username}/"
        return f"{self.cfg.base_url}/{section.value}/{username}/{page}/"

    def walk(self, username: str, *, scraps: bool = False, favorites: bool = False) -> WalkResult:
        section = Subfolder.FAVORITES if favorites else Subfolder.SCRAPS if scraps else Subfolder.GALLERY
        result = WalkResult()
        page = 1
        cursor: str | None = None
        attempt = 0
        logger.info("Searching %s's %s for submission links...", username, section.value)

        while not self.token.cancelled:
            url = cursor or self.page_url(username, section, page)
            try:
                doc = self.api.fetch(url)
            except TransientNetworkError as exc:
                attempt += 1
                if attempt >= self.cfg.walk_retries:
                    logger.error("Site might be down, please try again later (%s)", exc)
                    self.token.cancel(SiteDownError(f"Gallery page unreachable: {url}"))
                    result.aborted = True
                    break
                wait = self.cfg.backoff_step * attempt
                logger.warning("Site might be down, retrying in %d seconds", wait)
                self.token.sleep(wait)
                continue
            attempt = 0

            links = extract_gallery_links(doc, self.cfg.base_url)
            if not links:
                break
            result.pages += 1
            result.found += len(links)

            known = self.db.known_urls(links)
            new = [u for u in links if u not in known]
            if new:
                self.db.insert_links(new, scraps, username)
                if favorites:
                    self.db.save_favorites(username, new)
                result.new += len(new)
                result.new_urls.extend(new)
            else:
                logger.info("No new submissions found on page %d, checking next page...", page)

            page += 1
            if favorites:
                cursor = next_page_url(doc, self.cfg.base_url)
                if cursor is None:
                    break
            self.token.sleep(self.rng.uniform(1.0, 2.5))

        if not self.token.cancelled:
            logger.info(
                "%d submissions found, %d new submissions to download, %d already downloaded",
                result.found, result.new, result.known,
            )
        return result

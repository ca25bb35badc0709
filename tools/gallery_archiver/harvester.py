"""Metadata harvesting – fill in discovered links from their detail pages."""

from __future__ import annotations

import logging
import random

from bs4 import BeautifulSoup

from .api import SiteClient
from .cancel import CancelToken
from .config import SiteConfig
from .db import Database
from .errors import TransientNetworkError
from .parser import extract_comments, extract_submission, has_submission, is_deleted_page

logger = logging.getLogger("archiver.harvester")


class MetadataHarvester:
    """Fetches the detail page of every link that has no ``id`` yet.

    A page that will not load is retried with linear backoff; once the
    budget is spent the link is skipped so one bad page never stalls the
    queue.  Links the site reports as deleted are removed from the store.
    """

    def __init__(
        self,
        api: SiteClient,
        db: Database,
        token: CancelToken,
        cfg: SiteConfig | None = None,
        *,
        download_comments: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.api = api
        self.db = db
        self.token = token
        self.cfg = cfg or api.cfg
        self.download_comments = download_comments
        self.rng = rng or random.Random()
        self.stats = {"harvested": 0, "deleted": 0, "skipped": 0, "comments": 0}

    def _load(self, url: str) -> BeautifulSoup | None:
        """The parsed page if it shows a submission or the deleted notice, else None."""
        try:
            doc = self.api.fetch(url)
        except TransientNetworkError as exc:
            logger.debug("Could not load %s: %s", url, exc)
            return None
        if has_submission(doc):
            return doc
        if is_deleted_page(doc):
            return doc
        logger.info("Not found/deleted: %s", url)
        return None

    def harvest(self, urls: list[str] | None = None) -> dict[str, int]:
        links = urls if urls is not None else self.db.query_unharvested()
        if not links or self.token.cancelled:
            return self.stats
        logger.info("Saving data for %d submissions...", len(links))

        index = 0
        attempt = 0
        while index < len(links) and not self.token.cancelled:
            url = links[index]
            doc = self._load(url)

            if doc is not None and not has_submission(doc):
                logger.info("Confirmed deleted, removing: %s", url)
                self.db.delete_submission(url)
                self.stats["deleted"] += 1
                index += 1
                attempt = 0
                continue

            if doc is None:
                attempt += 1
                if attempt < self.cfg.harvest_retries:
                    wait = self.cfg.backoff_step * attempt
                    logger.warning("Site might be down, retrying in %d seconds", wait)
                    self.token.sleep(wait)
                    continue
                logger.warning("Giving up on %s after %d attempts", url, attempt)
                self.stats["skipped"] += 1
                attempt = 0
                index += 1
                self.token.sleep(self.rng.uniform(2.0, 3.5))
                continue
            attempt = 0

            try:
                meta = extract_submission(doc, url, self.cfg.base_url)
            except ValueError as exc:
                logger.error("Could not read submission page %s: %s", url, exc)
                self.stats["skipped"] += 1
                index += 1
                continue
            self.db.update_metadata(url, meta.as_fields())
            self.stats["harvested"] += 1
            if self.download_comments:
                self.harvest_comments(doc, meta.id)

            index += 1
            if index % 2:
                self.token.sleep(self.rng.uniform(1.0, 2.5))

        if not self.token.cancelled:
            logger.info("All submission metadata saved!")
        return self.stats

    def repair(self, username: str | None = None) -> dict[str, int]:
        """Re-read pages whose stored metadata is incomplete."""
        urls = self.db.query_needs_repair(username)
        logger.info("%d submissions need repair", len(urls))
        return self.harvest(urls)

    def harvest_comments(self, doc: BeautifulSoup, submission_id: str) -> int:
        comments = extract_comments(doc, submission_id)
        if not comments:
            return 0
        saved = self.db.save_comments(comments)
        self.stats["comments"] += saved
        return saved

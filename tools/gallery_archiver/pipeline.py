"""Pipeline facade – walk → harvest → download → reconcile."""

from __future__ import annotations

import logging
import random
from collections import Counter
from datetime import datetime, timezone

from .api import SiteClient
from .cancel import CancelToken
from .config import ArchiverConfig
from .db import Database
from .downloader import DownloadOrchestrator, ProgressHook
from .harvester import MetadataHarvester
from .models import WalkResult
from .reconciler import Reconciler
from .storage import DiskStorageService
from .walker import GalleryWalker

logger = logging.getLogger("archiver.pipeline")


class Archiver:
    """Owns the shared client, store, disk layout and cancel token.

    Collaborators may be passed in; anything omitted is built from ``cfg``.
    The schema is brought up to date on construction.
    """

    def __init__(
        self,
        cfg: ArchiverConfig | None = None,
        *,
        api: SiteClient | None = None,
        db: Database | None = None,
        storage: DiskStorageService | None = None,
        token: CancelToken | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.cfg = cfg or ArchiverConfig()
        self.api = api or SiteClient(self.cfg.site)
        self.db = db or Database(self.cfg.db)
        self.storage = storage or DiskStorageService(self.cfg.storage)
        self.token = token or CancelToken()
        self.rng = rng or random.Random()
        try:
            self.db.init_schema()
        except BaseException:
            self.close()
            raise
        self.reconciler = Reconciler(self.db, self.storage, self.token)
        self.stats: Counter[str] = Counter()

    # ── stages ───────────────────────────────────────────────────

    def walk(self, username: str, *, scraps: bool = False, favorites: bool = False) -> WalkResult:
        walker = GalleryWalker(self.api, self.db, self.token, self.cfg.site, rng=self.rng)
        result = walker.walk(username, scraps=scraps, favorites=favorites)
        self.stats["found"] += result.found
        self.stats["new"] += result.new
        return result

    def walk_account(self, username: str) -> None:
        """Gallery, then scraps, then favorites."""
        for options in ({}, {"scraps": True}, {"favorites": True}):
            if self.token.cancelled:
                return
            self.walk(username, **options)

    def harvest(self, *, repair: bool = False, username: str | None = None) -> dict[str, int]:
        harvester = MetadataHarvester(
            self.api,
            self.db,
            self.token,
            self.cfg.site,
            download_comments=self.cfg.download_comments,
            rng=self.rng,
        )
        stats = harvester.repair(username) if repair else harvester.harvest()
        self.stats.update(stats)
        return stats

    def download(self, *, username: str | None = None, on_progress: ProgressHook | None = None) -> Counter[str]:
        orch = DownloadOrchestrator(
            self.api,
            self.db,
            self.storage,
            self.token,
            self.cfg.site,
            thumbnails=self.cfg.download_thumbnails,
            channel_size=self.cfg.channel_size,
            name_filter=username,
            on_progress=on_progress,
            rng=self.rng,
        )
        try:
            stats = orch.run()
        except KeyboardInterrupt:
            orch.stop()
            raise
        finally:
            orch.close()
        self.stats.update(stats)
        return stats

    def reconcile(self) -> dict[str, int]:
        self.reconciler.prune_invalid()
        return self.reconciler.reorganize()

    # ── full run ─────────────────────────────────────────────────

    def run(self, usernames: list[str] | None = None, *, on_progress: ProgressHook | None = None) -> Counter[str]:
        """Archive the given accounts, or every owned account when none are given.

        Raises the cancellation reason (usually SiteDownError) if the run was
        cut short.
        """
        names = list(usernames) if usernames else self.db.owned_accounts()
        if not names:
            logger.warning("No accounts to archive; add one with 'accounts add'")
            return self.stats

        self.db.update_settings(scrape_in_progress=True)
        try:
            self.reconcile()
            for name in names:
                if self.token.cancelled:
                    break
                logger.info("Archiving %s", name)
                self.walk_account(name)
            if not self.token.cancelled:
                self.harvest()
            if not self.token.cancelled:
                self.download(on_progress=on_progress)
            if not self.token.cancelled:
                self.reconciler.reorganize()
        finally:
            self.db.update_settings(scrape_in_progress=False, last_run_at=datetime.now(timezone.utc))
        self.token.raise_if_cancelled()
        logger.info("Archive run complete for %s", ", ".join(names))
        return self.stats

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self.api.close()
        self.db.close()

    def __enter__(self) -> Archiver:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

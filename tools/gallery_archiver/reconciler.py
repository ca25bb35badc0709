"""Reconciliation – bring the disk layout back in line with the store."""

from __future__ import annotations

import logging

from .cancel import CancelToken
from .db import Database
from .errors import FilesystemError
from .storage import DiskStorageService, is_valid_filename

logger = logging.getLogger("archiver.reconciler")


class Reconciler:
    """Moves saved files into their owner's folders and purges bad records.

    Both passes only act on rows in a given state and leave them in a
    different one, so running either twice changes nothing the second time.
    """

    def __init__(self, db: Database, storage: DiskStorageService, token: CancelToken | None = None) -> None:
        self.db = db
        self.storage = storage
        self.token = token or CancelToken()
        self.stats = {"moved": 0, "already_moved": 0, "left": 0, "pruned": 0}

    def reorganize(self) -> dict[str, int]:
        rows = self.db.query_unmoved_content()
        if not rows:
            return self.stats
        logger.info("Organizing %d saved files...", len(rows))

        for row in rows:
            if self.token.cancelled:
                break
            owner, name = row.owner, row.content_name
            if not owner or not is_valid_filename(name):
                logger.warning("Cannot place %s: owner=%r name=%r", row.url, owner, name)
                self.stats["left"] += 1
                continue
            dest = self.storage.path_for(owner, row.subfolder, name)
            if dest.is_file():
                self.stats["already_moved"] += 1
            else:
                # the downloader accepts a copy in any of the owner's folders or the legacy root
                src = self.storage.find_existing(owner, name)
                if src is None:
                    logger.warning("%s is not anywhere under %s", name, self.storage.root)
                    self.stats["left"] += 1
                    continue
                try:
                    self.storage.move(src, dest)
                except FilesystemError as exc:
                    logger.error("Could not move %s: %s", name, exc)
                    self.stats["left"] += 1
                    continue
                self.stats["moved"] += 1
            self.db.mark_content_moved(row.url)

        logger.info(
            "Moved %d files, %d already in place, %d left for the next pass",
            self.stats["moved"], self.stats["already_moved"], self.stats["left"],
        )
        return self.stats

    def prune_invalid(self) -> int:
        """Delete files saved under malformed names and queue them again."""
        rows = self.db.query_invalid_files()
        pruned = 0
        for row in rows:
            if self.token.cancelled:
                break
            name = row.content_name
            if name and row.owner and not self._remove_all(row.owner, name):
                continue
            if self.db.reset_content(row.url):
                pruned += 1
        if pruned:
            logger.info("Reset %d submissions with invalid file names", pruned)
        self.stats["pruned"] += pruned
        return pruned

    def _remove_all(self, owner: str, name: str) -> bool:
        """Delete every copy of ``name``; False if one could not be removed."""
        for path in self.storage.candidates(owner, name):
            try:
                if self.storage.remove(path):
                    logger.info("Removed invalid file %s", path)
            except FilesystemError as exc:
                logger.error("Skipping %s: %s", name, exc)
                return False
        return True

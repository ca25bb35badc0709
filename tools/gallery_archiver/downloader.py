"""Download orchestration – content and thumbnail workers with outage detection."""

from __future__ import annotations

import enum
import logging
import queue
import random
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from .api import SiteClient
from .cancel import CancelToken
from .config import SiteConfig
from .db import Database
from .errors import FilesystemError, NotFoundError, SiteDownError, TransientNetworkError
from .models import Submission, Subfolder
from .parser import extract_thumbnail_url
from .storage import DiskStorageService

logger = logging.getLogger("archiver.downloader")

# (worker name, file name, bytes transferred, total bytes or None)
ProgressHook = Callable[[str, str, int, "int | None"], None]

_STOP = object()


class Outcome(enum.Enum):
    SAVED = "saved"
    EXISTING = "existing"  # file already on disk, nothing transferred
    MISSING = "missing"
    FAILED = "failed"  # retry budget spent; stays pending
    SKIPPED = "skipped"


class WorkerSupervisor:
    """Runs named long-lived workers on a small thread pool."""

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="archiver")
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def is_running(self, name: str) -> bool:
        with self._lock:
            fut = self._futures.get(name)
            return fut is not None and not fut.done()

    def start(self, name: str, fn: Callable[[], None]) -> bool:
        """Submit ``fn`` unless a worker with this name is still running."""
        with self._lock:
            fut = self._futures.get(name)
            if fut is not None and not fut.done():
                return False
            self._futures[name] = self._executor.submit(fn)
        logger.debug("Started %s worker", name)
        return True

    def join(self) -> None:
        """Wait for every worker, including ones started while waiting.

        The first worker exception is re-raised once all have finished.
        """
        first_error: BaseException | None = None
        seen: set[int] = set()
        while True:
            with self._lock:
                pending = [(n, f) for n, f in self._futures.items() if id(f) not in seen]
            if not pending:
                break
            for name, fut in pending:
                seen.add(id(fut))
                exc = fut.exception()
                if exc is not None:
                    logger.error("%s worker failed: %s", name, exc)
                    first_error = first_error or exc
        if first_error is not None:
            raise first_error

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class _Worker:
    """Polls the store and feeds a bounded channel drained by one consumer thread.

    The feeder waits for the channel to empty before polling again, so an
    item is never queued twice.  A poll that moves no item to a final state
    ends the worker; those items are retried on the next run.
    """

    name = "worker"
    item_pause: tuple[float, float] = (2.0, 4.0)
    poll_pause: tuple[float, float] = (2.0, 4.0)

    def __init__(self, orch: DownloadOrchestrator) -> None:
        self.orch = orch
        self.token = orch.token
        self.error: BaseException | None = None
        self._progress = 0

    # subclass hooks
    def query(self) -> list[Submission]:
        raise NotImplementedError

    def process(self, item: Submission) -> Outcome:
        raise NotImplementedError

    def mark_missing(self, item: Submission) -> None:
        raise NotImplementedError

    def on_poll(self) -> None:
        pass

    # ── loop ─────────────────────────────────────────────────────

    def run(self) -> None:
        channel: queue.Queue = queue.Queue(maxsize=self.orch.channel_size)
        consumer = threading.Thread(
            target=self._consume, args=(channel,), name=f"{self.name}-consumer", daemon=True
        )
        consumer.start()
        try:
            self._feed(channel)
        finally:
            channel.put(_STOP)
            consumer.join()
        if self.error is not None:
            raise self.error

    def _feed(self, channel: queue.Queue) -> None:
        while not self.token.cancelled:
            items = self.query()
            if not items:
                logger.info("No %s downloads left", self.name)
                break
            logger.info("Downloading %d %s files...", len(items), self.name)
            self._progress = 0
            self.on_poll()
            for item in items:
                if not self._put(channel, item):
                    break
            channel.join()
            if self.token.cancelled:
                break
            if self._progress == 0:
                logger.warning("%d %s files could not be fetched; leaving them for the next run", len(items), self.name)
                break
            self.token.sleep(self.orch.rng.uniform(*self.poll_pause))

    def _put(self, channel: queue.Queue, item: Submission) -> bool:
        while not self.token.cancelled:
            try:
                channel.put(item, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False

    def _consume(self, channel: queue.Queue) -> None:
        while True:
            item = channel.get()
            try:
                if item is _STOP:
                    return
                if self.token.cancelled:
                    continue
                outcome = self._handle(item)
                if outcome is not Outcome.EXISTING and not self.token.cancelled:
                    self.token.sleep(self.orch.rng.uniform(*self.item_pause))
            finally:
                channel.task_done()

    def _handle(self, item: Submission) -> Outcome:
        try:
            outcome = self.process(item)
        except SiteDownError as exc:
            if self.token.cancel(exc):
                logger.error("Site appears to be down, stopping all downloads")
            return Outcome.SKIPPED
        except NotFoundError as exc:
            logger.info("File not found: %s", exc.url)
            self.mark_missing(item)
            outcome = Outcome.MISSING
        except FilesystemError as exc:
            logger.error("Skipping %s: %s", item.url, exc)
            outcome = Outcome.SKIPPED
        except Exception as exc:
            logger.exception("%s worker stopped on %s", self.name, item.url)
            self.error = exc
            self.token.cancel(exc)
            return Outcome.SKIPPED
        if outcome in (Outcome.SAVED, Outcome.EXISTING, Outcome.MISSING):
            self._progress += 1
        self.orch.count(f"{self.name}_{outcome.value}")
        return outcome


class ContentWorker(_Worker):
    name = "content"

    def query(self) -> list[Submission]:
        return self.orch.db.query_unsaved_content(self.orch.name_filter)

    def on_poll(self) -> None:
        self.orch.ensure_thumbnails()

    def mark_missing(self, item: Submission) -> None:
        self.orch.db.mark_content_missing(item.url)

    def run(self) -> None:
        self.orch.ensure_thumbnails()
        super().run()

    def process(self, item: Submission) -> Outcome:
        owner = item.owner
        name = item.content_name
        if not owner or not name or not item.content_url:
            logger.error("Invalid content data for %s", item.url)
            return Outcome.SKIPPED
        storage = self.orch.storage
        if storage.find_existing(owner, name) is not None:
            logger.info("File already exists: %s", name)
            self.orch.db.mark_content_saved(item.url)
            return Outcome.EXISTING
        dest = storage.path_for(owner, item.subfolder, name)
        if not self.orch.fetch_file(item.content_url, dest, self.name):
            return Outcome.FAILED
        self.orch.db.mark_content_saved(item.url)
        return Outcome.SAVED


class ThumbnailWorker(_Worker):
    name = "thumbnail"
    item_pause = (1.0, 2.5)
    poll_pause = (2.0, 3.5)

    def query(self) -> list[Submission]:
        return self.orch.db.query_unsaved_thumbnails()

    def mark_missing(self, item: Submission) -> None:
        self.orch.db.mark_thumbnail_missing(item.url)

    def _resolve_url(self, item: Submission) -> str | None:
        if item.thumbnail_url:
            return item.thumbnail_url
        try:
            doc = self.orch.api.fetch(item.url)
        except TransientNetworkError as exc:
            logger.warning("Could not load %s for its thumbnail: %s", item.url, exc)
            return None
        url = extract_thumbnail_url(doc, self.orch.api.cfg.base_url)
        if url is None:
            logger.info("No preview image on %s", item.url)
        return url

    def process(self, item: Submission) -> Outcome:
        owner = item.owner
        if not owner or not item.wants_thumbnail:
            return Outcome.SKIPPED
        thumb_url = self._resolve_url(item)
        if thumb_url is None:
            return Outcome.SKIPPED
        name = thumb_url.rsplit("/", 1)[-1]
        dest = self.orch.storage.path_for(owner, Subfolder.THUMBNAIL, name)
        if dest.is_file():
            if self.orch.storage.verify_image(dest):
                self.orch.db.mark_thumbnail_saved(item.url, thumb_url, name)
                return Outcome.EXISTING
            logger.warning("Replacing corrupt thumbnail %s", name)
            self.orch.storage.remove(dest)
        if not self.orch.fetch_file(thumb_url, dest, self.name, verify=True):
            return Outcome.FAILED
        self.orch.db.mark_thumbnail_saved(item.url, thumb_url, name)
        return Outcome.SAVED


class DownloadOrchestrator:
    """Owns the two download workers and the retry policy they share.

    ``start()`` launches the content worker, which brings up the thumbnail
    worker itself; ``join()`` waits for both; ``stop()`` cancels the token
    and waits.  A SiteDown from either worker cancels the shared token, which
    halts the other within one item.
    """

    def __init__(
        self,
        api: SiteClient,
        db: Database,
        storage: DiskStorageService,
        token: CancelToken,
        cfg: SiteConfig | None = None,
        *,
        thumbnails: bool = True,
        channel_size: int = 16,
        name_filter: str | None = None,
        on_progress: ProgressHook | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.api = api
        self.db = db
        self.storage = storage
        self.token = token
        self.cfg = cfg or api.cfg
        self.thumbnails_enabled = thumbnails
        self.channel_size = channel_size
        self.name_filter = name_filter
        self.on_progress = on_progress
        self.rng = rng or random.Random()
        self.supervisor = WorkerSupervisor(max_workers=2)
        self.content_worker = ContentWorker(self)
        self.thumbnail_worker = ThumbnailWorker(self)
        self.stats: Counter[str] = Counter()
        self._stats_lock = threading.Lock()

    def count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    # ── lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        if self.token.cancelled:
            return
        self.supervisor.start(self.content_worker.name, self.content_worker.run)

    def ensure_thumbnails(self) -> None:
        if self.thumbnails_enabled and not self.token.cancelled:
            self.supervisor.start(self.thumbnail_worker.name, self.thumbnail_worker.run)

    def join(self) -> None:
        self.supervisor.join()

    def stop(self) -> None:
        self.token.cancel("downloads stopped")
        self.join()

    def run(self) -> Counter[str]:
        """Start both workers and block until they finish."""
        self.storage.ensure_dir(self.storage.root)
        self.start()
        self.join()
        return self.stats

    def close(self) -> None:
        self.supervisor.shutdown()

    # ── transfer ─────────────────────────────────────────────────

    def fetch_file(self, url: str, dest: Path, kind: str, *, verify: bool = False) -> bool:
        """Probe, then stream ``url`` to ``dest`` with immediate retries.

        Raises NotFoundError when the probe fails on a live site and
        SiteDownError when the site itself is unreachable.  Returns False when
        every attempt failed, leaving the item eligible for the next poll.
        """
        if self.token.cancelled:
            return False
        if not self.api.exists(url):
            if not self.api.is_site_active():
                raise SiteDownError(f"Site unreachable while probing {url}")
            raise NotFoundError(url)

        self.storage.ensure_dir(dest.parent)
        hook = self._hook(kind, dest.name)
        attempts = self.cfg.download_retries + 1
        for attempt in range(1, attempts + 1):
            if self.token.cancelled:
                return False
            try:
                logger.info("Downloading: %s", dest.name)
                self.api.download(url, dest, hook)
                if verify and not self.storage.verify_image(dest):
                    self.storage.remove(dest)
                    raise TransientNetworkError(url, "corrupt image")
                return True
            except (TransientNetworkError, FilesystemError) as exc:
                if attempt < attempts:
                    logger.warning("Download error for %s (%s), retrying...", dest.name, exc)
                else:
                    logger.error("Giving up on %s after %d attempts: %s", dest.name, attempts, exc)
        return False

    def _hook(self, kind: str, name: str) -> Callable[[int, "int | None"], None] | None:
        if self.on_progress is None:
            return None
        report = self.on_progress

        def hook(transferred: int, total: int | None) -> None:
            report(kind, name, transferred, total)

        return hook

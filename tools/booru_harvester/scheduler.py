"""Bounded-concurrency download engine – transfer → verify → store → commit.

Two pools run side by side: ``download_workers`` threads move bytes over the
network and ``hash_workers`` threads verify MD5s and write files.  A transfer
worker holding downloaded bytes waits for a hash slot (``hash_workers`` busy
plus ``hash_queue_size`` queued) before it gives up its network slot, so a
hashing backlog stops new downloads from being admitted instead of piling
images up in memory.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator

from .api import BooruAPI
from .config import HarvesterConfig
from .errors import (
    ExhaustedRetries,
    FatalRequestError,
    HarvesterError,
    IntegrityError,
    OutOfSpace,
    StorageError,
    storage_error,
)
from .hashing import matches, md5_bytes, md5_file
from .ledger import DedupLedger
from .models import DownloadTask, FailureReason, PostRecord, TaskState

logger = logging.getLogger("harvester.scheduler")


@dataclass
class RunReport:
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[tuple[int, FailureReason, str]] = field(default_factory=list)
    cancelled: bool = False
    aborted: str | None = None
    peak_transfers: int = 0
    peak_hashes: int = 0

    @property
    def total(self) -> int:
        return self.downloaded + self.skipped + self.failed

    def as_dict(self) -> dict[str, int]:
        return {"downloaded": self.downloaded, "skipped": self.skipped, "failed": self.failed}


class _Gauge:
    """Counts concurrent holders and remembers the highest count seen."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    @contextmanager
    def hold(self) -> Iterator[None]:
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        try:
            yield
        finally:
            with self._lock:
                self.current -= 1


class DownloadScheduler:
    def __init__(
        self,
        api: BooruAPI,
        ledger: DedupLedger,
        download_dir: Path,
        *,
        download_workers: int = 4,
        hash_workers: int = 2,
        hash_queue_size: int = 8,
        tag_separator: str = " ",
        cancel: threading.Event | None = None,
        on_task_done: Callable[[DownloadTask], None] | None = None,
    ) -> None:
        self.api = api
        self.ledger = ledger
        self.download_dir = Path(download_dir)
        self.download_workers = download_workers
        self.hash_workers = hash_workers
        self.tag_separator = tag_separator
        self.cancel = cancel or threading.Event()
        self.on_task_done = on_task_done
        self.report = RunReport()
        self.transfers = _Gauge()
        self.hashes = _Gauge()
        self._download_slots = threading.Semaphore(download_workers)
        self._hash_slots = threading.Semaphore(hash_workers + hash_queue_size)
        self._abort = threading.Event()
        self._fatal: HarvesterError | None = None
        self._report_lock = threading.Lock()
        self._futures: list[Future[None]] = []

    @classmethod
    def from_config(
        cls, cfg: HarvesterConfig, api: BooruAPI, ledger: DedupLedger, **kwargs: object
    ) -> DownloadScheduler:
        return cls(
            api,
            ledger,
            cfg.download_dir,
            download_workers=cfg.download_workers,
            hash_workers=cfg.hash_workers,
            hash_queue_size=cfg.hash_queue_size,
            tag_separator=cfg.tag_separator,
            **kwargs,  # type: ignore[arg-type]
        )

    def _stopping(self) -> bool:
        return self.cancel.is_set() or self._abort.is_set()

    # ── bookkeeping ──────────────────────────────────────────────

    def _finish(self, task: DownloadTask) -> None:
        with self._report_lock:
            if task.state is TaskState.DONE:
                if task.skipped:
                    self.report.skipped += 1
                else:
                    self.report.downloaded += 1
            elif task.reason is not None:
                self.report.failed += 1
                self.report.failures.append((task.post.id, task.reason, task.detail))
                logger.warning("Post %d failed (%s): %s", task.post.id, task.reason.value, task.detail)
        if self.on_task_done:
            self.on_task_done(task)

    def _record_fatal(self, exc: HarvesterError) -> None:
        with self._report_lock:
            if self._fatal is None:
                self._fatal = exc
                self.report.aborted = str(exc)

    def _abort_run(self, exc: HarvesterError) -> None:
        """Stop admitting and make queued work end without writing."""
        self._record_fatal(exc)
        self._abort.set()

    # ── file output ──────────────────────────────────────────────

    @staticmethod
    def _write_bytes(path: Path, data: bytes) -> None:
        path.write_bytes(data)

    def _write_tags(self, task: DownloadTask) -> None:
        tags = self.tag_separator.join(task.post.tag_string.split())
        self._write_bytes(task.tag_path, tags.encode("utf-8"))

    def _store(self, task: DownloadTask, data: bytes) -> None:
        """Write the image atomically, then its sidecar; leave nothing behind on failure."""
        part = task.target_path.with_name(task.target_path.name + ".part")
        try:
            self._write_bytes(part, data)
            os.replace(part, task.target_path)
            self._write_tags(task)
        except OSError as exc:
            for leftover in (part, task.target_path, task.tag_path):
                leftover.unlink(missing_ok=True)
            raise storage_error(exc, f"writing {task.target_path}") from exc

    # ── stages ───────────────────────────────────────────────────

    def _hash_file(self, path: Path) -> str:
        with self.hashes.hold():
            return md5_file(path)

    def _adopt_existing(self, task: DownloadTask, hash_pool: ThreadPoolExecutor) -> bool:
        """Take over a matching file left by an earlier run that has no ledger entry."""
        self._hash_slots.acquire()
        try:
            actual = hash_pool.submit(self._hash_file, task.target_path).result()
        except OSError as exc:
            logger.debug("Cannot hash existing %s: %s", task.target_path, exc)
            return False
        finally:
            self._hash_slots.release()
        if not matches(actual, task.post.content_hash):
            logger.info("Existing %s does not match post %d, downloading again", task.target_path.name, task.post.id)
            try:
                task.target_path.unlink()
            except OSError as exc:
                raise storage_error(exc, f"removing {task.target_path}") from exc
            return False
        if not task.tag_path.exists():
            try:
                self._write_tags(task)
            except OSError as exc:
                raise storage_error(exc, f"writing {task.tag_path}") from exc
        self.ledger.commit(task.post.content_hash, task.target_path, task.post.id)
        task.done(skipped=True)
        logger.debug("Adopted existing %s", task.target_path.name)
        return True

    def _transfer(self, task: DownloadTask, hash_pool: ThreadPoolExecutor) -> bytes | None:
        """Network phase.  Returns the image bytes, or None if the task already ended."""
        if self._stopping():
            task.fail(FailureReason.CANCELLED, "run stopped before transfer")
            return None
        try:
            if task.target_path.exists() and self._adopt_existing(task, hash_pool):
                return None
        except OutOfSpace as exc:
            self._abort_run(exc)
            task.fail(FailureReason.OUT_OF_SPACE, str(exc))
            return None
        except StorageError as exc:
            task.fail(FailureReason.WRITE_ERROR, f"adopting {task.target_path.name}: {exc}")
            return None
        task.start()
        try:
            with self.transfers.hold():
                data = self.api.download_image(task.post.image_url)
        except ExhaustedRetries as exc:
            task.fail(FailureReason.EXHAUSTED_RETRIES, str(exc))
            return None
        except FatalRequestError as exc:
            reason = FailureReason.HTTP_STATUS if exc.status is not None else FailureReason.NETWORK
            task.fail(reason, str(exc))
            return None
        task.verifying()
        return data

    def _process(self, task: DownloadTask, hash_pool: ThreadPoolExecutor) -> None:
        data: bytes | None = None
        try:
            data = self._transfer(task, hash_pool)
            if data is not None:
                # Blocks while the hash queue is full; the network slot stays taken.
                self._hash_slots.acquire()
        finally:
            self._download_slots.release()
        if data is None:
            self._finish(task)
            return
        self._futures.append(hash_pool.submit(self._verify_and_store, task, data))

    def _verify_and_store(self, task: DownloadTask, data: bytes) -> None:
        post = task.post
        try:
            with self.hashes.hold():
                actual = md5_bytes(data)
            if not matches(actual, post.content_hash):
                task.fail(FailureReason.HASH_MISMATCH, str(IntegrityError(post.id, post.content_hash, actual)))
                return
            if self._abort.is_set():
                task.fail(FailureReason.CANCELLED, "run aborted before write")
                return
            self._store(task, data)
            self.ledger.commit(post.content_hash, task.target_path, post.id)
            task.done()
        except OutOfSpace as exc:
            self._abort_run(exc)
            task.fail(FailureReason.OUT_OF_SPACE, str(exc))
        except StorageError as exc:
            task.fail(FailureReason.WRITE_ERROR, str(exc))
        finally:
            if task.finished:
                self._finish(task)
            self._hash_slots.release()

    # ── driver ───────────────────────────────────────────────────

    def run(self, posts: Iterable[PostRecord]) -> RunReport:
        """Download every post not already in the ledger.

        Per-post failures are recorded in the report.  A run-fatal error
        (page fetch failure, full disk) stops admission, lets in-flight work
        drain, and is re-raised.
        """
        self.download_dir.mkdir(parents=True, exist_ok=True)
        net_pool = ThreadPoolExecutor(self.download_workers, thread_name_prefix="download")
        hash_pool = ThreadPoolExecutor(self.hash_workers, thread_name_prefix="hash")
        net_futures: list[Future[None]] = []
        try:
            for post in posts:
                if self._stopping():
                    break
                task = DownloadTask(post, self.download_dir / post.filename)
                if self.ledger.should_skip(post):
                    task.done(skipped=True)
                    self._finish(task)
                    continue
                self._download_slots.acquire()
                if self._stopping():
                    self._download_slots.release()
                    break
                net_futures.append(net_pool.submit(self._process, task, hash_pool))
        except HarvesterError as exc:
            # no more posts to admit; in-flight work still finishes
            self._record_fatal(exc)
        finally:
            net_pool.shutdown(wait=True)
            hash_pool.shutdown(wait=True)
            self.report.peak_transfers = self.transfers.peak
            self.report.peak_hashes = self.hashes.peak

        # Surface programming errors from worker threads instead of dropping them.
        for future in net_futures + self._futures:
            future.result()

        self.report.cancelled = self.cancel.is_set()
        logger.info(
            "Run finished: %d downloaded, %d skipped, %d failed%s",
            self.report.downloaded,
            self.report.skipped,
            self.report.failed,
            " (cancelled)" if self.report.cancelled else "",
        )
        if self._fatal is not None:
            raise self._fatal
        return self.report

"""Core harvesting logic – orchestrates API → Fetcher → Scheduler → Ledger."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .api import BooruAPI
from .config import HarvesterConfig
from .errors import ConfigError
from .fetcher import PageFetcher
from .hashing import matches, md5_file
from .ledger import DedupLedger, LedgerEntry
from .models import DownloadTask, PostRecord
from .scheduler import DownloadScheduler, RunReport

logger = logging.getLogger("harvester.core")


@dataclass
class VerifyReport:
    ok: int = 0
    missing: list[LedgerEntry] = field(default_factory=list)
    corrupt: list[LedgerEntry] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.missing and not self.corrupt


def verify_ledger(ledger_path: Path) -> VerifyReport:
    """Re-hash every file the ledger points at."""
    report = VerifyReport()
    with DedupLedger.open(ledger_path) as ledger:
        for entry in ledger.entries():
            try:
                actual = md5_file(Path(entry.path))
            except FileNotFoundError:
                report.missing.append(entry)
                continue
            if matches(actual, entry.content_hash):
                report.ok += 1
            else:
                logger.warning("Corrupt file %s (expected %s, got %s)", entry.path, entry.content_hash, actual)
                report.corrupt.append(entry)
    return report


class Harvester:
    """Runs one tag query end to end from an immutable HarvesterConfig."""

    def __init__(
        self,
        cfg: HarvesterConfig,
        *,
        api: BooruAPI | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.cfg = cfg.validate()
        self.cancel = cancel or threading.Event()
        self.api = api or BooruAPI(self.cfg.booru)
        self.report = RunReport()

    def fetcher(self, **overrides: int) -> PageFetcher:
        opts = {"max_pages": self.cfg.max_pages, "max_posts": self.cfg.max_posts, **overrides}
        return PageFetcher(
            self.api,
            self.cfg.tags,
            page_size=self.cfg.booru.page_size,
            cancel=self.cancel,
            **opts,
        )

    # ── commands ─────────────────────────────────────────────────

    def preview(self, limit: int = 10) -> list[PostRecord]:
        """First ``limit`` posts of the query, without downloading anything."""
        return list(self.fetcher(max_posts=limit).iter_posts())

    def run(self, on_task_done: Callable[[DownloadTask], None] | None = None) -> RunReport:
        """Download the query into ``download_dir``.

        The ledger is flushed and closed however the run ends, so a later
        run never fetches what this one committed.
        """
        ledger_path = Path(self.cfg.resolved_ledger_path)
        try:
            Path(self.cfg.download_dir).mkdir(parents=True, exist_ok=True)
            ledger_path.parent.mkdir(parents=True, exist_ok=True)
            ledger = DedupLedger.open(ledger_path)
        except OSError as exc:
            raise ConfigError(f"cannot prepare output: {exc}") from exc
        scheduler = DownloadScheduler.from_config(
            self.cfg, self.api, ledger, cancel=self.cancel, on_task_done=on_task_done
        )
        logger.info("Harvesting %r into %s", self.cfg.tags, self.cfg.download_dir)
        try:
            return scheduler.run(self.fetcher().iter_posts())
        finally:
            self.report = scheduler.report
            ledger.close()
            logger.debug("Ledger flushed: %d entries", len(ledger))

    def verify(self) -> VerifyReport:
        return verify_ledger(self.cfg.resolved_ledger_path)

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self.api.close()

    def __enter__(self) -> Harvester:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

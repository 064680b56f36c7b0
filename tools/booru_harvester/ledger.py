"""Dedup ledger – content hash → local file, persisted as JSON lines."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Iterator

from .errors import storage_error
from .models import PostRecord

logger = logging.getLogger("harvester.ledger")


@dataclass(frozen=True)
class LedgerEntry:
    content_hash: str
    path: str
    post_id: int | None
    verified_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "md5": self.content_hash,
                "path": self.path,
                "post_id": self.post_id,
                "verified_at": self.verified_at.isoformat(),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, line: str) -> LedgerEntry:
        obj = json.loads(line)
        return cls(
            content_hash=str(obj["md5"]).lower(),
            path=str(obj["path"]),
            post_id=obj.get("post_id"),
            verified_at=datetime.fromisoformat(obj["verified_at"]),
        )


class DedupLedger:
    """In-memory map of verified content, appended to disk on every commit.

    All mutation goes through :meth:`commit`, which is serialized by a lock;
    a hash, once present, is never removed or rewritten.
    """

    def __init__(self, path: Path, entries: dict[str, LedgerEntry] | None = None) -> None:
        self.path = Path(path)
        self._entries: dict[str, LedgerEntry] = dict(entries or {})
        self._lock = threading.Lock()
        self._fh: IO[str] | None = None

    # ── loading ──────────────────────────────────────────────────

    @classmethod
    def open(cls, path: Path) -> DedupLedger:
        """Reload every entry from ``path``; a missing file is an empty ledger."""
        path = Path(path)
        entries: dict[str, LedgerEntry] = {}
        if path.exists():
            with open(path, encoding="utf-8") as fh:
                for lineno, line in enumerate(fh, 1):
                    if not line.strip():
                        continue
                    try:
                        entry = LedgerEntry.from_json(line)
                    except (ValueError, KeyError, TypeError) as exc:
                        logger.warning("Skipping malformed ledger line %s:%d: %s", path, lineno, exc)
                        continue
                    entries.setdefault(entry.content_hash, entry)
        logger.info("Loaded %d ledger entries from %s", len(entries), path)
        return cls(path, entries)

    # ── queries ──────────────────────────────────────────────────

    def should_skip(self, post: PostRecord) -> bool:
        return post.content_hash.lower() in self._entries

    def lookup(self, content_hash: str) -> LedgerEntry | None:
        return self._entries.get(content_hash.lower())

    def entries(self) -> Iterator[LedgerEntry]:
        with self._lock:
            snapshot = list(self._entries.values())
        return iter(snapshot)

    def __contains__(self, content_hash: object) -> bool:
        return isinstance(content_hash, str) and content_hash.lower() in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ── writes ───────────────────────────────────────────────────

    def _handle(self) -> IO[str]:
        if self._fh is None or self._fh.closed:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "a", encoding="utf-8")
        return self._fh

    def commit(self, content_hash: str, path: Path | str, post_id: int | None = None) -> bool:
        """Record verified content.  Returns False if the hash was already present."""
        key = content_hash.lower()
        with self._lock:
            if key in self._entries:
                return False
            entry = LedgerEntry(key, str(path), post_id, datetime.now(timezone.utc))
            try:
                fh = self._handle()
                fh.write(entry.to_json() + "\n")
                fh.flush()
            except OSError as exc:
                raise storage_error(exc, f"ledger append to {self.path}") from exc
            self._entries[key] = entry
        logger.debug("Committed %s -> %s", key[:12], path)
        return True

    def flush(self) -> None:
        with self._lock:
            if self._fh is None or self._fh.closed:
                return
            try:
                self._fh.flush()
                os.fsync(self._fh.fileno())
            except OSError as exc:
                raise storage_error(exc, f"ledger flush to {self.path}") from exc

    def close(self) -> None:
        self.flush()
        with self._lock:
            if self._fh is not None and not self._fh.closed:
                self._fh.close()

    def __enter__(self) -> DedupLedger:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

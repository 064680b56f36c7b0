"""Configuration values for the harvester."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigError

# Gelbooru refuses limit > 100 and deep paging past limit * pid > 20000.
MAX_PAGE_SIZE = 100
MAX_PAGING_DEPTH = 20_000

LEDGER_FILENAME = ".ledger.jsonl"


@dataclass(frozen=True)
class BooruConfig:
    """Gelbooru API configuration.  Keeps well under the anonymous rate limit."""
    api_base: str = "https://gelbooru.com/index.php"
    page_size: int = MAX_PAGE_SIZE
    request_delay: float = 0.5  # seconds between outbound requests
    max_retries: int = 5
    timeout: float = 30.0
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    user_agent: str = "booru-harvester/1.0"


@dataclass(frozen=True)
class HarvesterConfig:
    tags: str
    download_dir: Path
    booru: BooruConfig = field(default_factory=BooruConfig)
    ledger_path: Path | None = None
    download_workers: int = 4
    hash_workers: int = 2
    hash_queue_size: int = 8
    max_pages: int = 0  # 0 = until the API runs out
    max_posts: int = 0  # 0 = no cap
    max_failures: int = 0
    tag_separator: str = " "

    @property
    def resolved_ledger_path(self) -> Path:
        return self.ledger_path or Path(self.download_dir) / LEDGER_FILENAME

    def validate(self) -> HarvesterConfig:
        """Raise ConfigError for values that cannot produce a sensible run."""
        if not self.tags.strip():
            raise ConfigError("tags must not be empty")
        if not 1 <= self.booru.page_size <= MAX_PAGE_SIZE:
            raise ConfigError(f"page size must be between 1 and {MAX_PAGE_SIZE}")
        if self.download_workers < 1 or self.hash_workers < 1:
            raise ConfigError("worker counts must be at least 1")
        if self.hash_queue_size < 0:
            raise ConfigError("hash queue size must not be negative")
        if self.booru.max_retries < 1:
            raise ConfigError("max retries must be at least 1")
        if self.booru.request_delay < 0:
            raise ConfigError("request delay must not be negative")
        if min(self.max_pages, self.max_posts, self.max_failures) < 0:
            raise ConfigError("page, post and failure limits must not be negative")
        download_dir = Path(self.download_dir)
        if download_dir.exists() and not download_dir.is_dir():
            raise ConfigError(f"download dir is not a directory: {download_dir}")
        return self

"""Paginated post metadata retrieval."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterator

from .api import BooruAPI
from .config import MAX_PAGE_SIZE, MAX_PAGING_DEPTH
from .errors import ConfigError, ExhaustedRetries, FatalRequestError, FetchError
from .models import FetchCursor, InvalidPost, PageResult, PostRecord, parse_post

logger = logging.getLogger("harvester.fetcher")


def _unpack(data: Any) -> tuple[list[Any], int | None]:
    """Return (raw posts, total count if the API reported one)."""
    if data is None:
        return [], None
    if isinstance(data, list):
        return data, None
    if isinstance(data, dict):
        attrs = data.get("@attributes") or {}
        count = attrs.get("count")
        posts = data.get("post") or []
        if isinstance(posts, dict):  # a single match comes back unwrapped
            posts = [posts]
        return posts, int(count) if count is not None else None
    raise FetchError(f"unexpected page payload: {type(data).__name__}")


class PageFetcher:
    """Pulls successive pages for one tag query."""

    def __init__(
        self,
        api: BooruAPI,
        tags: str,
        *,
        page_size: int = MAX_PAGE_SIZE,
        max_pages: int = 0,
        max_posts: int = 0,
        cancel: threading.Event | None = None,
    ) -> None:
        if not tags.strip():
            raise ConfigError("tags must not be empty")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ConfigError(f"page size must be between 1 and {MAX_PAGE_SIZE}")
        self.api = api
        self.tags = tags
        self.page_size = page_size
        self.max_pages = max_pages
        self.max_posts = max_posts
        self.cancel = cancel or threading.Event()
        self._seen_ids: set[int] = set()

    def next_page(self, cursor: FetchCursor) -> PageResult:
        """Fetch the page at ``cursor`` and return its validated records."""
        try:
            data = self.api.get_posts(self.tags, cursor.page_size, cursor.page_index)
        except (ExhaustedRetries, FatalRequestError) as exc:
            raise FetchError(f"page {cursor.page_index} for {self.tags!r}: {exc}") from exc

        raw_posts, total = _unpack(data)
        records: list[PostRecord] = []
        for raw in raw_posts:
            outcome = parse_post(raw)
            if isinstance(outcome, InvalidPost):
                logger.warning("Dropping post %s on page %d: %s", outcome.raw_id, cursor.page_index, outcome.reason)
                continue
            record = outcome.record
            if record.id in self._seen_ids:
                logger.warning("Dropping duplicate post %d on page %d", record.id, cursor.page_index)
                continue
            self._seen_ids.add(record.id)
            records.append(record)

        is_final = len(raw_posts) < cursor.page_size
        if total is not None and cursor.offset + len(raw_posts) >= total:
            is_final = True
        logger.debug(
            "Page %d: %d raw, %d valid%s", cursor.page_index, len(raw_posts), len(records), " (final)" if is_final else ""
        )
        return PageResult(records, cursor.advance(len(records)), is_final)

    def pages(self) -> Iterator[PageResult]:
        """Yield pages until the query is exhausted or a configured limit is hit."""
        cursor = FetchCursor(page_size=self.page_size)
        while not self.cancel.is_set():
            if self.max_pages and cursor.page_index >= self.max_pages:
                logger.info("Reached max pages (%d)", self.max_pages)
                return
            if (cursor.page_index + 1) * cursor.page_size > MAX_PAGING_DEPTH:
                logger.warning("Stopping at page %d: the API refuses to page past %d posts", cursor.page_index, MAX_PAGING_DEPTH)
                return
            page = self.next_page(cursor)
            yield page
            if page.is_final:
                return
            cursor = page.cursor

    def iter_posts(self) -> Iterator[PostRecord]:
        """Lazy, finite sequence of validated posts across all pages."""
        emitted = 0
        for page in self.pages():
            for record in page.records:
                if self.max_posts and emitted >= self.max_posts:
                    return
                emitted += 1
                yield record
            if self.max_posts and emitted >= self.max_posts:
                return

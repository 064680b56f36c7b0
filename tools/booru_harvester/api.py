"""Gelbooru API client – rate-limited, retrying HTTP fetcher."""

from __future__ import annotations

import json
import logging
import random
import ssl
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import httpx

from .config import BooruConfig
from .errors import ExhaustedRetries, FatalRequestError, NetworkError

logger = logging.getLogger("harvester.api")


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Seconds to wait according to a Retry-After header, or None if unusable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _is_tls_failure(exc: BaseException) -> bool:
    seen: BaseException | None = exc
    while seen is not None:
        if isinstance(seen, ssl.SSLError):
            return True
        seen = seen.__cause__ or seen.__context__
    return False


class BooruAPI:
    """Thin wrapper around the Gelbooru DAPI with rate limiting and retries.

    Safe to share between threads: the request spacing is enforced under a
    lock and ``httpx.Client`` pools connections across threads.
    """

    def __init__(
        self,
        cfg: BooruConfig | None = None,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.cfg = cfg or BooruConfig()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._last_request: float | None = None
        self._client = client or httpx.Client(
            timeout=self.cfg.timeout,
            headers={"User-Agent": self.cfg.user_agent},
            follow_redirects=True,
        )

    # ── rate limiting ────────────────────────────────────────────
    def _throttle(self) -> None:
        with self._lock:
            now = self._clock()
            if self._last_request is not None:
                wait = self.cfg.request_delay - (now - self._last_request)
                if wait > 0:
                    self._sleep(wait)
                    now = self._clock()
            self._last_request = now

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the gap after failed ``attempt`` (1-based), with jitter."""
        base = self.cfg.backoff_base
        delay = min(self.cfg.backoff_max, base * 2 ** (attempt - 1))
        return delay + self._rng.uniform(0, base)

    # ── single exchange ──────────────────────────────────────────
    def _request_once(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        try:
            resp = self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"timeout: {url}", kind="timeout") from exc
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise FatalRequestError(f"malformed URL {url!r}: {exc}") from exc
        except httpx.ConnectError as exc:
            if _is_tls_failure(exc):
                raise FatalRequestError(f"TLS handshake failed for {url}: {exc}") from exc
            raise NetworkError(f"connection failed: {url}: {exc}", kind="conn_reset") from exc
        except httpx.NetworkError as exc:
            raise NetworkError(f"connection reset: {url}: {exc}", kind="conn_reset") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"transport error: {url}: {exc}", kind="transport") from exc
        except httpx.RequestError as exc:
            # redirect loops, undecodable bodies
            raise FatalRequestError(f"request failed for {url}: {exc}") from exc

        status = resp.status_code
        if status == 429 or status >= 500:
            retry_after = parse_retry_after(resp.headers.get("Retry-After")) if status == 429 else None
            raise NetworkError(
                f"HTTP {status} for {url}", kind="http_status", status=status, retry_after=retry_after
            )
        if status >= 400:
            raise FatalRequestError(f"HTTP {status} for {url}", status=status)
        return resp

    def send(self, url: str, params: dict[str, Any] | None = None) -> bytes:
        """GET ``url`` and return the body, retrying transient failures."""
        attempt = 0
        while True:
            attempt += 1
            self._throttle()
            try:
                return self._request_once(url, params).content
            except NetworkError as exc:
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, self.cfg.max_retries, url, exc)
                if attempt >= self.cfg.max_retries:
                    raise ExhaustedRetries(url, attempt, exc) from exc
                delay = exc.retry_after if exc.retry_after is not None else self.backoff_delay(attempt)
                self._sleep(delay)

    def get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        body = self.send(url, params)
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise FatalRequestError(f"invalid JSON from {url}: {exc}") from exc

    # ── public API ───────────────────────────────────────────────

    def get_posts(self, tags: str, limit: int, pid: int) -> Any:
        """Fetch one page of posts matching ``tags``."""
        params = {
            "page": "dapi",
            "s": "post",
            "q": "index",
            "json": "1",
            "tags": tags,
            "limit": limit,
            "pid": pid,
        }
        return self.get_json(self.cfg.api_base, params)

    def download_image(self, url: str) -> bytes:
        """Download a full-size image."""
        return self.send(url)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> BooruAPI:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

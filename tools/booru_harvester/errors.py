"""Exception taxonomy for the harvester."""

from __future__ import annotations

import errno


class HarvesterError(Exception):
    """Base class for every error the harvester raises on purpose."""


class ConfigError(HarvesterError):
    """Invalid query or output location; raised before any network activity."""


class NetworkError(HarvesterError):
    """A single failed HTTP exchange.

    ``kind`` is one of ``timeout``, ``conn_reset``, ``http_status`` or
    ``transport``; ``status`` is set for ``http_status``.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        if self.kind == "http_status":
            return self.status == 429 or (self.status is not None and self.status >= 500)
        return True


class FatalRequestError(HarvesterError):
    """Non-retryable request failure: 4xx, bad URL, TLS handshake."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ExhaustedRetries(HarvesterError):
    """Every attempt failed with a retryable error."""

    def __init__(self, url: str, attempts: int, last_error: NetworkError) -> None:
        super().__init__(f"gave up on {url} after {attempts} attempts: {last_error}")
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


class FetchError(HarvesterError):
    """Page metadata could not be fetched; aborts the whole run."""


class IntegrityError(HarvesterError):
    """Downloaded bytes do not hash to the server-reported value."""

    def __init__(self, post_id: int, expected: str, actual: str) -> None:
        super().__init__(f"post {post_id}: expected md5 {expected}, got {actual}")
        self.post_id = post_id
        self.expected = expected
        self.actual = actual


class StorageError(HarvesterError):
    """Writing a file or the ledger failed."""


class OutOfSpace(StorageError):
    """The disk is full; aborts the whole run."""


def storage_error(exc: OSError, what: str) -> StorageError:
    """Wrap an OSError, singling out a full disk."""
    if exc.errno == errno.ENOSPC:
        return OutOfSpace(f"{what}: {exc}")
    return StorageError(f"{what}: {exc}")

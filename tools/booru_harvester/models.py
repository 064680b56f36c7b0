"""Typed records for posts, pagination and download tasks."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Union
from urllib.parse import urlsplit

REQUIRED_FIELDS = ("id", "file_url", "md5")
SIDECAR_EXTENSION = ".txt"


@dataclass(frozen=True)
class PostRecord:
    id: int
    image_url: str
    tag_string: str
    content_hash: str
    extension: str

    @property
    def filename(self) -> str:
        return f"{self.id}{self.extension}"


@dataclass(frozen=True)
class ValidPost:
    record: PostRecord


@dataclass(frozen=True)
class InvalidPost:
    raw_id: Any
    reason: str


PostOutcome = Union[ValidPost, InvalidPost]


def _extension(raw: Mapping[str, Any], url: str) -> str:
    # `image` is the server-side file name ("<md5>.<ext>"); fall back to the URL path.
    for candidate in (raw.get("image"), urlsplit(url).path):
        if candidate:
            suffix = PurePosixPath(str(candidate)).suffix
            if suffix:
                return suffix.lower()
    return ""


def parse_post(raw: Any) -> PostOutcome:
    """Validate one post object from the API into a PostRecord."""
    if not isinstance(raw, Mapping):
        return InvalidPost(None, f"expected an object, got {type(raw).__name__}")
    missing = [name for name in REQUIRED_FIELDS if raw.get(name) in (None, "")]
    if missing:
        return InvalidPost(raw.get("id"), f"missing {', '.join(missing)}")
    try:
        post_id = int(raw["id"])
    except (TypeError, ValueError):
        return InvalidPost(raw.get("id"), f"non-integer id {raw['id']!r}")
    url = str(raw["file_url"])
    extension = _extension(raw, url)
    if extension == SIDECAR_EXTENSION:
        return InvalidPost(post_id, f"image would collide with its {SIDECAR_EXTENSION} tag file")
    tags = raw.get("tags") or ""
    return ValidPost(
        PostRecord(
            id=post_id,
            image_url=url,
            tag_string=str(tags).strip(),
            content_hash=str(raw["md5"]).strip().lower(),
            extension=extension,
        )
    )


@dataclass(frozen=True)
class FetchCursor:
    page_index: int = 0
    page_size: int = 100
    emitted_count: int = 0

    @property
    def offset(self) -> int:
        return self.page_index * self.page_size

    def advance(self, emitted: int) -> FetchCursor:
        return FetchCursor(self.page_index + 1, self.page_size, self.emitted_count + emitted)


@dataclass(frozen=True)
class PageResult:
    records: list[PostRecord]
    cursor: FetchCursor
    is_final: bool


# ── download tasks ───────────────────────────────────────────────


class TaskState(enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


class FailureReason(enum.Enum):
    HASH_MISMATCH = "hash_mismatch"
    EXHAUSTED_RETRIES = "exhausted_retries"
    HTTP_STATUS = "http_status"
    NETWORK = "network"
    WRITE_ERROR = "write_error"
    OUT_OF_SPACE = "out_of_space"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.DONE, TaskState.FAILED})

_ALLOWED = {
    TaskState.PENDING: {TaskState.IN_FLIGHT, TaskState.DONE, TaskState.FAILED},
    TaskState.IN_FLIGHT: {TaskState.VERIFYING, TaskState.FAILED},
    TaskState.VERIFYING: {TaskState.DONE, TaskState.FAILED},
}


@dataclass
class DownloadTask:
    post: PostRecord
    target_path: Path
    state: TaskState = TaskState.PENDING
    reason: FailureReason | None = None
    detail: str = ""
    skipped: bool = False
    history: list[TaskState] = field(default_factory=list)

    @property
    def tag_path(self) -> Path:
        return self.target_path.with_suffix(SIDECAR_EXTENSION)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def _move(self, new: TaskState) -> None:
        if new not in _ALLOWED.get(self.state, ()):
            raise ValueError(f"post {self.post.id}: illegal transition {self.state.value} -> {new.value}")
        self.history.append(self.state)
        self.state = new

    def start(self) -> None:
        self._move(TaskState.IN_FLIGHT)

    def verifying(self) -> None:
        self._move(TaskState.VERIFYING)

    def done(self, *, skipped: bool = False) -> None:
        self._move(TaskState.DONE)
        self.skipped = skipped

    def fail(self, reason: FailureReason, detail: str = "") -> None:
        self._move(TaskState.FAILED)
        self.reason = reason
        self.detail = detail

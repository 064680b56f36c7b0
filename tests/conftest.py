"""Shared fixtures for harvester tests."""

import hashlib
import threading
from typing import Any, Dict, List

import httpx
import pytest
from httpx import Response

from booru_harvester.api import BooruAPI
from booru_harvester.config import BooruConfig
from booru_harvester.models import PostRecord

API_BASE = "https://gelbooru.test/index.php"
IMAGE_BASE = "https://img.gelbooru.test/images"


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


def image_bytes(post_id: int) -> bytes:
    return f"image-{post_id}".encode() * 64


def raw_post(post_id: int, *, content: bytes | None = None, tags: str = "cat solo") -> Dict[str, Any]:
    """A post object shaped like Gelbooru's JSON."""
    data = image_bytes(post_id) if content is None else content
    md5 = hashlib.md5(data).hexdigest()
    return {
        "id": post_id,
        "md5": md5,
        "file_url": f"{IMAGE_BASE}/{md5}.jpg",
        "image": f"{md5}.jpg",
        "tags": tags,
    }


def record(post_id: int, *, content: bytes | None = None, tags: str = "cat solo") -> PostRecord:
    raw = raw_post(post_id, content=content, tags=tags)
    return PostRecord(
        id=post_id,
        image_url=raw["file_url"],
        tag_string=tags,
        content_hash=raw["md5"],
        extension=".jpg",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def booru_cfg() -> BooruConfig:
    return BooruConfig(api_base=API_BASE, request_delay=0.0, max_retries=5, backoff_base=1.0)


@pytest.fixture
def api(booru_cfg: BooruConfig, clock: FakeClock):
    client = BooruAPI(booru_cfg, sleep=clock.sleep, clock=clock)
    yield client
    client.close()


def paged(total: int, *, envelope: bool = False):
    """respx side effect serving ``total`` posts in pages of the requested limit."""
    posts = [raw_post(i) for i in range(1, total + 1)]

    def respond(request: httpx.Request) -> Response:
        pid = int(request.url.params["pid"])
        limit = int(request.url.params["limit"])
        chunk = posts[pid * limit:(pid + 1) * limit]
        if envelope:
            body: Any = {"@attributes": {"limit": limit, "offset": pid * limit, "count": total}}
            if chunk:
                body["post"] = chunk
            return Response(200, json=body)
        return Response(200, json=chunk)

    return respond

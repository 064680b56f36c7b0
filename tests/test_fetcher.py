"""Tests for paginated metadata retrieval."""

import threading
from typing import Any, Dict, List

import pytest
import respx
from httpx import Response

from booru_harvester.api import BooruAPI
from booru_harvester.errors import ConfigError, FetchError
from booru_harvester.fetcher import PageFetcher
from booru_harvester.models import FetchCursor

from conftest import API_BASE, paged, raw_post


def test_pages_of_100_100_50(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "cat", page_size=100)
    with respx.mock:
        route = respx.get(API_BASE).mock(side_effect=paged(250))
        pages = list(fetcher.pages())
        assert route.call_count == 3

    assert [len(p.records) for p in pages] == [100, 100, 50]
    assert [p.is_final for p in pages] == [False, False, True]
    assert pages[-1].cursor.emitted_count == 250


def test_iter_posts_emits_every_record_once(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "cat", page_size=100)
    with respx.mock:
        respx.get(API_BASE).mock(side_effect=paged(250))
        ids = [post.id for post in fetcher.iter_posts()]
    assert ids == list(range(1, 251))


def test_exact_multiple_ends_on_empty_page(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "cat", page_size=10)
    with respx.mock:
        route = respx.get(API_BASE).mock(side_effect=paged(20))
        pages = list(fetcher.pages())
        assert route.call_count == 3
    assert [p.is_final for p in pages] == [False, False, True]
    assert pages[-1].records == []


def test_envelope_count_marks_final(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "cat", page_size=10)
    with respx.mock:
        route = respx.get(API_BASE).mock(side_effect=paged(20, envelope=True))
        pages = list(fetcher.pages())
        assert route.call_count == 2
    assert [p.is_final for p in pages] == [False, True]


def test_no_results_envelope(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "nothing_matches")
    with respx.mock:
        respx.get(API_BASE).mock(
            return_value=Response(200, json={"@attributes": {"limit": 100, "offset": 0, "count": 0}})
        )
        page = fetcher.next_page(FetchCursor())
    assert page.records == [] and page.is_final


def test_malformed_record_is_dropped(api: BooruAPI, caplog: pytest.LogCaptureFixture) -> None:
    posts: List[Dict[str, Any]] = [raw_post(i) for i in range(1, 4)]
    del posts[1]["md5"]
    fetcher = PageFetcher(api, "cat", page_size=3)
    with respx.mock:
        respx.get(API_BASE).mock(return_value=Response(200, json=posts))
        page = fetcher.next_page(FetchCursor(page_size=3))

    assert [p.id for p in page.records] == [1, 3]
    # a full raw page is not final even though one record was dropped
    assert not page.is_final
    assert "missing md5" in caplog.text


def test_duplicate_ids_are_dropped(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "cat", page_size=5)
    with respx.mock:
        respx.get(API_BASE).mock(return_value=Response(200, json=[raw_post(1), raw_post(1)]))
        page = fetcher.next_page(FetchCursor(page_size=5))
    assert [p.id for p in page.records] == [1]


def test_fatal_transport_error_aborts(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "cat")
    with respx.mock:
        respx.get(API_BASE).mock(return_value=Response(403))
        with pytest.raises(FetchError):
            list(fetcher.iter_posts())


def test_max_posts_and_pages(api: BooruAPI) -> None:
    with respx.mock:
        route = respx.get(API_BASE).mock(side_effect=paged(250))
        assert len(list(PageFetcher(api, "cat", max_posts=120).iter_posts())) == 120
        assert route.call_count == 2

    with respx.mock:
        route = respx.get(API_BASE).mock(side_effect=paged(250))
        assert len(list(PageFetcher(api, "cat", max_pages=1).iter_posts())) == 100
        assert route.call_count == 1


def test_cancel_stops_paging(api: BooruAPI) -> None:
    cancel = threading.Event()
    fetcher = PageFetcher(api, "cat", page_size=100, cancel=cancel)
    with respx.mock:
        route = respx.get(API_BASE).mock(side_effect=paged(250))
        for post in fetcher.iter_posts():
            if post.id == 1:
                cancel.set()
        assert route.call_count == 1


def test_deep_paging_limit(api: BooruAPI) -> None:
    fetcher = PageFetcher(api, "cat", page_size=100)
    with respx.mock:
        route = respx.get(API_BASE).mock(side_effect=paged(30_000))
        pages = list(fetcher.pages())
        assert route.call_count == 200
    assert not any(p.is_final for p in pages)


@pytest.mark.parametrize("tags,page_size", [("", 100), ("   ", 100), ("cat", 0), ("cat", 101)])
def test_invalid_query(api: BooruAPI, tags: str, page_size: int) -> None:
    with pytest.raises(ConfigError):
        PageFetcher(api, tags, page_size=page_size)

"""Tests for post parsing and the download task state machine."""

from pathlib import Path

import pytest

from booru_harvester.models import (
    DownloadTask,
    FailureReason,
    FetchCursor,
    InvalidPost,
    TaskState,
    ValidPost,
    parse_post,
)

from conftest import raw_post, record


def test_parse_valid_post() -> None:
    raw = raw_post(42, tags="cat  solo ")
    outcome = parse_post(raw)
    assert isinstance(outcome, ValidPost)
    post = outcome.record
    assert post.id == 42
    assert post.content_hash == raw["md5"]
    assert post.extension == ".jpg"
    assert post.filename == "42.jpg"
    assert post.tag_string == "cat  solo"


@pytest.mark.parametrize("missing", ["id", "file_url", "md5"])
def test_parse_missing_required_field(missing: str) -> None:
    raw = raw_post(1)
    del raw[missing]
    outcome = parse_post(raw)
    assert isinstance(outcome, InvalidPost)
    assert missing in outcome.reason


def test_parse_non_object() -> None:
    assert isinstance(parse_post("nope"), InvalidPost)


def test_parse_bad_id() -> None:
    raw = raw_post(1)
    raw["id"] = "abc"
    assert isinstance(parse_post(raw), InvalidPost)


def test_extension_falls_back_to_url() -> None:
    raw = raw_post(7)
    del raw["image"]
    raw["file_url"] = "https://img.test/a/b/FILE.PNG?x=1"
    outcome = parse_post(raw)
    assert isinstance(outcome, ValidPost)
    assert outcome.record.extension == ".png"


def test_text_image_is_rejected() -> None:
    # the image and its tag file would share one path
    raw = raw_post(3)
    raw["image"] = "notes.txt"
    outcome = parse_post(raw)
    assert isinstance(outcome, InvalidPost)
    assert outcome.raw_id == 3


def test_missing_tags_is_empty_string() -> None:
    raw = raw_post(3)
    del raw["tags"]
    outcome = parse_post(raw)
    assert isinstance(outcome, ValidPost)
    assert outcome.record.tag_string == ""


def test_cursor_advances() -> None:
    cursor = FetchCursor(page_size=100)
    nxt = cursor.advance(98)
    assert (nxt.page_index, nxt.emitted_count, nxt.offset) == (1, 98, 100)


def test_task_happy_path(tmp_path: Path) -> None:
    task = DownloadTask(record(1), tmp_path / "1.jpg")
    task.start()
    task.verifying()
    task.done()
    assert task.state is TaskState.DONE
    assert task.history == [TaskState.PENDING, TaskState.IN_FLIGHT, TaskState.VERIFYING]
    assert task.tag_path == tmp_path / "1.txt"


def test_task_skip_from_pending(tmp_path: Path) -> None:
    task = DownloadTask(record(1), tmp_path / "1.jpg")
    task.done(skipped=True)
    assert task.finished and task.skipped


def test_terminal_states_do_not_move(tmp_path: Path) -> None:
    task = DownloadTask(record(1), tmp_path / "1.jpg")
    task.start()
    task.fail(FailureReason.EXHAUSTED_RETRIES, "gave up")
    with pytest.raises(ValueError):
        task.start()
    with pytest.raises(ValueError):
        task.done()
    assert task.reason is FailureReason.EXHAUSTED_RETRIES


def test_cannot_skip_verification(tmp_path: Path) -> None:
    task = DownloadTask(record(1), tmp_path / "1.jpg")
    task.start()
    with pytest.raises(ValueError):
        task.done()

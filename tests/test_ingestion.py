"""Tests for the ingestion status tracker."""

import pytest

from tutorrag import (
    IngestionStatus,
    IngestionTracker,
    NotFoundOrDeniedError,
    SourceType,
    ValidationError,
)


def test_register_creates_pending_record(tracker):
    record = tracker.register(
        SourceType.AUDIO,
        "lec-1",
        "calc-101",
        title="Lecture 1",
        metadata={"timestamp": "00:00:10"},
    )

    assert record.status is IngestionStatus.PENDING
    assert record.title == "Lecture 1"
    assert record.metadata == {"timestamp": "00:00:10"}
    assert record.created_at is not None


def test_full_lifecycle(tracker):
    tracker.register("textbook", "book-1", "calc-101", title="Stewart")

    processing = tracker.mark_processing("textbook", "book-1", extracted_text="text")
    complete = tracker.mark_complete(
        "textbook", "book-1", chunk_count=12, degraded=True
    )

    assert processing.status is IngestionStatus.PROCESSING
    assert processing.extracted_text == "text"
    assert complete.status is IngestionStatus.COMPLETE
    assert complete.chunk_count == 12
    assert complete.degraded
    assert complete.status.is_terminal


def test_error_keeps_reason(tracker):
    tracker.register(SourceType.PHOTO, "photo-1", "calc-101")
    tracker.mark_processing(SourceType.PHOTO, "photo-1")

    record = tracker.mark_error(SourceType.PHOTO, "photo-1", "OCR produced no text")

    assert record.status is IngestionStatus.ERROR
    assert record.error == "OCR produced no text"


@pytest.mark.parametrize(
    "steps",
    [
        ["complete"],
        ["processing", "complete", "processing"],
        ["processing", "error", "complete"],
    ],
)
def test_invalid_transitions_are_rejected(tracker, steps):
    tracker.register(SourceType.AUDIO, "lec-1", "calc-101")
    actions = {
        "processing": lambda: tracker.mark_processing(SourceType.AUDIO, "lec-1"),
        "complete": lambda: tracker.mark_complete(
            SourceType.AUDIO, "lec-1", chunk_count=1
        ),
        "error": lambda: tracker.mark_error(SourceType.AUDIO, "lec-1", "boom"),
    }

    for step in steps[:-1]:
        actions[step]()
    with pytest.raises(ValidationError, match="Invalid ingestion transition"):
        actions[steps[-1]]()


def test_register_again_restarts_run(tracker):
    tracker.register(SourceType.AUDIO, "lec-1", "calc-101", title="Lecture 1")
    tracker.mark_processing(SourceType.AUDIO, "lec-1", extracted_text="first")
    tracker.mark_error(SourceType.AUDIO, "lec-1", "timeout")

    record = tracker.register(SourceType.AUDIO, "lec-1", "calc-101")

    assert record.status is IngestionStatus.PENDING
    assert record.error is None
    assert record.title == "Lecture 1"
    assert record.extracted_text == "first"


def test_register_requires_identifiers(tracker):
    with pytest.raises(ValidationError):
        tracker.register(SourceType.AUDIO, "", "calc-101")
    with pytest.raises(ValidationError, match="Unknown source type"):
        tracker.register("video", "v-1", "calc-101")
    with pytest.raises(ValidationError, match="Invalid class id"):
        tracker.register(SourceType.AUDIO, "lec-1", "../..")


def test_missing_record(tracker):
    assert tracker.get(SourceType.AUDIO, "nope") is None
    assert tracker.get_title(SourceType.AUDIO, "nope") is None
    with pytest.raises(NotFoundOrDeniedError):
        tracker.mark_processing(SourceType.AUDIO, "nope")


def test_complete_source_ids_by_class_and_type(tracker, register_complete):
    register_complete(SourceType.AUDIO, "lec-1")
    register_complete(SourceType.PHOTO, "photo-1")
    register_complete(SourceType.AUDIO, "bio-lec", class_id="bio-200")
    tracker.register(SourceType.AUDIO, "lec-2", "calc-101")

    assert tracker.complete_source_ids("calc-101") == {"lec-1", "photo-1"}
    assert tracker.complete_source_ids("calc-101", SourceType.AUDIO) == {"lec-1"}


def test_list_records_and_pending(tracker, register_complete):
    register_complete(SourceType.AUDIO, "lec-1")
    tracker.register(SourceType.TEXTBOOK, "book-1", "calc-101")

    pending = tracker.list_records("calc-101", status=IngestionStatus.PENDING)

    assert [record.source_id for record in pending] == ["book-1"]
    assert len(tracker.list_records("calc-101")) == 2
    assert [record.source_id for record in tracker.list_pending()] == ["book-1"]


def test_delete_and_delete_class(tracker, register_complete):
    register_complete(SourceType.AUDIO, "lec-1")
    register_complete(SourceType.AUDIO, "lec-2")
    register_complete(SourceType.AUDIO, "bio-lec", class_id="bio-200")

    assert tracker.delete(SourceType.AUDIO, "lec-1")
    assert not tracker.delete(SourceType.AUDIO, "lec-1")
    assert tracker.delete_class("calc-101") == 1
    assert tracker.list_records("bio-200")


def test_records_survive_reopen(tmp_path):
    IngestionTracker(tmp_path / "db.sqlite").register(
        SourceType.AUDIO, "lec-1", "calc-101", title="Lecture 1"
    )

    reopened = IngestionTracker(tmp_path / "db.sqlite")

    assert reopened.get_title(SourceType.AUDIO, "lec-1") == "Lecture 1"

"""Tests for IdempotentSink: de-duplication, counts, storage failures."""

from __future__ import annotations

from conftest import NOW_MS, RecordingObserver, RecordingStorage, make_reading

from bgsource.domains.glucose.errors import StorageError
from bgsource.domains.glucose.sink import GlucoseStorage, IdempotentSink


class TestInsert:
    def test_storage_double_satisfies_port(self, recording_storage):
        assert isinstance(recording_storage, GlucoseStorage)

    def test_empty_batch(self, recording_storage):
        result = IdempotentSink(recording_storage).insert([])
        assert (result.inserted, result.skipped) == (0, 0)
        assert recording_storage.insert_calls == []

    def test_new_readings_inserted(self, recording_storage):
        sink = IdempotentSink(recording_storage)
        result = sink.insert([make_reading(NOW_MS, source_id="a"), make_reading(NOW_MS + 1, source_id="b")])
        assert result.inserted == 2
        assert result.skipped == 0
        assert result.ok

    def test_second_delivery_is_skipped(self, recording_storage):
        sink = IdempotentSink(recording_storage)
        sink.insert([make_reading(source_id="a")])
        result = sink.insert([make_reading(source_id="a")])
        assert (result.inserted, result.skipped) == (0, 1)
        assert len(recording_storage.rows) == 1

    def test_duplicate_only_batch_does_not_touch_storage_insert(self, recording_storage):
        sink = IdempotentSink(recording_storage)
        sink.insert([make_reading(source_id="a")])
        sink.insert([make_reading(source_id="a")])
        assert len(recording_storage.insert_calls) == 1

    def test_in_batch_duplicates_keep_first(self, recording_storage):
        sink = IdempotentSink(recording_storage)
        result = sink.insert([
            make_reading(value=100, source_id="a"),
            make_reading(value=200, source_id="a"),
        ])
        assert (result.inserted, result.skipped) == (1, 1)
        assert recording_storage.rows["id:a"].value == 100

    def test_readings_without_id_dedup_on_timestamp(self, recording_storage):
        sink = IdempotentSink(recording_storage)
        sink.insert([make_reading(NOW_MS)])
        result = sink.insert([make_reading(NOW_MS), make_reading(NOW_MS + 300_000)])
        assert (result.inserted, result.skipped) == (1, 1)

    def test_order_preserved(self, recording_storage):
        sink = IdempotentSink(recording_storage)
        readings = [make_reading(NOW_MS + i, source_id=str(i)) for i in (3, 1, 2)]
        sink.insert(readings)
        assert [r.source_id for r in recording_storage.insert_calls[0]] == ["3", "1", "2"]

    def test_source_tag_passed_through(self):
        seen = []

        class TagStorage(RecordingStorage):
            def insert_glucose_readings(self, readings, source_tag):
                seen.append(source_tag)
                return super().insert_glucose_readings(readings, source_tag)

        sink = IdempotentSink(TagStorage(), source_tag="Nightscout")
        sink.insert([make_reading()])
        assert seen == ["Nightscout"]
        assert sink.source_tag == "Nightscout"


class TestFailures:
    def test_storage_error_is_returned_not_raised(self):
        storage = RecordingStorage(fail_with=StorageError("disk full"))
        result = IdempotentSink(storage).insert([make_reading(source_id="a")])
        assert not result.ok
        assert isinstance(result.error, StorageError)
        assert result.inserted == 0

    def test_failure_reported_to_observer(self):
        observer = RecordingObserver()
        storage = RecordingStorage(fail_with=StorageError("locked"))
        IdempotentSink(storage, observer=observer).insert([make_reading()])
        assert observer.names() == ["insert_failed"]

    def test_success_reported_to_observer(self, recording_storage, observer):
        IdempotentSink(recording_storage, source_tag="Firestore", observer=observer).insert(
            [make_reading(source_id="a")]
        )
        name, tag, result = observer.events[0]
        assert (name, tag, result.inserted) == ("insert_succeeded", "Firestore", 1)

    def test_concurrent_writer_counts_as_skipped(self):
        class RacingStorage(RecordingStorage):
            # Lookup misses the row; the insert then finds it already committed.
            def existing_dedup_keys(self, keys):
                return set()

        storage = RacingStorage()
        storage.rows["id:a"] = make_reading(source_id="a")
        result = IdempotentSink(storage).insert([make_reading(source_id="a")])
        assert (result.inserted, result.skipped) == (0, 1)


class TestWithRepository:
    def test_unstorable_reading_fails_batch_without_raising(self, glucose_repository):
        observer = RecordingObserver()
        sink = IdempotentSink(glucose_repository, observer=observer)
        good = make_reading(NOW_MS, source_id="good")
        huge = make_reading(2**64, source_id="huge")

        result = sink.insert([good, huge])
        assert isinstance(result.error, StorageError)
        assert result.inserted == 0
        assert observer.names() == ["insert_failed"]

        later = sink.insert([make_reading(NOW_MS + 1, source_id="later")])
        assert later.inserted == 1
        assert [r.dedup_key for r in glucose_repository.get_readings()] == ["id:later"]

"""Tests for BurstAggregator: debounce windows, stale timers, grouping, manual mode."""
import pytest

from convbot.schemas.tasks import BatchFile, TaskState
from convbot.services.batching.aggregator import BurstAggregator
from convbot.services.batching.keys import CollectionKey
from convbot.services.tasks.prompts import FormatPrompter, Submitter
from convbot.services.tasks.store import TaskStoreError


OWNER = Submitter(user_id="u1", chat_id="42", locale="en")


def _file(name, size=1000):
    return BatchFile(file_id=f"id-{name}", file_name=name, file_size=size)


@pytest.fixture
def aggregator(store, transport, timers):
    return BurstAggregator(store, FormatPrompter(store, transport), timer_factory=timers)


def _collectors(store):
    return [t for t in store.tasks.values() if t.collection is not None]


class TestDebounce:
    def test_first_file_arms_long_window(self, aggregator, timers):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.jpg")], OWNER)
        assert [t.delay for t in timers.live] == [3.5]

    def test_followup_files_rearm_short_window(self, aggregator, timers):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.jpg")], OWNER)
        aggregator.accept(key, [_file("b.jpg")], OWNER)
        assert timers.created[0].cancelled
        assert [t.delay for t in timers.live] == [0.9]

    def test_album_followup_window(self, aggregator, timers):
        key = aggregator.resolve_key("u1", media_group_id="777")
        assert key == CollectionKey.for_album("u1", "777")
        aggregator.accept(key, [_file("a.jpg")], OWNER)
        aggregator.accept(key, [_file("b.jpg")], OWNER)
        assert [t.delay for t in timers.live] == [2.0]

    def test_several_files_in_one_call_use_followup_window(self, aggregator, timers):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.jpg"), _file("b.jpg")], OWNER)
        assert [t.delay for t in timers.live] == [0.9]

    def test_one_collector_per_burst(self, aggregator, store):
        key = aggregator.resolve_key("u1")
        ids = {aggregator.accept(key, [_file(f"{i}.jpg")], OWNER) for i in range(5)}
        assert len(ids) == 1
        [collector] = _collectors(store)
        assert len(collector.collection.files) == 5

    def test_distinct_keys_do_not_share_collectors(self, aggregator, store):
        aggregator.accept(aggregator.resolve_key("u1"), [_file("a.jpg")], OWNER)
        aggregator.accept(aggregator.resolve_key("u1", "g1"), [_file("b.jpg")], OWNER)
        aggregator.accept(aggregator.resolve_key("u2"), [_file("c.jpg")], Submitter("u2", "43"))
        assert len(_collectors(store)) == 3


    def test_failed_create_leaves_nothing_pending(self, aggregator, timers, store):
        key = aggregator.resolve_key("u1")
        store.fail_create = True
        with pytest.raises(TaskStoreError):
            aggregator.accept(key, [_file("a.jpg")], OWNER)
        assert aggregator.pending_keys() == []
        assert timers.live == []

        store.fail_create = False
        task_id = aggregator.accept(key, [_file("b.jpg")], OWNER)
        assert store.get(task_id).collection.files[0].file_name == "b.jpg"
        assert [t.delay for t in timers.live] == [3.5]

    def test_store_io_outside_global_lock(self, aggregator, store, monkeypatch):
        seen = []
        update = store.update

        def recording(task):
            seen.append(aggregator._lock.locked())
            return update(task)

        monkeypatch.setattr(store, "update", recording)
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.jpg")], OWNER)
        aggregator.accept(key, [_file("b.jpg")], OWNER)
        assert seen == [False, False]

class TestFinalize:
    def test_stale_timer_is_ignored(self, aggregator, timers, store, transport):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.jpg")], OWNER)
        aggregator.accept(key, [_file("b.jpg")], OWNER)

        timers.created[0].fire()

        assert len(_collectors(store)) == 1
        assert not transport.events
        assert aggregator.pending_keys() == [key]

    def test_current_timer_finalizes_once(self, aggregator, timers, store):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.jpg")], OWNER)
        token = timers.last.args[1]

        created = aggregator.finalize(key, token)
        assert len(created) == 1
        assert aggregator.finalize(key, token) == []
        assert not _collectors(store)

    def test_same_format_files_become_group(self, aggregator, timers, store, transport):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.jpg", 10), _file("b.jpg", 20)], OWNER)
        aggregator.accept(key, [_file("c.JPG", 30), _file("report.pdf")], OWNER)
        timers.last.fire()

        tasks = list(store.tasks.values())
        assert not _collectors(store)
        groups = [t for t in tasks if t.is_group]
        singles = [t for t in tasks if not t.is_group]
        assert len(groups) == 1
        group = groups[0]
        assert group.source_format == "jpg"
        assert group.file_name == "3 files.jpg"
        assert group.file_size == 60
        assert [f.file_name for f in group.batch_files] == ["a.jpg", "b.jpg", "c.JPG"]
        assert group.status_message_id is not None
        assert [s.file_name for s in singles] == ["report.pdf"]
        assert singles[0].state == TaskState.AWAITING_FORMAT
        assert transport.of("prompt_batch") == [("prompt_batch", group.id, 3)]
        assert transport.of("prompt_format") == [("prompt_format", singles[0].id, ["TXT"])]

    def test_single_file_gets_format_prompt(self, aggregator, timers, store, transport):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("song.mp3")], OWNER)
        [task] = aggregator.finalize(key, timers.last.args[1])
        assert task.source_format == "mp3"
        assert not task.is_group
        assert "WAV" in transport.of("prompt_format")[0][2]
        assert "MP3" not in transport.of("prompt_format")[0][2]

    def test_files_without_format_get_notice(self, aggregator, timers, store, transport):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("README"), _file("LICENSE"), _file("x.torrent")], OWNER)
        created = aggregator.finalize(key, timers.last.args[1])
        assert created == []
        keys = [e[2] for e in transport.of("notice")]
        assert keys == ["error.cannot_detect_type", "error.cannot_detect_type", "error.no_conversion_options"]
        assert not store.tasks

    def test_generic_photo_names_made_unique(self, aggregator, timers, store):
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("photo.jpg"), _file("photo.jpg")], OWNER)
        [group] = aggregator.finalize(key, timers.last.args[1])
        names = [f.file_name for f in group.batch_files]
        assert len(set(names)) == 2
        assert all(n.startswith("photo_") and n.endswith(".jpg") for n in names)

    def test_new_burst_after_finalize_starts_fresh(self, aggregator, timers, store):
        key = aggregator.resolve_key("u1")
        first = aggregator.accept(key, [_file("a.jpg")], OWNER)
        timers.last.fire()
        second = aggregator.accept(key, [_file("b.jpg")], OWNER)
        assert first != second
        assert timers.last.delay == 3.5


class TestManualMode:
    def test_manual_collection_finalizes_at_expected_count(self, aggregator, timers, store, transport):
        aggregator.begin_manual(OWNER, 2)
        key = aggregator.resolve_key("u1", media_group_id="999")
        assert key == CollectionKey.for_manual("u1")

        aggregator.accept(key, [_file("a.png")], OWNER)
        assert [t.delay for t in timers.live] == [10.0]
        aggregator.accept(key, [_file("b.png")], OWNER)

        assert not timers.live
        assert not _collectors(store)
        [group] = [t for t in store.tasks.values() if t.is_group]
        assert len(group.batch_files) == 2
        assert aggregator.resolve_key("u1") == CollectionKey.for_user("u1")
        assert not [e for e in transport.of("notice") if e[2] == "batch.timeout"]

    def test_manual_timeout_reports_shortfall(self, aggregator, timers, store, transport):
        aggregator.begin_manual(OWNER, 3)
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.png")], OWNER)
        timers.last.fire()

        timeouts = [e for e in transport.of("notice") if e[2] == "batch.timeout"]
        assert timeouts == [("notice", "42", "batch.timeout", {"got": 1, "expected": 3})]
        assert len(transport.of("prompt_format")) == 1
        assert aggregator.manual_expected("u1") == 0

    def test_manual_timer_rearmed_on_each_file(self, aggregator, timers):
        aggregator.begin_manual(OWNER, 5)
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.png")], OWNER)
        aggregator.accept(key, [_file("b.png")], OWNER)
        assert timers.created[0].cancelled
        assert [t.delay for t in timers.live] == [10.0]

    def test_cancel_manual_drops_collection(self, aggregator, timers, store):
        aggregator.begin_manual(OWNER, 4)
        key = aggregator.resolve_key("u1")
        aggregator.accept(key, [_file("a.png")], OWNER)
        assert aggregator.cancel_manual("u1") is True
        assert not timers.live
        assert not store.tasks
        assert aggregator.resolve_key("u1") == CollectionKey.for_user("u1")

    def test_begin_manual_requires_positive_count(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.begin_manual(OWNER, 0)


def test_shutdown_cancels_pending_timers(aggregator, timers):
    aggregator.accept(aggregator.resolve_key("u1"), [_file("a.jpg")], OWNER)
    aggregator.accept(aggregator.resolve_key("u2"), [_file("b.jpg")], Submitter("u2", "43"))
    aggregator.shutdown()
    assert not timers.live
    assert aggregator.pending_keys() == []

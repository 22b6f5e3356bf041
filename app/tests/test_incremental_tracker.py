from pathlib import Path

from cardsync.core.models import Card
from cardsync.sync.tracker import IncrementalSyncTracker


class _Clock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _card(card_id: str, modified_at: float) -> Card:
    return Card(id=card_id, fields={"front": card_id}, modified_at=modified_at)


def _tracker(tmp_path: Path, now: float = 1000.0) -> tuple[IncrementalSyncTracker, _Clock]:
    clock = _Clock(now)
    return IncrementalSyncTracker(str(tmp_path / "service.db"), clock=clock), clock


def test_unknown_record_needs_sync(tmp_path: Path):
    tracker, _ = _tracker(tmp_path)
    assert tracker.should_sync(_card("a", 10.0)) is True


def test_local_and_remote_modification_are_compared_to_last_sync(tmp_path: Path):
    tracker, _ = _tracker(tmp_path, now=500.0)
    tracker.update_sync_timestamp("a", "export", remote_id=7)

    assert tracker.should_sync(_card("a", 400.0)) is False
    assert tracker.should_sync(_card("a", 501.0)) is True
    assert tracker.should_sync(_card("a", 400.0), remote_mod_time=499.0) is False
    assert tracker.should_sync(_card("a", 400.0), remote_mod_time=600.0) is True
    assert tracker.get("a").remote_id == 7


def test_changed_set_is_minimal_and_full_resync_bypasses_gate(tmp_path: Path):
    tracker, _ = _tracker(tmp_path, now=500.0)
    cards = [_card("a", 100.0), _card("b", 100.0), _card("c", 900.0), _card("d", 100.0)]
    tracker.update_batch(["a", "b", "c"], "export")

    changed = tracker.get_changed_records(cards, {"b": 700.0})

    assert [c.id for c in changed] == ["b", "c", "d"]
    assert len(tracker.get_changed_records(cards, full_resync=True)) == 4


def test_cleanup_removes_only_old_rows(tmp_path: Path):
    tracker, clock = _tracker(tmp_path, now=0.0)
    tracker.update_sync_timestamp("old", "import")
    clock.now = 100 * 86400.0
    tracker.update_sync_timestamp("fresh", "import")

    assert tracker.cleanup_old_records() == 1
    assert tracker.get("old") is None
    assert tracker.get("fresh") is not None


def test_snapshot_and_restore_timestamps(tmp_path: Path):
    tracker, _ = _tracker(tmp_path, now=10.0)
    tracker.update_sync_timestamp("a", "import")
    snap = tracker.snapshot(["a", "b"])
    tracker.update_batch(["a", "b"], "import", sync_time=99.0)

    tracker.restore(snap)

    assert tracker.get("a").last_sync_time == 10.0
    assert tracker.get("b") is None


def test_full_sync_marker_reset_and_stats(tmp_path: Path):
    tracker, _ = _tracker(tmp_path, now=42.0)
    tracker.update_sync_timestamp("a", "import")
    tracker.update_sync_timestamp("b", "export")
    tracker.mark_full_sync()

    stats = tracker.stats()
    assert stats["total"] == 2
    assert stats["by_direction"] == {"export": 1, "import": 1}
    assert stats["last_full_sync"] == 42.0

    tracker.reset()
    assert tracker.stats()["total"] == 0
    assert tracker.last_full_sync() is None

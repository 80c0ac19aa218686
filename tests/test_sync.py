# tests/test_sync.py
from dataclasses import replace
from datetime import datetime

import pytest

from backend.lib.meter_core.errors import SyncConflictAmbiguous
from backend.lib.meter_core.models import EntityType
from backend.lib.meter_core.scheduler import ConnectivityMonitor
from backend.lib.meter_core.store import SqlRecordStore
from backend.lib.meter_core.sync import SyncEngine, remote_wins

READINGS = EntityType.METER_READINGS


@pytest.fixture
def engine(store, remote, photos, clock):
    return SyncEngine(store, remote, photos=photos, clock=clock)


def test_push_marks_records_synced(engine, store, remote, make_reading, make_tier, clock):
    store.insert(make_reading(datetime(2025, 11, 1), consumption="10", reading_id="r-1"))
    store.insert(make_tier("Tier 1", "0.1", "100"))

    report = engine.perform_full_sync()

    assert report.pushed == {'meter_readings': 1, 'pricing_tiers': 1}
    assert report.failure_count == 0
    reading = store.get(READINGS, "r-1")
    assert reading.is_synced and reading.last_synced_at == clock.now
    assert remote.records(READINGS)[0]['consumption'] == reading.consumption
    assert engine.status.last_sync_time == clock.now
    assert engine.status.error is None


def test_second_run_pushes_nothing(engine, store, remote, make_reading, clock):
    store.insert(make_reading(datetime(2025, 11, 1), reading_id="r-1"))
    engine.perform_full_sync()
    calls = remote.put_calls
    first_sync = store.get(READINGS, "r-1").last_synced_at

    clock.advance(minutes=5)
    report = engine.perform_full_sync()

    assert report.pushed_count == 0
    assert report.pulled_count == 0
    assert remote.put_calls == calls
    assert store.get(READINGS, "r-1").last_synced_at == first_sync


def test_newer_remote_copy_wins(engine, store, remote, make_reading, clock):
    store.insert(make_reading(datetime(2025, 11, 1), notes="local", reading_id="r-1"))
    engine.perform_full_sync()

    later = clock.now.replace(hour=18)
    remote.items[("u-1", "meter_readings", "r-1")].update(notes="edited elsewhere",
                                                            last_synced_at=later.isoformat())
    report = engine.perform_full_sync()

    assert report.pulled == {'meter_readings': 1}
    reading = store.get(READINGS, "r-1")
    assert reading.notes == "edited elsewhere"
    assert reading.last_synced_at == later
    assert reading.is_synced


def test_older_remote_copy_is_ignored(engine, store, remote, make_reading, clock):
    store.insert(make_reading(datetime(2025, 11, 1), notes="local", reading_id="r-1"))
    engine.perform_full_sync()

    earlier = clock.now.replace(hour=1)
    remote.items[("u-1", "meter_readings", "r-1")].update(notes="stale",
                                                            last_synced_at=earlier.isoformat())
    engine.perform_full_sync()

    assert store.get(READINGS, "r-1").notes == "local"


def test_missing_timestamp_keeps_remote_and_warns(engine, store, remote, make_reading):
    store.insert(make_reading(datetime(2025, 11, 1), notes="local", reading_id="r-1"))
    engine.perform_full_sync()
    item = remote.items[("u-1", "meter_readings", "r-1")]
    del item['last_synced_at']
    item['notes'] = "remote"

    with pytest.warns(SyncConflictAmbiguous):
        report = engine.perform_full_sync()

    assert report.ambiguous_conflicts == 1
    assert store.get(READINGS, "r-1").notes == "remote"


def test_remote_wins_rules(make_reading):
    local = make_reading(datetime(2025, 11, 1), last_synced_at=datetime(2025, 11, 2))
    newer = replace(local, last_synced_at=datetime(2025, 11, 3))
    same = replace(local)
    assert remote_wins(None, local) is True
    assert remote_wins(local, newer) is True
    assert remote_wins(local, same) is False
    assert remote_wins(local, replace(local, last_synced_at=None)) is None


def test_overlapping_run_is_rejected(engine, store, make_reading):
    store.insert(make_reading(datetime(2025, 11, 1)))
    nested = []

    def observer(status):
        if status.is_syncing:
            nested.append(engine.perform_full_sync())

    engine.subscribe(observer)
    report = engine.perform_full_sync()

    assert report is not None
    assert nested == [None]
    assert not engine.is_syncing


def test_failed_records_are_counted_and_skipped(engine, store, remote, make_reading):
    store.insert(make_reading(datetime(2025, 11, 1), reading_id="r-1"))
    store.insert(make_reading(datetime(2025, 11, 2), reading_id="r-2"))
    remote.fail_ids = {"r-1"}

    report = engine.perform_full_sync()

    assert report.failed == {'meter_readings': 1}
    assert report.pushed == {'meter_readings': 1}
    assert not store.get(READINGS, "r-1").is_synced
    assert store.get(READINGS, "r-2").is_synced
    assert engine.status.error == "1 records failed to sync"


def test_edit_during_push_is_sent_by_the_next_run(engine, store, remote, make_reading, clock):
    store.insert(make_reading(datetime(2025, 11, 1), notes="original", reading_id="r-1"))
    put = remote.put_record

    def put_then_edit(user_id, entity, item):
        put(user_id, entity, item)
        if item['notes'] == "original":
            store.update(replace(store.get(READINGS, "r-1"), notes="edited"))

    remote.put_record = put_then_edit
    report = engine.perform_full_sync()

    assert report.pushed == {'meter_readings': 1}
    local = store.get(READINGS, "r-1")
    assert local.notes == "edited"
    assert not local.is_synced
    assert remote.records(READINGS)[0]['notes'] == "original"

    clock.advance(minutes=5)
    report = engine.perform_full_sync()

    assert report.pushed == {'meter_readings': 1}
    assert remote.records(READINGS)[0]['notes'] == "edited"
    assert store.get(READINGS, "r-1").is_synced


def test_photo_failure_does_not_block_the_reading(store, remote, clock, make_reading, failing_photos):
    engine = SyncEngine(store, remote, photos=failing_photos, clock=clock)
    store.insert(make_reading(datetime(2025, 11, 1), photo_path="meter.jpg", reading_id="r-1"))

    report = engine.perform_full_sync()

    assert report.photos_failed == 1
    assert report.failure_count == 0
    assert store.get(READINGS, "r-1").is_synced


def test_photo_is_uploaded_with_the_reading(engine, store, photos, make_reading):
    store.insert(make_reading(datetime(2025, 11, 1), photo_path="meter.jpg", reading_id="r-1"))
    store.insert(make_reading(datetime(2025, 11, 2), reading_id="r-2"))

    report = engine.perform_full_sync()

    assert photos.uploaded == ["r-1"]
    assert report.photos_uploaded == 1


def test_offline_sync_does_nothing(store, remote, clock, make_reading):
    engine = SyncEngine(store, remote, connectivity=ConnectivityMonitor(online=False), clock=clock)
    store.insert(make_reading(datetime(2025, 11, 1)))

    assert engine.perform_full_sync() is None
    assert remote.put_calls == 0
    assert not engine.status.is_online


def test_run_failure_is_reported_to_observers(engine, store, remote, make_reading):
    store.insert(make_reading(datetime(2025, 11, 1)))
    remote.fail_reads = True
    seen = []
    engine.subscribe(seen.append)

    report = engine.perform_full_sync()

    assert report.error.startswith("last sync failed")
    assert [s.is_syncing for s in seen] == [True, False]
    assert seen[0].error is None
    assert seen[-1].error == report.error
    assert seen[-1].last_sync_time is None


def test_unsubscribe_stops_notifications(engine):
    seen = []
    unsubscribe = engine.subscribe(seen.append)
    unsubscribe()
    engine.perform_full_sync()
    assert seen == []


def test_local_deletion_reaches_remote(engine, store, remote, make_reading):
    store.insert(make_reading(datetime(2025, 11, 1), reading_id="r-1"))
    engine.perform_full_sync()
    store.delete(READINGS, "r-1")

    report = engine.perform_full_sync()

    assert report.deleted == 1
    assert remote.records(READINGS) == []
    assert store.get(READINGS, "r-1") is None
    assert store.pending_deletions(READINGS) == []


def test_restore_into_empty_store(engine, store, remote, make_reading, make_tier, tmp_path, clock):
    store.insert(make_reading(datetime(2025, 11, 1), consumption="42.5", reading_id="r-1"))
    store.insert(make_tier("Tier 1", "0.1", "100"))
    engine.perform_full_sync()

    fresh = SqlRecordStore.in_directory(tmp_path / "device-2")
    report = SyncEngine(fresh, remote, clock=clock).restore("u-1")

    assert report.pulled == {'meter_readings': 1, 'pricing_tiers': 1}
    restored = fresh.get(READINGS, "r-1")
    assert str(restored.consumption) == "42.5"
    assert restored.is_synced
    assert [t.name for t in fresh.get_tiers("u-1")] == ["Tier 1"]

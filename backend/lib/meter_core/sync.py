# backend/lib/meter_core/sync.py
"""
Two-way reconciliation between the local record store and the remote store.

A run pushes local deletions, then every unsynced record (entity types in
``SYNC_ORDER``), then pulls the remote copies for the users involved and
merges them last-write-wins on ``last_synced_at``. Reading photos are
uploaded on the side; they never decide whether a reading counts as synced.

Collaborators are duck-typed:

    remote       put_record(user_id, entity, item)
                 get_records(user_id, entity) -> list of dicts
                 delete_record(user_id, entity, record_id)
    photos       upload_reading_photo(reading) -> key
    connectivity is_online attribute
"""
import logging
import threading
import warnings
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from .errors import (MeterTrackerError, PersistenceError, SyncConflictAmbiguous,
                     SyncPushError, ValidationError)
from .models import EntityType, SYNC_ORDER, SyncableRecord, model_for, utc_now
from .store import RecordStore

logger = logging.getLogger(__name__)

# Per-record failures that are counted and skipped rather than ending the run
RECORD_ERRORS = (SyncPushError, PersistenceError, ValidationError)


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool
    is_syncing: bool
    last_sync_time: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'is_online': self.is_online,
            'is_syncing': self.is_syncing,
            'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
            'error': self.error,
        }


@dataclass
class SyncReport:
    started_at: datetime
    pushed: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, int] = field(default_factory=dict)
    pulled: Dict[str, int] = field(default_factory=dict)
    deleted: int = 0
    ambiguous_conflicts: int = 0
    photos_uploaded: int = 0
    photos_failed: int = 0
    error: Optional[str] = None

    @property
    def failure_count(self) -> int:
        return sum(self.failed.values())

    @property
    def pushed_count(self) -> int:
        return sum(self.pushed.values())

    @property
    def pulled_count(self) -> int:
        return sum(self.pulled.values())

    def _bump(self, counter: Dict[str, int], entity: EntityType) -> None:
        counter[entity.value] = counter.get(entity.value, 0) + 1

    def to_dict(self) -> dict:
        return {
            'started_at': self.started_at.isoformat(),
            'pushed': dict(self.pushed),
            'failed': dict(self.failed),
            'pulled': dict(self.pulled),
            'deleted': self.deleted,
            'ambiguous_conflicts': self.ambiguous_conflicts,
            'photos_uploaded': self.photos_uploaded,
            'photos_failed': self.photos_failed,
            'failure_count': self.failure_count,
            'error': self.error,
        }


def remote_wins(local: Optional[SyncableRecord], remote: SyncableRecord) -> Optional[bool]:
    """
    True when the remote copy should replace the local one, False to keep
    local, None when the timestamps cannot be compared (remote wins then).
    """
    if local is None:
        return True
    if local.last_synced_at is None or remote.last_synced_at is None:
        return None
    return remote.last_synced_at > local.last_synced_at


class SyncEngine:
    def __init__(self, store: RecordStore, remote, photos=None, connectivity=None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.remote = remote
        self.photos = photos
        self.connectivity = connectivity
        self.clock = clock
        self._guard = threading.Lock()
        self._observers: List[Callable[[SyncStatus], None]] = []
        self._last_sync_time: Optional[datetime] = None
        self._error: Optional[str] = None
        self.last_report: Optional[SyncReport] = None

    # -- status ---------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        if self.connectivity is None:
            return True
        return bool(self.connectivity.is_online)

    @property
    def is_syncing(self) -> bool:
        return self._guard.locked()

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(self.is_online, self.is_syncing, self._last_sync_time, self._error)

    def subscribe(self, callback: Callable[[SyncStatus], None]) -> Callable[[], None]:
        """Register a status observer; returns a function that removes it."""
        self._observers.append(callback)

        def unsubscribe():
            if callback in self._observers:
                self._observers.remove(callback)
        return unsubscribe

    def _emit(self) -> None:
        status = self.status
        for callback in list(self._observers):
            try:
                callback(status)
            except Exception:
                logger.exception("Sync status observer failed")

    # -- entry points ---------------------------------------------------------

    def perform_full_sync(self, user_id: Optional[str] = None) -> Optional[SyncReport]:
        """
        Push and pull everything (or one user's records). Returns None
        without doing anything when offline or when a run is in progress.
        """
        return self._run(lambda report: self._reconcile(report, user_id))

    def perform_incremental_sync(self, user_id: Optional[str] = None) -> Optional[SyncReport]:
        # Same reconciliation: pushes already only touch unsynced rows
        return self.perform_full_sync(user_id)

    def restore(self, user_id: str) -> Optional[SyncReport]:
        """Pull a user's remote records without pushing anything."""
        return self._run(lambda report: self._pull(report, [user_id]))

    def _run(self, work: Callable[[SyncReport], None]) -> Optional[SyncReport]:
        if not self.is_online:
            logger.info("Offline, skipping sync")
            return None
        if not self._guard.acquire(blocking=False):
            logger.info("Sync already running, skipping request")
            return None

        report = SyncReport(started_at=self.clock())
        try:
            self._error = None
            self._emit()
            try:
                work(report)
            except MeterTrackerError as e:
                report.error = f"last sync failed: {e}"
                logger.warning("Sync run failed: %s", e)
            else:
                self._last_sync_time = report.started_at
                if report.failure_count:
                    report.error = f"{report.failure_count} records failed to sync"
            self._error = report.error
            self.last_report = report
        finally:
            self._guard.release()
        self._emit()
        logger.info("Sync finished: pushed=%d failed=%d pulled=%d",
                    report.pushed_count, report.failure_count, report.pulled_count)
        return report

    # -- phases ---------------------------------------------------------------

    def _reconcile(self, report: SyncReport, user_id: Optional[str]) -> None:
        users: Set[str] = {user_id} if user_id else set(self.store.known_user_ids())
        for entity in SYNC_ORDER:
            users.update(self._push_deletions(report, entity, user_id))
            users.update(self._push_entity(report, entity, user_id))
        self._pull(report, sorted(users))

    def _push_deletions(self, report: SyncReport, entity: EntityType, user_id: Optional[str]) -> Set[str]:
        owners = set()
        for record_id, owner_id in self.store.pending_deletions(entity):
            if user_id and owner_id != user_id:
                continue
            try:
                self.remote.delete_record(owner_id, entity, record_id)
                self.store.clear_deletion(entity, record_id)
            except RECORD_ERRORS as e:
                logger.warning("Failed to delete %s '%s' remotely: %s", entity.value, record_id, e)
                report._bump(report.failed, entity)
                continue
            report.deleted += 1
            owners.add(owner_id)
        return owners

    def _push_entity(self, report: SyncReport, entity: EntityType, user_id: Optional[str]) -> Set[str]:
        owners = set()
        records = self.store.get_unsynced(entity)
        if user_id:
            records = [r for r in records if r.owner_id == user_id]
        for record in records:
            try:
                self.remote.put_record(record.owner_id, entity, record.to_remote(report.started_at))
                synced = self.store.mark_synced(entity, record.id, report.started_at, pushed=record)
            except RECORD_ERRORS as e:
                logger.warning("Failed to sync %s '%s': %s", entity.value, record.id, e)
                report._bump(report.failed, entity)
                continue
            report._bump(report.pushed, entity)
            owners.add(record.owner_id)
            # Edited mid-push: the photo goes out with the next push
            if entity is EntityType.METER_READINGS and synced.is_synced:
                self._upload_photo(report, synced)
        return owners

    def _upload_photo(self, report: SyncReport, reading) -> None:
        if self.photos is None or not reading.photo_path:
            return
        try:
            self.photos.upload_reading_photo(reading)
        except MeterTrackerError as e:
            logger.warning("Photo upload failed for reading '%s': %s", reading.id, e)
            report.photos_failed += 1
        else:
            report.photos_uploaded += 1

    def _pull(self, report: SyncReport, user_ids: Iterable[str]) -> None:
        for user_id in user_ids:
            for entity in SYNC_ORDER:
                self._pull_entity(report, user_id, entity)

    def _pull_entity(self, report: SyncReport, user_id: str, entity: EntityType) -> None:
        model = model_for(entity)
        deleted = {record_id for record_id, _ in self.store.pending_deletions(entity)}
        for item in self.remote.get_records(user_id, entity):
            try:
                remote = model.from_remote(item)
            except (ValidationError, TypeError) as e:
                logger.warning("Skipping malformed remote %s row for user %s: %s", entity.value, user_id, e)
                report._bump(report.failed, entity)
                continue
            if remote.id in deleted:
                continue
            local = self.store.get(entity, remote.id)
            decision = remote_wins(local, remote)
            if decision is None:
                warnings.warn(SyncConflictAmbiguous(
                    f"{entity.value} '{remote.id}' has no comparable timestamps; keeping remote copy"))
                logger.warning("Ambiguous conflict on %s '%s'; keeping remote copy", entity.value, remote.id)
                report.ambiguous_conflicts += 1
            elif not decision:
                continue
            try:
                self.store.apply_remote(remote)
            except PersistenceError as e:
                logger.warning("Failed to store remote %s '%s': %s", entity.value, remote.id, e)
                report._bump(report.failed, entity)
                continue
            report._bump(report.pulled, entity)

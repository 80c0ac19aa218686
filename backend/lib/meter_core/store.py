# backend/lib/meter_core/store.py
"""
Local offline-first record store.

``RecordStore`` is the contract the billing, monitor and sync layers depend
on. ``SqlRecordStore`` implements it with SQLAlchemy, by default on a SQLite
file in the data directory.
"""
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from sqlalchemy import Float, String, cast, create_engine, delete, distinct, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import (Base, BillRow, DeletionRow, MeterReadingRow, NotificationRow, PricingTierRow,
                 record_from_row, row_for, row_values)
from .errors import PersistenceError, RecordNotFoundError, ValidationError
from .models import (AppSettings, Bill, BillStatus, EntityType, MeterReading, Notification,
                     NotificationType, PricingTier, SyncableRecord, parse_bool, parse_datetime,
                     to_decimal)

logger = logging.getLogger(__name__)

READING_SORT_KEYS = ('date', 'consumption', 'cost', 'reading_value')


class RecordStore(ABC):
    """
    Local writes (``insert``/``update``) always clear the sync flag. Only
    ``mark_synced`` and ``apply_remote`` may leave a record flagged synced.
    """

    # -- writes ---------------------------------------------------------------

    @abstractmethod
    def insert(self, record: SyncableRecord) -> SyncableRecord:
        """Add a new record. An existing id raises ``ValidationError``."""

    @abstractmethod
    def update(self, record: SyncableRecord) -> SyncableRecord:
        """Replace a stored record. A missing id raises ``RecordNotFoundError``."""

    @abstractmethod
    def delete(self, entity, record_id: str) -> bool:
        ...

    @abstractmethod
    def mark_synced(self, entity, record_id: str, timestamp: datetime,
                    pushed: Optional[SyncableRecord] = None) -> SyncableRecord:
        ...

    @abstractmethod
    def apply_remote(self, record: SyncableRecord) -> SyncableRecord:
        ...

    @abstractmethod
    def replace_tiers(self, user_id: str, tiers: List[PricingTier]) -> List[PricingTier]:
        ...

    # -- queries --------------------------------------------------------------

    @abstractmethod
    def get(self, entity, record_id: str) -> Optional[SyncableRecord]:
        ...

    @abstractmethod
    def list_for_user(self, entity, user_id: str) -> List[SyncableRecord]:
        ...

    @abstractmethod
    def get_unsynced(self, entity) -> List[SyncableRecord]:
        ...

    @abstractmethod
    def get_readings(self, user_id: str) -> List[MeterReading]:
        ...

    @abstractmethod
    def get_readings_by_date_range(self, user_id: str, start, end) -> List[MeterReading]:
        ...

    @abstractmethod
    def search_readings(self, user_id: str, query: Optional[str] = None, start=None, end=None,
                        min_consumption=None, max_consumption=None, is_manual=None,
                        sort_by: str = 'date', sort_ascending: bool = False) -> List[MeterReading]:
        ...

    @abstractmethod
    def last_reading(self, user_id: str, before: Optional[datetime] = None) -> Optional[MeterReading]:
        ...

    @abstractmethod
    def get_tiers(self, user_id: str) -> List[PricingTier]:
        ...

    @abstractmethod
    def get_bills(self, user_id: str) -> List[Bill]:
        ...

    @abstractmethod
    def get_unpaid_bills(self, user_id: str) -> List[Bill]:
        ...

    @abstractmethod
    def get_notifications(self, user_id: str) -> List[Notification]:
        ...

    @abstractmethod
    def find_notifications(self, user_id: str, type: NotificationType, text: str) -> List[Notification]:
        ...

    @abstractmethod
    def get_app_settings(self, user_id: str) -> Optional[AppSettings]:
        ...

    @abstractmethod
    def known_user_ids(self) -> List[str]:
        ...

    # -- deletions the remote store has not seen yet --------------------------

    @abstractmethod
    def pending_deletions(self, entity) -> List[Tuple[str, str]]:
        """``(record_id, owner_id)`` pairs deleted locally but not remotely."""

    @abstractmethod
    def clear_deletion(self, entity, record_id: str) -> None:
        ...


def _owner_column(row_model):
    return row_model.user_id if hasattr(row_model, 'user_id') else row_model.id


def _content(record: SyncableRecord) -> SyncableRecord:
    return replace(record, is_synced=False, last_synced_at=None)


class SqlRecordStore(RecordStore):
    """
    One table per entity type plus ``deleted_records``.

    Every write runs in its own transaction under a re-entrant lock, so a
    row either fully lands or keeps its previous content. Database errors
    surface as ``PersistenceError``.
    """

    DB_FILE = "meter_tracker.db"

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        try:
            self.engine = create_engine(url, echo=echo, connect_args=connect_args)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"cannot open database {url}: {e}")
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._lock = threading.RLock()
        logger.debug("Record store opened at %s", url)

    @classmethod
    def in_directory(cls, data_dir) -> 'SqlRecordStore':
        """Store backed by ``<data_dir>/meter_tracker.db``."""
        path = Path(data_dir)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"cannot create data directory {path}: {e}")
        return cls(f"sqlite:///{path / cls.DB_FILE}")

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Commit on success, roll back on any error, always close."""
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Session rolled back due to error: %s", e)
            raise PersistenceError(f"database error: {e}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -- helpers --------------------------------------------------------------

    def _write(self, session: Session, record: SyncableRecord, row=None) -> None:
        values = row_values(record)
        if row is None:
            session.add(row_for(record.ENTITY)(**values))
            return
        for name, value in values.items():
            setattr(row, name, value)

    def _tombstone(self, session: Session, entity: EntityType, row) -> None:
        # Rows the remote never received need no tombstone
        if row.last_synced_at is None:
            return
        owner_id = record_from_row(entity, row).owner_id
        session.merge(DeletionRow(entity=entity.value, record_id=row.id, owner_id=owner_id))

    def _clear_tombstone(self, session: Session, entity: EntityType, record_id: str) -> None:
        session.execute(delete(DeletionRow).where(DeletionRow.entity == entity.value,
                                                  DeletionRow.record_id == record_id))

    def _records(self, entity, stmt) -> List[SyncableRecord]:
        with self.session_scope() as session:
            return [record_from_row(entity, row) for row in session.scalars(stmt)]

    # -- writes ---------------------------------------------------------------

    def insert(self, record: SyncableRecord) -> SyncableRecord:
        record = record.mark_dirty()
        with self._lock, self.session_scope() as session:
            if session.get(row_for(record.ENTITY), record.id) is not None:
                raise ValidationError(f"{record.ENTITY.value} record '{record.id}' already exists")
            self._write(session, record)
            try:
                session.flush()
            except IntegrityError:
                # Another connection inserted the same id first
                raise ValidationError(f"{record.ENTITY.value} record '{record.id}' already exists")
            self._clear_tombstone(session, record.ENTITY, record.id)
        return record

    def update(self, record: SyncableRecord) -> SyncableRecord:
        record = record.mark_dirty()
        with self._lock, self.session_scope() as session:
            row = session.get(row_for(record.ENTITY), record.id)
            if row is None:
                raise RecordNotFoundError(record.ENTITY.value, record.id)
            self._write(session, record, row)
        return record

    def delete(self, entity, record_id: str) -> bool:
        entity = EntityType(entity)
        with self._lock, self.session_scope() as session:
            row = session.get(row_for(entity), record_id)
            if row is None:
                return False
            self._tombstone(session, entity, row)
            session.delete(row)
        return True

    def mark_synced(self, entity, record_id: str, timestamp: datetime,
                    pushed: Optional[SyncableRecord] = None) -> SyncableRecord:
        """
        Flag a record as pushed at ``timestamp``.

        ``pushed`` is the copy that was sent. When the stored row no longer
        matches it, the record was edited while the push was in flight: the
        row keeps ``is_synced = False`` so the next run sends the new
        content, but ``last_synced_at`` still moves to ``timestamp`` so the
        pull of this run does not overwrite the edit with the older remote
        copy.
        """
        entity = EntityType(entity)
        with self._lock, self.session_scope() as session:
            row = session.get(row_for(entity), record_id)
            if row is None:
                raise RecordNotFoundError(entity.value, record_id)
            current = record_from_row(entity, row)
            row.last_synced_at = timestamp
            if pushed is not None and _content(current) != _content(pushed):
                logger.info("%s '%s' changed during its push; leaving it unsynced", entity.value, record_id)
                return replace(current, last_synced_at=timestamp)
            row.is_synced = True
        return current.mark_synced(timestamp)

    def apply_remote(self, record: SyncableRecord) -> SyncableRecord:
        """
        Store a copy received from the remote store. Fields that never leave
        the device are kept from the local row.
        """
        with self._lock, self.session_scope() as session:
            row = session.get(row_for(record.ENTITY), record.id)
            if row is not None and record.LOCAL_ONLY_FIELDS:
                existing = record_from_row(record.ENTITY, row)
                kept = {name: getattr(existing, name) for name in record.LOCAL_ONLY_FIELDS}
                record = replace(record, **kept)
            record = replace(record, is_synced=True)
            self._write(session, record, row)
        return record

    def replace_tiers(self, user_id: str, tiers: List[PricingTier]) -> List[PricingTier]:
        """Swap a user's whole tier set for ``tiers`` in one transaction."""
        for tier in tiers:
            if tier.user_id != user_id:
                raise ValidationError(f"tier '{tier.name}' belongs to another user")
        fresh = [t.mark_dirty() for t in tiers]
        keep = {t.id for t in fresh}
        with self._lock, self.session_scope() as session:
            old_rows = session.scalars(select(PricingTierRow).where(PricingTierRow.user_id == user_id)).all()
            for row in old_rows:
                if row.id not in keep:
                    self._tombstone(session, EntityType.PRICING_TIERS, row)
                    session.delete(row)
            for tier in fresh:
                self._write(session, tier, session.get(PricingTierRow, tier.id))
                self._clear_tombstone(session, EntityType.PRICING_TIERS, tier.id)
        return fresh

    # -- queries --------------------------------------------------------------

    def get(self, entity, record_id: str) -> Optional[SyncableRecord]:
        entity = EntityType(entity)
        with self.session_scope() as session:
            row = session.get(row_for(entity), record_id)
            return record_from_row(entity, row) if row is not None else None

    def list_for_user(self, entity, user_id: str) -> List[SyncableRecord]:
        row_model = row_for(entity)
        return self._records(entity, select(row_model).where(_owner_column(row_model) == user_id))

    def get_unsynced(self, entity) -> List[SyncableRecord]:
        row_model = row_for(entity)
        return self._records(entity, select(row_model).where(row_model.is_synced == False))  # noqa: E712

    def get_readings(self, user_id: str) -> List[MeterReading]:
        return self._records(EntityType.METER_READINGS,
                             select(MeterReadingRow)
                             .where(MeterReadingRow.user_id == user_id)
                             .order_by(MeterReadingRow.date))

    def get_readings_by_date_range(self, user_id: str, start, end) -> List[MeterReading]:
        """Readings with ``start <= date <= end``, oldest first."""
        start = parse_datetime(start, 'start')
        end = parse_datetime(end, 'end')
        return self._records(EntityType.METER_READINGS,
                             select(MeterReadingRow)
                             .where(MeterReadingRow.user_id == user_id,
                                    MeterReadingRow.date >= start,
                                    MeterReadingRow.date <= end)
                             .order_by(MeterReadingRow.date))

    def search_readings(self, user_id: str, query: Optional[str] = None, start=None, end=None,
                        min_consumption=None, max_consumption=None, is_manual=None,
                        sort_by: str = 'date', sort_ascending: bool = False) -> List[MeterReading]:
        """
        Filter a user's readings.

        ``query`` matches anywhere in the notes, the reading date or the
        reading value. Date and consumption bounds are inclusive. ``sort_by``
        is one of ``date``, ``consumption``, ``cost`` (sorted by consumption,
        which the cost follows) or ``reading_value``; newest or largest first
        unless ``sort_ascending``.
        """
        row = MeterReadingRow
        consumption = cast(row.consumption, Float)
        sort_columns = {
            'date': row.date,
            'consumption': consumption,
            'cost': consumption,
            'reading_value': cast(row.reading_value, Float),
        }
        if sort_by not in sort_columns:
            raise ValidationError(f"sort_by must be one of {', '.join(READING_SORT_KEYS)}, got {sort_by!r}")

        stmt = select(row).where(row.user_id == user_id)
        if query:
            stmt = stmt.where(or_(
                row.notes.contains(query, autoescape=True),
                cast(row.date, String).contains(query, autoescape=True),
                cast(row.reading_value, String).contains(query, autoescape=True),
            ))
        if start is not None:
            stmt = stmt.where(row.date >= parse_datetime(start, 'start'))
        if end is not None:
            stmt = stmt.where(row.date <= parse_datetime(end, 'end'))
        if min_consumption is not None:
            stmt = stmt.where(consumption >= float(to_decimal(min_consumption, 'min_consumption')))
        if max_consumption is not None:
            stmt = stmt.where(consumption <= float(to_decimal(max_consumption, 'max_consumption')))
        if is_manual is not None:
            stmt = stmt.where(row.is_manual == parse_bool(is_manual))

        key = sort_columns[sort_by]
        stmt = stmt.order_by(key.asc() if sort_ascending else key.desc(), row.id)
        return self._records(EntityType.METER_READINGS, stmt)

    def last_reading(self, user_id: str, before: Optional[datetime] = None) -> Optional[MeterReading]:
        stmt = select(MeterReadingRow).where(MeterReadingRow.user_id == user_id)
        if before is not None:
            stmt = stmt.where(MeterReadingRow.date < before)
        found = self._records(EntityType.METER_READINGS, stmt.order_by(MeterReadingRow.date.desc()).limit(1))
        return found[0] if found else None

    def get_tiers(self, user_id: str) -> List[PricingTier]:
        return self._records(EntityType.PRICING_TIERS,
                             select(PricingTierRow)
                             .where(PricingTierRow.user_id == user_id)
                             .order_by(cast(PricingTierRow.threshold, Float)))

    def get_bills(self, user_id: str) -> List[Bill]:
        return self._records(EntityType.BILLS,
                             select(BillRow)
                             .where(BillRow.user_id == user_id)
                             .order_by(BillRow.generated_at.desc()))

    def get_unpaid_bills(self, user_id: str) -> List[Bill]:
        """Bills not yet paid (unpaid or overdue), newest first."""
        return self._records(EntityType.BILLS,
                             select(BillRow)
                             .where(BillRow.user_id == user_id,
                                    BillRow.status != BillStatus.PAID.value)
                             .order_by(BillRow.generated_at.desc()))

    def get_notifications(self, user_id: str) -> List[Notification]:
        return self._records(EntityType.NOTIFICATIONS,
                             select(NotificationRow)
                             .where(NotificationRow.user_id == user_id)
                             .order_by(NotificationRow.date.desc()))

    def find_notifications(self, user_id: str, type: NotificationType, text: str) -> List[Notification]:
        """Notifications of ``type`` whose message contains ``text`` (case-sensitive)."""
        found = self._records(EntityType.NOTIFICATIONS,
                              select(NotificationRow)
                              .where(NotificationRow.user_id == user_id,
                                     NotificationRow.type == NotificationType(type).value)
                              .order_by(NotificationRow.date.desc()))
        return [n for n in found if text in n.message]

    def get_app_settings(self, user_id: str) -> Optional[AppSettings]:
        settings = self.list_for_user(EntityType.APP_SETTINGS, user_id)
        return settings[0] if settings else None

    def known_user_ids(self) -> List[str]:
        """Every user id that owns at least one record."""
        ids: Set[str] = set()
        with self.session_scope() as session:
            for entity in EntityType:
                ids.update(session.scalars(select(distinct(_owner_column(row_for(entity))))))
        return sorted(ids)

    def pending_deletions(self, entity) -> List[Tuple[str, str]]:
        entity = EntityType(entity)
        with self.session_scope() as session:
            rows = session.scalars(select(DeletionRow)
                                   .where(DeletionRow.entity == entity.value)
                                   .order_by(DeletionRow.record_id))
            return [(row.record_id, row.owner_id) for row in rows]

    def clear_deletion(self, entity, record_id: str) -> None:
        with self._lock, self.session_scope() as session:
            self._clear_tombstone(session, EntityType(entity), record_id)

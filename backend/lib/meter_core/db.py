# backend/lib/meter_core/db.py
"""
SQLAlchemy tables for the local store. There is one table per entity type,
with columns named after the record fields, plus ``deleted_records`` for
local deletions the remote store has not seen yet.
"""
from dataclasses import fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from .models import EntityType, SyncableRecord, UserSettings, model_for


class DecimalText(TypeDecorator):
    """Decimal stored as its string form so values come back exactly."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


class Base(DeclarativeBase):
    pass


class SyncColumns:
    is_synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class UserRow(SyncColumns, Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False, default='')
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class MeterReadingRow(SyncColumns, Base):
    __tablename__ = "meter_readings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reading_value: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    consumption: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    photo_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PricingTierRow(SyncColumns, Base):
    __tablename__ = "pricing_tiers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    rate_per_unit: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    threshold: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    inflation_factor: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class BillRow(SyncColumns, Base):
    __tablename__ = "bills"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    total_units: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)


class NotificationRow(SyncColumns, Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AppSettingsRow(SyncColumns, Base):
    __tablename__ = "app_settings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    theme: Mapped[str] = mapped_column(String(32), nullable=False)
    notification_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    auto_backup: Mapped[bool] = mapped_column(Boolean, nullable=False)
    ocr_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    voice_over_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    high_contrast_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)


class DeletionRow(Base):
    """A locally deleted record that the remote store still holds."""
    __tablename__ = "deleted_records"

    entity: Mapped[str] = mapped_column(String(32), primary_key=True)
    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<DeletionRow(entity={self.entity}, record_id={self.record_id})>"


ROW_MODELS = {
    EntityType.USERS: UserRow,
    EntityType.METER_READINGS: MeterReadingRow,
    EntityType.PRICING_TIERS: PricingTierRow,
    EntityType.BILLS: BillRow,
    EntityType.NOTIFICATIONS: NotificationRow,
    EntityType.APP_SETTINGS: AppSettingsRow,
}


def row_for(entity) -> type:
    return ROW_MODELS[EntityType(entity)]


def row_values(record: SyncableRecord) -> Dict[str, Any]:
    """Column values for ``record``."""
    values = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, UserSettings):
            value = value.to_dict()
        values[f.name] = value
    return values


def record_from_row(entity, row) -> SyncableRecord:
    model = model_for(entity)
    return model.from_dict({f.name: getattr(row, f.name) for f in fields(model)})

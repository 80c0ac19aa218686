# backend/lib/meter_core/models.py
"""
Record types for the tracker: users, readings, pricing tiers, bills,
notifications and app settings.

Every record carries a sync flag (``is_synced``) and the time it was last
reconciled with the remote store (``last_synced_at``). Quantities and money
are ``Decimal``; timestamps are naive UTC ``datetime`` values.
"""
import json
import uuid
from dataclasses import MISSING, dataclass, field, fields, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError


class EntityType(str, Enum):
    USERS = 'users'
    METER_READINGS = 'meter_readings'
    PRICING_TIERS = 'pricing_tiers'
    BILLS = 'bills'
    NOTIFICATIONS = 'notifications'
    APP_SETTINGS = 'app_settings'


# Order in which a sync run walks the entity types
SYNC_ORDER: List[EntityType] = [
    EntityType.USERS,
    EntityType.METER_READINGS,
    EntityType.PRICING_TIERS,
    EntityType.BILLS,
    EntityType.NOTIFICATIONS,
    EntityType.APP_SETTINGS,
]


class BillStatus(str, Enum):
    UNPAID = 'unpaid'
    PAID = 'paid'
    OVERDUE = 'overdue'


class NotificationType(str, Enum):
    HIGH_USAGE = 'high_usage'
    BILL_DUE = 'bill_due'
    SYSTEM = 'system'
    TIER_APPROACH = 'tier_approach'
    TIER_EXCEED = 'tier_exceed'


# =============================================================================
# VALUE HELPERS
# =============================================================================

def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_decimal(value: Any, name: str = 'value') -> Decimal:
    """
    Convert a number or numeric string to Decimal.

    Floats go through ``str`` first so 0.1 becomes Decimal('0.1') rather than
    its binary expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif value is None or isinstance(value, bool):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite, got {value!r}")
    return result


def parse_datetime(value: Any, name: str = 'date') -> datetime:
    """
    Parse an ISO-8601 string, date or datetime into a naive UTC datetime.
    """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        # fromisoformat does not accept a trailing Z on older interpreters
        text = value.strip().replace('Z', '+00:00')
        try:
            result = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"{name} is not an ISO-8601 date: {value!r}")
    else:
        raise ValidationError(f"{name} must be a date, got {value!r}")
    if result.tzinfo is not None:
        result = result.astimezone(timezone.utc).replace(tzinfo=None)
    return result


def optional_datetime(value: Any, name: str = 'date') -> Optional[datetime]:
    if value is None or value == '':
        return None
    return parse_datetime(value, name)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_bool(value: Any) -> bool:
    # SQLite-era exports store flags as 0/1 or "true"/"false"
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


# =============================================================================
# SYNCABLE RECORD BASE
# =============================================================================

class SyncableRecord:
    """
    Behaviour shared by every persisted record.

    Subclasses are dataclasses that end with ``is_synced`` and
    ``last_synced_at`` fields and list their typed fields in the class
    attributes below so that construction, ``to_dict`` and ``from_dict``
    coerce values the same way.
    """

    ENTITY: EntityType
    DECIMAL_FIELDS: tuple = ()
    DATETIME_FIELDS: tuple = ()
    OPTIONAL_DATETIME_FIELDS: tuple = ()
    BOOL_FIELDS: tuple = ()
    # Fields that must never be sent to the remote store
    LOCAL_ONLY_FIELDS: tuple = ()

    def __post_init__(self):
        for name in self.DECIMAL_FIELDS:
            setattr(self, name, to_decimal(getattr(self, name), name))
        for name in self.DATETIME_FIELDS:
            setattr(self, name, parse_datetime(getattr(self, name), name))
        for name in self.OPTIONAL_DATETIME_FIELDS + ('last_synced_at',):
            setattr(self, name, optional_datetime(getattr(self, name), name))
        for name in self.BOOL_FIELDS + ('is_synced',):
            setattr(self, name, parse_bool(getattr(self, name)))

    @property
    def owner_id(self) -> str:
        return getattr(self, 'user_id', None) or self.id

    def mark_dirty(self):
        """Copy flagged as changed locally; last_synced_at is left stale."""
        return replace(self, is_synced=False)

    def mark_synced(self, timestamp: datetime):
        return replace(self, is_synced=True, last_synced_at=timestamp)

    def _field_value(self, name: str, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, UserSettings):
            return value.to_dict()
        return value

    def to_dict(self) -> Dict[str, Any]:
        """Local JSON form: decimals are kept exact as strings."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Decimal):
                value = str(value)
            data[f.name] = self._field_value(f.name, value)
        return data

    def to_remote(self, synced_at: datetime) -> Dict[str, Any]:
        """
        Remote document form. Decimals stay Decimal (DynamoDB rejects float),
        the local sync flag is dropped and ``last_synced_at`` carries the
        push timestamp.
        """
        data = {}
        for f in fields(self):
            if f.name in ('is_synced',) + self.LOCAL_ONLY_FIELDS:
                continue
            data[f.name] = self._field_value(f.name, getattr(self, f.name))
        data['last_synced_at'] = synced_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        missing = [f.name for f in fields(cls)
                   if f.name not in kwargs and f.default is MISSING and f.default_factory is MISSING]
        if missing:
            raise ValidationError(f"{cls.__name__} is missing fields: {', '.join(missing)}")
        return cls(**kwargs)

    @classmethod
    def from_remote(cls, data: Dict[str, Any]):
        record = cls.from_dict(data)
        return replace(record, is_synced=True)


@dataclass
class UserSettings:
    """
    Typed per-user preferences. Unknown keys survive round-trips in
    ``extras``.
    """
    currency: str = 'EUR'
    billing_cycle_months: int = 2
    alert_approach_ratio: Decimal = Decimal('0.9')
    extras: Dict[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = ('currency', 'billing_cycle_months', 'alert_approach_ratio')

    def __post_init__(self):
        self.alert_approach_ratio = to_decimal(self.alert_approach_ratio, 'alert_approach_ratio')
        if not Decimal(0) < self.alert_approach_ratio <= Decimal(1):
            raise ValidationError("alert_approach_ratio must be in (0, 1]")
        self.billing_cycle_months = int(self.billing_cycle_months)
        if self.billing_cycle_months < 1:
            raise ValidationError("billing_cycle_months must be at least 1")

    @classmethod
    def from_dict(cls, data: Any) -> 'UserSettings':
        if isinstance(data, UserSettings):
            return data
        if isinstance(data, str):
            data = json.loads(data) if data.strip() else {}
        data = dict(data or {})
        known = {k: data.pop(k) for k in cls.KNOWN_KEYS if k in data}
        return cls(extras=data, **known)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extras)
        data.update({
            'currency': self.currency,
            'billing_cycle_months': self.billing_cycle_months,
            'alert_approach_ratio': str(self.alert_approach_ratio),
        })
        return data


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class User(SyncableRecord):
    id: str
    email: str
    name: str
    created_at: datetime
    password_hash: str = ''
    settings: UserSettings = field(default_factory=UserSettings)
    is_synced: bool = False
    last_synced_at: Optional[datetime] = None

    ENTITY = EntityType.USERS
    DATETIME_FIELDS = ('created_at',)
    LOCAL_ONLY_FIELDS = ('password_hash',)

    def __post_init__(self):
        super().__post_init__()
        self.settings = UserSettings.from_dict(self.settings)

    def to_remote(self, synced_at: datetime) -> Dict[str, Any]:
        data = super().to_remote(synced_at)
        data['settings'] = json.dumps(self.settings.to_dict())
        return data


@dataclass
class MeterReading(SyncableRecord):
    id: str
    user_id: str
    reading_value: Decimal
    date: datetime
    consumption: Decimal = Decimal(0)
    photo_path: Optional[str] = None
    notes: Optional[str] = None
    is_manual: bool = True
    is_synced: bool = False
    last_synced_at: Optional[datetime] = None

    ENTITY = EntityType.METER_READINGS
    DECIMAL_FIELDS = ('reading_value', 'consumption')
    DATETIME_FIELDS = ('date',)
    BOOL_FIELDS = ('is_manual',)


@dataclass
class PricingTier(SyncableRecord):
    id: str
    user_id: str
    name: str
    rate_per_unit: Decimal
    threshold: Decimal
    start_date: datetime
    inflation_factor: Decimal = Decimal(0)
    end_date: Optional[datetime] = None
    is_synced: bool = False
    last_synced_at: Optional[datetime] = None

    ENTITY = EntityType.PRICING_TIERS
    DECIMAL_FIELDS = ('rate_per_unit', 'threshold', 'inflation_factor')
    DATETIME_FIELDS = ('start_date',)
    OPTIONAL_DATETIME_FIELDS = ('end_date',)

    def covers(self, as_of: datetime) -> bool:
        """True when ``as_of`` falls inside the tier's validity window."""
        as_of = parse_datetime(as_of, 'as_of')
        if as_of < self.start_date:
            return False
        return self.end_date is None or as_of <= self.end_date


@dataclass
class Bill(SyncableRecord):
    id: str
    user_id: str
    start_date: datetime
    end_date: datetime
    total_units: Decimal
    total_amount: Decimal
    generated_at: datetime
    status: BillStatus = BillStatus.UNPAID
    is_synced: bool = False
    last_synced_at: Optional[datetime] = None

    ENTITY = EntityType.BILLS
    DECIMAL_FIELDS = ('total_units', 'total_amount')
    DATETIME_FIELDS = ('start_date', 'end_date', 'generated_at')

    def __post_init__(self):
        super().__post_init__()
        try:
            self.status = BillStatus(self.status)
        except ValueError:
            raise ValidationError(f"unknown bill status: {self.status!r}")


@dataclass
class Notification(SyncableRecord):
    id: str
    user_id: str
    type: NotificationType
    message: str
    date: datetime
    is_read: bool = False
    is_synced: bool = False
    last_synced_at: Optional[datetime] = None

    ENTITY = EntityType.NOTIFICATIONS
    DATETIME_FIELDS = ('date',)
    BOOL_FIELDS = ('is_read',)

    def __post_init__(self):
        super().__post_init__()
        try:
            self.type = NotificationType(self.type)
        except ValueError:
            raise ValidationError(f"unknown notification type: {self.type!r}")


@dataclass
class AppSettings(SyncableRecord):
    id: str
    user_id: str
    theme: str = 'light'
    notification_enabled: bool = True
    auto_backup: bool = True
    ocr_enabled: bool = True
    voice_over_enabled: bool = False
    high_contrast_enabled: bool = False
    is_synced: bool = False
    last_synced_at: Optional[datetime] = None

    ENTITY = EntityType.APP_SETTINGS
    BOOL_FIELDS = ('notification_enabled', 'auto_backup', 'ocr_enabled',
                   'voice_over_enabled', 'high_contrast_enabled')


ENTITY_MODELS = {
    EntityType.USERS: User,
    EntityType.METER_READINGS: MeterReading,
    EntityType.PRICING_TIERS: PricingTier,
    EntityType.BILLS: Bill,
    EntityType.NOTIFICATIONS: Notification,
    EntityType.APP_SETTINGS: AppSettings,
}


def model_for(entity) -> type:
    return ENTITY_MODELS[EntityType(entity)]

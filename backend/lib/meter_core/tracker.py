# backend/lib/meter_core/tracker.py
"""
Operations the app exposes, composed from the store, billing, monitor and
sync layers. Nothing here talks to AWS directly; the collaborators are
passed in by ``backend.lib.wiring.build_tracker``.
"""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .billing import (BillingEstimator, build_bill, current_month_period,
                      is_billing_day, previous_billing_period,
                      sort_tiers, total_consumption)
from .errors import RecordNotFoundError, ValidationError
from .models import (AppSettings, Bill, BillStatus, EntityType, MeterReading,
                     Notification, NotificationType, PricingTier, User,
                     UserSettings, new_id, parse_datetime, to_decimal, utc_now)
from .monitor import ThresholdMonitor
from .processor import (EnergyAnalyzer, consumption_since, derive_consumption,
                        energy_saving_suggestion)
from .store import RecordStore
from .sync import SyncEngine, SyncReport, SyncStatus

logger = logging.getLogger(__name__)

READING_FIELDS = ('reading_value', 'date', 'notes', 'photo_path', 'is_manual')
REMINDER_LEAD = timedelta(days=3)


class MeterTracker:
    def __init__(self, store: RecordStore, sync: Optional[SyncEngine] = None,
                 notifier=None, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.sync = sync
        self.notifier = notifier
        self.clock = clock
        self.monitor = ThresholdMonitor(store, notifier=notifier, clock=clock)

    # =========================================================================
    # USERS & SETTINGS
    # =========================================================================

    def register_user(self, email: str, name: str, password_hash: str = '',
                      settings=None, user_id: Optional[str] = None) -> User:
        """Create a user together with default app settings."""
        user = self.store.insert(User(
            id=user_id or new_id(),
            email=email,
            name=name,
            created_at=self.clock(),
            password_hash=password_hash,
            settings=UserSettings.from_dict(settings or {}),
        ))
        self.store.insert(AppSettings(id=new_id(), user_id=user.id))
        logger.info("Registered user %s", user.id)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get(EntityType.USERS, user_id)
        if user is None:
            raise RecordNotFoundError(EntityType.USERS.value, user_id)
        return user

    def _user_settings(self, user_id: str) -> UserSettings:
        user = self.store.get(EntityType.USERS, user_id)
        return user.settings if user is not None else UserSettings()

    def app_settings(self, user_id: str) -> AppSettings:
        settings = self.store.get_app_settings(user_id)
        return settings if settings is not None else AppSettings(id=new_id(), user_id=user_id)

    def update_app_settings(self, user_id: str, **changes) -> AppSettings:
        current = self.store.get_app_settings(user_id)
        unknown = set(changes) - set(AppSettings.BOOL_FIELDS) - {'theme'}
        if unknown:
            raise ValidationError(f"unknown settings: {', '.join(sorted(unknown))}")
        if current is None:
            return self.store.insert(AppSettings(id=new_id(), user_id=user_id, **changes))
        return self.store.update(replace(current, **changes))

    # =========================================================================
    # READINGS
    # =========================================================================

    def _rederive(self, user_id: str) -> None:
        """Rewrite stored consumption values that no longer match the readings."""
        readings = self.store.get_readings(user_id)
        for derived, stored in zip(derive_consumption(readings), readings):
            if derived.consumption != stored.consumption:
                self.store.update(derived)

    def _after_readings_changed(self, user_id: str) -> None:
        self._rederive(user_id)
        if self.app_settings(user_id).notification_enabled:
            self.monitor.check_user(user_id)
        self._auto_backup(user_id)

    def _auto_backup(self, user_id: str) -> Optional[SyncReport]:
        if self.sync is None or not self.app_settings(user_id).auto_backup:
            return None
        return self.sync.perform_incremental_sync(user_id)

    def add_reading(self, user_id: str, reading_value, date=None, notes: Optional[str] = None,
                    photo_path: Optional[str] = None, is_manual: bool = True) -> MeterReading:
        """
        Store a cumulative meter value. Its consumption is the increase over
        the previous reading; later readings are re-derived for backdated
        entries.
        """
        value = to_decimal(reading_value, 'reading_value')
        if value < 0:
            raise ValidationError("reading_value must be >= 0")
        date = parse_datetime(date, 'date') if date is not None else self.clock()
        previous = self.store.last_reading(user_id, before=date)
        reading = self.store.insert(MeterReading(
            id=new_id(),
            user_id=user_id,
            reading_value=value,
            date=date,
            consumption=consumption_since(previous, value),
            photo_path=photo_path,
            notes=notes,
            is_manual=is_manual,
        ))
        self._after_readings_changed(user_id)
        return self.store.get(EntityType.METER_READINGS, reading.id)

    def get_reading(self, reading_id: str) -> MeterReading:
        reading = self.store.get(EntityType.METER_READINGS, reading_id)
        if reading is None:
            raise RecordNotFoundError(EntityType.METER_READINGS.value, reading_id)
        return reading

    def edit_reading(self, reading_id: str, **changes) -> MeterReading:
        unknown = set(changes) - set(READING_FIELDS)
        if unknown:
            raise ValidationError(f"cannot edit reading fields: {', '.join(sorted(unknown))}")
        reading = self.get_reading(reading_id)
        updated = replace(reading, **changes)
        if updated.reading_value < 0:
            raise ValidationError("reading_value must be >= 0")
        self.store.update(updated)
        self._after_readings_changed(reading.user_id)
        return self.store.get(EntityType.METER_READINGS, reading_id)

    def delete_reading(self, reading_id: str) -> None:
        reading = self.get_reading(reading_id)
        self.store.delete(EntityType.METER_READINGS, reading_id)
        self._rederive(reading.user_id)
        self._auto_backup(reading.user_id)

    def get_readings(self, user_id: str, start=None, end=None) -> List[MeterReading]:
        if start is None and end is None:
            return self.store.get_readings(user_id)
        start = start if start is not None else datetime.min
        end = end if end is not None else datetime.max
        return self.store.get_readings_by_date_range(user_id, start, end)

    def search_readings(self, user_id: str, query: Optional[str] = None, start=None, end=None,
                        min_consumption=None, max_consumption=None, is_manual=None,
                        sort_by: str = 'date', sort_ascending: bool = False) -> List[MeterReading]:
        """Text search plus date, consumption and manual-entry filters; newest first by default."""
        return self.store.search_readings(user_id, query=query, start=start, end=end,
                                          min_consumption=min_consumption,
                                          max_consumption=max_consumption, is_manual=is_manual,
                                          sort_by=sort_by, sort_ascending=sort_ascending)

    def import_readings(self, readings: Iterable[MeterReading]) -> List[MeterReading]:
        """Insert parsed readings (e.g. from CSV), then derive consumption once per user."""
        stored = [self.store.insert(r) for r in readings]
        for user_id in sorted({r.user_id for r in stored}):
            self._after_readings_changed(user_id)
        return [self.store.get(EntityType.METER_READINGS, r.id) for r in stored]

    # =========================================================================
    # TIERS & BILLING
    # =========================================================================

    def get_tiers(self, user_id: str) -> List[PricingTier]:
        return self.store.get_tiers(user_id)

    def replace_tiers(self, user_id: str, tiers: Iterable) -> List[PricingTier]:
        """
        Swap the user's tier table. Accepts PricingTier objects or dicts; the
        table is validated before anything is written.
        """
        now = self.clock()
        built = []
        for tier in tiers:
            if isinstance(tier, dict):
                data = dict(tier)
                data.setdefault('id', new_id())
                data.setdefault('start_date', now)
                data['user_id'] = user_id
                tier = PricingTier.from_dict(data)
            built.append(tier)
        return self.store.replace_tiers(user_id, sort_tiers(built))

    def estimate_current_bill(self, user_id: str, now: Optional[datetime] = None) -> Dict:
        """Cost of this calendar month so far, with the per-tier breakdown."""
        now = now or self.clock()
        start, end = current_month_period(now)
        units = total_consumption(self.store.get_readings_by_date_range(user_id, start, end))
        estimator = BillingEstimator(self.store.get_tiers(user_id))
        return {
            'period_start': start,
            'period_end': end,
            'total_units': units,
            'amount': estimator.cost_for(units, now),
            'breakdown': estimator.breakdown(units),
            'currency': self._user_settings(user_id).currency,
        }

    def cost_for(self, user_id: str, consumption, as_of=None):
        return BillingEstimator(self.store.get_tiers(user_id)).cost_for(consumption, as_of)

    def generate_bill(self, user_id: str, start, end, now: Optional[datetime] = None) -> Bill:
        now = now or self.clock()
        bill = build_bill(user_id, self.store.get_readings(user_id), self.store.get_tiers(user_id),
                          start, end, generated_at=now)
        bill = self.store.insert(bill)
        logger.info("Generated bill %s for user %s: %s", bill.id, user_id, bill.total_amount)
        self.schedule_bill_reminder(bill, now)
        return bill

    def auto_generate_bill(self, user_id: str, today: Optional[datetime] = None,
                           force: bool = False) -> Optional[Bill]:
        """
        Raise the periodic bill on a billing day (1st of odd months) for the
        billing cycle that just ended. Returns None if it is not a billing
        day or the bill already exists.
        """
        today = today or self.clock()
        if not force and not is_billing_day(today):
            return None
        start, end = previous_billing_period(today, self._user_settings(user_id).billing_cycle_months)
        for bill in self.store.get_bills(user_id):
            if bill.start_date == start and bill.end_date == end:
                logger.info("Bill for %s - %s already exists for user %s", start.date(), end.date(), user_id)
                return None
        return self.generate_bill(user_id, start, end, now=today)

    def get_bills(self, user_id: str) -> List[Bill]:
        return self.store.get_bills(user_id)

    def get_unpaid_bills(self, user_id: str) -> List[Bill]:
        return self.store.get_unpaid_bills(user_id)

    def _set_bill_status(self, bill_id: str, status: BillStatus) -> Bill:
        bill = self.store.get(EntityType.BILLS, bill_id)
        if bill is None:
            raise RecordNotFoundError(EntityType.BILLS.value, bill_id)
        if bill.status is not BillStatus.UNPAID:
            raise ValidationError(f"bill '{bill_id}' is already {bill.status.value}")
        return self.store.update(replace(bill, status=status))

    def mark_bill_paid(self, bill_id: str) -> Bill:
        return self._set_bill_status(bill_id, BillStatus.PAID)

    def mark_bill_overdue(self, bill_id: str) -> Bill:
        return self._set_bill_status(bill_id, BillStatus.OVERDUE)

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    def schedule_bill_reminder(self, bill: Bill, now: Optional[datetime] = None) -> Optional[Notification]:
        """
        Store a bill_due notification three days before the bill's end date.
        Past reminders and users with notifications off are skipped.
        """
        now = now or self.clock()
        if not self.app_settings(bill.user_id).notification_enabled:
            return None
        due = bill.end_date
        if due - REMINDER_LEAD < now:
            return None
        reminder_id = f"bill_reminder_{bill.id}"
        if self.store.get(EntityType.NOTIFICATIONS, reminder_id) is not None:
            return None
        notification = self.store.insert(Notification(
            id=reminder_id,
            user_id=bill.user_id,
            type=NotificationType.BILL_DUE,
            message=f"Bill reminder scheduled for {due.date().isoformat()}",
            date=now,
        ))
        self.monitor.deliver(notification)
        return notification

    def get_notifications(self, user_id: str) -> List[Notification]:
        return self.store.get_notifications(user_id)

    def mark_notification_read(self, notification_id: str) -> Notification:
        notification = self.store.get(EntityType.NOTIFICATIONS, notification_id)
        if notification is None:
            raise RecordNotFoundError(EntityType.NOTIFICATIONS.value, notification_id)
        if notification.is_read:
            return notification
        return self.store.update(replace(notification, is_read=True))

    def check_alerts(self, user_id: str) -> List[Notification]:
        return self.monitor.check_user(user_id)

    # =========================================================================
    # ANALYTICS
    # =========================================================================

    def usage_summary(self, user_id: str, spike_threshold_pct: float = 50.0) -> Dict:
        analyzer = EnergyAnalyzer(self.store.get_readings(user_id))
        return {
            'total_units': analyzer.total_consumption(),
            'daily': analyzer.daily_usage(),
            'monthly': analyzer.monthly_usage(),
            'monthly_cost': analyzer.cost_over_time(self.store.get_tiers(user_id)),
            'spikes': analyzer.detect_spikes(spike_threshold_pct),
        }

    def predict(self, user_id: str, days: int = 30):
        return EnergyAnalyzer(self.store.get_readings(user_id)).predict(days)

    def saving_suggestion(self, user_id: str, now: Optional[datetime] = None) -> Optional[str]:
        now = now or self.clock()
        start, _ = current_month_period(now)
        return energy_saving_suggestion(self.store.get_readings_by_date_range(user_id, start, now), now)

    # =========================================================================
    # SYNC
    # =========================================================================

    def sync_status(self) -> SyncStatus:
        if self.sync is None:
            return SyncStatus(is_online=False, is_syncing=False, error="sync disabled")
        return self.sync.status

    def sync_now(self, user_id: Optional[str] = None) -> Optional[SyncReport]:
        if self.sync is None:
            return None
        return self.sync.perform_full_sync(user_id)

    def restore(self, user_id: str) -> Optional[SyncReport]:
        if self.sync is None:
            return None
        return self.sync.restore(user_id)

# backend/lib/meter_core/monitor.py
"""
Tier threshold alerts.

``evaluate`` is a pure check of one period's consumption against a tier
table. ``ThresholdMonitor`` turns its result into stored notifications,
skipping any tier the user has already been told about.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, List, Optional

from .billing import current_month_period, sort_tiers, total_consumption
from .errors import MeterTrackerError
from .models import (Notification, NotificationType, PricingTier, new_id,
                     to_decimal, utc_now)
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_APPROACH_RATIO = Decimal('0.9')


class AlertState(str, Enum):
    APPROACHING = 'approaching'
    EXCEEDED = 'exceeded'


@dataclass(frozen=True)
class TierAlert:
    tier: PricingTier
    state: AlertState

    @property
    def notification_type(self) -> NotificationType:
        if self.state is AlertState.EXCEEDED:
            return NotificationType.TIER_EXCEED
        return NotificationType.TIER_APPROACH


def evaluate(period_consumption, tiers: Iterable[PricingTier],
             approach_ratio=DEFAULT_APPROACH_RATIO) -> List[TierAlert]:
    """
    One alert per tier the consumption has reached or is close to.

    A tier is ``approaching`` from ``approach_ratio * threshold`` up to (not
    including) the threshold and ``exceeded`` from the threshold on.
    """
    consumption = to_decimal(period_consumption, 'period_consumption')
    ratio = to_decimal(approach_ratio, 'approach_ratio')
    alerts = []
    for tier in sort_tiers(tiers):
        if consumption >= tier.threshold:
            alerts.append(TierAlert(tier, AlertState.EXCEEDED))
        elif consumption >= tier.threshold * ratio:
            alerts.append(TierAlert(tier, AlertState.APPROACHING))
    return alerts


def alert_message(alert: TierAlert, consumption) -> str:
    consumption = to_decimal(consumption, 'consumption')
    verb = "exceeded" if alert.state is AlertState.EXCEEDED else "approaching"
    return (f"Consumption {verb} {alert.tier.name} threshold "
            f"({alert.tier.threshold:.0f} kWh). Current: {consumption:.0f} kWh.")


class ThresholdMonitor:
    """
    Runs ``evaluate`` over a user's current month and stores the alerts.

    notifier: optional object with ``publish_notification(notification)``,
    called after the notification has been stored.
    """

    def __init__(self, store: RecordStore, notifier=None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    def _approach_ratio(self, user_id: str) -> Decimal:
        user = self.store.get('users', user_id)
        if user is None:
            return DEFAULT_APPROACH_RATIO
        return user.settings.alert_approach_ratio

    def _already_notified(self, user_id: str, alert: TierAlert) -> bool:
        return bool(self.store.find_notifications(user_id, alert.notification_type, alert.tier.name))

    def check_user(self, user_id: str, now: Optional[datetime] = None) -> List[Notification]:
        """Create notifications for new tier alerts; returns the ones created."""
        now = now or self.clock()
        tiers = self.store.get_tiers(user_id)
        if not tiers:
            return []
        start, end = current_month_period(now)
        consumption = total_consumption(self.store.get_readings_by_date_range(user_id, start, end))

        created = []
        for alert in evaluate(consumption, tiers, self._approach_ratio(user_id)):
            if self._already_notified(user_id, alert):
                continue
            notification = self.store.insert(Notification(
                id=new_id(),
                user_id=user_id,
                type=alert.notification_type,
                message=alert_message(alert, consumption),
                date=now,
            ))
            logger.info("Tier alert for user %s: %s", user_id, notification.message)
            created.append(notification)
            self.deliver(notification)
        return created

    def deliver(self, notification: Notification) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish_notification(notification)
        except MeterTrackerError as e:
            logger.warning("Could not deliver notification %s: %s", notification.id, e)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Check every known user. Users who turned notifications off are
        skipped; one user's failure does not stop the sweep.
        Returns the number of notifications created.
        """
        now = now or self.clock()
        created = 0
        for user_id in self.store.known_user_ids():
            settings = self.store.get_app_settings(user_id)
            if settings is not None and not settings.notification_enabled:
                continue
            try:
                created += len(self.check_user(user_id, now))
            except MeterTrackerError as e:
                logger.warning("Tier alert check failed for user %s: %s", user_id, e)
        logger.info("Tier alert sweep created %d notifications", created)
        return created

# tests/conftest.py
from datetime import datetime, timedelta

import pytest

from backend.lib.meter_core.errors import NotificationDeliveryError, SyncPushError
from backend.lib.meter_core.models import EntityType, MeterReading, PricingTier
from backend.lib.meter_core.store import SqlRecordStore


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRemote:
    """In-memory stand-in for DynamoDBService."""

    def __init__(self):
        self.items = {}
        self.put_calls = 0
        self.fail_ids = set()
        self.fail_reads = False

    def put_record(self, user_id, entity, item):
        entity = EntityType(entity)
        self.put_calls += 1
        if item['id'] in self.fail_ids:
            raise SyncPushError(entity.value, item['id'], 'simulated outage')
        self.items[(user_id, entity.value, item['id'])] = dict(item)

    def get_records(self, user_id, entity):
        entity = EntityType(entity)
        if self.fail_reads:
            raise SyncPushError(entity.value, None, 'simulated outage')
        return [dict(item) for (owner, name, _), item in sorted(self.items.items())
                if owner == user_id and name == entity.value]

    def delete_record(self, user_id, entity, record_id):
        self.items.pop((user_id, EntityType(entity).value, record_id), None)

    def records(self, entity):
        entity = EntityType(entity)
        return [item for (_, name, _), item in self.items.items() if name == entity.value]


class FakePhotos:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploaded = []

    def upload_reading_photo(self, reading):
        if self.fail:
            raise SyncPushError('meter_readings', reading.id, 'photo upload: simulated outage')
        self.uploaded.append(reading.id)
        return f"photos/{reading.user_id}/{reading.id}.jpg"


class FakeNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish_notification(self, notification):
        if self.fail:
            raise NotificationDeliveryError("simulated outage")
        self.published.append(notification)
        return "msg-1"


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 11, 20, 12, 0, 0))


@pytest.fixture
def store(tmp_path):
    return SqlRecordStore.in_directory(tmp_path / "data")


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def photos():
    return FakePhotos()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_tier():
    def _make(name, rate, threshold, user_id="u-1", inflation="0",
              start_date=datetime(2025, 1, 1), tier_id=None):
        return PricingTier(
            id=tier_id or f"tier-{name.replace(' ', '-').lower()}",
            user_id=user_id,
            name=name,
            rate_per_unit=rate,
            threshold=threshold,
            start_date=start_date,
            inflation_factor=inflation,
        )
    return _make


@pytest.fixture
def make_reading():
    counter = {'n': 0}

    def _make(date, consumption="0", reading_value=None, user_id="u-1", reading_id=None, **kwargs):
        counter['n'] += 1
        return MeterReading(
            id=reading_id or f"r-{counter['n']}",
            user_id=user_id,
            reading_value=reading_value if reading_value is not None else consumption,
            date=date,
            consumption=consumption,
            **kwargs
        )
    return _make


@pytest.fixture
def failing_notifier():
    return FakeNotifier(fail=True)


@pytest.fixture
def failing_photos():
    return FakePhotos(fail=True)

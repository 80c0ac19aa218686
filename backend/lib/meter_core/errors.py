# backend/lib/meter_core/errors.py
"""
Exception types shared by the billing, store and sync layers.
"""
from typing import Optional


class MeterTrackerError(Exception):
    """Base class for all tracker errors."""


class ValidationError(MeterTrackerError, ValueError):
    """Malformed numeric input or an invalid tier table."""


class PersistenceError(MeterTrackerError):
    """The local record store could not be read or written."""


class RecordNotFoundError(MeterTrackerError, KeyError):
    def __init__(self, entity: str, record_id: str):
        super().__init__(f"{entity} record '{record_id}' not found")
        self.entity = entity
        self.record_id = record_id

    def __str__(self):
        return self.args[0]


class SyncPushError(MeterTrackerError):
    """A remote write (or read) failed for a specific record."""

    def __init__(self, entity: str, record_id: Optional[str], cause: object = None):
        message = f"failed to sync {entity}"
        if record_id:
            message += f" '{record_id}'"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.entity = entity
        self.record_id = record_id
        self.cause = cause


class SyncConflictAmbiguous(UserWarning):
    """
    Warning category for a conflict where local and remote copies carry no
    comparable timestamps. Resolved by letting the remote copy win; logged,
    never raised.
    """


class NotificationDeliveryError(MeterTrackerError):
    """An alert was stored but could not be handed to the delivery channel."""

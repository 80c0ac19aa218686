# backend/lib/meter_core/scheduler.py
"""
Connectivity tracking and the periodic jobs that drive sync and alerts.
"""
import logging
import socket
import threading
from typing import Callable, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .monitor import ThresholdMonitor
from .sync import SyncEngine, SyncReport

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Holds the current online state and tells listeners about changes.

    Listeners are called as ``listener(was_online, is_online)`` only when the
    state actually flips.
    """

    def __init__(self, online: bool = False, probe_host: Optional[str] = None,
                 probe_port: int = 443, probe_timeout: float = 3.0):
        self._online = online
        self.probe_host = probe_host
        self.probe_port = probe_port
        self.probe_timeout = probe_timeout
        self._lock = threading.Lock()
        self._listeners: List[Callable[[bool, bool], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: Callable[[bool, bool], None]) -> None:
        self._listeners.append(listener)

    def set_online(self, online: bool) -> None:
        with self._lock:
            was_online = self._online
            self._online = bool(online)
        if was_online == self._online:
            return
        logger.info("Connectivity changed: %s", "online" if self._online else "offline")
        for listener in list(self._listeners):
            listener(was_online, self._online)

    def probe(self) -> bool:
        """Open a TCP connection to the probe host and record the result."""
        if not self.probe_host:
            return self._online
        try:
            with socket.create_connection((self.probe_host, self.probe_port), timeout=self.probe_timeout):
                online = True
        except OSError:
            online = False
        self.set_online(online)
        return online


def run_background_sync(engine: SyncEngine, user_id: Optional[str] = None) -> Optional[SyncReport]:
    """
    Entry point for an external scheduler (cron, Lambda, OS task).

    Safe to call at any cadence: overlapping or offline calls return None.
    """
    report = engine.perform_full_sync(user_id)
    if report is None:
        logger.info("Background sync skipped (offline or already running)")
    return report


class SyncScheduler:
    """
    Runs sync on the offline-to-online edge and on a fixed interval, and the
    tier alert sweep on a slower one.
    """

    SYNC_JOB_ID = 'incremental_sync'
    SWEEP_JOB_ID = 'tier_alert_sweep'
    PROBE_JOB_ID = 'connectivity_probe'

    def __init__(self, engine: SyncEngine, monitor: ThresholdMonitor,
                 connectivity: ConnectivityMonitor, sync_interval_seconds: int = 300,
                 alert_sweep_hours: int = 6, probe_interval_seconds: int = 60,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.engine = engine
        self.monitor = monitor
        self.connectivity = connectivity
        self.sync_interval_seconds = sync_interval_seconds
        self.alert_sweep_hours = alert_sweep_hours
        self.probe_interval_seconds = probe_interval_seconds
        self._scheduler = scheduler
        connectivity.add_listener(self._on_connectivity_change)

    def _on_connectivity_change(self, was_online: bool, is_online: bool) -> None:
        if not was_online and is_online:
            logger.info("Back online, starting full sync")
            self.engine.perform_full_sync()

    def sync_tick(self) -> Optional[SyncReport]:
        if not self.engine.is_online or self.engine.is_syncing:
            return None
        return self.engine.perform_incremental_sync()

    def sweep_tick(self) -> int:
        return self.monitor.sweep()

    def run_background_sync(self, user_id: Optional[str] = None) -> Optional[SyncReport]:
        return run_background_sync(self.engine, user_id)

    def _build_scheduler(self) -> BackgroundScheduler:
        return BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=2)},
            job_defaults={'coalesce': True, 'max_instances': 1},
            timezone='UTC',
        )

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            logger.warning("Sync scheduler is already running")
            return
        if self._scheduler is None:
            self._scheduler = self._build_scheduler()

        self._scheduler.add_job(self.sync_tick, IntervalTrigger(seconds=self.sync_interval_seconds),
                                id=self.SYNC_JOB_ID, replace_existing=True)
        self._scheduler.add_job(self.sweep_tick, IntervalTrigger(hours=self.alert_sweep_hours),
                                id=self.SWEEP_JOB_ID, replace_existing=True)
        if self.connectivity.probe_host:
            self._scheduler.add_job(self.connectivity.probe,
                                    IntervalTrigger(seconds=self.probe_interval_seconds),
                                    id=self.PROBE_JOB_ID, replace_existing=True)
        self._scheduler.start()
        logger.info("Sync scheduler started (sync every %ss, alert sweep every %sh)",
                    self.sync_interval_seconds, self.alert_sweep_hours)

    def shutdown(self, wait: bool = False) -> None:
        if self.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Sync scheduler stopped")

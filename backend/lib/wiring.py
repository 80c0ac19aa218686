"""
=============================================================================
WIRING - Builds the tracker and its AWS collaborators from a Config
=============================================================================
Every AWS service is optional. When a USE_* toggle is off, or the service
fails to initialise, the tracker still works fully offline on the local
SQLite store; only sync / photo upload / alert delivery are missing.

Used by the Flask app, the local runner and the Lambda handlers, so all of
them get the same object graph.
=============================================================================
"""

from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from backend.lib.config import Config
from backend.lib.meter_core.errors import MeterTrackerError
from backend.lib.meter_core.scheduler import ConnectivityMonitor, SyncScheduler
from backend.lib.meter_core.store import SqlRecordStore
from backend.lib.meter_core.sync import SyncEngine
from backend.lib.meter_core.tracker import MeterTracker

# Errors that mean "this AWS service is unavailable", not a bug in our code
AWS_INIT_ERRORS = (ClientError, BotoCoreError, MeterTrackerError)


def build_dynamodb(config: Config):
    if not config.use_dynamodb:
        return None
    try:
        from backend.lib.dynamodb_service import DynamoDBService
        service = DynamoDBService(table_name=config.dynamodb_table_name, region=config.aws_region,
                                  timeout_seconds=config.push_timeout_seconds)
        service.create_table_if_not_exists()
        print("DynamoDB sync enabled")
        return service
    except AWS_INIT_ERRORS as e:
        print(f"DynamoDB initialization failed: {e}. Sync disabled.")
        return None


def build_s3(config: Config):
    if not config.use_s3:
        return None
    try:
        from backend.lib.s3_service import S3Service
        service = S3Service(bucket_name=config.s3_bucket_name, region=config.aws_region,
                            timeout_seconds=config.push_timeout_seconds)
        service.create_bucket_if_not_exists()
        print("S3 photo storage enabled")
        return service
    except AWS_INIT_ERRORS as e:
        print(f"S3 initialization failed: {e}. Photo upload disabled.")
        return None


def build_sns(config: Config):
    if not config.use_sns:
        return None
    try:
        from backend.lib.sns_service import SNSService
        service = SNSService(topic_arn=config.sns_topic_arn, region=config.aws_region,
                             timeout_seconds=config.push_timeout_seconds)
        if not service.topic_arn:
            service.create_topic_if_not_exists()
        print("SNS notifications enabled")
        return service
    except AWS_INIT_ERRORS as e:
        print(f"SNS initialization failed: {e}. Notifications disabled.")
        return None


def build_connectivity(config: Config) -> ConnectivityMonitor:
    # Without a probe host we assume the server is always online
    connectivity = ConnectivityMonitor(online=not config.connectivity_probe_host,
                                       probe_host=config.connectivity_probe_host)
    connectivity.probe()
    return connectivity


def build_tracker(config: Optional[Config] = None, remote=None, photos=None, notifier=None,
                  connectivity: Optional[ConnectivityMonitor] = None) -> MeterTracker:
    """
    Assemble a MeterTracker. Collaborators passed in explicitly win over the
    ones the config would build (tests and Lambda handlers use this).
    """
    config = config or Config.from_env()
    if config.database_url:
        store = SqlRecordStore(config.database_url)
    else:
        store = SqlRecordStore.in_directory(config.data_dir)

    remote = remote if remote is not None else build_dynamodb(config)
    photos = photos if photos is not None else build_s3(config)
    notifier = notifier if notifier is not None else build_sns(config)

    sync = None
    if remote is not None:
        connectivity = connectivity or build_connectivity(config)
        sync = SyncEngine(store, remote, photos=photos, connectivity=connectivity)
    return MeterTracker(store, sync=sync, notifier=notifier)


def build_scheduler(tracker: MeterTracker, config: Config) -> Optional[SyncScheduler]:
    """Background jobs; without sync only the alert sweep would run, so it still starts."""
    connectivity = tracker.sync.connectivity if tracker.sync else ConnectivityMonitor(online=False)
    engine = tracker.sync or SyncEngine(tracker.store, remote=None, connectivity=connectivity)
    return SyncScheduler(engine, tracker.monitor, connectivity,
                         sync_interval_seconds=config.sync_interval_seconds,
                         alert_sweep_hours=config.alert_sweep_hours)

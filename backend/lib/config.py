"""
=============================================================================
CONFIGURATION - Environment settings for the meter tracker
=============================================================================
All settings come from environment variables. A .env file in the working
directory is loaded first, so AWS keys and table names stay out of the code.

Records live in DATABASE_URL (any SQLAlchemy URL), or by default in
DATA_DIR/meter_tracker.db.

Feature toggles (all default to false, the app then runs fully offline):
    USE_DYNAMODB     Sync records with a DynamoDB table
    USE_S3_STORAGE   Upload reading photos to S3
    USE_SNS          Publish tier alerts to an SNS topic
    USE_SCHEDULER    Run the background sync / alert jobs in-process
=============================================================================
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _flag(name: str, default: str = 'false') -> bool:
    # Same convention as the rest of the app: only "true" switches a feature on
    return os.getenv(name, default).lower() == 'true'


@dataclass
class Config:
    data_dir: str = 'data'
    # SQLAlchemy URL; empty means a SQLite file inside data_dir
    database_url: Optional[str] = None

    # Feature toggles
    use_dynamodb: bool = False
    use_s3: bool = False
    use_sns: bool = False
    use_scheduler: bool = False

    # AWS resources
    aws_region: str = 'us-east-1'
    dynamodb_table_name: str = 'MeterTrackerRecords'
    s3_bucket_name: str = 'meter-tracker-photos'
    sns_topic_arn: Optional[str] = None

    # Sync and alert timing
    sync_interval_seconds: int = 300
    alert_sweep_hours: int = 6
    push_timeout_seconds: int = 10
    connectivity_probe_host: Optional[str] = None

    default_currency: str = 'EUR'

    @classmethod
    def from_env(cls, dotenv: bool = True) -> 'Config':
        """Build a Config from environment variables (and .env)."""
        if dotenv:
            load_dotenv()
        return cls(
            data_dir=os.getenv('DATA_DIR', 'data'),
            database_url=os.getenv('DATABASE_URL') or None,
            use_dynamodb=_flag('USE_DYNAMODB'),
            use_s3=_flag('USE_S3_STORAGE'),
            use_sns=_flag('USE_SNS'),
            use_scheduler=_flag('USE_SCHEDULER'),
            aws_region=os.getenv('AWS_REGION', 'us-east-1'),
            dynamodb_table_name=os.getenv('DYNAMODB_TABLE_NAME', 'MeterTrackerRecords'),
            s3_bucket_name=os.getenv('S3_BUCKET_NAME', 'meter-tracker-photos'),
            sns_topic_arn=os.getenv('SNS_TOPIC_ARN') or None,
            sync_interval_seconds=int(os.getenv('SYNC_INTERVAL_SECONDS', '300')),
            alert_sweep_hours=int(os.getenv('ALERT_SWEEP_HOURS', '6')),
            push_timeout_seconds=int(os.getenv('PUSH_TIMEOUT_SECONDS', '10')),
            connectivity_probe_host=os.getenv('CONNECTIVITY_PROBE_HOST') or None,
            default_currency=os.getenv('DEFAULT_CURRENCY', 'EUR'),
        )

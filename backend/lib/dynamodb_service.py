"""
=============================================================================
DYNAMODB SERVICE - Remote record store on Amazon DynamoDB
=============================================================================
The sync engine pushes every local record here and pulls them back on other
devices (or after a reinstall). All entity types share one table.

Our Table Schema:
-----------------
Table: MeterTrackerRecords
- user_id (String)    - Partition Key - Groups all records of one user
- record_key (String) - Sort Key      - "<entity>#<record id>"
- ...the record's own fields (snake_case, numbers as Number)

Example Item:
{
    "user_id": "u-1",
    "record_key": "meter_readings#3f2a...",
    "id": "3f2a...",
    "reading_value": 1520.5,
    "date": "2025-11-01T08:00:00",
    "consumption": 42.5,
    "last_synced_at": "2025-11-01T08:05:00"
}

Why this key design?
- put_item on (user_id, record_key) is an upsert, so pushing the same
  record twice leaves one item
- "all pricing tiers of a user" is one Query with begins_with
=============================================================================
"""

import logging
import os
from typing import Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from backend.lib.meter_core.errors import SyncPushError
from backend.lib.meter_core.models import EntityType

logger = logging.getLogger(__name__)


def record_key(entity, record_id: str) -> str:
    return f"{EntityType(entity).value}#{record_id}"


def client_config(timeout_seconds: int) -> BotoConfig:
    """
    botocore settings for sync traffic: a slow push fails after
    ``timeout_seconds`` and is retried by the next sync run instead.
    """
    return BotoConfig(
        connect_timeout=timeout_seconds,
        read_timeout=timeout_seconds,
        retries={'max_attempts': 2, 'mode': 'standard'},
    )


class DynamoDBService:
    """
    Remote store used by the sync engine.

    Usage:
        db = DynamoDBService(table_name="MeterTrackerRecords")
        db.create_table_if_not_exists()
        db.put_record("u-1", "meter_readings", reading.to_remote(now))
        items = db.get_records("u-1", "meter_readings")
    """

    def __init__(self, table_name: str = None, region: str = None,
                 timeout_seconds: int = 10, resource=None):
        """
        Args:
            table_name: Table to use; defaults to DYNAMODB_TABLE_NAME
            region: AWS region; defaults to AWS_REGION
            timeout_seconds: connect/read timeout for every call
            resource: Pre-built boto3 DynamoDB resource (tests pass a fake)
        """
        self.table_name = table_name or os.getenv('DYNAMODB_TABLE_NAME', 'MeterTrackerRecords')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')

        if resource is None:
            # Session token is only set for temporary (Learner Lab / STS) credentials
            session_token = os.getenv('AWS_SESSION_TOKEN')
            resource = boto3.resource(
                'dynamodb',
                region_name=self.region,
                aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
                aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
                aws_session_token=session_token if session_token else None,
                config=client_config(timeout_seconds),
            )
        self.dynamodb = resource
        self.table = self.dynamodb.Table(self.table_name)

    def create_table_if_not_exists(self) -> bool:
        """
        Create the records table (on-demand billing) if it is missing.

        Returns:
            bool: True if the table exists or was created
        """
        client = self.dynamodb.meta.client
        try:
            client.describe_table(TableName=self.table_name)
            logger.info("DynamoDB table '%s' exists", self.table_name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceNotFoundException':
                logger.error("Error checking table %s: %s", self.table_name, e)
                return False

        try:
            table = self.dynamodb.create_table(
                TableName=self.table_name,
                KeySchema=[
                    {'AttributeName': 'user_id', 'KeyType': 'HASH'},      # Partition key
                    {'AttributeName': 'record_key', 'KeyType': 'RANGE'},  # Sort key
                ],
                AttributeDefinitions=[
                    {'AttributeName': 'user_id', 'AttributeType': 'S'},
                    {'AttributeName': 'record_key', 'AttributeType': 'S'},
                ],
                BillingMode='PAY_PER_REQUEST',
            )
            table.wait_until_exists()
            self.table = table
            logger.info("Created DynamoDB table '%s'", self.table_name)
            return True
        except ClientError as e:
            logger.error("Failed to create table %s: %s", self.table_name, e)
            return False

    def put_record(self, user_id: str, entity, item: Dict) -> None:
        """
        Upsert one record document.

        Args:
            user_id: Owner of the record (partition key)
            entity: Entity type name, e.g. "bills"
            item: Output of ``record.to_remote(...)``; must contain ``id``

        Raises:
            SyncPushError: on any AWS or transport failure (including timeouts)
        """
        entity = EntityType(entity)
        document = dict(item)
        document['user_id'] = user_id
        document['record_key'] = record_key(entity, item['id'])
        try:
            self.table.put_item(Item=document)
        except (ClientError, BotoCoreError) as e:
            raise SyncPushError(entity.value, item['id'], e)

    def get_records(self, user_id: str, entity) -> List[Dict]:
        """
        All documents of one entity type for a user.

        Follows LastEvaluatedKey, since a query returns at most 1MB per page.
        """
        entity = EntityType(entity)
        condition = Key('user_id').eq(user_id) & Key('record_key').begins_with(f"{entity.value}#")
        query = {'KeyConditionExpression': condition}
        items = []
        try:
            while True:
                response = self.table.query(**query)
                for item in response.get('Items', []):
                    item = dict(item)
                    item.pop('record_key', None)
                    items.append(item)
                if 'LastEvaluatedKey' not in response:
                    break
                query['ExclusiveStartKey'] = response['LastEvaluatedKey']
        except (ClientError, BotoCoreError) as e:
            raise SyncPushError(entity.value, None, e)
        return items

    def delete_record(self, user_id: str, entity, record_id: str) -> None:
        """Delete one record document; deleting a missing item is not an error."""
        entity = EntityType(entity)
        try:
            self.table.delete_item(Key={'user_id': user_id, 'record_key': record_key(entity, record_id)})
        except (ClientError, BotoCoreError) as e:
            raise SyncPushError(entity.value, record_id, e)

    def get_user(self, user_id: str) -> Optional[Dict]:
        """The remote user document, or None if it was never pushed."""
        try:
            response = self.table.get_item(Key={'user_id': user_id,
                                                'record_key': record_key(EntityType.USERS, user_id)})
        except (ClientError, BotoCoreError) as e:
            raise SyncPushError(EntityType.USERS.value, user_id, e)
        return response.get('Item')

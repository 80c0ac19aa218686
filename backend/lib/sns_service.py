"""
=============================================================================
SNS SERVICE - Alert delivery through Amazon SNS
=============================================================================
Tier alerts and bill reminders are stored as notifications first. When SNS
is enabled, each new notification is also published to a topic, and the
topic fans it out to whoever subscribed (email, SMS, a push gateway...).

Flow:
-----
[ThresholdMonitor] --> notification row --> [SNS Topic] --> [Subscribers]

A failed publish never removes the stored notification; the user still sees
it in the app.
=============================================================================
"""

import json
import logging
import os
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from backend.lib.dynamodb_service import client_config
from backend.lib.meter_core.errors import NotificationDeliveryError
from backend.lib.meter_core.models import Notification, NotificationType

logger = logging.getLogger(__name__)

SUBJECTS = {
    NotificationType.TIER_APPROACH: "Approaching Pricing Tier",
    NotificationType.TIER_EXCEED: "Pricing Tier Exceeded",
    NotificationType.BILL_DUE: "Bill Payment Reminder",
    NotificationType.HIGH_USAGE: "High Electricity Usage",
    NotificationType.SYSTEM: "Meter Tracker",
}


class SNSService:
    """
    Publishes notifications to an SNS topic.

    Usage:
        sns = SNSService(topic_arn="arn:aws:sns:us-east-1:123456789012:MeterAlerts")
        sns.publish_notification(notification)
    """

    def __init__(self, topic_arn: str = None, region: str = None,
                 timeout_seconds: int = 10, client=None):
        """
        Args:
            topic_arn: Existing topic; defaults to SNS_TOPIC_ARN. If neither
                      is set, call create_topic_if_not_exists first.
            region: AWS region; defaults to AWS_REGION
            timeout_seconds: connect/read timeout for every call
            client: Pre-built boto3 SNS client (tests pass a fake)
        """
        self.topic_arn = topic_arn or os.getenv('SNS_TOPIC_ARN')
        self.topic_name = os.getenv('SNS_TOPIC_NAME', 'MeterTrackerAlerts')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')

        if client is None:
            session_token = os.getenv('AWS_SESSION_TOKEN')
            client = boto3.client(
                'sns',
                region_name=self.region,
                aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
                aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
                aws_session_token=session_token if session_token else None,
                config=client_config(timeout_seconds),
            )
        self.sns_client = client

    def create_topic_if_not_exists(self) -> Optional[str]:
        """
        create_topic is idempotent: for an existing name it just returns the
        topic's ARN.
        """
        try:
            response = self.sns_client.create_topic(Name=self.topic_name)
            self.topic_arn = response['TopicArn']
            logger.info("SNS topic ready: %s", self.topic_arn)
            return self.topic_arn
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to create SNS topic %s: %s", self.topic_name, e)
            return None

    def subscribe_email(self, email: str) -> Optional[str]:
        """
        Subscribe an address to the topic. AWS sends a confirmation email;
        until it is clicked the subscription stays "PendingConfirmation".
        """
        if not self.topic_arn:
            logger.warning("No topic ARN configured")
            return None
        try:
            response = self.sns_client.subscribe(
                TopicArn=self.topic_arn,
                Protocol='email',
                Endpoint=email
            )
            return response['SubscriptionArn']
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to subscribe %s: %s", email, e)
            return None

    def publish_notification(self, notification: Notification) -> str:
        """
        Publish one stored notification.

        The message body is the notification's text; the structured record
        travels in message attributes so subscribers can filter on type.

        Returns:
            str: The SNS MessageId

        Raises:
            NotificationDeliveryError: no topic configured, or publish failed
        """
        if not self.topic_arn:
            raise NotificationDeliveryError("no SNS topic configured")
        subject = SUBJECTS.get(notification.type, "Meter Tracker")
        try:
            response = self.sns_client.publish(
                TopicArn=self.topic_arn,
                Subject=subject,
                Message=notification.message,
                MessageAttributes={
                    'user_id': {'DataType': 'String', 'StringValue': notification.user_id},
                    'type': {'DataType': 'String', 'StringValue': notification.type.value},
                    'record': {'DataType': 'String', 'StringValue': json.dumps(notification.to_dict())},
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise NotificationDeliveryError(f"failed to publish notification {notification.id}: {e}")
        return response['MessageId']

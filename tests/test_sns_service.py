# tests/test_sns_service.py
import json
from datetime import datetime

import pytest
from botocore.exceptions import EndpointConnectionError

from backend.lib.meter_core.errors import NotificationDeliveryError
from backend.lib.meter_core.models import Notification, NotificationType
from backend.lib.sns_service import SNSService

TOPIC = "arn:aws:sns:eu-west-1:123456789012:MeterAlerts"


class FakeSNSClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, **kwargs):
        if self.fail:
            raise EndpointConnectionError(endpoint_url="https://sns.eu-west-1.amazonaws.com")
        self.published.append(kwargs)
        return {'MessageId': "m-1"}

    def create_topic(self, Name):
        return {'TopicArn': f"arn:aws:sns:eu-west-1:123456789012:{Name}"}


@pytest.fixture
def notification():
    return Notification(id="n-1", user_id="u-1", type=NotificationType.TIER_EXCEED,
                        message="Consumption exceeded Tier 1 threshold (1000 kWh). Current: 1200 kWh.",
                        date=datetime(2025, 11, 20))


def test_publish_sends_message_and_attributes(notification):
    client = FakeSNSClient()
    sns = SNSService(topic_arn=TOPIC, client=client)

    assert sns.publish_notification(notification) == "m-1"

    [sent] = client.published
    assert sent['TopicArn'] == TOPIC
    assert sent['Subject'] == "Pricing Tier Exceeded"
    assert sent['Message'] == notification.message
    attributes = sent['MessageAttributes']
    assert attributes['type']['StringValue'] == "tier_exceed"
    assert json.loads(attributes['record']['StringValue'])['id'] == "n-1"


def test_publish_failure_raises_delivery_error(notification):
    sns = SNSService(topic_arn=TOPIC, client=FakeSNSClient(fail=True))
    with pytest.raises(NotificationDeliveryError):
        sns.publish_notification(notification)


def test_publish_without_topic_raises(notification, monkeypatch):
    monkeypatch.delenv('SNS_TOPIC_ARN', raising=False)
    sns = SNSService(client=FakeSNSClient())
    with pytest.raises(NotificationDeliveryError):
        sns.publish_notification(notification)


def test_create_topic_sets_arn(monkeypatch):
    monkeypatch.delenv('SNS_TOPIC_ARN', raising=False)
    monkeypatch.setenv('SNS_TOPIC_NAME', "MeterAlerts")
    sns = SNSService(client=FakeSNSClient())
    assert sns.create_topic_if_not_exists() == "arn:aws:sns:eu-west-1:123456789012:MeterAlerts"
    assert sns.topic_arn.endswith(":MeterAlerts")

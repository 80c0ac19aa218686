# tests/test_lambda_handlers.py
import json

import pytest

from backend.lambda_handlers import background_sync, check_tier_alerts, estimate_bill


@pytest.fixture(autouse=True)
def offline_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    for name in ("USE_DYNAMODB", "USE_S3_STORAGE", "USE_SNS", "USE_SCHEDULER"):
        monkeypatch.setenv(name, "false")


def body(result):
    return json.loads(result['body'])


def test_estimate_requires_user_id():
    result = estimate_bill.lambda_handler({'queryStringParameters': None}, None)
    assert result['statusCode'] == 400


def test_estimate_for_user_without_data():
    result = estimate_bill.lambda_handler({'queryStringParameters': {'user_id': "u-1"}}, None)
    assert result['statusCode'] == 200
    assert body(result)['amount'] == "0.00"
    assert body(result)['total_units'] == "0"


def test_estimate_rejects_bad_consumption():
    event = {'queryStringParameters': {'user_id': "u-1", 'consumption': "-5"}}
    assert estimate_bill.lambda_handler(event, None)['statusCode'] == 400


def test_background_sync_needs_dynamodb():
    result = background_sync.lambda_handler({}, None)
    assert result['statusCode'] == 503


def test_tier_alert_sweep_and_single_user():
    assert body(check_tier_alerts.lambda_handler({}, None)) == {'alerts_created': 0}

    missing = check_tier_alerts.lambda_handler({'queryStringParameters': {}}, None)
    assert missing['statusCode'] == 400

    single = check_tier_alerts.lambda_handler({'queryStringParameters': {'user_id': "u-1"}}, None)
    assert body(single)['alerts_created'] == 0

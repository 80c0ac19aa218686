# backend/lambda_handlers/background_sync.py
"""
Lambda function that runs one background sync
Triggered by an EventBridge (CloudWatch Events) schedule, or API Gateway
"""
import json

from backend.lib.meter_core.errors import MeterTrackerError
from backend.lib.meter_core.scheduler import run_background_sync
from backend.lib.wiring import build_tracker


def lambda_handler(event, context):
    """
    Push local changes to DynamoDB and pull remote ones.

    Event (all optional):
    - user_id: limit the run to one user
    """
    print(f"Received event: {json.dumps(event)}")

    try:
        params = event.get('queryStringParameters') or event
        user_id = params.get('user_id')

        tracker = build_tracker()
        if tracker.sync is None:
            return response(503, {'error': 'sync is not enabled (USE_DYNAMODB=false)'})

        report = run_background_sync(tracker.sync, user_id)
        if report is None:
            return response(200, {'synced': False, 'reason': 'offline or already running'})

        print(f"Sync finished: pushed={report.pushed_count} failed={report.failure_count}")
        return response(200, {'synced': True, 'report': report.to_dict()})

    except MeterTrackerError as e:
        print(f"Error: {str(e)}")
        return response(500, {'error': str(e)})


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        },
        'body': json.dumps(body)
    }

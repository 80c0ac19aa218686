# backend/lambda_handlers/check_tier_alerts.py
"""
Lambda function to check pricing tier thresholds and raise alerts
Triggered every 6 hours by EventBridge, or by API Gateway for one user
"""
import json

from backend.lib.meter_core.errors import MeterTrackerError
from backend.lib.wiring import build_tracker


def lambda_handler(event, context):
    """
    Check tier thresholds for this month's consumption.

    Can be triggered by:
    - EventBridge schedule (sweep over all users)
    - API Gateway with ?user_id=... (one user)
    """
    print(f"Received event: {json.dumps(event)}")

    try:
        tracker = build_tracker()

        if 'queryStringParameters' in event:
            params = event.get('queryStringParameters') or {}
            user_id = params.get('user_id')
            if not user_id:
                return response(400, {'error': 'user_id required'})
            created = tracker.check_alerts(user_id)
            return response(200, {
                'user_id': user_id,
                'alerts_created': len(created),
                'messages': [n.message for n in created],
            })

        created = tracker.monitor.sweep()
        return response(200, {'alerts_created': created})

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

# backend/lambda_handlers/estimate_bill.py
"""
Lambda function to estimate the current electricity bill
Triggered by API Gateway
"""
import json

from backend.lib.meter_core.errors import MeterTrackerError, ValidationError
from backend.lib.wiring import build_tracker


def lambda_handler(event, context):
    """
    Estimate this month's bill for a user with the tier breakdown.

    Query parameters:
    - user_id: Required
    - consumption: Optional, price this many units instead of the month so far
    """
    print(f"Received event: {json.dumps(event)}")

    try:
        params = event.get('queryStringParameters') or {}
        user_id = params.get('user_id')

        if not user_id:
            return response(400, {'error': 'user_id is required'})

        tracker = build_tracker()
        if params.get('consumption') is not None:
            return response(200, {
                'user_id': user_id,
                'total_units': params['consumption'],
                'amount': tracker.cost_for(user_id, params['consumption']),
            })

        estimate = tracker.estimate_current_bill(user_id)
        estimate['user_id'] = user_id
        return response(200, estimate)

    except ValidationError as e:
        return response(400, {'error': str(e)})
    except MeterTrackerError as e:
        print(f"Error: {str(e)}")
        return response(500, {'error': str(e)})


def response(status_code: int, body: dict) -> dict:
    """Create API Gateway response."""
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'GET,POST,OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type'
        },
        # Decimals and datetimes go out as strings
        'body': json.dumps(body, default=str)
    }

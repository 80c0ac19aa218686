"""
=============================================================================
METER TRACKER - MAIN FLASK APPLICATION
=============================================================================
REST API for the electricity meter tracker. It provides endpoints for:
- Recording cumulative meter readings (single or CSV upload)
- Managing the user's progressive pricing tiers
- Viewing usage (daily/monthly), spikes and a consumption forecast
- Estimating the current bill and generating bills
- Tier alerts and bill reminders (notifications)
- Syncing the local store with DynamoDB

AWS Services Used (each optional, see backend/lib/config.py):
- DynamoDB: Remote copy of every record (sync / restore)
- S3: Reading photos and CSV backups
- SNS: Delivery of tier alerts and bill reminders

How to run:
    python -m backend.app

Then visit: http://127.0.0.1:5000
=============================================================================
"""

import atexit
from datetime import date, datetime
from decimal import Decimal

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider

from backend.lib.config import Config
from backend.lib.meter_core.errors import (PersistenceError, RecordNotFoundError,
                                           ValidationError)
from backend.lib.meter_core.io import parse_csv_string
from backend.lib.meter_core.models import parse_bool
from backend.lib.s3_service import photo_key
from backend.lib.wiring import build_scheduler, build_tracker


class TrackerJSONProvider(DefaultJSONProvider):
    """Decimals stay exact (as strings) and datetimes are ISO-8601."""

    @staticmethod
    def default(o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return DefaultJSONProvider.default(o)


# =============================================================================
# REQUEST HELPERS
# =============================================================================

def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _required(source, name: str):
    value = source.get(name)
    if value in (None, ''):
        raise ValidationError(f"{name} required")
    return value


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _float_arg(name: str, default: float) -> float:
    try:
        return float(request.args.get(name, default))
    except ValueError:
        raise ValidationError(f"{name} must be a number")


SEARCH_ARGS = ("q", "min_consumption", "max_consumption", "is_manual", "sort_by", "ascending")


def _records(records):
    return [r.to_dict() for r in records]


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(config: Config = None, tracker=None) -> Flask:
    """
    Build the Flask app.

    Args:
        config: Settings; read from the environment (and .env) if omitted
        tracker: Pre-built MeterTracker (tests pass one on a tmp directory)
    """
    config = config or Config.from_env()
    tracker = tracker or build_tracker(config)

    app = Flask(__name__)
    app.json = TrackerJSONProvider(app)
    app.config['TRACKER_CONFIG'] = config
    app.extensions['meter_tracker'] = tracker

    if config.use_scheduler:
        scheduler = build_scheduler(tracker, config)
        scheduler.start()
        atexit.register(scheduler.shutdown)
        print("Background sync scheduler started")

    # -------------------------------------------------------------------------
    # ERROR HANDLERS
    # -------------------------------------------------------------------------

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(RecordNotFoundError)
    def handle_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(PersistenceError)
    def handle_persistence(e):
        app.logger.error("Local store failure: %s", e)
        return jsonify({"error": "storage failure"}), 500

    # -------------------------------------------------------------------------
    # HEALTH
    # -------------------------------------------------------------------------

    @app.route("/")
    def home():
        return jsonify({
            "service": "meter-tracker",
            "status": "ok",
            "sync_enabled": tracker.sync is not None,
        })

    # -------------------------------------------------------------------------
    # USERS & SETTINGS
    # -------------------------------------------------------------------------

    @app.route("/users", methods=["POST"])
    def create_user():
        data = _body()
        user = tracker.register_user(
            email=_required(data, "email"),
            name=_required(data, "name"),
            settings=data.get("settings") or {"currency": config.default_currency},
            user_id=data.get("id"),
        )
        # password_hash never leaves the server
        body = user.to_dict()
        body.pop("password_hash", None)
        return jsonify(body), 201

    @app.route("/users/<user_id>", methods=["GET"])
    def get_user(user_id):
        body = tracker.get_user(user_id).to_dict()
        body.pop("password_hash", None)
        return jsonify(body)

    @app.route("/users/<user_id>/settings", methods=["GET"])
    def get_settings(user_id):
        return jsonify(tracker.app_settings(user_id).to_dict())

    @app.route("/users/<user_id>/settings", methods=["PUT"])
    def update_settings(user_id):
        return jsonify(tracker.update_app_settings(user_id, **_body()).to_dict())

    # -------------------------------------------------------------------------
    # READINGS
    # -------------------------------------------------------------------------

    @app.route("/readings", methods=["GET"])
    def list_readings():
        """
        Query Parameters:
            user_id (required)
            start, end (optional): ISO dates, both inclusive
            q (optional): text found in the notes, date or reading value
            min_consumption, max_consumption, is_manual (optional): filters
            sort_by (optional): date, consumption, cost or reading_value
            ascending (optional): "true" for oldest / smallest first

        Without any of the search parameters readings come back oldest first.
        """
        user_id = _required(request.args, "user_id")
        args = request.args
        if not any(name in args for name in SEARCH_ARGS):
            readings = tracker.get_readings(user_id, args.get("start"), args.get("end"))
            return jsonify({"user_id": user_id, "readings": _records(readings)})

        is_manual = args.get("is_manual")
        readings = tracker.search_readings(
            user_id,
            query=args.get("q"),
            start=args.get("start"),
            end=args.get("end"),
            min_consumption=args.get("min_consumption"),
            max_consumption=args.get("max_consumption"),
            is_manual=parse_bool(is_manual) if is_manual is not None else None,
            sort_by=args.get("sort_by", "date"),
            sort_ascending=parse_bool(args.get("ascending", "false")),
        )
        return jsonify({"user_id": user_id, "readings": _records(readings)})

    @app.route("/readings", methods=["POST"])
    def add_reading():
        """
        Request Body (JSON):
            {"user_id": "u-1", "reading_value": 1520.5, "date": "2025-11-01T08:00:00",
             "notes": "...", "photo_path": "...", "is_manual": false}

        reading_value is the cumulative meter value (typed in or read by OCR).
        """
        data = _body()
        reading = tracker.add_reading(
            user_id=_required(data, "user_id"),
            reading_value=_required(data, "reading_value"),
            date=data.get("date"),
            notes=data.get("notes"),
            photo_path=data.get("photo_path"),
            is_manual=data.get("is_manual", True),
        )
        return jsonify(reading.to_dict()), 201

    @app.route("/readings/<reading_id>", methods=["GET"])
    def get_reading(reading_id):
        return jsonify(tracker.get_reading(reading_id).to_dict())

    @app.route("/readings/<reading_id>", methods=["PUT"])
    def edit_reading(reading_id):
        return jsonify(tracker.edit_reading(reading_id, **_body()).to_dict())

    @app.route("/readings/<reading_id>", methods=["DELETE"])
    def delete_reading(reading_id):
        tracker.delete_reading(reading_id)
        return "", 204

    @app.route("/readings/<reading_id>/photo", methods=["GET"])
    def reading_photo(reading_id):
        """Presigned S3 link for the reading's photo (valid one hour)."""
        reading = tracker.get_reading(reading_id)
        photos = tracker.sync.photos if tracker.sync else None
        if photos is None or not reading.photo_path:
            return jsonify({"error": "no photo available"}), 404
        return jsonify({"reading_id": reading_id, "url": photos.get_presigned_url(photo_key(reading))})

    @app.route("/upload", methods=["POST"])
    def upload():
        """
        Import a CSV file of cumulative readings.

        Expected CSV format:
            user_id,date,reading_value,notes
            u-1,2025-11-01T00:00:00Z,1200,
            u-1,2025-11-08T00:00:00Z,1275.5,after holiday

        A user_id form field overrides the column. The raw file is kept in S3
        when photo storage is enabled.
        """
        if "file" not in request.files:
            return jsonify({"error": "No file uploaded"}), 400

        file = request.files["file"]
        content_bytes = file.read()
        try:
            content = content_bytes.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("file must be UTF-8 text")

        readings = tracker.import_readings(parse_csv_string(content, request.form.get("user_id")))
        response = {"upload_id": file.filename, "processed_count": len(readings)}

        photos = tracker.sync.photos if tracker.sync else None
        if photos is not None:
            s3_key = photos.upload_file(content_bytes, file.filename or "upload.csv")
            if s3_key:
                response["s3_key"] = s3_key
        return jsonify(response), 202

    # -------------------------------------------------------------------------
    # PRICING TIERS
    # -------------------------------------------------------------------------

    @app.route("/tiers", methods=["GET"])
    def get_tiers():
        user_id = _required(request.args, "user_id")
        return jsonify({"user_id": user_id, "tiers": _records(tracker.get_tiers(user_id))})

    @app.route("/tiers", methods=["PUT"])
    def replace_tiers():
        """
        Replace the whole tier table.

        Request Body (JSON):
            {"user_id": "u-1", "tiers": [
                {"name": "Tier 1", "rate_per_unit": "0.5", "threshold": "100"},
                {"name": "Tier 2", "rate_per_unit": "1.0", "threshold": "300",
                 "inflation_factor": "0.05", "start_date": "2025-01-01"}
            ]}
        """
        data = _body()
        user_id = _required(data, "user_id")
        tiers = data.get("tiers")
        if not isinstance(tiers, list):
            raise ValidationError("tiers must be a list")
        return jsonify({"user_id": user_id, "tiers": _records(tracker.replace_tiers(user_id, tiers))})

    # -------------------------------------------------------------------------
    # USAGE & ESTIMATES
    # -------------------------------------------------------------------------

    @app.route("/usage", methods=["GET"])
    def usage():
        """
        Query Parameters:
            user_id (required)
            period (optional): 'day' or 'month' (default: 'day')
        """
        user_id = _required(request.args, "user_id")
        period = request.args.get("period", "day")
        if period not in ("day", "month"):
            raise ValidationError("period must be 'day' or 'month'")
        summary = tracker.usage_summary(user_id)
        data = summary["daily"] if period == "day" else summary["monthly"]
        payload = {
            "user_id": user_id,
            "period": period,
            "total_units": summary["total_units"],
            "data": [{"period": k, "units": v} for k, v in sorted(data.items())],
        }
        if period == "month":
            payload["cost"] = [{"period": k, "amount": v} for k, v in sorted(summary["monthly_cost"].items())]
        return jsonify(payload)

    @app.route("/anomalies", methods=["GET"])
    def anomalies():
        user_id = _required(request.args, "user_id")
        threshold = _float_arg("threshold_pct", 50.0)
        spikes = tracker.usage_summary(user_id, spike_threshold_pct=threshold)["spikes"]
        return jsonify({
            "user_id": user_id,
            "threshold_pct": threshold,
            "spikes": [{"date": d, "prev_units": p, "curr_units": c} for d, p, c in spikes],
        })

    @app.route("/estimate", methods=["GET"])
    def estimate():
        """
        Estimated bill for the current month with the per-tier breakdown.
        With ?consumption=<units> it prices that figure instead.
        """
        user_id = _required(request.args, "user_id")
        if request.args.get("consumption") is not None:
            units = request.args["consumption"]
            return jsonify({
                "user_id": user_id,
                "total_units": units,
                "amount": tracker.cost_for(user_id, units),
            })
        result = tracker.estimate_current_bill(user_id)
        result["user_id"] = user_id
        return jsonify(result)

    @app.route("/predict", methods=["GET"])
    def predict():
        user_id = _required(request.args, "user_id")
        days = _int_arg("days", 30)
        if days < 1:
            raise ValidationError("days must be at least 1")
        points = tracker.predict(user_id, days)
        return jsonify({"user_id": user_id, "prediction": [{"date": d, "units": u} for d, u in points]})

    @app.route("/suggestion", methods=["GET"])
    def suggestion():
        user_id = _required(request.args, "user_id")
        return jsonify({"user_id": user_id, "suggestion": tracker.saving_suggestion(user_id)})

    # -------------------------------------------------------------------------
    # BILLS
    # -------------------------------------------------------------------------

    @app.route("/bills", methods=["GET"])
    def list_bills():
        """?status=unpaid lists the bills still to be paid (unpaid or overdue)."""
        user_id = _required(request.args, "user_id")
        status = request.args.get("status")
        if status == "unpaid":
            bills = tracker.get_unpaid_bills(user_id)
        elif status is None:
            bills = tracker.get_bills(user_id)
        else:
            bills = [b for b in tracker.get_bills(user_id) if b.status.value == status]
        return jsonify({"user_id": user_id, "bills": _records(bills)})

    @app.route("/bills", methods=["POST"])
    def generate_bill():
        data = _body()
        bill = tracker.generate_bill(_required(data, "user_id"),
                                     _required(data, "start_date"), _required(data, "end_date"))
        return jsonify(bill.to_dict()), 201

    @app.route("/bills/auto", methods=["POST"])
    def auto_bill():
        data = _body()
        bill = tracker.auto_generate_bill(_required(data, "user_id"), force=bool(data.get("force")))
        if bill is None:
            return jsonify({"generated": False})
        return jsonify({"generated": True, "bill": bill.to_dict()}), 201

    @app.route("/bills/<bill_id>/pay", methods=["POST"])
    def pay_bill(bill_id):
        return jsonify(tracker.mark_bill_paid(bill_id).to_dict())

    @app.route("/bills/<bill_id>/overdue", methods=["POST"])
    def overdue_bill(bill_id):
        return jsonify(tracker.mark_bill_overdue(bill_id).to_dict())

    # -------------------------------------------------------------------------
    # NOTIFICATIONS & ALERTS
    # -------------------------------------------------------------------------

    @app.route("/notifications", methods=["GET"])
    def list_notifications():
        user_id = _required(request.args, "user_id")
        return jsonify({"user_id": user_id, "notifications": _records(tracker.get_notifications(user_id))})

    @app.route("/notifications/<notification_id>/read", methods=["POST"])
    def read_notification(notification_id):
        return jsonify(tracker.mark_notification_read(notification_id).to_dict())

    @app.route("/alerts/check", methods=["POST"])
    def check_alerts():
        user_id = _required(_body(), "user_id")
        created = tracker.check_alerts(user_id)
        return jsonify({"user_id": user_id, "created": _records(created)})

    @app.route("/alerts/subscribe", methods=["POST"])
    def subscribe_alerts():
        """
        Subscribe an email address to the SNS alert topic. AWS sends a
        confirmation email that must be clicked before alerts arrive.
        """
        email = _required(_body(), "email")
        if tracker.notifier is None:
            return jsonify({"error": "SNS notifications not enabled"}), 400
        subscription = tracker.notifier.subscribe_email(email)
        if subscription is None:
            return jsonify({"error": "subscription failed"}), 502
        return jsonify({"email": email, "subscription_arn": subscription})

    # -------------------------------------------------------------------------
    # SYNC
    # -------------------------------------------------------------------------

    @app.route("/sync/status", methods=["GET"])
    def sync_status():
        return jsonify(tracker.sync_status().to_dict())

    @app.route("/sync", methods=["POST"])
    def sync_now():
        report = tracker.sync_now(_body().get("user_id"))
        if report is None:
            return jsonify({"started": False, "status": tracker.sync_status().to_dict()}), 409
        return jsonify({"started": True, "report": report.to_dict()})

    @app.route("/sync/restore", methods=["POST"])
    def restore():
        report = tracker.restore(_required(_body(), "user_id"))
        if report is None:
            return jsonify({"started": False, "status": tracker.sync_status().to_dict()}), 409
        return jsonify({"started": True, "report": report.to_dict()})

    return app


# =============================================================================
# RUN THE SERVER
# =============================================================================

if __name__ == "__main__":
    # debug=True reloads on code changes; never use it in production
    create_app().run(debug=True)

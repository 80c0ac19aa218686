# tests/test_app.py
import io
from pathlib import Path

import pytest

from backend.app import create_app
from backend.lib.config import Config
from backend.lib.meter_core.tracker import MeterTracker

SAMPLE_CSV = Path(__file__).parent / "sample.csv"

TIERS = [
    {"name": "Tier 1", "rate_per_unit": "0.1", "threshold": "1000"},
    {"name": "Tier 2", "rate_per_unit": "0.15", "threshold": "2000"},
]


@pytest.fixture
def tracker(store, clock):
    return MeterTracker(store, clock=clock)


@pytest.fixture
def client(tmp_path, tracker):
    app = create_app(Config(data_dir=str(tmp_path / "data")), tracker=tracker)
    app.config["TESTING"] = True
    return app.test_client()


def test_health(client):
    body = client.get("/").get_json()
    assert body["status"] == "ok"
    assert body["sync_enabled"] is False


def test_missing_user_id_is_a_bad_request(client):
    response = client.get("/readings")
    assert response.status_code == 400
    assert response.get_json() == {"error": "user_id required"}


def test_create_user_hides_password_hash(client):
    response = client.post("/users", json={"id": "u-1", "email": "ada@example.com", "name": "Ada"})
    assert response.status_code == 201
    body = response.get_json()
    assert "password_hash" not in body
    assert body["settings"]["currency"] == "EUR"
    assert "password_hash" not in client.get("/users/u-1").get_json()


def test_reading_crud(client):
    created = client.post("/readings", json={"user_id": "u-1", "reading_value": 1200,
                                             "date": "2025-11-01T00:00:00"})
    assert created.status_code == 201
    reading_id = created.get_json()["id"]
    assert created.get_json()["consumption"] == "1200"

    edited = client.put(f"/readings/{reading_id}", json={"notes": "checked"})
    assert edited.get_json()["notes"] == "checked"

    listed = client.get("/readings?user_id=u-1&start=2025-11-01&end=2025-11-30").get_json()
    assert [r["id"] for r in listed["readings"]] == [reading_id]

    assert client.delete(f"/readings/{reading_id}").status_code == 204
    assert client.get(f"/readings/{reading_id}").status_code == 404


def test_invalid_reading_value(client):
    response = client.post("/readings", json={"user_id": "u-1", "reading_value": "lots"})
    assert response.status_code == 400


def test_tiers_and_estimate(client):
    saved = client.put("/tiers", json={"user_id": "u-1", "tiers": TIERS})
    assert [t["name"] for t in saved.get_json()["tiers"]] == ["Tier 1", "Tier 2"]

    client.post("/readings", json={"user_id": "u-1", "reading_value": 5000, "date": "2025-10-15"})
    client.post("/readings", json={"user_id": "u-1", "reading_value": 5500, "date": "2025-11-05"})
    client.post("/readings", json={"user_id": "u-1", "reading_value": 6500, "date": "2025-11-15"})

    estimate = client.get("/estimate?user_id=u-1").get_json()
    assert estimate["amount"] == "175.00"
    assert estimate["breakdown"] == {"Tier 1": "1000", "Tier 2": "500"}

    priced = client.get("/estimate?user_id=u-1&consumption=500").get_json()
    assert priced["amount"] == "50.00"


def test_invalid_tier_table_is_rejected(client):
    clashing = [TIERS[0], dict(TIERS[1], threshold="1000")]
    assert client.put("/tiers", json={"user_id": "u-1", "tiers": clashing}).status_code == 400
    assert client.put("/tiers", json={"user_id": "u-1", "tiers": "none"}).status_code == 400


def test_csv_upload(client):
    data = {"file": (io.BytesIO(SAMPLE_CSV.read_bytes()), "sample.csv")}
    response = client.post("/upload", data=data, content_type="multipart/form-data")

    assert response.status_code == 202
    assert response.get_json()["processed_count"] == 3
    assert "s3_key" not in response.get_json()
    readings = client.get("/readings?user_id=u-1").get_json()["readings"]
    assert [r["consumption"] for r in readings] == ["1200", "75.5", "74.5"]


def test_upload_requires_file(client):
    assert client.post("/upload").status_code == 400


def test_usage_by_month(client):
    client.post("/readings", json={"user_id": "u-1", "reading_value": 100, "date": "2025-10-01"})
    client.post("/readings", json={"user_id": "u-1", "reading_value": 150, "date": "2025-11-01"})

    body = client.get("/usage?user_id=u-1&period=month").get_json()
    assert body["data"] == [{"period": "2025-10", "units": "100"}, {"period": "2025-11", "units": "50"}]
    assert client.get("/usage?user_id=u-1&period=week").status_code == 400


def test_bill_payment_flow(client):
    created = client.post("/bills", json={"user_id": "u-1", "start_date": "2025-11-01",
                                          "end_date": "2025-11-30"})
    assert created.status_code == 201
    bill_id = created.get_json()["id"]

    paid = client.post(f"/bills/{bill_id}/pay")
    assert paid.get_json()["status"] == "paid"
    assert client.post(f"/bills/{bill_id}/pay").status_code == 400
    assert client.post("/bills/missing/pay").status_code == 404


def test_notifications_listed_and_read(client):
    client.post("/bills", json={"user_id": "u-1", "start_date": "2025-11-01", "end_date": "2025-11-30"})
    [notification] = client.get("/notifications?user_id=u-1").get_json()["notifications"]
    assert notification["type"] == "bill_due"

    read = client.post(f"/notifications/{notification['id']}/read").get_json()
    assert read["is_read"] is True


def test_sync_endpoints_without_remote(client):
    status = client.get("/sync/status").get_json()
    assert status["error"] == "sync disabled"
    assert status["is_online"] is False

    response = client.post("/sync")
    assert response.status_code == 409
    assert response.get_json()["started"] is False


def test_subscribe_needs_sns(client):
    response = client.post("/alerts/subscribe", json={"email": "ada@example.com"})
    assert response.status_code == 400


def test_reading_search_and_filters(client):
    client.post("/readings", json={"user_id": "u-1", "reading_value": 1000, "date": "2025-09-01"})
    client.post("/readings", json={"user_id": "u-1", "reading_value": 1150, "date": "2025-10-01",
                                   "notes": "Kitchen renovation", "is_manual": False})
    client.post("/readings", json={"user_id": "u-1", "reading_value": "1230.5", "date": "2025-11-01"})

    def values(query):
        response = client.get(f"/readings?user_id=u-1&{query}")
        assert response.status_code == 200
        return [r["reading_value"] for r in response.get_json()["readings"]]

    assert values("q=kitchen") == ["1150"]
    assert values("q=2025-11") == ["1230.5"]
    assert values("sort_by=date") == ["1230.5", "1150", "1000"]
    assert values("min_consumption=100&sort_by=consumption&ascending=true") == ["1150", "1000"]
    assert values("is_manual=false") == ["1150"]
    # no search parameters: plain listing, oldest first
    assert values("start=2025-09-01") == ["1000", "1150", "1230.5"]

    response = client.get("/readings?user_id=u-1&sort_by=photo")
    assert response.status_code == 400


def test_unpaid_bills_filter(client):
    first = client.post("/bills", json={"user_id": "u-1", "start_date": "2025-09-01",
                                        "end_date": "2025-09-30"}).get_json()
    second = client.post("/bills", json={"user_id": "u-1", "start_date": "2025-10-01",
                                         "end_date": "2025-10-31"}).get_json()
    client.post(f"/bills/{first['id']}/pay")

    unpaid = client.get("/bills?user_id=u-1&status=unpaid").get_json()["bills"]
    assert [b["id"] for b in unpaid] == [second["id"]]
    paid = client.get("/bills?user_id=u-1&status=paid").get_json()["bills"]
    assert [b["id"] for b in paid] == [first["id"]]
    assert len(client.get("/bills?user_id=u-1").get_json()["bills"]) == 2

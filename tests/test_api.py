"""Endpoint tests through FastAPI's TestClient."""
import uuid
from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient

from portfolio_core.config import ADMIN_TOKEN
from portfolio_core.jobs import start_duplicate_analysis
from portfolio_core.main import app
from portfolio_core.vendors import SELF_DUPLICATE_MESSAGE


AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}
ANALYSIS_URL = "/api/admin/vendors/duplicate-analysis"


@pytest.fixture
def client(db):
    """TestClient over the per-test schema created by the db fixture."""

    return TestClient(app)


def test_health(client) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "Portfolio Core API"}


# =============================================================================
# Admin auth
# =============================================================================


def test_admin_endpoints_require_token(client) -> None:
    response = client.post(ANALYSIS_URL, json={})

    assert response.status_code == 401
    assert response.json()["detail"] == "Admin token required"


def test_admin_endpoints_reject_wrong_token(client) -> None:
    response = client.get(f"{ANALYSIS_URL}/latest", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 403
    assert response.json()["detail"] == "Invalid admin token"


# =============================================================================
# Duplicate analysis
# =============================================================================


def test_request_analysis_runs_in_background(client, make_vendor) -> None:
    make_vendor("ABC Plumbing Inc")
    make_vendor("ABC Plumbing LLC")

    response = client.post(ANALYSIS_URL, json={"threshold": 0.3, "limit": 10}, headers=AUTH)

    assert response.status_code == 202
    body = response.json()
    assert body["message"] == "Duplicate analysis started."
    assert body["analysis"]["status"] == "pending"
    assert body["analysis"]["threshold"] == 0.3

    # TestClient runs background tasks before returning
    latest = client.get(f"{ANALYSIS_URL}/latest", headers=AUTH).json()
    assert latest["id"] == body["analysis"]["id"]
    assert latest["status"] == "completed"
    assert latest["total_vendors"] == 2
    assert latest["comparisons_made"] == 1
    assert latest["duplicates_found"] == 1
    assert latest["results"][0]["match_reasons"] == ["Similar company names (100% match)"]

    by_id = client.get(f"{ANALYSIS_URL}/{latest['id']}", headers=AUTH).json()
    assert by_id == latest


def test_request_analysis_conflicts_with_pending_run(client, db) -> None:
    start_duplicate_analysis(db)

    response = client.post(ANALYSIS_URL, json={}, headers=AUTH)

    assert response.status_code == 409


@pytest.mark.parametrize("body", [{"threshold": 1.5}, {"threshold": 0.01}, {"limit": 0}, {"limit": 1000}])
def test_request_analysis_validates_body(client, body) -> None:
    response = client.post(ANALYSIS_URL, json=body, headers=AUTH)

    assert response.status_code == 422


def test_missing_analysis(client) -> None:
    assert client.get(f"{ANALYSIS_URL}/latest", headers=AUTH).status_code == 404
    assert client.get(f"{ANALYSIS_URL}/{uuid.uuid4()}", headers=AUTH).status_code == 404


# =============================================================================
# Canonical / duplicate links
# =============================================================================


def test_mark_duplicate(client, db, make_vendor) -> None:
    canonical = make_vendor("ABC Plumbing Inc")
    duplicate = make_vendor("ABC Plumbing LLC")

    response = client.post(
        f"/api/admin/vendors/{duplicate.id}/mark-duplicate",
        json={"canonical_vendor_id": str(canonical.id)},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["vendor"]["canonical_vendor_id"] == str(canonical.id)
    assert body["vendor"]["is_canonical"] is False

    duplicates = client.get(f"/api/admin/vendors/{canonical.id}/duplicates", headers=AUTH).json()
    assert [v["id"] for v in duplicates["duplicates"]] == [str(duplicate.id)]
    assert duplicates["potential_duplicates"] == []


def test_mark_duplicate_of_itself_returns_field_errors(client, make_vendor) -> None:
    vendor = make_vendor()

    response = client.post(
        f"/api/admin/vendors/{vendor.id}/mark-duplicate",
        json={"canonical_vendor_id": str(vendor.id)},
        headers=AUTH,
    )

    assert response.status_code == 422
    assert response.json() == {"errors": {"canonical_vendor_id": [SELF_DUPLICATE_MESSAGE]}}


def test_mark_duplicate_unknown_vendor(client, make_vendor) -> None:
    canonical = make_vendor()

    response = client.post(
        f"/api/admin/vendors/{uuid.uuid4()}/mark-duplicate",
        json={"canonical_vendor_id": str(canonical.id)},
        headers=AUTH,
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "Vendor not found"


def test_mark_canonical(client, db, make_vendor) -> None:
    canonical = make_vendor("ABC Plumbing Inc")
    duplicate = make_vendor("ABC Plumbing LLC", canonical_vendor_id=canonical.id)

    response = client.post(f"/api/admin/vendors/{duplicate.id}/mark-canonical", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["vendor"]["canonical_vendor_id"] is None
    db.expire_all()
    assert duplicate.canonical_vendor_id is None


# =============================================================================
# Vendor metrics
# =============================================================================


@pytest.fixture
def plumber(make_vendor, make_work_order):
    vendor = make_vendor("ABC Plumbing Inc", vendor_trades="Plumbing")
    make_work_order(vendor, datetime(2025, 6, 2, 9), amount=100, closed_at=datetime(2025, 6, 4, 9))
    make_work_order(vendor, datetime(2025, 6, 9, 9), amount=300)
    return vendor


def test_vendor_summary(client, plumber) -> None:
    response = client.get(f"/api/vendors/{plumber.id}/summary", params={"date": "2025-06-15"})

    assert response.status_code == 200
    body = response.json()
    assert body["work_order_count"] == 2
    assert body["total_spend"] == 400.0
    assert body["avg_cost_per_wo"] == 200.0
    assert body["avg_completion_time"] == 2.0


def test_vendor_summary_unknown_period_falls_back_to_month(client, plumber) -> None:
    response = client.get(
        f"/api/vendors/{plumber.id}/summary", params={"period": "fortnight", "date": "2025-06-15"}
    )

    assert response.status_code == 200
    assert response.json()["period"] == {"type": "month", "start": "2025-06-01", "end": "2025-06-30"}


def test_vendor_summary_unknown_vendor(client) -> None:
    assert client.get(f"/api/vendors/{uuid.uuid4()}/summary").status_code == 404


def test_vendor_trend(client, plumber) -> None:
    response = client.get(
        f"/api/vendors/{plumber.id}/trend", params={"periods": 3, "date": "2025-06-15"}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert [row["period"] for row in data] == ["Apr 2025", "May 2025", "Jun 2025"]
    assert data[-1]["work_order_count"] == 2


def test_vendor_trend_rejects_bad_parameters(client, plumber) -> None:
    url = f"/api/vendors/{plumber.id}/trend"

    assert client.get(url, params={"period_type": "week"}).status_code == 400
    assert client.get(url, params={"periods": 0}).status_code == 422


def test_vendor_response_times(client, plumber) -> None:
    response = client.get(
        f"/api/vendors/{plumber.id}/response-times", params={"period": "month", "date": "2025-06-15"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["vendor_metrics"]["total_completed"] == 1
    assert body["vendor_metrics"]["avg_days_to_complete"] == 2.0
    assert body["comparison"]["avg_days"]["direction"] == "average"


def test_trade_summary(client, plumber) -> None:
    response = client.get("/api/vendors/trades/summary", params={"date": "2025-06-15"})

    assert response.status_code == 200
    trades = response.json()["trades"]
    assert trades == [{
        "trade": "Plumbing",
        "vendor_count": 1,
        "total_work_orders": 2,
        "total_spend": 400.0,
        "avg_work_order_count": 2.0,
        "avg_cost_per_wo": 200.0,
        "avg_completion_time": 2.0,
    }]


def test_compare_vendors(client, plumber, make_vendor) -> None:
    make_vendor("Valley Plumbing", vendor_trades="Plumbing")

    response = client.get("/api/vendors/compare", params={"trade": "plumbing", "date": "2025-06-15"})

    assert response.status_code == 200
    body = response.json()
    assert [v["company_name"] for v in body["vendors"]] == ["ABC Plumbing Inc", "Valley Plumbing"]
    assert body["stats"]["work_order_count"] == {"best": 2, "worst": 0, "avg": 1.0}


# =============================================================================
# Utility metrics
# =============================================================================


@pytest.fixture
def utility_portfolio(make_property, make_utility_expense):
    for name, cost in (("A", 1000), ("B", 1200), ("C", 1400), ("D", 1600)):
        prop = make_property(name, unit_count=10)
        make_utility_expense(prop, "water", date(2025, 6, 10), cost)


def test_utility_portfolio_average(client, utility_portfolio) -> None:
    response = client.get(
        "/api/utilities/portfolio-average", params={"utility_type": "water", "date": "2025-06-15"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["utility_type"] == "water"
    assert body["metric"] == "per_unit"
    assert body["average"] == 130.0
    assert body["property_count"] == 4


def test_utility_portfolio_average_rejects_unknown_metric(client) -> None:
    response = client.get(
        "/api/utilities/portfolio-average", params={"utility_type": "water", "metric": "per_bedroom"}
    )

    assert response.status_code == 422


def test_utility_anomalies(client, utility_portfolio) -> None:
    response = client.get(
        "/api/utilities/anomalies",
        params={"utility_type": "water", "threshold": 1.0, "date": "2025-06-15"},
    )

    assert response.status_code == 200
    anomalies = response.json()["anomalies"]
    assert [(a["property_name"], a["type"]) for a in anomalies] == [("A", "low"), ("D", "high")]

    default = client.get(
        "/api/utilities/anomalies", params={"utility_type": "water", "date": "2025-06-15"}
    )
    assert default.json()["anomalies"] == []

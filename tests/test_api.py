# WORKFLOW: HTTP tests for the calculator and health endpoints.
# Test scenarios:
# 1. Health endpoints
# 2. POST /calculator/calculate response structure and JSON Schema validity
# 3. Error mapping (404 unknown code, 422 bad formula, 422 invalid request)
# 4. Audit retrieval and listing endpoints
# 5. Low-value ocean shipment: fees rounding to zero are dropped

import pytest

from api.routers import health
from api.schemas.validation import schema_validator
from db.models import PolicyRecord, TariffCodeEntry
from etl.policy_seed import fee_seed_rows, upsert_policy_records

PREFIX = "/api/v1"


@pytest.fixture
def seeded(db_session):
    db_session.add_all([
        TariffCodeEntry(hts_number="0101.21.0000", version="2025", general_rate="Free", unit_of_quantity="No."),
        TariffCodeEntry(hts_number="6109.10.0012", version="2025", rate_formula="value * 0.165"),
        TariffCodeEntry(hts_number="0201.10.5010", version="2025", rate_formula="value / weight"),
        PolicyRecord(
            tax_code="E2E_EU_REGIONAL_ADDON",
            tax_name="EU regional add-on",
            hts_number="*",
            country_code="EU",
            extra_rate_type="ADD_ON",
            rate_formula="value * 0.02",
        ),
        PolicyRecord(
            tax_code="MPF",
            tax_name="Merchandise Processing Fee",
            hts_number="*",
            country_code="ALL",
            extra_rate_type="POST_CALCULATION",
            rate_formula="value * 0.003464",
            minimum_amount=27.75,
            maximum_amount=579.23,
        ),
    ])
    db_session.commit()


def test_health_endpoints(client):
    root = client.get("/healthz")
    assert root.status_code == 200
    assert root.json()["status"] == "healthy"

    assert client.get(f"{PREFIX}/livez").json()["status"] == "alive"


def test_readiness_reports_database(client, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(health, "check_db_connection", lambda: True)

    data = client.get(f"{PREFIX}/readyz").json()

    assert data["status"] == "ready"
    assert data["checks"] == {"database": True}


def test_calculate_endpoint(client, seeded):
    response = client.post(f"{PREFIX}/calculator/calculate", json={
        "hts_number": "6109.10.0012",
        "country_of_origin": "de",
        "declared_value": 10000,
        "entry_date": "2026-02-15",
    })

    assert response.status_code == 200
    data = response.json()
    assert schema_validator.get_validation_errors(data) is None
    assert data["base_duty"] == 1650.0
    assert data["additional_tariffs"] == 200.0
    assert data["total_taxes"] == 34.64
    assert data["total_duty"] == 1850.0
    assert data["landed_cost"] == 11884.64
    assert [c["type"] for c in data["breakdown"]["additional_tariffs"]] == ["E2E_EU_REGIONAL_ADDON"]
    assert response.headers["x-request-id"]


def test_calculate_unknown_code_returns_404(client, seeded):
    response = client.post(f"{PREFIX}/calculator/calculate", json={
        "hts_number": "8471.30.0100",
        "country_of_origin": "CN",
        "declared_value": 100,
    })
    assert response.status_code == 404


def test_calculate_bad_formula_returns_422(client, seeded):
    response = client.post(f"{PREFIX}/calculator/calculate", json={
        "hts_number": "0201.10.5010",
        "country_of_origin": "AU",
        "declared_value": 100,
    })
    assert response.status_code == 422
    assert "Division by zero" in response.json()["detail"]


@pytest.mark.parametrize("payload", [
    {"hts_number": "0101.21.0000", "country_of_origin": "CN", "declared_value": -1},
    {"hts_number": "0101.21.0000", "country_of_origin": "CN"},
    {"hts_number": "abcd-ef", "country_of_origin": "CN", "declared_value": 10},
    {"hts_number": "0101.21.0000", "country_of_origin": "C", "declared_value": 10},
])
def test_invalid_requests_rejected(client, payload):
    assert client.post(f"{PREFIX}/calculator/calculate", json=payload).status_code == 422


def test_calculation_history_endpoints(client, seeded):
    created = client.post(f"{PREFIX}/calculator/calculate", json={
        "hts_number": "0101.21.0000",
        "country_of_origin": "CN",
        "declared_value": 1000,
        "currency": "USD",
        "additional_inputs": {"transport_mode": "OCEAN"},
    }).json()

    fetched = client.get(f"{PREFIX}/calculator/calculations/{created['calculation_id']}")
    assert fetched.status_code == 200
    record = fetched.json()
    assert record["landed_cost"] == created["landed_cost"]
    assert record["inputs"]["additional_inputs"] == {"transport_mode": "OCEAN"}

    listing = client.get(f"{PREFIX}/calculator/calculations", params={"limit": 5}).json()
    assert listing["count"] == 1
    assert listing["calculations"][0]["calculation_id"] == created["calculation_id"]

    assert client.get(f"{PREFIX}/calculator/calculations/CALC-0-NOPE00").status_code == 404
    assert client.get(f"{PREFIX}/calculator/calculations", params={"limit": 0}).status_code == 422


def test_low_value_ocean_shipment_passes_schema(client, db_session):
    db_session.add(TariffCodeEntry(hts_number="0101.21.0000", version="2025", general_rate="Free"))
    db_session.commit()
    upsert_policy_records(db_session, fee_seed_rows())

    response = client.post(f"{PREFIX}/calculator/calculate", json={
        "hts_number": "0101.21.0000",
        "country_of_origin": "CN",
        "declared_value": 3.0,
        "additional_inputs": {"transport_mode": "OCEAN"},
    })

    assert response.status_code == 200
    data = response.json()
    assert schema_validator.get_validation_errors(data) is None
    assert [c["type"] for c in data["breakdown"]["taxes"]] == ["MPF"]

    history = client.get(f"{PREFIX}/calculator/calculations").json()
    assert history["count"] == 1
    assert history["calculations"][0]["calculation_id"] == data["calculation_id"]

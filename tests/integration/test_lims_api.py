"""Integration tests for the LIMS HTTP API against SQLite"""
# pylint: disable=redefined-outer-name
import pytest
from fastapi.testclient import TestClient

from lims.entrypoints import lims_api
from lims.service_layer.unit_of_work import SqlAlchemyUnitOfWork

ACTOR = {"X-Actor-Id": "tech-1"}

ORDER_BODY = {
    "patient_id": "P-001",
    "tests": [{"test_id": "GLU"}, {"test_id": "PCR-UTI", "priority": "urgent"}],
    "physician": {"name": "Dr. Lisa Cuddy", "license_number": "PP-77"},
    "specimen_type": "urine",
}


@pytest.fixture
def client(sqlite_session_factory):
    lims_api.app.dependency_overrides[lims_api.get_uow] = lambda: SqlAlchemyUnitOfWork(sqlite_session_factory)
    yield TestClient(lims_api.app)
    lims_api.app.dependency_overrides.clear()


def create_order(client, body=None):
    response = client.post("/api/v1/orders", json=body or ORDER_BODY, headers=ACTOR)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_create_and_fetch_order(client):
    order = create_order(client)

    assert order["status"] == "pending"
    assert order["total_amount"] == "130.00"
    assert {t["test_id"]: t["priority"] for t in order["tests"]} == {"GLU": "routine", "PCR-UTI": "urgent"}

    fetched = client.get(f"/api/v1/orders/{order['order_number']}")
    assert fetched.status_code == 200
    assert fetched.json()["order_number"] == order["order_number"]


def test_actor_header_is_required(client):
    response = client.post("/api/v1/orders", json=ORDER_BODY)

    assert response.status_code == 422


def test_unknown_tests_return_structured_error(client):
    body = dict(ORDER_BODY, tests=[{"test_id": "NOPE"}, {"test_id": "GLU"}])

    response = client.post("/api/v1/orders", json=body, headers=ACTOR)

    assert response.status_code == 400
    error = response.json()
    assert error["code"] == "INVALID_TEST_REFERENCE"
    assert error["type"] == "validation_error"
    assert error["detail"]["ids"] == ["NOPE"]


def test_missing_order_is_404(client):
    response = client.get("/api/v1/orders/ORD0000000000")

    assert response.status_code == 404
    assert response.json()["code"] == "ORDER_NOT_FOUND"


def test_accession_twice_is_conflict(client):
    order_number = create_order(client)["order_number"]

    first = client.post(f"/api/v1/orders/{order_number}/specimen/accession", json={}, headers=ACTOR)
    second = client.post(f"/api/v1/orders/{order_number}/specimen/accession", json={}, headers=ACTOR)

    assert first.status_code == 200
    assert first.json()["accession_number"].startswith("ACC")
    assert second.status_code == 409
    assert second.json()["code"] == "ALREADY_ACCESSIONED"

    by_accession = client.get(f"/api/v1/accessions/{first.json()['accession_number']}")
    assert by_accession.json()["order_number"] == order_number


def test_specimen_handling_endpoints(client):
    order_number = create_order(client)["order_number"]
    base = f"/api/v1/orders/{order_number}/specimen"

    assert client.post(f"{base}/receive", json={"location": "front desk"}, headers=ACTOR).status_code == 200
    assert client.post(f"{base}/accession", json={"condition": "good"}, headers=ACTOR).status_code == 200
    assert client.post(f"{base}/custody", json={"action": "transferred", "location": "PCR lab"}, headers=ACTOR).status_code == 200
    assert client.post(f"{base}/storage", json={"location": "Freezer 1", "temperature": "-80"}, headers=ACTOR).status_code == 200
    aliquot = client.post(f"{base}/aliquots", json={"volume": 0.5}, headers=ACTOR)
    assert aliquot.status_code == 201
    assert aliquot.json()["aliquot_id"].endswith("-1")

    specimen = client.get(f"/api/v1/orders/{order_number}/specimen").json()
    assert specimen["state"] == "accessioned"
    assert specimen["storage_temperature"] == "-80"
    assert [e["action"] for e in specimen["chain_of_custody"]] == ["received", "accessioned", "transferred", "stored"]


def test_hold_reject_and_cancel(client):
    held = create_order(client)["order_number"]
    response = client.post(f"/api/v1/orders/{held}/specimen/hold", json={"reason": "no consent"}, headers=ACTOR)
    assert response.json()["status"] == "hold"
    response = client.post(f"/api/v1/orders/{held}/specimen/release", json={}, headers=ACTOR)
    assert response.json()["status"] == "pending"

    rejected = create_order(client)["order_number"]
    response = client.post(f"/api/v1/orders/{rejected}/specimen/reject", json={"reason": "clotted"}, headers=ACTOR)
    assert response.json()["status"] == "rejected"

    response = client.delete(f"/api/v1/orders/{held}", headers=ACTOR)
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    pending = client.get("/api/v1/orders", params={"status": "cancelled"}).json()
    assert [o["order_number"] for o in pending["orders"]] == [held]


def test_result_workflow_over_http(client):
    order_number = create_order(client)["order_number"]
    client.post(f"/api/v1/orders/{order_number}/specimen/accession", json={}, headers=ACTOR)

    created = client.post(
        f"/api/v1/orders/{order_number}/results",
        json={
            "test_id": "GLU",
            "parameters": [{"name": "Glucose", "value": 88, "reference_range": {"min": 70, "max": 100}}],
        },
        headers=ACTOR,
    )
    assert created.status_code == 201, created.text
    result_number = created.json()["result_number"]
    assert created.json()["overall_result"] == "normal"

    not_reviewed = client.put(f"/api/v1/results/{result_number}/approve", headers=ACTOR)
    assert not_reviewed.status_code == 409
    assert not_reviewed.json()["code"] == "NOT_REVIEWED"

    client.put(f"/api/v1/results/{result_number}/review", json={"notes": "ok"}, headers={"X-Actor-Id": "reviewer-1"})
    client.put(f"/api/v1/results/{result_number}/approve", headers={"X-Actor-Id": "pathologist-1"})
    final = client.put(f"/api/v1/results/{result_number}/finalize", headers={"X-Actor-Id": "pathologist-1"})
    assert final.json()["status"] == "final"

    order = client.get(f"/api/v1/orders/{order_number}").json()
    assert {t["test_id"]: t["status"] for t in order["tests"]}["GLU"] == "completed"
    assert order["status"] == "partial"

    amended = client.put(
        f"/api/v1/results/{result_number}/amend",
        json={"reason": "comment added", "changes": {"comments": "fasting"}},
        headers={"X-Actor-Id": "pathologist-1"},
    )
    assert amended.json()["status"] == "amended"
    assert amended.json()["amendments"][0]["new_values"] == {"comments": "fasting"}

    listed = client.get(f"/api/v1/orders/{order_number}/results").json()
    assert [r["result_number"] for r in listed] == [result_number]
    assert client.get("/api/v1/patients/P-001/results").json()[0]["result_number"] == result_number


def test_invalid_result_payload(client):
    order_number = create_order(client)["order_number"]

    response = client.post(
        f"/api/v1/orders/{order_number}/results",
        json={"test_id": "PCR-UTI", "target_results": [{"target_name": "MRSA", "detected": True, "ct_value": 70}]},
        headers=ACTOR,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_critical_results_endpoint(client):
    order_number = create_order(client)["order_number"]
    client.post(
        f"/api/v1/orders/{order_number}/results",
        json={"test_id": "PCR-UTI", "target_results": [{"target_name": "MRSA", "detected": True}]},
        headers=ACTOR,
    )

    critical = client.get("/api/v1/results/critical").json()

    assert [r["order_number"] for r in critical] == [order_number]
    assert critical[0]["critical_values"][0]["name"] == "MRSA"


def test_mint_identifier(client):
    response = client.post("/api/v1/identifiers/result", params={"day": "2024-10-19"})

    assert response.status_code == 201
    assert response.json()["identifier"] == "RES2410190001"


def test_unknown_accession_is_structured_404(client):
    response = client.get("/api/v1/accessions/ACC0000000000")

    assert response.status_code == 404
    error = response.json()
    assert error["code"] == "ACCESSION_NOT_FOUND"
    assert error["type"] == "not_found"
    assert error["detail"] == {"entity": "accession", "id": "ACC0000000000"}


def test_search_specimen(client):
    body = dict(ORDER_BODY, specimen_barcode="BC-7788")
    order_number = create_order(client, body)["order_number"]

    found = client.get("/api/v1/specimens/search/BC-7788")
    missing = client.get("/api/v1/specimens/search/BC-0000")

    assert found.status_code == 200
    assert found.json()["order_number"] == order_number
    assert missing.status_code == 404
    assert missing.json()["code"] == "SPECIMEN_NOT_FOUND"

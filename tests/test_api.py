"""
Tests for FastAPI Endpoints

Integration tests for the staff and public API.
"""

import hashlib
import hmac
import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from impound_rail.api import server
from impound_rail.api.server import AppState


def _client(settings, service):
    server.app_state = AppState(settings, service)
    return TestClient(server.app)


@pytest.fixture
def client(settings, service):
    """Create test client bound to the test service."""
    yield _client(settings, service)
    server.app_state = None


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client, vehicle):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["tariff_version"] == "cotonou-2024.1"
        assert data["vehicles"] == {"impounded": 1}
        assert data["receipts"] == 0
        assert "uptime_seconds" in data

    def test_not_initialized(self):
        server.app_state = None
        response = TestClient(server.app).get("/health")

        assert response.status_code == 503


class TestAuth:
    """Staff endpoints require X-API-Key."""

    def test_missing_key(self, client, vehicle):
        response = client.get(f"/vehicles/{vehicle.vehicle_id}/fees")
        assert response.status_code == 400

    def test_wrong_key(self, client, vehicle):
        response = client.get(f"/vehicles/{vehicle.vehicle_id}/fees", headers={"X-API-Key": "wrong"})
        assert response.status_code == 401

    def test_public_endpoints_need_no_key(self, client, vehicle):
        assert client.get("/public/vehicles/AB-1234-RB/fees").status_code == 200
        assert client.get("/tariffs").status_code == 200


class TestFees:
    """Fee lookups."""

    def test_staff_fee(self, client, auth_headers, vehicle):
        response = client.get(f"/vehicles/{vehicle.vehicle_id}/fees", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total_due"] == 35000

    def test_fee_at_explicit_time(self, client, auth_headers, vehicle):
        response = client.get(
            f"/vehicles/{vehicle.vehicle_id}/fees",
            params={"at": "2024-03-15T10:00:00Z"},
            headers=auth_headers,
        )

        assert response.json()["days_elapsed"] == 5
        assert response.json()["total_due"] == 55000

    def test_public_lookup_by_plate(self, client, vehicle):
        response = client.get("/public/vehicles/ab-1234-rb/fees")

        data = response.json()
        assert data["license_plate"] == "AB-1234-RB"
        assert data["status"] == "impounded"
        assert data["fees"]["total_due"] == 35000

    def test_unknown_plate(self, client):
        response = client.get("/public/vehicles/XX-0000-XX/fees")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_malformed_time(self, client, auth_headers, vehicle):
        response = client.get(
            f"/vehicles/{vehicle.vehicle_id}/fees", params={"at": "tomorrow"}, headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["field"] == "evaluated_at"

    def test_tariffs(self, client):
        data = client.get("/tariffs").json()
        assert data["categories"]["MOTORCYCLE"] == {
            "removal_fee": 5000, "daily_rate": 2000, "label": "Deux-roues motorisés",
        }


class TestPayments:
    """Staff-entered payments."""

    def test_create(self, client, auth_headers, vehicle):
        response = client.post("/payments", headers=auth_headers, json={
            "vehicle_id": vehicle.vehicle_id,
            "amount": 35000,
            "method": "cash",
            "recorded_by": "agent-07",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["duplicate"] is False
        assert data["payment"]["origin"] == "internal"
        assert data["reconciliation"]["status"] == "ready_for_release"
        assert data["receipt"]["receipt_number"].startswith("RCT-")
        assert data["receipt_url"].endswith("/artifact")

    def test_negative_amount(self, client, auth_headers, vehicle):
        response = client.post("/payments", headers=auth_headers, json={
            "vehicle_id": vehicle.vehicle_id, "amount": -10, "method": "cash",
        })

        assert response.status_code == 400
        assert response.json()["field"] == "amount"

    def test_missing_fields(self, client, auth_headers):
        response = client.post("/payments", headers=auth_headers, json={"amount": 1000})
        assert response.status_code == 400

    def test_unknown_vehicle(self, client, auth_headers):
        response = client.post("/payments", headers=auth_headers, json={
            "vehicle_id": "VEH-NOPE", "amount": 1000, "method": "cash",
        })
        assert response.status_code == 404

    def test_list_and_balance(self, client, auth_headers, vehicle, sample_payment):
        listing = client.get(f"/vehicles/{vehicle.vehicle_id}/payments", headers=auth_headers).json()
        balance = client.get(f"/vehicles/{vehicle.vehicle_id}/balance", headers=auth_headers).json()

        assert listing["total"] == 1
        assert listing["payments"][0]["payment_id"] == sample_payment.payment_id
        assert balance["total_paid"] == 35000
        assert balance["balance"] == 0
        assert balance["status"] == "ready_for_release"


class TestGateway:
    """Gateway callbacks."""

    def _callback(self, vehicle, tx_id="KKP-TX-9001", amount=35000):
        return {
            "id": tx_id,
            "vehicle_id": vehicle.vehicle_id,
            "amount": amount,
            "payment_method": "mobile_money",
            "description": "Paiement des frais de fourrière",
        }

    def test_first_delivery_then_redelivery(self, client, vehicle):
        first = client.post("/public/payments/gateway", json=self._callback(vehicle))
        again = client.post("/public/payments/gateway", json=self._callback(vehicle))

        assert first.status_code == 201
        assert again.status_code == 200
        assert again.json()["duplicate"] is True
        assert again.json()["payment"]["payment_id"] == first.json()["payment"]["payment_id"]
        assert again.json()["receipt"]["receipt_number"] == first.json()["receipt"]["receipt_number"]

    def test_receipt_by_gateway_reference(self, client, vehicle):
        created = client.post("/public/payments/gateway", json=self._callback(vehicle)).json()

        response = client.get("/public/payments/KKP-TX-9001/receipt")

        assert response.status_code == 200
        assert response.json()["payment_id"] == created["payment"]["payment_id"]

    def test_signature_enforced_when_configured(self, settings, service, vehicle):
        client = _client(replace(settings, gateway_secret="gw-secret"), service)
        try:
            body = json.dumps(self._callback(vehicle)).encode("utf-8")
            signature = hmac.new(b"gw-secret", body, hashlib.sha256).hexdigest()
            headers = {"Content-Type": "application/json"}

            unsigned = client.post("/public/payments/gateway", content=body, headers=headers)
            forged = client.post(
                "/public/payments/gateway", content=body,
                headers={**headers, "X-Gateway-Signature": "0" * 64},
            )
            signed = client.post(
                "/public/payments/gateway", content=body,
                headers={**headers, "X-Gateway-Signature": signature},
            )
        finally:
            server.app_state = None

        assert unsigned.status_code == 401
        assert forged.status_code == 401
        assert signed.status_code == 201


class TestStatus:
    """Claim and release."""

    def test_claim_then_release(self, client, auth_headers, vehicle):
        claimed = client.post(f"/vehicles/{vehicle.vehicle_id}/status", headers=auth_headers, json={"status": "claimed"})
        released = client.post(f"/vehicles/{vehicle.vehicle_id}/status", headers=auth_headers, json={"status": "released"})

        assert claimed.json()["status"] == "claimed"
        assert released.json()["status"] == "released"

    def test_illegal_transition(self, client, auth_headers, vehicle):
        client.post(f"/vehicles/{vehicle.vehicle_id}/status", headers=auth_headers, json={"status": "claimed"})
        client.post(f"/vehicles/{vehicle.vehicle_id}/status", headers=auth_headers, json={"status": "released"})
        response = client.post(f"/vehicles/{vehicle.vehicle_id}/status", headers=auth_headers, json={"status": "claimed"})

        assert response.status_code == 400

    def test_ready_for_release_is_not_settable(self, client, auth_headers, vehicle):
        response = client.post(
            f"/vehicles/{vehicle.vehicle_id}/status", headers=auth_headers, json={"status": "ready_for_release"}
        )
        assert response.status_code == 400


class TestReceipts:
    """Receipt links, documents and public verification."""

    def test_staff_receipt(self, client, auth_headers, sample_payment):
        response = client.get(f"/payments/{sample_payment.payment_id}/receipt", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["verification_code"].count("-") == 2

    def test_artifact(self, client, sample_payment):
        response = client.get(f"/public/receipts/{sample_payment.payment_id}/artifact")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert b"Quittance de paiement" in response.content

    def test_verify(self, client, service, sample_payment):
        link = service.get_receipt(sample_payment.payment_id)

        response = client.get("/public/receipts/verify", params={"receipt": link.receipt_number})

        assert response.status_code == 200
        assert response.json() == {
            "valid": True,
            "license_plate": "AB-1234-RB",
            "owner_name": "Koffi Mensah",
            "amount": 35000,
            "date": "10/03/2024 12:00 UTC",
        }

    def test_verify_unknown(self, client):
        response = client.get("/public/receipts/verify", params={"receipt": "RCT-FFFFFFFFFFFF"})
        assert response.status_code == 404

    def test_pending_payment_receipt(self, client, auth_headers, service, vehicle):
        outcome = service.record_payment(vehicle.vehicle_id, 1000, "cash", "internal", status="pending")

        response = client.get(f"/payments/{outcome.payment.payment_id}/receipt", headers=auth_headers)

        assert response.status_code == 502
        assert response.json()["error"] == "render_error"


class TestPublicKeyEndpoint:
    """Test public key endpoint."""

    def test_get_public_key(self, client):
        response = client.get("/public-key")

        assert response.status_code == 200
        data = response.json()
        assert data["algorithm"] == "Ed25519"
        assert "BEGIN PUBLIC KEY" in data["public_key_pem"]
        assert data["key_id"] in data["keys"]

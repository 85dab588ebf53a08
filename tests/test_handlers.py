"""Tests for the POST /api/facturas webhook (full request flow).

Tests:
- Paid order -> invoice created, 200 with the submission result
- Signature failures -> 401, no call to the invoicing service
- Validation and mapping failures -> 400 with field errors
- Invoicing service failures -> 400 / 500 without leaking upstream detail
- Notification failures never change the response
- Health route and error envelope for bad requests
"""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import HUB_SECRET, order_body, signed
from fastapi.testclient import TestClient

from sigo_bridge.app import create_app
from sigo_bridge.notifications import NotificationDispatcher
from sigo_bridge.webhooks.verification import SIGNATURE_HEADER, sign_body

WEBHOOK = "/api/facturas"


@pytest.fixture()
def hub_calls():
    return []


@pytest.fixture()
def hub_status():
    return {"code": 200}


@pytest.fixture()
def app(settings, sigo_client, hub_calls, hub_status):
    def hub(request):
        hub_calls.append(request)
        return httpx.Response(hub_status["code"])

    notifier = NotificationDispatcher(
        "https://hub.test/notify",
        HUB_SECRET,
        http=httpx.AsyncClient(transport=httpx.MockTransport(hub)),
    )
    return create_app(settings, sigo_client=sigo_client, notifier=notifier)


def _post(client: TestClient, body: dict, signature: str | None = None):
    raw, good_signature = signed(body)
    headers = {"Content-Type": "application/json"}
    signature = good_signature if signature is None else signature
    if signature:
        headers[SIGNATURE_HEADER] = signature
    return client.post(WEBHOOK, content=raw, headers=headers)


# ── Happy Path ────────────────────────────────────────────────────────────


class TestPaidOrder:
    def test_creates_invoice(self, app, fake_siigo):
        with TestClient(app) as client:
            response = _post(client, order_body())
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["success"] is True
        assert body["estado"] == "PENDIENTE"
        assert body["numero"] == "FV-1001"
        assert body["factura_id"] == "inv-1001"
        assert body["duplicado"] is False
        assert len(fake_siigo.calls("POST", "/v1/invoices")) == 1

    def test_redelivery_is_idempotent(self, app, fake_siigo):
        with TestClient(app) as client:
            first = _post(client, order_body()).json()
            second = _post(client, order_body()).json()
        assert second["factura_id"] == first["factura_id"]
        assert second["duplicado"] is True
        assert len(fake_siigo.calls("POST", "/v1/invoices")) == 1

    def test_hub_notified(self, app, hub_calls):
        with TestClient(app) as client:
            _post(client, order_body())
        # lifespan shutdown drains pending notifications
        assert len(hub_calls) == 1
        payload = json.loads(hub_calls[0].content)
        assert payload["event_type"] == "factura.creada"
        assert payload["orden_id"] == 1001
        assert payload["monto_facturado"] == 2380.0

    def test_notification_failure_does_not_change_response(self, app, hub_calls, hub_status):
        hub_status["code"] = 500
        with TestClient(app) as client:
            response = _post(client, order_body())
        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert len(hub_calls) == 1


# ── Signature ─────────────────────────────────────────────────────────────


class TestSignature:
    def test_missing_signature(self, app, fake_siigo):
        with TestClient(app) as client:
            response = _post(client, order_body(), signature="")
        assert response.status_code == 401
        assert response.json() == {"status": "error", "message": "signature required"}
        assert fake_siigo.requests == []

    def test_wrong_signature(self, app, fake_siigo):
        with TestClient(app) as client:
            response = _post(client, order_body(), signature="sha256=" + "0" * 64)
        assert response.status_code == 401
        assert response.json()["message"] == "invalid signature"
        assert fake_siigo.requests == []

    def test_tampered_body(self, app, fake_siigo):
        _, signature = signed(order_body())
        with TestClient(app) as client:
            response = _post(client, order_body(amount=1), signature=signature)
        assert response.status_code == 401
        assert fake_siigo.requests == []

    def test_no_secret_configured(self, settings, sigo_client, fake_siigo):
        settings.hub_webhook_secret = ""
        app = create_app(settings, sigo_client=sigo_client, notifier=NotificationDispatcher("", ""))
        with TestClient(app) as client:
            response = _post(client, order_body())
        assert response.status_code == 401
        assert fake_siigo.requests == []


# ── Validation ────────────────────────────────────────────────────────────


class TestInvalidPayload:
    def test_negative_amount(self, app, fake_siigo):
        with TestClient(app) as client:
            response = _post(client, order_body(amount=-5))
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["message"] == "invalid data"
        assert {"msg": "amount must be greater than 0", "field": "data.amount"} in body["errors"]
        assert fake_siigo.requests == []

    def test_missing_event_type(self, app):
        body = order_body()
        del body["event_type"]
        with TestClient(app) as client:
            response = _post(client, body)
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "event_type"

    def test_invalid_json(self, app):
        raw = b"{not json"
        with TestClient(app) as client:
            response = client.post(WEBHOOK, content=raw, headers={SIGNATURE_HEADER: sign_body(raw, HUB_SECRET)})
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "body"

    def test_unmappable_customer(self, app, fake_siigo):
        with TestClient(app) as client:
            response = _post(client, order_body(customer={"document_type": "CC", "document_number": "12"}))
        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "order cannot be invoiced"
        assert body["errors"][0]["field"] == "data.customer.document_number"
        assert fake_siigo.requests == []


# ── Invoicing Service Failures ────────────────────────────────────────────


class TestServiceFailures:
    def test_rejected_document(self, app, fake_siigo):
        fake_siigo.invoice_failures.append(
            httpx.Response(400, json={"Errors": [{"Code": "invalid", "Message": "bad date", "Params": ["date"]}]})
        )
        with TestClient(app) as client:
            response = _post(client, order_body())
        assert response.status_code == 400
        assert response.json()["errors"] == [{"msg": "bad date", "field": "date"}]

    def test_service_down(self, app, fake_siigo):
        fake_siigo.invoice_failures.extend([httpx.Response(503, text="stack trace here") for _ in range(3)])
        with TestClient(app) as client:
            response = _post(client, order_body())
        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert "stack trace" not in body["message"]
        assert set(body) == {"status", "message"}

    def test_auth_failure(self, app, fake_siigo):
        fake_siigo.data_failures.append(httpx.Response(403))
        with TestClient(app) as client:
            response = _post(client, order_body())
        assert response.status_code == 500
        assert response.json()["message"] == "invoicing service authentication failed"

    def test_open_circuit_fails_fast(self, app, fake_siigo, sigo_client):
        for _ in range(3):
            sigo_client.breaker.record_failure()
        with TestClient(app) as client:
            response = _post(client, order_body())
        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "invoicing service temporarily unavailable"}
        assert fake_siigo.requests == []


# ── Health ────────────────────────────────────────────────────────────────


class TestHealth:
    def test_health(self, app):
        with TestClient(app) as client:
            response = client.get(f"{WEBHOOK}/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OK"
        assert body["endpoints"]["create"] == WEBHOOK

    def test_health_reports_circuit_and_call_stats(self, app):
        with TestClient(app) as client:
            assert _post(client, order_body()).status_code == 200
            body = client.get(f"{WEBHOOK}/health").json()
        assert body["invoicing"]["circuit"]["state"] == "closed"
        assert body["invoicing"]["operations"]["create_invoice"]["requests"] == 1
        assert body["invoicing"]["operations"]["create_invoice"]["errors"] == 0

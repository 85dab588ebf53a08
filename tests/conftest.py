"""Shared fixtures for the sigo-bridge test suite."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from sigo_bridge.config import Settings
from sigo_bridge.invoices.client import SigoClient
from sigo_bridge.webhooks.verification import sign_body

HUB_SECRET = "test-hub-secret"


class FakeSiigo:
    """In-memory stand-in for the Siigo API, mounted via httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.invoices: dict[tuple[str | None, str], dict[str, Any]] = {}  # (store_id, order_id) -> invoice
        self.states: dict[tuple[str, str], str] = {}  # (series, number) -> estado
        self.customers: set[str] = set()
        self.invoice_failures: list[httpx.Response | Exception] = []
        self.data_failures: list[httpx.Response] = []
        self.token = "token-abc"
        self._next_id = 1000

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/auth":
            return httpx.Response(200, json={"access_token": self.token})

        if self.data_failures:
            return self.data_failures.pop(0)

        if path == "/v1/customers":
            if request.method == "GET":
                ident = request.url.params.get("identification")
                found = [{"identification": ident}] if ident in self.customers else []
                return httpx.Response(200, json={"results": found})
            self.customers.add(json.loads(request.content)["identification"])
            return httpx.Response(201, json={"id": "cust-1"})

        if path == "/v1/invoices":
            if request.method == "GET":
                params = request.url.params
                found = self.invoices.get((params.get("store_id"), params.get("order_id")))
                return httpx.Response(200, json={"results": [found] if found else []})
            if self.invoice_failures:
                failure = self.invoice_failures.pop(0)
                if isinstance(failure, Exception):
                    raise failure
                return failure
            extra = json.loads(request.content)["additional_fields"]
            self._next_id += 1
            invoice = {"id": f"inv-{self._next_id}", "name": f"{extra['serie']}-{extra['numero']}"}
            ref = extra["referencia_externa"]
            store = str(ref["tienda"]) if ref["tienda"] is not None else None
            self.invoices[(store, str(ref["orden"]))] = invoice
            return httpx.Response(201, json=invoice)

        if path.startswith("/facturas/"):
            series, number, *rest = path.split("/")[2:]
            key = (series, number)
            if key not in self.states:
                return httpx.Response(404, json={"message": "not found"})
            action = rest[0] if rest else None
            if action == "estado" and request.method == "PATCH":
                self.states[key] = json.loads(request.content)["estado"]
            elif action == "enviar":
                self.states[key] = "ENVIADO"
            elif action == "anular":
                self.states[key] = "ANULADO"
            return httpx.Response(
                200,
                json={"id": f"inv-{number}", "serie": series, "numero": number, "estado": self.states[key]},
            )

        return httpx.Response(404, json={"message": "no route"})


def order_body(**data_overrides: Any) -> dict[str, Any]:
    """A valid "pedido.pagado" webhook body; ``data`` keys can be overridden."""
    data: dict[str, Any] = {
        "order_id": 1001,
        "store_id": 7,
        "amount": 238000,
        "paid_at": "2024-05-10T14:30:00Z",
        "items": [
            {"product_id": 55, "product_name": "Camiseta", "quantity": 2, "unit_price": 100000},
        ],
        "customer": {
            "document_type": "CC",
            "document_number": "1020304050",
            "name": "Ana Gomez",
            "email": "ana@example.com",
        },
    }
    data.update(data_overrides)
    return {"event_type": "pedido.pagado", "data": data}


def signed(body: dict[str, Any], secret: str = HUB_SECRET) -> tuple[bytes, str]:
    raw = json.dumps(body).encode("utf-8")
    return raw, sign_body(raw, secret)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        sigo_api_url="https://siigo.test",
        sigo_username="bridge@example.com",
        sigo_api_key="k" * 40,
        sigo_max_retries=2,
        sigo_retry_base_delay=0,
        hub_webhook_secret=HUB_SECRET,
        hub_notification_url="",
        internal_api_key="",
        siigo_tax_id=None,
        siigo_payment_method_id=None,
        siigo_seller_id=None,
        prices_include_tax=False,
    )


@pytest.fixture()
def fake_siigo() -> FakeSiigo:
    return FakeSiigo()


@pytest.fixture()
def sigo_client(settings: Settings, fake_siigo: FakeSiigo) -> SigoClient:
    http = httpx.AsyncClient(base_url=settings.sigo_api_url, transport=httpx.MockTransport(fake_siigo))
    return SigoClient(settings, http=http)

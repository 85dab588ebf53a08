"""Siigo invoicing API client.

Wraps one httpx.AsyncClient. Every public operation returns a
SubmissionResult or raises a classified error:

- ValidationError: the service rejected the content (4xx with field errors)
- TransientError: connect error, timeout, 429 or 5xx, retried with backoff
- AuthError: bad credentials or rejected token, never retried
- NotFoundError: no such invoice

Invoice creation is idempotent per (store_id, order_id): the client looks the
order up by its external reference first and only POSTs when nothing is
found; the POST itself carries a deterministic Idempotency-Key. Two
deliveries racing between lookup and POST can still both reach the POST;
the service's Idempotency-Key handling is what collapses them.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any
from urllib.parse import quote

import httpx

from sigo_bridge.config import Settings
from sigo_bridge.errors import (
    AuthError,
    FieldError,
    NotFoundError,
    PipelineError,
    TransientError,
    ValidationError,
)
from sigo_bridge.invoices.auth import TokenCache, check_credentials, normalize_access_key
from sigo_bridge.invoices.breaker import CallStats, CircuitBreaker
from sigo_bridge.models import (
    Customer,
    ExternalReference,
    FiscalInvoiceDocument,
    InvoiceState,
    SubmissionResult,
)
from sigo_bridge.retry import retry_async

logger = logging.getLogger(__name__)

# Siigo identification type codes
_ID_TYPE_CODES = {"NIT": "31", "CC": "13", "CE": "22", "DNI": "13", "RUC": "50", "PASAPORTE": "41"}

# Status spellings the service may use -> lifecycle state
_STATE_ALIASES: dict[str, InvoiceState] = {
    "PENDING": InvoiceState.PENDIENTE,
    "DRAFT": InvoiceState.PENDIENTE,
    "CREADO": InvoiceState.PENDIENTE,
    "SENT": InvoiceState.ENVIADO,
    "ENVIADO_SUNAT": InvoiceState.ENVIADO,
    "ENVIADO_DIAN": InvoiceState.ENVIADO,
    "ACCEPTED": InvoiceState.ACEPTADO,
    "REJECTED": InvoiceState.RECHAZADO,
    "CANCELLED": InvoiceState.ANULADO,
    "ANNULLED": InvoiceState.ANULADO,
}


def idempotency_key(reference: ExternalReference) -> str:
    """Stable key for one logical order: the same order always maps to the same key."""
    raw = f"{reference.store_id if reference.store_id is not None else '-'}:{reference.order_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def parse_state(value: Any) -> InvoiceState | None:
    if not value:
        return None
    name = str(value).strip().upper()
    try:
        return InvoiceState(name)
    except ValueError:
        return _STATE_ALIASES.get(name)


def parse_result(
    data: dict[str, Any],
    default_state: InvoiceState | None = None,
    series: str | None = None,
) -> SubmissionResult:
    """Map an invoice representation from the service to a SubmissionResult."""
    if not isinstance(data, dict):
        data = {}
    stamp = data.get("stamp") if isinstance(data.get("stamp"), dict) else {}
    state = (
        parse_state(data.get("estado"))
        or parse_state(data.get("status"))
        or parse_state(stamp.get("status"))
        or default_state
    )
    number = (
        data.get("numero_documento")
        or data.get("name")
        or data.get("numero")
        or data.get("number")
    )
    invoice_id = data.get("id") or data.get("sigo_id")
    return SubmissionResult(
        success=True,
        invoice_id=str(invoice_id) if invoice_id is not None else None,
        series=data.get("serie") or series,
        number=str(number) if number is not None else None,
        state=state,
        pdf_url=data.get("pdf_url") or data.get("pdfUrl") or data.get("public_url"),
        xml_url=data.get("xml_url") or data.get("xmlUrl"),
    )


def _upstream_errors(response: httpx.Response) -> tuple[list[FieldError], str | None]:
    """Extract field errors (and the error code) from a 4xx body."""
    code = response.headers.get("siigoapi-error-code")
    try:
        body = response.json()
    except ValueError:
        return [FieldError("document", f"rejected with HTTP {response.status_code}")], code

    errors: list[FieldError] = []
    raw = body.get("Errors") or body.get("errors") if isinstance(body, dict) else None
    if isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict):
                errors.append(FieldError("document", str(entry)))
                continue
            params = entry.get("Params") or []
            field = entry.get("field") or (params[0] if params else None) or entry.get("Code") or "document"
            msg = entry.get("Message") or entry.get("message") or entry.get("msg") or "invalid value"
            errors.append(FieldError(str(field), str(msg)))
            code = code or entry.get("Code")
    if not errors:
        message = body.get("message") if isinstance(body, dict) else None
        errors.append(FieldError("document", str(message or f"rejected with HTTP {response.status_code}")))
    return errors, code


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _path(*segments: Any) -> str:
    return "/" + "/".join(quote(str(s), safe="") for s in segments)


def build_customer_payload(customer: Customer) -> dict[str, Any]:
    is_company = customer.document_type in ("NIT", "RUC")
    words = customer.name.split()
    first = words[0] if words else customer.name
    last = " ".join(words[1:]) or first
    payload: dict[str, Any] = {
        "type": "Customer",
        "person_type": "Company" if is_company else "Person",
        "id_type": _ID_TYPE_CODES.get(customer.document_type, "13"),
        "identification": customer.document_number.split("-")[0],
        "name": [customer.name] if is_company else [first, last],
        "commercial_name": customer.name,
        "active": True,
        "vat_responsible": False,
        "fiscal_responsibilities": [{"code": "R-99-PN"}],
    }
    if customer.address:
        payload["address"] = {"address": customer.address}
    if customer.phone:
        payload["phones"] = [{"number": customer.phone}]
    if customer.email:
        payload["contacts"] = [{"first_name": first, "last_name": last, "email": customer.email}]
    return payload


def build_invoice_payload(document: FiscalInvoiceDocument, settings: Settings) -> dict[str, Any]:
    """Render a FiscalInvoiceDocument in the service's wire format."""
    ref = document.reference
    items = []
    for line in document.lines:
        item: dict[str, Any] = {
            "code": line.code,
            "description": line.description,
            "quantity": line.quantity,
            "price": float(line.unit_price),
            "discount": float(line.discount),
        }
        if settings.siigo_tax_id is not None:
            item["taxes"] = [{"id": settings.siigo_tax_id, "value": float(line.tax)}]
        items.append(item)

    payload: dict[str, Any] = {
        "document": {"id": settings.siigo_document_id},
        "date": document.issue_date,
        "customer": {
            "identification": document.customer.document_number.split("-")[0],
            "branch_office": 0,
        },
        "observations": f"Orden {ref.order_id}" + (f" - tienda {ref.store_id}" if ref.store_id is not None else ""),
        "items": items,
        "payments": [
            {
                "id": settings.siigo_payment_method_id,
                "value": float(document.summary.total),
                "due_date": document.issue_date,
            }
        ],
        "additional_fields": {
            "tipo_documento": document.document_type,
            "serie": document.series,
            "numero": document.number,
            "hora_emision": document.issue_time,
            "moneda": document.currency,
            "resumen": {
                "subtotal": float(document.summary.subtotal),
                "iva": float(document.summary.tax),
                "descuentos": float(document.summary.discounts),
                "total": float(document.summary.total),
            },
            "referencia_externa": {
                "orden": ref.order_id,
                "tienda": ref.store_id,
                "pagado_en": ref.paid_at,
            },
        },
    }
    if settings.siigo_payment_method_id is None:
        del payload["payments"][0]["id"]
    if settings.siigo_seller_id is not None:
        payload["seller"] = settings.siigo_seller_id
    return payload


class SigoClient:
    """Async client for the Siigo invoicing API."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        tokens: TokenCache | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self._settings = settings
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=settings.sigo_api_url,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        self._tokens = tokens or TokenCache()
        self.breaker = breaker or CircuitBreaker(
            "siigo",
            failure_threshold=settings.sigo_breaker_failure_threshold,
            success_threshold=settings.sigo_breaker_success_threshold,
            reset_seconds=settings.sigo_breaker_reset_seconds,
            max_reset_seconds=settings.sigo_breaker_max_reset_seconds,
        )
        self.stats = CallStats()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def status(self) -> dict[str, Any]:
        """Circuit state and per-operation call stats, for the health route."""
        return {"circuit": self.breaker.status(), "operations": self.stats.to_dict()}

    # ── transport ─────────────────────────────────────────────────────────

    async def _send(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, path, timeout=httpx.Timeout(timeout), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"invoicing service timed out ({type(e).__name__})") from e
        except httpx.TransportError as e:
            raise TransientError(f"cannot reach invoicing service ({type(e).__name__})") from e

    def _classify(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            self._tokens.clear()
            logger.error("Siigo rejected credentials during %s (HTTP %d)", operation, status)
            raise AuthError()
        if status == 404:
            raise NotFoundError()
        if status == 429 or status >= 500:
            raise TransientError(
                f"invoicing service returned HTTP {status}",
                retry_after=_retry_after(response),
            )
        errors, code = _upstream_errors(response)
        logger.warning("Siigo rejected %s (HTTP %d, code=%s): %d error(s)", operation, status, code, len(errors))
        raise ValidationError("invoicing service rejected the document", errors=errors, code=code)

    @retry_async(
        max_retries=lambda self: self._settings.sigo_max_retries,
        base_delay=lambda self: self._settings.sigo_retry_base_delay,
    )
    async def authenticate(self) -> str:
        """Get a bearer token (cached until shortly before it expires)."""
        return await self._fetch_token()

    async def _fetch_token(self) -> str:
        username = self._settings.sigo_username
        api_key = self._settings.sigo_api_key
        cached = self._tokens.get(username, api_key)
        if cached:
            return cached.token

        problems = check_credentials(username, api_key)
        if problems:
            logger.error("Siigo credentials unusable: %s", "; ".join(problems))
            raise AuthError("invoicing service credentials are not configured correctly")

        response = await self._send(
            "POST",
            "/auth",
            self._settings.sigo_auth_timeout,
            json={"username": username, "access_key": normalize_access_key(api_key)},
        )
        if response.status_code in (400, 401, 403):
            logger.error("Siigo authentication refused (HTTP %d) for %s", response.status_code, username)
            raise AuthError()
        self._classify(response, "authenticate")

        token = response.json().get("access_token")
        if not token:
            raise AuthError("invoicing service returned no access token")
        self._tokens.set(username, api_key, token)
        return token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._fetch_token()
        cached = self._tokens.get(self._settings.sigo_username, self._settings.sigo_api_key)
        partner_id = (cached.partner_id if cached else None) or self._settings.sigo_partner_id
        return {"Authorization": f"Bearer {token}", "Partner-Id": partner_id}

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        **kwargs: Any,
    ) -> Any:
        """One data call behind the circuit breaker; retries count as one failure."""
        self.breaker.before_call()
        start = time.monotonic()
        try:
            data = await self._request_with_retry(method, path, operation, **kwargs)
        except TransientError as e:
            self.breaker.record_failure()
            self.stats.record(operation, (time.monotonic() - start) * 1000, type(e).__name__)
            raise
        except PipelineError as e:
            self.breaker.record_success()
            self.stats.record(operation, (time.monotonic() - start) * 1000, type(e).__name__)
            raise
        self.breaker.record_success()
        self.stats.record(operation, (time.monotonic() - start) * 1000)
        return data

    @retry_async(
        max_retries=lambda self: self._settings.sigo_max_retries,
        base_delay=lambda self: self._settings.sigo_retry_base_delay,
    )
    async def _request_with_retry(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        request_headers = await self._auth_headers()
        if headers:
            request_headers.update(headers)
        response = await self._send(
            method,
            path,
            self._settings.sigo_timeout,
            json=json,
            params=params,
            headers=request_headers,
        )
        self._classify(response, operation)
        if not response.content:
            return {}
        return response.json()

    # ── invoices ──────────────────────────────────────────────────────────

    async def find_by_reference(self, reference: ExternalReference) -> SubmissionResult | None:
        """Look up an invoice already created for this order, if any."""
        params: dict[str, Any] = {"order_id": reference.order_id}
        if reference.store_id is not None:
            params["store_id"] = reference.store_id
        try:
            data = await self._request("GET", "/v1/invoices", "find_by_reference", params=params)
        except NotFoundError:
            return None
        results = data.get("results") if isinstance(data, dict) else data
        if not isinstance(results, list) or not results:
            return None
        return parse_result(results[0], default_state=InvoiceState.PENDIENTE)

    async def ensure_customer(self, customer: Customer) -> None:
        """Create the customer on the service unless it already exists."""
        identification = customer.document_number.split("-")[0]
        try:
            data = await self._request(
                "GET", "/v1/customers", "find_customer", params={"identification": identification}
            )
            results = data.get("results") if isinstance(data, dict) else data
            if isinstance(results, list) and results:
                return
        except NotFoundError:
            pass

        try:
            await self._request("POST", "/v1/customers", "create_customer", json=build_customer_payload(customer))
            logger.info("Siigo customer created: %s %s", customer.document_type, identification)
        except ValidationError as e:
            if e.code != "already_exists":
                raise

    async def create_invoice(self, document: FiscalInvoiceDocument) -> SubmissionResult:
        """Create the invoice for one paid order, at most once per order."""
        reference = document.reference
        existing = await self.find_by_reference(reference)
        if existing is not None:
            existing.duplicate = True
            existing.series = existing.series or document.series
            logger.info(
                "Invoice already exists for order %s/%s: %s",
                reference.store_id,
                reference.order_id,
                existing.invoice_id,
            )
            return existing

        await self.ensure_customer(document.customer)

        data = await self._request(
            "POST",
            "/v1/invoices",
            "create_invoice",
            json=build_invoice_payload(document, self._settings),
            headers={"Idempotency-Key": idempotency_key(reference)},
        )
        result = parse_result(data, default_state=InvoiceState.PENDIENTE, series=document.series)
        logger.info(
            "Invoice created for order %s/%s: id=%s number=%s state=%s",
            reference.store_id,
            reference.order_id,
            result.invoice_id,
            result.number,
            result.state.value if result.state else None,
        )
        return result

    async def get_invoice(self, series: str, number: str | int) -> SubmissionResult:
        data = await self._request("GET", _path("facturas", series, number), "get_invoice")
        return parse_result(data, series=series)

    async def get_invoice_status(self, series: str, number: str | int) -> SubmissionResult:
        data = await self._request("GET", _path("facturas", series, number, "estado"), "get_invoice_status")
        result = parse_result(data, series=series)
        result.number = result.number or str(number)
        return result

    async def _require_transition(self, series: str, number: str | int, target: InvoiceState) -> None:
        current = (await self.get_invoice_status(series, number)).state
        if current is not None and not current.can_transition_to(target):
            raise ValidationError(
                f"invoice {series}-{number} cannot go from {current.value} to {target.value}",
                errors=[FieldError("estado", f"{current.value} -> {target.value} is not allowed")],
            )

    async def update_invoice_status(
        self, series: str, number: str | int, state: InvoiceState
    ) -> SubmissionResult:
        await self._require_transition(series, number, state)
        data = await self._request(
            "PATCH",
            _path("facturas", series, number, "estado"),
            "update_invoice_status",
            json={"estado": state.value},
        )
        return parse_result(data, default_state=state, series=series)

    async def send_to_authority(self, series: str, number: str | int) -> SubmissionResult:
        """Submit the invoice to the tax authority."""
        await self._require_transition(series, number, InvoiceState.ENVIADO)
        data = await self._request("POST", _path("facturas", series, number, "enviar"), "send_to_authority")
        return parse_result(data, default_state=InvoiceState.ENVIADO, series=series)

    async def cancel_invoice(self, series: str, number: str | int, reason: str) -> SubmissionResult:
        await self._require_transition(series, number, InvoiceState.ANULADO)
        data = await self._request(
            "POST",
            _path("facturas", series, number, "anular"),
            "cancel_invoice",
            json={"motivo": reason},
        )
        return parse_result(data, default_state=InvoiceState.ANULADO, series=series)

"""Invoice webhook handler: the paid-order pipeline behind POST /api/facturas.

Each request:
1. Reads raw body (needed for HMAC verification)
2. Verifies the hub signature                      -> 401 on failure
3. Validates the minimum "pedido.pagado" shape      -> 400 with all errors
4. Maps the order to a fiscal invoice              -> 400 on unmappable data
5. Creates the invoice (idempotent per order)      -> 400 rejected / 500 transient or auth
6. Schedules the hub notification (detached, best effort)
7. Returns 200 with the submission result

Security contract:
- Exactly one response per request
- Error bodies are {"status": "error", "message", ...}; never upstream bodies,
  stack traces or credentials
- No external call is made before the signature is verified
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sigo_bridge.config import Settings
from sigo_bridge.errors import (
    AuthenticationError,
    FieldError,
    PipelineError,
    TransformationError,
    ValidationError,
    error_body,
)
from sigo_bridge.invoices.client import SigoClient
from sigo_bridge.invoices.transformer import InvoiceDefaults, parse_order, transform_order
from sigo_bridge.models import InboundWebhookEvent
from sigo_bridge.notifications import NotificationDispatcher, build_notification
from sigo_bridge.webhooks.validation import validate_order_paid
from sigo_bridge.webhooks.verification import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/facturas"


def _log_webhook(order_id: Any, stage: str, status: str) -> None:
    """Audit log for webhook activity."""
    logger.info("WEBHOOK_AUDIT order=%s stage=%s status=%s", order_id, stage, status)


def _to_event(body: Any, signature: str | None, raw_body: bytes) -> InboundWebhookEvent:
    body = body if isinstance(body, dict) else {}
    data = body.get("data")
    return InboundWebhookEvent(
        event_type=body.get("event_type"),
        data=data if isinstance(data, dict) else {},
        signature=signature,
        raw_body=raw_body,
    )


class InvoicePipeline:
    """Runs one inbound webhook through every stage and decides the response."""

    def __init__(
        self,
        settings: Settings,
        client: SigoClient,
        notifier: NotificationDispatcher,
    ):
        self._secret = settings.hub_webhook_secret
        self._defaults = InvoiceDefaults.from_settings(settings)
        self._client = client
        self._notifier = notifier

    async def handle(self, raw_body: bytes, signature: str | None) -> tuple[int, dict[str, Any]]:
        """Return (status_code, body) for one webhook delivery."""
        # Received -> SignatureChecked
        check = verify_signature(raw_body, signature, self._secret)
        if not check.ok:
            _log_webhook("unknown", "signature", "rejected")
            exc = AuthenticationError(check.message)
            return exc.status_code, error_body(exc)

        # SignatureChecked -> Validated
        try:
            body = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            _log_webhook("unknown", "validation", "invalid_json")
            exc = ValidationError("invalid data", errors=[FieldError("body", "body must be valid JSON")])
            return exc.status_code, error_body(exc)

        event = _to_event(body, signature, raw_body)
        order_ref = event.data.get("order_id", "unknown")
        errors = validate_order_paid(body)
        if errors:
            _log_webhook(order_ref, "validation", "rejected")
            exc = ValidationError("invalid data", errors=errors)
            return exc.status_code, error_body(exc)

        # Validated -> Transformed
        try:
            order = parse_order(event.data)
            document = transform_order(order, self._defaults)
        except TransformationError as e:
            _log_webhook(order_ref, "transform", "rejected")
            return e.status_code, error_body(e)

        # Transformed -> Submitted
        try:
            result = await self._client.create_invoice(document)
        except ValidationError as e:
            _log_webhook(order.order_id, "submit", "rejected")
            return 400, error_body(e)
        except PipelineError as e:
            _log_webhook(order.order_id, "submit", type(e).__name__)
            return 500, {"status": "error", "message": e.message}
        except Exception:
            logger.exception("Unclassified failure creating invoice for order %s", order.order_id)
            _log_webhook(order.order_id, "submit", "crashed")
            return 500, {"status": "error", "message": "internal error"}

        # Submitted -> Notified (best effort, detached)
        try:
            self._notifier.dispatch(build_notification(result, order))
        except Exception:
            logger.exception("Could not schedule hub notification for order %s", order.order_id)

        _log_webhook(order.order_id, "respond", "duplicate" if result.duplicate else "created")
        return 200, {"status": "success", **result.to_dict()}


def register_webhook_routes(app: FastAPI) -> None:
    """Register the invoice webhook and its health route.

    Expects ``app.state.pipeline`` to hold an InvoicePipeline by the time
    requests arrive (set up in the app lifespan).
    """

    @app.post(WEBHOOK_PATH)
    async def invoice_webhook(request: Request):
        """Receive a hub "pedido.pagado" webhook (signature-verified)."""
        start = time.time()
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)

        status_code, payload = await request.app.state.pipeline.handle(body, signature)

        elapsed_ms = (time.time() - start) * 1000
        logger.debug("Webhook processed in %.1fms (HTTP %d)", elapsed_ms, status_code)
        return JSONResponse(payload, status_code=status_code)

    @app.get(f"{WEBHOOK_PATH}/health")
    async def invoice_webhook_health(request: Request):
        return {
            "status": "OK",
            "service": "sigo-bridge webhooks",
            "endpoints": {
                "create": WEBHOOK_PATH,
                "health": f"{WEBHOOK_PATH}/health",
            },
            "invoicing": request.app.state.sigo_client.status(),
        }

    logger.info("Webhook routes registered: %s", WEBHOOK_PATH)

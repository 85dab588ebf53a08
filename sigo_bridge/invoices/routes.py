"""Invoice management API: read and move invoices through their lifecycle.

Routes proxy to the Siigo client; state is always what the service reports.
Classified errors propagate to the app's PipelineError handler, which renders
the standard error envelope. Protected by ``x-api-key`` when
INTERNAL_API_KEY is configured.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from sigo_bridge.errors import AuthenticationError
from sigo_bridge.invoices.client import SigoClient
from sigo_bridge.models import InvoiceState, SubmissionResult

logger = logging.getLogger(__name__)


async def require_api_key(request: Request, x_api_key: str | None = Header(default=None)) -> None:
    expected = request.app.state.settings.internal_api_key
    if not expected:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("invalid api key")


router = APIRouter(prefix="/api/invoices", tags=["invoices"], dependencies=[Depends(require_api_key)])


class StatusUpdate(BaseModel):
    estado: InvoiceState


class CancelRequest(BaseModel):
    motivo: str = Field(min_length=10, max_length=500)


def _client(request: Request) -> SigoClient:
    return request.app.state.sigo_client


def _ok(result: SubmissionResult) -> dict:
    return {"status": "success", **result.to_dict()}


@router.get("/{series}/{number}")
async def get_invoice(series: str, number: str, request: Request):
    return _ok(await _client(request).get_invoice(series, number))


@router.get("/{series}/{number}/status")
async def get_invoice_status(series: str, number: str, request: Request):
    return _ok(await _client(request).get_invoice_status(series, number))


@router.patch("/{series}/{number}/status")
async def update_invoice_status(series: str, number: str, body: StatusUpdate, request: Request):
    result = await _client(request).update_invoice_status(series, number, body.estado)
    logger.info("Invoice %s-%s moved to %s", series, number, body.estado.value)
    return _ok(result)


@router.post("/{series}/{number}/send")
async def send_invoice(series: str, number: str, request: Request):
    result = await _client(request).send_to_authority(series, number)
    logger.info("Invoice %s-%s sent to the tax authority", series, number)
    return _ok(result)


@router.post("/{series}/{number}/cancel")
async def cancel_invoice(series: str, number: str, body: CancelRequest, request: Request):
    result = await _client(request).cancel_invoice(series, number, body.motivo)
    logger.info("Invoice %s-%s cancelled", series, number)
    return _ok(result)

"""Data model for one pipeline run.

Everything here lives for a single request: parsed from the webhook,
handed from stage to stage, then discarded. Nothing is cached or shared.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

ORDER_PAID_EVENT = "pedido.pagado"


class InvoiceState(str, Enum):
    """Invoice lifecycle as reported by the invoicing service."""

    PENDIENTE = "PENDIENTE"
    ENVIADO = "ENVIADO"
    ACEPTADO = "ACEPTADO"
    RECHAZADO = "RECHAZADO"
    ANULADO = "ANULADO"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    def can_transition_to(self, target: InvoiceState) -> bool:
        return target in _TRANSITIONS[self]


_TERMINAL_STATES = {InvoiceState.ACEPTADO, InvoiceState.RECHAZADO, InvoiceState.ANULADO}

_TRANSITIONS: dict[InvoiceState, set[InvoiceState]] = {
    InvoiceState.PENDIENTE: {InvoiceState.ENVIADO, InvoiceState.ANULADO},
    InvoiceState.ENVIADO: {InvoiceState.ACEPTADO, InvoiceState.RECHAZADO, InvoiceState.ANULADO},
    InvoiceState.ACEPTADO: set(),
    InvoiceState.RECHAZADO: set(),
    InvoiceState.ANULADO: set(),
}


@dataclass(frozen=True)
class InboundWebhookEvent:
    """A received webhook, before any checks."""

    event_type: str | None
    data: dict[str, Any]
    signature: str | None
    raw_body: bytes = b""


@dataclass(frozen=True)
class Customer:
    document_type: str
    document_number: str
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None


@dataclass(frozen=True)
class OrderItem:
    product_id: int | str | None
    product_name: str
    quantity: int
    unit_price: int  # minor units
    discount: int = 0  # minor units


@dataclass(frozen=True)
class OrderPayload:
    """A paid order from the hub. Money is in minor units (cents)."""

    order_id: int
    store_id: int | None
    amount: int
    items: tuple[OrderItem, ...]
    paid_at: str
    customer: Customer
    currency: str | None = None
    discount: int = 0
    series: str | None = None
    number: int | None = None


@dataclass(frozen=True)
class InvoiceLine:
    code: str
    description: str
    quantity: int
    unit_price: Decimal
    discount: Decimal
    subtotal: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class InvoiceSummary:
    subtotal: Decimal
    tax: Decimal
    discounts: Decimal
    total: Decimal


@dataclass(frozen=True)
class ExternalReference:
    order_id: int
    store_id: int | None
    paid_at: str


@dataclass(frozen=True)
class FiscalInvoiceDocument:
    """An order mapped onto the invoicing schema. Amounts in major units."""

    document_type: str
    series: str
    number: int
    issue_date: str
    issue_time: str
    customer: Customer
    currency: str
    lines: tuple[InvoiceLine, ...]
    summary: InvoiceSummary
    reference: ExternalReference
    tax_rate: Decimal = Decimal("0")


@dataclass
class SubmissionResult:
    """Outcome of an invoicing-service call."""

    success: bool
    invoice_id: str | None = None
    series: str | None = None
    number: str | None = None
    state: InvoiceState | None = None
    pdf_url: str | None = None
    xml_url: str | None = None
    duplicate: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "factura_id": self.invoice_id,
            "serie": self.series,
            "numero": self.number,
            "estado": self.state.value if self.state else None,
            "pdf_url": self.pdf_url,
            "xml_url": self.xml_url,
            "duplicado": self.duplicate,
            "errores": list(self.errors),
        }


@dataclass(frozen=True)
class OutboundNotification:
    """What the hub is told about a processed order."""

    invoice_id: str | None
    document_number: str | None
    state: str | None
    pdf_url: str | None
    xml_url: str | None
    order_id: int
    amount: Decimal  # major units

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": "factura.creada",
            "factura_id": self.invoice_id,
            "numero_documento": self.document_number,
            "estado": self.state,
            "pdf_url": self.pdf_url,
            "xml_url": self.xml_url,
            "orden_id": self.order_id,
            "monto_facturado": float(self.amount),
        }

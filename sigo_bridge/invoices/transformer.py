"""Order -> fiscal invoice mapping.

Pure and deterministic: the same order and defaults always produce the same
document, so a redelivered webhook maps to the same series/number and
external reference.

Money contract:
- Hub amounts arrive as integer minor units (cents)
- All arithmetic is Decimal over minor units
- Conversion to major units and rounding happen once, when the document is
  built: the order's subtotal and tax are rounded half-up to 2 places and
  the cents are split over the lines by largest remainder, so line
  subtotals and taxes add up to the summary exactly
- total == subtotal + tax - discounts exactly
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any

from sigo_bridge.config import Settings
from sigo_bridge.errors import FieldError, TransformationError
from sigo_bridge.models import (
    Customer,
    ExternalReference,
    FiscalInvoiceDocument,
    InvoiceLine,
    InvoiceSummary,
    OrderItem,
    OrderPayload,
)

DOCUMENT_TYPE = "FACTURA_VENTA"

_CENTS = Decimal("0.01")
_HUNDRED = Decimal(100)

# Document type -> accepted pattern for the (normalized) document number
DOCUMENT_NUMBER_RULES: dict[str, tuple[re.Pattern[str], str]] = {
    "NIT": (re.compile(r"^\d{9,10}(-\d)?$"), "9 to 10 digits plus optional check digit"),
    "CC": (re.compile(r"^\d{6,10}$"), "6 to 10 digits"),
    "CE": (re.compile(r"^\d{6,15}$"), "6 to 15 digits"),
    "RUC": (re.compile(r"^\d{11}$"), "11 digits"),
    "DNI": (re.compile(r"^\d{8}$"), "8 digits"),
    "PASAPORTE": (re.compile(r"^[A-Za-z0-9]{5,20}$"), "5 to 20 letters or digits"),
}


@dataclass(frozen=True)
class InvoiceDefaults:
    """The configured values the mapping falls back on."""

    series: str = "FV"
    currency: str = "COP"
    tax_rate: Decimal = Decimal("0.19")
    prices_include_tax: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> InvoiceDefaults:
        return cls(
            series=settings.sigo_serie_default,
            currency=settings.moneda_default,
            tax_rate=Decimal(settings.iva_rate),
            prices_include_tax=settings.prices_include_tax,
        )


def to_major(minor: Decimal) -> Decimal:
    """Minor units -> major units, rounded to 2 places."""
    return (minor / _HUNDRED).quantize(_CENTS, rounding=ROUND_HALF_UP)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_document_number(value: Any) -> str:
    return re.sub(r"[\s.]", "", str(value))


def _parse_customer(raw: Any, errors: list[FieldError]) -> Customer | None:
    if not isinstance(raw, Mapping):
        errors.append(FieldError("data.customer", "customer identification is required"))
        return None

    doc_type = _first(raw, "document_type", "tipo_documento", "tipoDocumento")
    doc_number = _first(raw, "document_number", "numero_documento", "numeroDocumento")

    if not doc_type:
        errors.append(FieldError("data.customer.document_type", "customer document type is required"))
    if not doc_number:
        errors.append(FieldError("data.customer.document_number", "customer document number is required"))
    if not doc_type or not doc_number:
        return None

    doc_type = str(doc_type).strip().upper()
    doc_number = normalize_document_number(doc_number)
    rule = DOCUMENT_NUMBER_RULES.get(doc_type)
    if rule is None:
        errors.append(FieldError("data.customer.document_type", f"unsupported document type {doc_type}"))
        return None
    pattern, description = rule
    if not pattern.match(doc_number):
        errors.append(
            FieldError(
                "data.customer.document_number",
                f"{doc_type} document number must be {description}",
            )
        )
        return None

    address = raw.get("address") or raw.get("direccion")
    city = _first(raw, "city", "ciudad")
    if isinstance(address, Mapping):
        city = city or _first(address, "city", "ciudad")
        address = _first(address, "address", "direccion")

    name = _first(raw, "name", "razon_social", "razonSocial", "nombres")
    return Customer(
        document_type=doc_type,
        document_number=doc_number,
        name=str(name).strip() if name else f"Cliente {doc_number}",
        email=_first(raw, "email"),
        phone=_first(raw, "phone", "telefono"),
        address=address,
        city=city,
    )


def _parse_items(raw: Any, errors: list[FieldError]) -> tuple[OrderItem, ...]:
    if not isinstance(raw, list) or not raw:
        errors.append(FieldError("data.items", "at least one item is required"))
        return ()

    items: list[OrderItem] = []
    for i, item in enumerate(raw):
        where = f"data.items[{i}]"
        if not isinstance(item, Mapping):
            errors.append(FieldError(where, "item must be an object"))
            continue
        name = _first(item, "product_name", "descripcion", "name")
        quantity = item.get("quantity")
        unit_price = item.get("unit_price")
        discount = item.get("discount", 0) or 0

        ok = True
        if not name:
            errors.append(FieldError(f"{where}.product_name", "product name is required"))
            ok = False
        if not _is_int(quantity) or quantity <= 0:
            errors.append(FieldError(f"{where}.quantity", "quantity must be a positive integer"))
            ok = False
        if not _is_int(unit_price) or unit_price <= 0:
            errors.append(FieldError(f"{where}.unit_price", "unit_price must be a positive integer in minor units"))
            ok = False
        if not _is_int(discount) or discount < 0:
            errors.append(FieldError(f"{where}.discount", "discount must be a non-negative integer"))
            ok = False
        elif ok and discount > quantity * unit_price:
            errors.append(FieldError(f"{where}.discount", "discount cannot exceed the line amount"))
            ok = False

        if ok:
            items.append(
                OrderItem(
                    product_id=item.get("product_id"),
                    product_name=str(name),
                    quantity=quantity,
                    unit_price=unit_price,
                    discount=discount,
                )
            )
    return tuple(items)


def parse_order(data: Any) -> OrderPayload:
    """Parse and check the ``data`` block of a webhook.

    Raises:
        TransformationError: with every problem found
    """
    if not isinstance(data, Mapping):
        raise TransformationError(errors=[FieldError("data", "order data is required")])

    errors: list[FieldError] = []

    order_id = data.get("order_id")
    if not _is_int(order_id) or order_id <= 0:
        errors.append(FieldError("data.order_id", "order_id must be a positive integer"))

    store_id = data.get("store_id")
    if store_id is not None and not _is_int(store_id):
        errors.append(FieldError("data.store_id", "store_id must be an integer"))

    amount = data.get("amount")
    if not _is_int(amount) or amount <= 0:
        errors.append(FieldError("data.amount", "amount must be a positive integer in minor units"))

    paid_at = data.get("paid_at")
    if not paid_at or not isinstance(paid_at, str):
        errors.append(FieldError("data.paid_at", "paid_at is required"))

    discount = data.get("discount", 0) or 0
    if not _is_int(discount) or discount < 0:
        errors.append(FieldError("data.discount", "discount must be a non-negative integer"))

    number = data.get("number")
    if number is not None and (not _is_int(number) or number <= 0):
        errors.append(FieldError("data.number", "number must be a positive integer"))

    items = _parse_items(data.get("items"), errors)
    customer = _parse_customer(data.get("customer"), errors)

    if errors:
        raise TransformationError(errors=errors)

    return OrderPayload(
        order_id=order_id,
        store_id=store_id,
        amount=amount,
        items=items,
        paid_at=paid_at,
        customer=customer,
        currency=data.get("currency") or None,
        discount=discount,
        series=data.get("series") or None,
        number=number,
    )


def _issue_datetime(paid_at: str, now: datetime | None) -> datetime:
    try:
        return datetime.fromisoformat(paid_at.replace("Z", "+00:00"))
    except ValueError:
        return now or datetime.now(timezone.utc)


def allocate_cents(exact: list[Decimal]) -> list[Decimal]:
    """Round exact minor-unit amounts to whole cents, keeping their rounded sum.

    Largest remainder: every amount is floored, then the cents still owed to
    the half-up rounded total go to the amounts with the biggest fractions
    (earlier lines first on ties). Results are in major units.
    """
    floors = [x.to_integral_value(rounding=ROUND_FLOOR) for x in exact]
    target = sum(exact, Decimal(0)).to_integral_value(rounding=ROUND_HALF_UP)
    owed = int(target - sum(floors, Decimal(0)))
    by_remainder = sorted(range(len(exact)), key=lambda i: exact[i] - floors[i], reverse=True)
    for i in by_remainder[:owed]:
        floors[i] += 1
    return [to_major(cents) for cents in floors]


def _unit_and_exact(item: OrderItem, defaults: InvoiceDefaults) -> tuple[Decimal, Decimal, Decimal]:
    """Net unit price, exact subtotal and exact tax of one item, in minor units."""
    rate = defaults.tax_rate
    unit = Decimal(item.unit_price)
    if defaults.prices_include_tax:
        unit = unit / (1 + rate)
    subtotal = unit * item.quantity - Decimal(item.discount)
    return unit, subtotal, subtotal * rate


def _lines(items: tuple[OrderItem, ...], defaults: InvoiceDefaults) -> list[InvoiceLine]:
    exact = [_unit_and_exact(item, defaults) for item in items]
    subtotals = allocate_cents([subtotal for _, subtotal, _ in exact])
    taxes = allocate_cents([tax for _, _, tax in exact])

    lines = []
    for i, item in enumerate(items):
        code = str(item.product_id) if item.product_id not in (None, "") else f"ITEM-{i + 1}"
        lines.append(
            InvoiceLine(
                code=code,
                description=item.product_name,
                quantity=item.quantity,
                unit_price=to_major(exact[i][0]),
                discount=to_major(Decimal(item.discount)),
                subtotal=subtotals[i],
                tax=taxes[i],
                total=subtotals[i] + taxes[i],
            )
        )
    return lines


def transform_order(
    order: OrderPayload,
    defaults: InvoiceDefaults,
    now: datetime | None = None,
) -> FiscalInvoiceDocument:
    """Map a parsed order onto a FiscalInvoiceDocument."""
    lines = _lines(order.items, defaults)
    subtotal = sum((line.subtotal for line in lines), Decimal("0.00"))
    tax = sum((line.tax for line in lines), Decimal("0.00"))
    discounts = to_major(Decimal(order.discount))
    total = subtotal + tax - discounts
    if total <= 0:
        raise TransformationError(
            errors=[FieldError("data.discount", "discounts leave nothing to invoice")]
        )

    issued = _issue_datetime(order.paid_at, now)
    return FiscalInvoiceDocument(
        document_type=DOCUMENT_TYPE,
        series=order.series or defaults.series,
        number=order.number or order.order_id,
        issue_date=issued.date().isoformat(),
        issue_time=issued.strftime("%H:%M:%S"),
        customer=order.customer,
        currency=order.currency or defaults.currency,
        lines=tuple(lines),
        summary=InvoiceSummary(subtotal=subtotal, tax=tax, discounts=discounts, total=total),
        reference=ExternalReference(
            order_id=order.order_id,
            store_id=order.store_id,
            paid_at=order.paid_at,
        ),
        tax_rate=defaults.tax_rate,
    )


def build_invoice(
    data: Any,
    defaults: InvoiceDefaults,
    now: datetime | None = None,
) -> FiscalInvoiceDocument:
    """Parse the webhook ``data`` block and map it to an invoice document."""
    return transform_order(parse_order(data), defaults, now=now)

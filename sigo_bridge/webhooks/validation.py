"""Minimum-shape checks for an inbound "pedido.pagado" webhook body.

All rules run; every failure is reported, in rule order.
"""

from __future__ import annotations

import math
from typing import Any

from sigo_bridge.errors import FieldError
from sigo_bridge.models import ORDER_PAID_EVENT


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def validate_order_paid(body: Any) -> list[FieldError]:
    """Return the field errors for ``body``; an empty list means valid."""
    body = body if isinstance(body, dict) else {}
    data = body.get("data")
    data = data if isinstance(data, dict) else {}

    errors: list[FieldError] = []

    event_type = body.get("event_type")
    if not event_type:
        errors.append(FieldError("event_type", "event_type is required"))
    elif event_type != ORDER_PAID_EVENT:
        errors.append(FieldError("event_type", f"event_type must be {ORDER_PAID_EVENT}"))

    items = data.get("items")
    if not isinstance(items, list) or not items:
        errors.append(FieldError("data.items", "at least one item is required"))

    amount = data.get("amount")
    if not _is_number(amount) or amount <= 0:
        errors.append(FieldError("data.amount", "amount must be greater than 0"))

    return errors

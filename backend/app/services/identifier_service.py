# Overview: Order numbers and payment references; generation, validation and parsing.

"""
Identifier formats

- Order number:      {PREFIX}-{epoch_ms}-{order id zero-padded to 8}
                     e.g. VND-1731400000000-00001234
- Payment reference: {SITE_ID}-{epoch_ms}-{order id}
- Refund reference:  REFUND-{epoch_ms}-{order id}

The epoch component makes a fresh reference per payment attempt; the order
id component makes it unique per order.
"""

from __future__ import annotations

import re

from flask import current_app

from app.time_utils import epoch_millis


ORDER_ID_PAD = 8
DEFAULT_ORDER_PREFIX = "VND"


def _order_prefix(prefix: str | None) -> str:
    if prefix:
        return prefix
    return current_app.config.get("ORDER_NUMBER_PREFIX", DEFAULT_ORDER_PREFIX)


def generate_order_number(order_id: int, *, prefix: str | None = None, now_ms: int | None = None) -> str:
    if order_id is None or order_id <= 0:
        raise ValueError("order_id must be a positive integer")
    timestamp = now_ms if now_ms is not None else epoch_millis()
    return f"{_order_prefix(prefix)}-{timestamp}-{str(order_id).zfill(ORDER_ID_PAD)}"


def _order_number_pattern(prefix: str) -> re.Pattern:
    return re.compile(rf"^{re.escape(prefix)}-(\d+)-(\d{{{ORDER_ID_PAD},}})$")


def is_valid_order_number(order_number: str | None, *, prefix: str | None = None) -> bool:
    if not order_number:
        return False
    return _order_number_pattern(_order_prefix(prefix)).match(order_number) is not None


def extract_order_id(order_number: str | None, *, prefix: str | None = None) -> int | None:
    """Order id encoded in an order number, or None when the format is wrong."""
    if not order_number:
        return None
    match = _order_number_pattern(_order_prefix(prefix)).match(order_number)
    if match is None:
        return None
    return int(match.group(2))


def generate_payment_reference(order_id: int, *, site_id: str | None = None, now_ms: int | None = None) -> str:
    site = site_id or current_app.config.get("PAYMENT_SITE_ID", "VENDORA")
    timestamp = now_ms if now_ms is not None else epoch_millis()
    return f"{site}-{timestamp}-{order_id}"


def generate_refund_reference(order_id: int, *, now_ms: int | None = None) -> str:
    timestamp = now_ms if now_ms is not None else epoch_millis()
    return f"REFUND-{timestamp}-{order_id}"

"""Normalization of invoice input from heterogeneous sources."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from invoice_stamp.modules.invoices.schemas import InvoiceLine

TWO_PLACES = Decimal("0.01")

# Alternative input keys and the canonical InvoiceData field they map to.
DEFAULT_FIELD_MAP: dict[str, str] = {
    "sellerName": "seller_name",
    "seller_vat_no": "seller_vat",
    "vatNumber": "seller_vat",
    "total": "invoice_total",
    "total_amount": "invoice_total",
    "vatTotal": "vat_total",
    "tax_total": "vat_total",
    "invoiceDate": "issue_datetime",
    "issueDate": "issue_datetime",
    "issue_date": "issue_datetime",
    "invoiceType": "invoice_type",
    "items": "lines",
}


def adapt_invoice_fields(
    raw: Mapping[str, Any],
    mapping: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Rename alternative keys in ``raw`` to canonical invoice field names.

    ``mapping`` entries override the defaults. Keys without a mapping are
    copied unchanged.
    """
    field_map = {**DEFAULT_FIELD_MAP, **(mapping or {})}
    return {field_map.get(key, key): value for key, value in raw.items()}


def money(value: Decimal) -> Decimal:
    """Round to two decimal places, half away from zero."""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    net_total: Decimal
    vat_total: Decimal
    gross_total: Decimal


def calculate_totals(lines: Iterable[InvoiceLine]) -> InvoiceTotals:
    """Sum net and VAT amounts over ``lines``.

    Net and VAT are accumulated unrounded and rounded once at the end; the
    gross total is the rounded sum of both.
    """
    net = Decimal("0")
    vat = Decimal("0")
    for line in lines:
        line_net = line.price * line.quantity
        net += line_net
        vat += line_net * line.vat_percent / Decimal("100")
    net = money(net)
    vat = money(vat)
    return InvoiceTotals(net_total=net, vat_total=vat, gross_total=money(net + vat))

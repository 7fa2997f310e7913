"""Invoice data normalization and UBL document construction."""

from invoice_stamp.modules.invoices.adapter import (
    InvoiceTotals,
    adapt_invoice_fields,
    calculate_totals,
)
from invoice_stamp.modules.invoices.builder import build_invoice_document, summary_from_invoice
from invoice_stamp.modules.invoices.schemas import InvoiceData, InvoiceLine, InvoiceType

__all__ = [
    "InvoiceData",
    "InvoiceLine",
    "InvoiceTotals",
    "InvoiceType",
    "adapt_invoice_fields",
    "build_invoice_document",
    "calculate_totals",
    "summary_from_invoice",
]

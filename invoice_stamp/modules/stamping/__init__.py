"""Invoice stamping: digest, signature, QR payload and chain linkage."""

from invoice_stamp.modules.stamping.schemas import InvoiceSummary, StampResult
from invoice_stamp.modules.stamping.service import DocumentStamper, extract_summary

__all__ = [
    "DocumentStamper",
    "InvoiceSummary",
    "StampResult",
    "extract_summary",
]

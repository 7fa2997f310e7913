"""Delivery of stamped invoices to the tax authority."""

from invoice_stamp.modules.submission.client import (
    ComplianceApiError,
    SubmissionClient,
    SubmissionError,
    SubmissionResponse,
    build_submission_body,
    handle_response,
)

__all__ = [
    "ComplianceApiError",
    "SubmissionClient",
    "SubmissionError",
    "SubmissionResponse",
    "build_submission_body",
    "handle_response",
]

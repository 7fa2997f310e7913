"""Submission of stamped invoices to the tax authority's clearance/reporting API."""

from __future__ import annotations

import base64
from typing import Any, cast
from uuid import UUID

import httpx
from lxml import etree
from pydantic import BaseModel, Field

from invoice_stamp.core.config import Settings, get_settings
from invoice_stamp.core.logging import get_logger
from invoice_stamp.modules.stamping.schemas import StampResult

logger = get_logger(__name__)

CLEARANCE_PATH = "/invoices/clearance"
REPORTING_PATH = "/invoices/reporting"


class SubmissionError(Exception):
    """Raised when a submission cannot be delivered or its response read."""


class ComplianceApiError(SubmissionError):
    """Raised when the authority rejects a submitted invoice."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        category: str | None = None,
        status_code: int | None = None,
        errors: list[Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.category = category
        self.status_code = status_code
        self.errors = errors or []


class SubmissionResponse(BaseModel):
    """Successful response from the authority."""

    status_code: int
    payload: dict[str, Any] = Field(default_factory=dict)


def build_submission_body(
    document: etree._Element | etree._ElementTree,
    result: StampResult,
    invoice_uuid: UUID | str,
) -> dict[str, Any]:
    """Build the JSON body for a clearance or reporting request."""
    root = document.getroot() if isinstance(document, etree._ElementTree) else document
    xml_bytes = etree.tostring(root, xml_declaration=True, encoding="UTF-8")
    return {
        "invoiceHash": result.digest,
        "uuid": str(invoice_uuid),
        "previousInvoiceHash": result.previous_digest,
        "invoice": base64.b64encode(xml_bytes).decode("ascii"),
    }


def _error_entries(payload: dict[str, Any]) -> list[Any]:
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        return errors
    validation = payload.get("validationResults")
    if isinstance(validation, dict):
        messages = validation.get("errorMessages")
        if isinstance(messages, list) and messages:
            return messages
    return []


def handle_response(status_code: int, payload: dict[str, Any]) -> SubmissionResponse:
    """Interpret an authority response.

    Raises
    ------
    ComplianceApiError
        If the response carries errors or has a non-2xx status. The first
        error entry supplies message, code and category.
    """
    errors = _error_entries(payload)
    if not errors and 200 <= status_code < 300:
        return SubmissionResponse(status_code=status_code, payload=payload)

    first = errors[0] if errors else None
    if isinstance(first, dict):
        message = str(first.get("message") or "Unknown error")
        code = first.get("code")
        category = first.get("category")
    else:
        message = str(first) if first is not None else f"HTTP {status_code}"
        code = None
        category = None
    raise ComplianceApiError(
        message,
        code=str(code) if code is not None else None,
        category=str(category) if category is not None else None,
        status_code=status_code,
        errors=errors,
    )


class SubmissionClient:
    """Client for the clearance (standard) and reporting (simplified) endpoints.

    Each call is a single attempt; callers decide whether and when to retry.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.submission_base_url,
                timeout=self._settings.submission_timeout_seconds,
                auth=(self._settings.client_id, self._settings.client_secret),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def submit_clearance(
        self,
        document: etree._Element | etree._ElementTree,
        result: StampResult,
        invoice_uuid: UUID | str,
    ) -> SubmissionResponse:
        """Submit a standard (B2B) invoice for clearance."""
        body = build_submission_body(document, result, invoice_uuid)
        return await self._submit(CLEARANCE_PATH, body)

    async def submit_reporting(
        self,
        document: etree._Element | etree._ElementTree,
        result: StampResult,
        invoice_uuid: UUID | str,
    ) -> SubmissionResponse:
        """Submit a simplified (B2C) invoice for reporting."""
        body = build_submission_body(document, result, invoice_uuid)
        return await self._submit(REPORTING_PATH, body)

    async def _submit(self, path: str, body: dict[str, Any]) -> SubmissionResponse:
        client = await self._get_client()
        try:
            response = await client.post(path, json=body)
        except httpx.HTTPError as exc:
            logger.warning("submission_transport_failed", path=path, error=str(exc))
            raise SubmissionError(f"Submission to {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {"errors": [response.text]} if response.text else {}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        try:
            return handle_response(response.status_code, cast(dict[str, Any], payload))
        except ComplianceApiError as exc:
            logger.warning(
                "submission_rejected",
                path=path,
                status_code=exc.status_code,
                code=exc.code,
                category=exc.category,
            )
            raise

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

"""
Pydantic schemas for invoice data prior to document construction.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class InvoiceType(str, Enum):
    """Invoice flavours accepted by the tax authority."""

    STANDARD = "standard"
    SIMPLIFIED = "simplified"


INVOICE_TYPE_CODE = "388"

# InvoiceTypeCode/@name transaction flags per invoice flavour.
INVOICE_TYPE_FLAGS: dict[InvoiceType, str] = {
    InvoiceType.STANDARD: "0100000",
    InvoiceType.SIMPLIFIED: "0200000",
}


def _now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


class InvoiceLine(BaseModel):
    """One invoiced item."""

    name: str
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    price: Decimal = Field(ge=0, description="Net unit price, exclusive of VAT")
    vat_percent: Decimal = Field(default=Decimal("15"), ge=0, le=100)


class InvoiceData(BaseModel):
    """Business fields of a single invoice."""

    uuid: UUID = Field(default_factory=uuid4)
    invoice_number: str | None = Field(
        default=None,
        description="Seller-assigned invoice number; the UUID is used when absent",
    )
    issue_datetime: datetime = Field(default_factory=_now)
    seller_name: str
    seller_vat: str
    seller_crn: str | None = Field(default=None, description="Commercial registration number")
    currency: str = Field(default="SAR", min_length=3, max_length=3)
    invoice_type: InvoiceType = InvoiceType.SIMPLIFIED
    invoice_total: Decimal | None = Field(
        default=None,
        description="Total including VAT; computed from lines when absent",
    )
    vat_total: Decimal | None = Field(default=None)
    lines: list[InvoiceLine] = Field(default_factory=list)

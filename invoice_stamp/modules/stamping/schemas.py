"""Schemas for invoice stamping results and QR summaries."""

from pydantic import BaseModel, ConfigDict, Field

from invoice_stamp.core.crypto.signing import digest_to_base64


class InvoiceSummary(BaseModel):
    """Transaction summary carried by the QR payload (tags 1 to 5)."""

    model_config = ConfigDict(frozen=True)

    seller_name: str
    seller_vat_number: str
    timestamp: str = Field(description="Issue date and time, ISO 8601")
    invoice_total: str = Field(description="Total including VAT, as printed on the invoice")
    vat_total: str


class StampResult(BaseModel):
    """Outcome of stamping one invoice."""

    model_config = ConfigDict(frozen=True)

    digest: str = Field(description="Lowercase hex SHA-256 of the canonical invoice")
    signature: str = Field(description="Base64 ECDSA signature over the digest")
    encoded_payload: str = Field(description="Base64 TLV QR payload")
    public_key: str | None = Field(
        default=None,
        description="Base64 SubjectPublicKeyInfo without PEM envelope",
    )
    sequence_counter: int = Field(ge=1)
    previous_digest: str = Field(description="Hex digest of the entity's previous invoice")

    @property
    def previous_digest_base64(self) -> str:
        """Previous digest as embedded in the PIH reference."""
        return digest_to_base64(self.previous_digest)

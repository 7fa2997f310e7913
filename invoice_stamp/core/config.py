"""
Stamping configuration using Pydantic Settings.
All configuration is loaded from environment variables with sensible defaults.
"""

import hashlib
import json
from functools import lru_cache
from typing import Literal, Self

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

QR_REFERENCE_ID = "QR"
ICV_REFERENCE_ID = "ICV"
PIH_REFERENCE_ID = "PIH"


def _parse_list(raw: str | None) -> list[str]:
    """Parse a comma-separated or JSON array string into a list of strings."""
    if raw is None:
        return []
    raw = raw.strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Stamping settings loaded from environment variables.

    Chain placeholder, reserved reference markers and the submission
    endpoints default to the values the tax authority expects on the wire.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Core Settings
    # ==========================================================================
    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    project_name: str = "Invoice Stamp"

    # ==========================================================================
    # Chain Configuration
    # ==========================================================================
    chain_placeholder_seed: str = Field(
        default="0",
        description="Bytes hashed to form the previous-digest of an entity's first document",
    )
    stamp_reference_ids: str = Field(
        default="QR,ICV,PIH",
        description=(
            "AdditionalDocumentReference IDs excluded from the document digest. "
            "Supports comma-separated values or a JSON array string."
        ),
    )
    ledger_max_commit_attempts: int = Field(
        default=5,
        ge=1,
        description="Commit attempts per stamp before contention is reported",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def chain_placeholder_digest(self) -> str:
        """Hex digest standing in for the predecessor of the first document."""
        return hashlib.sha256(self.chain_placeholder_seed.encode("utf-8")).hexdigest()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def stamp_reference_id_set(self) -> frozenset[str]:
        """Reserved reference markers, always including the QR marker."""
        return frozenset(_parse_list(self.stamp_reference_ids)) | {QR_REFERENCE_ID}

    # ==========================================================================
    # Key Material
    # ==========================================================================
    allowed_signing_curves: str = Field(
        default="secp256k1,secp256r1",
        description="Elliptic curves accepted for signing keys (comma-separated or JSON)",
    )
    private_key_path: str | None = Field(default=None)
    certificate_path: str | None = Field(
        default=None,
        description="Optional certificate or public key; the private key is used otherwise",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def allowed_signing_curve_set(self) -> frozenset[str]:
        return frozenset(curve.lower() for curve in _parse_list(self.allowed_signing_curves))

    # ==========================================================================
    # Submission Configuration
    # ==========================================================================
    submission_environment: Literal["sandbox", "production"] = "sandbox"
    submission_sandbox_url: str = Field(
        default="https://sandbox.zatca.gov.sa/e-invoicing/core",
    )
    submission_production_url: str = Field(
        default="https://gw-apic-gov.gazt.gov.sa/e-invoicing/core",
    )
    client_id: str = Field(default="", description="CSID issued during onboarding")
    client_secret: str = Field(default="")
    submission_timeout_seconds: float = Field(default=30.0, gt=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def submission_base_url(self) -> str:
        """Base URL for the selected submission environment."""
        if self.submission_environment == "production":
            return self.submission_production_url.rstrip("/")
        return self.submission_sandbox_url.rstrip("/")

    @model_validator(mode="after")
    def _validate_settings(self) -> Self:
        """Reject configurations that cannot produce verifiable stamps."""
        if not self.allowed_signing_curve_set:
            raise ValueError("allowed_signing_curves must name at least one curve")
        if self.environment == "production" and self.submission_environment == "production":
            if not self.client_id or not self.client_secret:
                raise ValueError(
                    "client_id and client_secret must be set for production submission"
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached stamping settings.

    Using lru_cache ensures settings are loaded once and reused,
    avoiding repeated environment variable parsing.
    """
    return Settings()

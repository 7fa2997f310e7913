"""
Error taxonomy for the stamping pipeline.

Every failure carries a ``kind`` so callers can tell bad input (fix the
document) from bad keys (fix configuration) from transient contention
(retry the whole stamp later).
"""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal["input", "key", "signing", "payload", "contention"]


class StampError(Exception):
    """Base class for stamping failures."""

    kind: ErrorKind = "input"

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.field = field

    def to_dict(self) -> dict[str, str | None]:
        return {
            "kind": self.kind,
            "step": self.step,
            "field": self.field,
            "message": str(self),
        }


class MalformedDocumentError(StampError):
    """Raised when a document cannot be parsed, summarized or canonicalized."""

    kind: ErrorKind = "input"


class KeyMaterialError(StampError):
    """Raised when key or certificate material is missing, unreadable or unsupported."""

    kind: ErrorKind = "key"


class SigningError(StampError):
    """Raised when the signing primitive rejects its input."""

    kind: ErrorKind = "signing"


class PayloadDecodeError(StampError):
    """Raised when an encoded TLV payload cannot be decoded."""

    kind: ErrorKind = "payload"


class TruncatedPayloadError(PayloadDecodeError):
    """Raised when a TLV buffer ends inside a field."""


class LedgerConflictError(StampError):
    """Raised when a chain position was taken by a concurrent commit."""

    kind: ErrorKind = "contention"


class LedgerContentionError(StampError):
    """Raised when a stamp could not commit within its retry budget."""

    kind: ErrorKind = "contention"

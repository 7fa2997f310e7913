"""
Tag-Length-Value encoding for the scannable invoice summary.

Each field is one tag byte, one length byte and the value bytes. The length
field is a single byte, so values longer than 255 bytes are truncated to
their first 255 bytes and the length byte reads 255. The concatenated fields
are base64 encoded for embedding in the invoice and the QR code.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum

from invoice_stamp.core.errors import PayloadDecodeError, TruncatedPayloadError

MAX_TLV_VALUE_LENGTH = 255


class QrTag(IntEnum):
    """Tag convention of the simplified-invoice QR payload."""

    SELLER_NAME = 1
    SELLER_VAT_NUMBER = 2
    TIMESTAMP = 3
    INVOICE_TOTAL = 4
    VAT_TOTAL = 5
    INVOICE_HASH = 6
    SIGNATURE = 7
    PUBLIC_KEY = 8


TlvValue = str | bytes | int | Decimal | float


@dataclass(frozen=True, slots=True)
class TlvField:
    """A single tagged value."""

    tag: int
    value: bytes

    @property
    def text(self) -> str:
        """Value decoded as UTF-8, replacing bytes split by truncation."""
        return self.value.decode("utf-8", errors="replace")


def _to_bytes(value: TlvValue) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return str(value).encode("utf-8")


def build_tlv_bytes(fields: Iterable[TlvField | tuple[int, TlvValue]]) -> bytes:
    """Concatenate ``tag || length || value`` for each field in order."""
    buffer = bytearray()
    for item in fields:
        if isinstance(item, TlvField):
            tag, raw = item.tag, item.value
        else:
            tag, raw = item
        tag = int(tag)
        if not 1 <= tag <= 255:
            raise ValueError(f"TLV tag must be in 1..255, got {tag}")
        value = _to_bytes(raw)[:MAX_TLV_VALUE_LENGTH]
        buffer.append(tag)
        buffer.append(len(value))
        buffer.extend(value)
    return bytes(buffer)


def encode_tlv(fields: Iterable[TlvField | tuple[int, TlvValue]]) -> str:
    """Encode ordered fields as a base64 TLV payload.

    Parameters
    ----------
    fields:
        ``TlvField`` instances or ``(tag, value)`` pairs. Text values are
        UTF-8 encoded; numbers and decimals use their ``str()`` form.

    Returns
    -------
    str
        Base64 text of the concatenated fields.
    """
    return base64.b64encode(build_tlv_bytes(fields)).decode("ascii")


def decode_tlv(payload: str | bytes) -> list[TlvField]:
    """Decode a base64 TLV payload back into its ordered fields.

    Raises
    ------
    PayloadDecodeError
        If ``payload`` is not valid base64.
    TruncatedPayloadError
        If the buffer ends inside a tag/length pair or a value.
    """
    try:
        buffer = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PayloadDecodeError("TLV payload is not valid base64", step="decode") from exc

    fields: list[TlvField] = []
    offset = 0
    while offset < len(buffer):
        remaining = len(buffer) - offset
        if remaining < 2:
            raise TruncatedPayloadError(
                f"Dangling byte at offset {offset}", step="decode"
            )
        tag = buffer[offset]
        length = buffer[offset + 1]
        start = offset + 2
        if length > len(buffer) - start:
            raise TruncatedPayloadError(
                f"Field with tag {tag} declares {length} bytes but only "
                f"{len(buffer) - start} remain",
                step="decode",
                field=str(tag),
            )
        fields.append(TlvField(tag=tag, value=bytes(buffer[start : start + length])))
        offset = start + length
    return fields


def decode_tlv_mapping(payload: str | bytes) -> dict[int, bytes]:
    """Decode a payload into a ``tag -> value`` mapping (last tag wins)."""
    return {item.tag: item.value for item in decode_tlv(payload)}

"""
Stamp and chain verification utilities.

Provides functions to verify stamped invoices (digest, QR payload and
signature) and sequences of stamp results (counter continuity and previous
digest linkage). These are pure functions, decoupled from any ledger.
"""

from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from lxml import etree

from invoice_stamp.core.config import (
    ICV_REFERENCE_ID,
    PIH_REFERENCE_ID,
    QR_REFERENCE_ID,
    get_settings,
)
from invoice_stamp.core.crypto.canonicalization import (
    REFERENCE_LOCAL_NAME,
    SIGNATURE_LOCAL_NAME,
    Document,
    find_stamp_reference,
    local_name,
    parse_document,
    reference_id,
    sha256_hex_document,
)
from invoice_stamp.core.crypto.signing import digest_to_base64, verify_digest_signature
from invoice_stamp.core.crypto.tlv import QrTag, decode_tlv_mapping
from invoice_stamp.core.errors import KeyMaterialError, PayloadDecodeError


class ChainLink(Protocol):
    sequence_counter: int
    digest: str
    previous_digest: str


@dataclass
class StampVerificationResult:
    """Result of verifying one stamped invoice.

    Attributes
    ----------
    is_valid:
        ``True`` if digest, payload and signature all check out.
    digest:
        Digest recomputed from the document content.
    sequence_counter:
        Counter read from the ``ICV`` reference, if present.
    errors:
        Human-readable descriptions of integrity violations.
    """

    is_valid: bool = True
    digest: str | None = None
    sequence_counter: int | None = None
    errors: list[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.is_valid = False
        self.errors.append(message)


@dataclass
class ChainVerificationResult:
    """Result of verifying a sequence of stamps for one entity."""

    is_valid: bool = True
    verified_count: int = 0
    first_break_at: int | None = None
    errors: list[str] = field(default_factory=list)


def _reference_value(root: etree._Element, marker: str) -> str | None:
    reference = find_stamp_reference(root, marker)
    if reference is None:
        return None
    for element in reference.iter(etree.Element):
        if local_name(element) in ("EmbeddedDocumentBinaryObject", "UUID"):
            return (element.text or "").strip()
    return None


def _public_key_pem(spki_b64: bytes) -> str:
    body = "\n".join(textwrap.wrap(spki_b64.decode("ascii"), 64))
    return f"-----BEGIN PUBLIC KEY-----\n{body}\n-----END PUBLIC KEY-----\n"


def _count_stamp_elements(root: etree._Element) -> dict[str, int]:
    counts = {SIGNATURE_LOCAL_NAME: 0, ICV_REFERENCE_ID: 0, PIH_REFERENCE_ID: 0, QR_REFERENCE_ID: 0}
    for element in root.iter(etree.Element):
        if element is root:
            continue
        name = local_name(element)
        if name == SIGNATURE_LOCAL_NAME:
            counts[SIGNATURE_LOCAL_NAME] += 1
        elif name == REFERENCE_LOCAL_NAME:
            marker = reference_id(element)
            if marker in counts:
                counts[marker] += 1
    return counts


def verify_stamped_document(
    document: Document,
    public_key_pem: str | bytes | None = None,
    *,
    expected_previous_digest: str | None = None,
) -> StampVerificationResult:
    """Verify the stamp embedded in an invoice.

    Parameters
    ----------
    document:
        The stamped invoice.
    public_key_pem:
        Key or certificate to verify against. When omitted, the public key
        carried in QR tag 8 is used.
    expected_previous_digest:
        If given, the ``PIH`` reference must carry this hex digest.

    Returns
    -------
    StampVerificationResult
        Detailed verification outcome.
    """
    result = StampVerificationResult()
    root = parse_document(document)
    result.digest = sha256_hex_document(root, reference_ids=get_settings().stamp_reference_id_set)

    for name, count in _count_stamp_elements(root).items():
        if count != 1:
            result.fail(f"Expected exactly one {name} stamp element, found {count}")

    counter_text = _reference_value(root, ICV_REFERENCE_ID)
    if counter_text is not None and counter_text.isdigit():
        result.sequence_counter = int(counter_text)
    elif counter_text is not None:
        result.fail(f"ICV reference is not a counter: {counter_text!r}")

    if expected_previous_digest is not None:
        pih = _reference_value(root, PIH_REFERENCE_ID)
        if pih != digest_to_base64(expected_previous_digest):
            result.fail("PIH reference does not match the expected previous digest")

    payload = _reference_value(root, QR_REFERENCE_ID)
    if not payload:
        result.fail("QR reference carries no payload")
        return result
    try:
        fields = decode_tlv_mapping(payload)
    except PayloadDecodeError as exc:
        result.fail(f"QR payload could not be decoded: {exc}")
        return result

    claimed_digest = fields.get(QrTag.INVOICE_HASH, b"").decode("ascii", errors="replace")
    if claimed_digest != result.digest:
        result.fail(
            f"QR digest mismatch (claimed={claimed_digest!r}, recomputed={result.digest!r})"
        )

    key_material: str | bytes | None = public_key_pem
    if key_material is None and QrTag.PUBLIC_KEY in fields:
        key_material = _public_key_pem(fields[QrTag.PUBLIC_KEY])
    if key_material is None:
        result.fail("No public key available to verify the signature")
        return result

    signature = fields.get(QrTag.SIGNATURE, b"").decode("ascii", errors="replace")
    try:
        signature_ok = verify_digest_signature(result.digest, signature, key_material)
    except KeyMaterialError as exc:
        result.fail(f"Public key unusable: {exc}")
        return result
    if not signature_ok:
        result.fail("Signature does not verify against the document digest")
    return result


def verify_stamp_chain(
    links: Sequence[ChainLink],
    *,
    placeholder_digest: str | None = None,
) -> ChainVerificationResult:
    """Verify counter continuity and digest linkage of an entity's stamps.

    ``links`` must be ordered by ``sequence_counter`` (ascending) and start
    with the entity's first invoice.
    """
    placeholder = placeholder_digest or get_settings().chain_placeholder_digest
    result = ChainVerificationResult()

    for index, link in enumerate(links):
        expected_counter = index + 1
        expected_prev = placeholder if index == 0 else links[index - 1].digest

        if link.sequence_counter != expected_counter:
            message = (
                f"Stamp at index {index}: counter {link.sequence_counter}, "
                f"expected {expected_counter}"
            )
        elif link.previous_digest != expected_prev:
            message = (
                f"Stamp at index {index}: previous_digest mismatch "
                f"(stored={link.previous_digest!r}, expected={expected_prev!r})"
            )
        else:
            result.verified_count += 1
            continue

        result.is_valid = False
        result.first_break_at = index
        result.errors.append(message)
        break

    return result

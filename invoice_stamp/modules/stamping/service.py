"""
Invoice stamping service.

Orchestrates canonicalization, digesting, signing, chain reservation and QR
payload encoding, then writes the stamp back into the invoice:

- a ``cac:Signature`` element carrying the base64 signature,
- an ``AdditionalDocumentReference`` ``ICV`` with the invoice counter value,
- an ``AdditionalDocumentReference`` ``PIH`` with the previous invoice hash
  (base64 of the raw digest bytes),
- an ``AdditionalDocumentReference`` ``QR`` with the TLV payload.

The document is hashed before any of these exist and they are excluded from
every later canonicalization, so re-stamping yields the same digest. The
document is only touched after the ledger commit succeeded: a failure at any
step leaves both the invoice and the chain unchanged.
"""

from __future__ import annotations

from lxml import etree

from invoice_stamp.core.config import (
    ICV_REFERENCE_ID,
    PIH_REFERENCE_ID,
    QR_REFERENCE_ID,
    Settings,
    get_settings,
)
from invoice_stamp.core.crypto.canonicalization import (
    Document,
    canonicalize,
    iter_stamp_elements,
    parse_document,
    remove_element,
)
from invoice_stamp.core.crypto.hash_chain import ChainLedger, Reservation
from invoice_stamp.core.crypto.signing import (
    KeyMaterial,
    compute_digest,
    digest_to_base64,
    extract_public_key,
    sign_digest,
    strip_pem_envelope,
)
from invoice_stamp.core.crypto.tlv import QrTag, TlvValue, encode_tlv
from invoice_stamp.core.errors import (
    LedgerConflictError,
    LedgerContentionError,
    MalformedDocumentError,
)
from invoice_stamp.core.logging import bind_entity_context, get_logger
from invoice_stamp.core.ubl import (
    CAC_NS,
    CBC_NS,
    DS_NS,
    SIGNATURE_ID,
    SIGNATURE_METHOD,
    cac,
    cbc,
    ds,
)
from invoice_stamp.modules.stamping.schemas import InvoiceSummary, StampResult

logger = get_logger(__name__)

_STAMP_NSMAP = {"cac": CAC_NS, "cbc": CBC_NS}

_SELLER_PARTY = "*[local-name()='AccountingSupplierParty']/*[local-name()='Party']"
_SUMMARY_PATHS: dict[str, tuple[str, ...]] = {
    "seller_name": (
        f"{_SELLER_PARTY}/*[local-name()='PartyLegalEntity']/*[local-name()='RegistrationName']",
        f"{_SELLER_PARTY}/*[local-name()='PartyName']/*[local-name()='Name']",
    ),
    "seller_vat_number": (
        f"{_SELLER_PARTY}/*[local-name()='PartyTaxScheme']/*[local-name()='CompanyID']",
    ),
    "issue_date": ("*[local-name()='IssueDate']",),
    "issue_time": ("*[local-name()='IssueTime']",),
    "invoice_total": (
        "*[local-name()='LegalMonetaryTotal']/*[local-name()='TaxInclusiveAmount']",
    ),
    "vat_total": (
        "*[local-name()='TaxTotal']/*[local-name()='TaxAmount']",
        "*[local-name()='LegalMonetaryTotal']/*[local-name()='TaxAmount']",
    ),
}


def _first_text(root: etree._Element, field: str) -> str | None:
    for path in _SUMMARY_PATHS[field]:
        for node in root.xpath(path):
            text = (node.text or "").strip()
            if text:
                return text
    return None


def extract_summary(document: etree._Element | etree._ElementTree) -> InvoiceSummary:
    """Read the QR summary fields from a UBL invoice.

    Raises
    ------
    MalformedDocumentError
        If a required field is absent, naming the field.
    """
    root = document.getroot() if isinstance(document, etree._ElementTree) else document
    values: dict[str, str] = {}
    for field in ("seller_name", "seller_vat_number", "issue_date", "invoice_total", "vat_total"):
        text = _first_text(root, field)
        if text is None:
            raise MalformedDocumentError(
                f"Invoice is missing {field}", step="summarize", field=field
            )
        values[field] = text
    issue_time = _first_text(root, "issue_time")
    issue_date = values.pop("issue_date")
    timestamp = f"{issue_date}T{issue_time}" if issue_time else issue_date
    return InvoiceSummary(timestamp=timestamp, **values)


def build_qr_fields(
    summary: InvoiceSummary,
    digest: str,
    signature: str,
    public_key: str | None,
) -> list[tuple[int, TlvValue]]:
    """Arrange the QR payload fields in tag order."""
    fields: list[tuple[int, TlvValue]] = [
        (QrTag.SELLER_NAME, summary.seller_name),
        (QrTag.SELLER_VAT_NUMBER, summary.seller_vat_number),
        (QrTag.TIMESTAMP, summary.timestamp),
        (QrTag.INVOICE_TOTAL, summary.invoice_total),
        (QrTag.VAT_TOTAL, summary.vat_total),
        (QrTag.INVOICE_HASH, digest),
        (QrTag.SIGNATURE, signature),
    ]
    if public_key:
        fields.append((QrTag.PUBLIC_KEY, public_key))
    return fields


def _document_reference(marker: str) -> etree._Element:
    reference = etree.Element(cac("AdditionalDocumentReference"), nsmap=_STAMP_NSMAP)
    etree.SubElement(reference, cbc("ID")).text = marker
    return reference


def _embedded_attachment(parent: etree._Element, value: str, *, mime_code: str) -> None:
    attachment = etree.SubElement(parent, cac("Attachment"))
    embedded = etree.SubElement(attachment, cbc("EmbeddedDocumentBinaryObject"))
    embedded.set("mimeCode", mime_code)
    embedded.set("encodingCode", "Base64")
    embedded.text = value


def build_stamp_elements(
    signature: str,
    reservation: Reservation,
    encoded_payload: str,
) -> list[etree._Element]:
    """Create the detached stamp elements in append order."""
    signature_el = etree.Element(
        cac("Signature"), nsmap={**_STAMP_NSMAP, "ds": DS_NS}
    )
    etree.SubElement(signature_el, cbc("ID")).text = SIGNATURE_ID
    etree.SubElement(signature_el, cbc("SignatureMethod")).text = SIGNATURE_METHOD
    etree.SubElement(signature_el, ds("SignatureValue")).text = signature

    icv = _document_reference(ICV_REFERENCE_ID)
    etree.SubElement(icv, cbc("UUID")).text = str(reservation.counter)

    pih = _document_reference(PIH_REFERENCE_ID)
    _embedded_attachment(
        pih, digest_to_base64(reservation.previous_digest), mime_code="text/plain"
    )

    qr = _document_reference(QR_REFERENCE_ID)
    _embedded_attachment(qr, encoded_payload, mime_code="text/plain")

    return [signature_el, icv, pih, qr]


def _remove_previous_stamp(root: etree._Element, markers: frozenset[str]) -> None:
    """Drop earlier stamp elements at any depth, including ``UBLExtensions``.

    The stamper's own references are always removed, even when the digest
    is configured to cover them.
    """
    owned = markers | {ICV_REFERENCE_ID, PIH_REFERENCE_ID, QR_REFERENCE_ID}
    for element in iter_stamp_elements(root, owned):
        remove_element(element)


class DocumentStamper:
    """Stamps invoices and links them into their issuer's hash chain.

    Stampers are stateless apart from the injected ledger, so one instance
    may serve any number of threads and entities.
    """

    def __init__(
        self,
        ledger: ChainLedger,
        *,
        settings: Settings | None = None,
        include_public_key: bool = True,
    ) -> None:
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._include_public_key = include_public_key

    @property
    def ledger(self) -> ChainLedger:
        return self._ledger

    def _public_key(self, key_material: KeyMaterial) -> str | None:
        if not self._include_public_key:
            return None
        pem = extract_public_key(key_material.public_key_source)
        return strip_pem_envelope(pem) or None

    def stamp(
        self,
        document: Document,
        entity_id: str,
        key_material: KeyMaterial,
        *,
        summary: InvoiceSummary | None = None,
    ) -> tuple[etree._Element | etree._ElementTree, StampResult]:
        """Stamp ``document`` for ``entity_id`` and return it with the result.

        Element and element-tree inputs are mutated in place and returned
        as-is; serialized inputs are parsed into a new tree.

        Raises
        ------
        MalformedDocumentError
            The document cannot be parsed, summarized or canonicalized.
        KeyMaterialError
            The key material is unreadable or unsupported.
        SigningError
            The signing primitive rejected the digest.
        LedgerContentionError
            No chain position could be committed within the retry budget.
        """
        with bind_entity_context(entity_id):
            return self._stamp(document, entity_id, key_material, summary)

    def _stamp(
        self,
        document: Document,
        entity_id: str,
        key_material: KeyMaterial,
        summary: InvoiceSummary | None,
    ) -> tuple[etree._Element | etree._ElementTree, StampResult]:
        if isinstance(document, etree._ElementTree):
            target: etree._Element | etree._ElementTree = document
            root = document.getroot()
        elif isinstance(document, etree._Element):
            target = root = document
        else:
            root = parse_document(document)
            target = etree.ElementTree(root)

        markers = self._settings.stamp_reference_id_set
        digest = compute_digest(canonicalize(root, reference_ids=markers))
        signature = sign_digest(digest, key_material.private_key_pem, settings=self._settings)
        public_key = self._public_key(key_material)
        if summary is None:
            summary = extract_summary(root)

        attempts = self._settings.ledger_max_commit_attempts
        for attempt in range(1, attempts + 1):
            with self._ledger.reserve(entity_id) as reservation:
                encoded_payload = encode_tlv(
                    build_qr_fields(summary, digest, signature, public_key)
                )
                elements = build_stamp_elements(signature, reservation, encoded_payload)
                try:
                    self._ledger.commit(reservation, digest)
                except LedgerConflictError:
                    logger.warning(
                        "ledger_commit_conflict",
                        counter=reservation.counter,
                        attempt=attempt,
                    )
                    continue

            _remove_previous_stamp(root, markers)
            for element in elements:
                root.append(element)

            result = StampResult(
                digest=digest,
                signature=signature,
                encoded_payload=encoded_payload,
                public_key=public_key,
                sequence_counter=reservation.counter,
                previous_digest=reservation.previous_digest,
            )
            logger.info(
                "document_stamped",
                counter=reservation.counter,
                digest=digest,
            )
            return target, result

        raise LedgerContentionError(
            f"Could not commit a chain position for {entity_id} after {attempts} attempts",
            step="commit",
            field="counter",
        )

"""Tests for the document stamper."""

from __future__ import annotations

import base64
from concurrent.futures import ThreadPoolExecutor

import pytest
import structlog
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)
from lxml import etree

from invoice_stamp.core.config import Settings
from invoice_stamp.core.crypto.canonicalization import local_name, reference_id
from invoice_stamp.core.crypto.hash_chain import (
    PLACEHOLDER_DIGEST,
    InMemoryChainLedger,
    OptimisticChainLedger,
    Reservation,
    SequenceRecord,
)
from invoice_stamp.core.crypto.signing import (
    KeyMaterial,
    digest_to_base64,
    extract_public_key,
    strip_pem_envelope,
    verify_digest_signature,
)
from invoice_stamp.core.crypto.tlv import QrTag, decode_tlv, decode_tlv_mapping
from invoice_stamp.core.crypto.verification import verify_stamp_chain, verify_stamped_document
from invoice_stamp.core.errors import (
    KeyMaterialError,
    LedgerConflictError,
    LedgerContentionError,
    MalformedDocumentError,
)
from invoice_stamp.core.ubl import DS_NS
from invoice_stamp.modules.invoices.builder import build_invoice_document
from invoice_stamp.modules.invoices.schemas import InvoiceData
from invoice_stamp.modules.stamping.schemas import InvoiceSummary
from invoice_stamp.modules.stamping.service import DocumentStamper, extract_summary

SELLER_VAT = "300000000000003"
ENTITY = f"VAT-{SELLER_VAT}"
EXT_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2"


def _stamp_children(root: etree._Element) -> list[str]:
    names = []
    for child in root.iterchildren(etree.Element):
        name = local_name(child)
        if name == "Signature":
            names.append(name)
        elif name == "AdditionalDocumentReference":
            names.append(reference_id(child) or "")
    return names


def _embedded(root: etree._Element, marker: str) -> str:
    (value,) = root.xpath(
        f"*[local-name()='AdditionalDocumentReference'][*[local-name()='ID']='{marker}']"
        "//*[local-name()='EmbeddedDocumentBinaryObject']"
    )
    return value.text


class _AlwaysStaleLedger(OptimisticChainLedger):
    """Ledger whose commits always lose the race."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    def commit(self, reservation: Reservation, digest: str) -> SequenceRecord:
        self.attempts += 1
        raise LedgerConflictError("superseded", step="commit", field="counter")


class _ContextRecordingLedger(InMemoryChainLedger):
    """Ledger remembering the logging context active at commit time."""

    context_at_commit: dict[str, object] | None = None

    def commit(self, reservation: Reservation, digest: str) -> SequenceRecord:
        self.context_at_commit = structlog.contextvars.get_contextvars()
        return super().commit(reservation, digest)


def _signed_extensions() -> etree._Element:
    """``ext:UBLExtensions`` holding a signature from an earlier signer."""
    extensions = etree.Element(f"{{{EXT_NS}}}UBLExtensions", nsmap={"ext": EXT_NS, "ds": DS_NS})
    extension = etree.SubElement(extensions, f"{{{EXT_NS}}}UBLExtension")
    content = etree.SubElement(extension, f"{{{EXT_NS}}}ExtensionContent")
    etree.SubElement(content, f"{{{DS_NS}}}Signature").text = "prior"
    return extensions


class TestStamp:
    """Single-document stamping."""

    def test_returns_same_tree(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        stamped, _ = stamper.stamp(invoice_tree, ENTITY, key_material)
        assert stamped is invoice_tree

    def test_element_input_returned_as_is(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        root = invoice_tree.getroot()
        stamped, _ = stamper.stamp(root, ENTITY, key_material)
        assert stamped is root

    def test_first_stamp_result(
        self,
        stamper: DocumentStamper,
        invoice_tree: etree._ElementTree,
        key_material: KeyMaterial,
        keypair: tuple[str, str],
    ) -> None:
        _, result = stamper.stamp(invoice_tree, ENTITY, key_material)

        assert result.sequence_counter == 1
        assert result.previous_digest == PLACEHOLDER_DIGEST
        assert len(result.digest) == 64
        assert verify_digest_signature(result.digest, result.signature, keypair[1])
        assert result.public_key == strip_pem_envelope(keypair[1])
        assert stamper.ledger.current(ENTITY) == SequenceRecord(1, result.digest)

    def test_exactly_one_of_each_stamp_element(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        stamper.stamp(invoice_tree, ENTITY, key_material)
        assert _stamp_children(invoice_tree.getroot()) == ["Signature", "ICV", "PIH", "QR"]

    def test_embedded_values(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        _, result = stamper.stamp(invoice_tree, ENTITY, key_material)
        root = invoice_tree.getroot()

        (counter,) = root.xpath(
            "*[local-name()='AdditionalDocumentReference'][*[local-name()='ID']='ICV']"
            "/*[local-name()='UUID']/text()"
        )
        (signature,) = root.xpath("*[local-name()='Signature']/*[local-name()='SignatureValue']/text()")
        assert counter == "1"
        assert signature == result.signature
        assert _embedded(root, "PIH") == digest_to_base64(PLACEHOLDER_DIGEST)
        assert _embedded(root, "PIH") == result.previous_digest_base64
        assert base64.b64decode(_embedded(root, "PIH")) == bytes.fromhex(PLACEHOLDER_DIGEST)
        assert _embedded(root, "QR") == result.encoded_payload

    def test_qr_payload_fields(
        self,
        stamper: DocumentStamper,
        invoice_tree: etree._ElementTree,
        key_material: KeyMaterial,
    ) -> None:
        _, result = stamper.stamp(invoice_tree, ENTITY, key_material)
        fields = decode_tlv(result.encoded_payload)

        assert [field.tag for field in fields] == list(range(1, 9))
        assert [field.text for field in fields[:5]] == [
            "Acme Trading",
            SELLER_VAT,
            "2024-05-01T10:30:00",
            "115.00",
            "15.00",
        ]
        assert fields[QrTag.INVOICE_HASH - 1].text == result.digest
        assert fields[QrTag.SIGNATURE - 1].text == result.signature
        assert fields[QrTag.PUBLIC_KEY - 1].text == result.public_key

    def test_public_key_can_be_omitted(
        self, ledger: InMemoryChainLedger, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        stamper = DocumentStamper(ledger, include_public_key=False)
        _, result = stamper.stamp(invoice_tree, ENTITY, key_material)
        assert result.public_key is None
        assert QrTag.PUBLIC_KEY not in decode_tlv_mapping(result.encoded_payload)

    def test_public_key_taken_from_certificate(
        self,
        stamper: DocumentStamper,
        invoice_tree: etree._ElementTree,
        keypair: tuple[str, str],
        certificate_pem: bytes,
    ) -> None:
        material = KeyMaterial.from_pem(keypair[0], certificate_pem)
        _, result = stamper.stamp(invoice_tree, ENTITY, material)
        assert result.public_key == strip_pem_envelope(extract_public_key(certificate_pem))

    def test_serialized_input_parsed_into_new_tree(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        serialized = etree.tostring(invoice_tree, xml_declaration=True, encoding="UTF-8")
        stamped, result = stamper.stamp(serialized, ENTITY, key_material)
        assert isinstance(stamped, etree._ElementTree)
        assert _stamp_children(stamped.getroot()) == ["Signature", "ICV", "PIH", "QR"]
        assert _stamp_children(invoice_tree.getroot()) == []
        assert verify_stamped_document(stamped).digest == result.digest

    def test_explicit_summary(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        summary = InvoiceSummary(
            seller_name="Override Co",
            seller_vat_number="399999999900003",
            timestamp="2024-06-01T00:00:00",
            invoice_total="1.15",
            vat_total="0.15",
        )
        _, result = stamper.stamp(invoice_tree, ENTITY, key_material, summary=summary)
        mapping = decode_tlv_mapping(result.encoded_payload)
        assert mapping[QrTag.SELLER_NAME] == b"Override Co"
        assert mapping[QrTag.INVOICE_TOTAL] == b"1.15"

    def test_digest_ignores_prior_stamp(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        _, first = stamper.stamp(invoice_tree, ENTITY, key_material)
        _, second = stamper.stamp(invoice_tree, ENTITY, key_material)

        assert second.digest == first.digest
        assert second.sequence_counter == 2
        assert second.previous_digest == first.digest
        assert _stamp_children(invoice_tree.getroot()) == ["Signature", "ICV", "PIH", "QR"]

    def test_restamp_replaces_references_outside_hash_exclusion(
        self, ledger: InMemoryChainLedger, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        """ICV and PIH are replaced even when the digest is configured to cover them."""
        stamper = DocumentStamper(ledger, settings=Settings(stamp_reference_ids="QR"))
        stamper.stamp(invoice_tree, ENTITY, key_material)
        _, second = stamper.stamp(invoice_tree, ENTITY, key_material)

        assert second.sequence_counter == 2
        assert _stamp_children(invoice_tree.getroot()) == ["Signature", "ICV", "PIH", "QR"]

    def test_presigned_extensions_replaced(
        self,
        stamper: DocumentStamper,
        invoice_data: InvoiceData,
        invoice_tree: etree._ElementTree,
        key_material: KeyMaterial,
    ) -> None:
        root = invoice_tree.getroot()
        root.insert(0, _signed_extensions())

        _, result = stamper.stamp(invoice_tree, ENTITY, key_material)

        assert len(root.xpath("//*[local-name()='Signature']")) == 1
        assert not root.xpath("//*[local-name()='UBLExtensions']")
        _, unsigned = stamper.stamp(build_invoice_document(invoice_data), "other-entity", key_material)
        assert result.digest == unsigned.digest
        assert verify_stamped_document(invoice_tree).is_valid

    def test_entity_bound_to_log_context(
        self, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        ledger = _ContextRecordingLedger()
        DocumentStamper(ledger).stamp(invoice_tree, ENTITY, key_material)

        assert ledger.context_at_commit == {"entity_id": ENTITY}
        assert "entity_id" not in structlog.contextvars.get_contextvars()

    def test_content_change_changes_digest(
        self,
        stamper: DocumentStamper,
        invoice_data: InvoiceData,
        key_material: KeyMaterial,
    ) -> None:
        original = build_invoice_document(invoice_data)
        altered = build_invoice_document(invoice_data)
        (total,) = altered.getroot().xpath("//*[local-name()='TaxInclusiveAmount']")
        total.text = "116.00"

        _, first = stamper.stamp(original, ENTITY, key_material)
        _, second = stamper.stamp(altered, "other-entity", key_material)
        assert first.digest != second.digest


class TestStampChain:
    def test_sequential_stamps_form_valid_chain(
        self, stamper: DocumentStamper, invoice_data: InvoiceData, key_material: KeyMaterial
    ) -> None:
        results = []
        for number in range(5):
            invoice = invoice_data.model_copy(update={"invoice_number": f"INV-{number}"})
            tree = build_invoice_document(invoice)
            _, result = stamper.stamp(tree, ENTITY, key_material)
            assert verify_stamped_document(tree).is_valid
            results.append(result)

        assert [result.sequence_counter for result in results] == [1, 2, 3, 4, 5]
        assert verify_stamp_chain(results).is_valid

    def test_entities_have_separate_chains(
        self, stamper: DocumentStamper, invoice_data: InvoiceData, key_material: KeyMaterial
    ) -> None:
        stamper.stamp(build_invoice_document(invoice_data), "A", key_material)
        _, result = stamper.stamp(build_invoice_document(invoice_data), "B", key_material)
        assert result.sequence_counter == 1
        assert result.previous_digest == PLACEHOLDER_DIGEST

    @pytest.mark.parametrize(
        ("ledger_factory", "attempts"),
        [(InMemoryChainLedger, 1), (OptimisticChainLedger, 1000)],
    )
    def test_concurrent_stamps(
        self,
        ledger_factory,
        attempts: int,
        invoice_data: InvoiceData,
        key_material: KeyMaterial,
    ) -> None:
        stamper = DocumentStamper(
            ledger_factory(), settings=Settings(ledger_max_commit_attempts=attempts)
        )

        def stamp_one(number: int):
            invoice = invoice_data.model_copy(update={"invoice_number": f"INV-{number}"})
            _, result = stamper.stamp(build_invoice_document(invoice), ENTITY, key_material)
            return result

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(stamp_one, range(20)))

        results.sort(key=lambda result: result.sequence_counter)
        assert [result.sequence_counter for result in results] == list(range(1, 21))
        assert verify_stamp_chain(results).is_valid
        assert stamper.ledger.current(ENTITY).counter == 20  # type: ignore[union-attr]


class TestStampFailures:
    """Failures leave both the document and the ledger unchanged."""

    def test_unsupported_key(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree
    ) -> None:
        p384 = ec.generate_private_key(ec.SECP384R1())
        material = KeyMaterial.from_pem(
            p384.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
        )
        before = etree.tostring(invoice_tree)

        with pytest.raises(KeyMaterialError):
            stamper.stamp(invoice_tree, ENTITY, material)

        assert etree.tostring(invoice_tree) == before
        assert stamper.ledger.current(ENTITY) is None

    def test_garbage_key(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree
    ) -> None:
        with pytest.raises(KeyMaterialError) as excinfo:
            stamper.stamp(invoice_tree, ENTITY, KeyMaterial.from_pem(b"not a key"))
        assert excinfo.value.to_dict()["kind"] == "key"
        assert stamper.ledger.current(ENTITY) is None

    def test_missing_seller(
        self, stamper: DocumentStamper, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        root = invoice_tree.getroot()
        (supplier,) = root.xpath("*[local-name()='AccountingSupplierParty']")
        root.remove(supplier)
        before = etree.tostring(invoice_tree)

        with pytest.raises(MalformedDocumentError) as excinfo:
            stamper.stamp(invoice_tree, ENTITY, key_material)

        assert excinfo.value.field == "seller_name"
        assert excinfo.value.step == "summarize"
        assert etree.tostring(invoice_tree) == before
        assert stamper.ledger.current(ENTITY) is None

    def test_malformed_input(self, stamper: DocumentStamper, key_material: KeyMaterial) -> None:
        with pytest.raises(MalformedDocumentError):
            stamper.stamp(b"<Invoice><unclosed>", ENTITY, key_material)

    def test_contention_exhausts_retry_budget(
        self, invoice_tree: etree._ElementTree, key_material: KeyMaterial
    ) -> None:
        ledger = _AlwaysStaleLedger()
        stamper = DocumentStamper(ledger, settings=Settings(ledger_max_commit_attempts=3))
        before = etree.tostring(invoice_tree)

        with pytest.raises(LedgerContentionError) as excinfo:
            stamper.stamp(invoice_tree, ENTITY, key_material)

        assert excinfo.value.kind == "contention"
        assert ledger.attempts == 3
        assert etree.tostring(invoice_tree) == before
        assert ledger.current(ENTITY) is None


class TestExtractSummary:
    def test_reads_built_invoice(self, invoice_tree: etree._ElementTree) -> None:
        summary = extract_summary(invoice_tree)
        assert summary == InvoiceSummary(
            seller_name="Acme Trading",
            seller_vat_number=SELLER_VAT,
            timestamp="2024-05-01T10:30:00",
            invoice_total="115.00",
            vat_total="15.00",
        )

    def test_falls_back_to_party_name(self, invoice_tree: etree._ElementTree) -> None:
        root = invoice_tree.getroot()
        (legal,) = root.xpath("//*[local-name()='PartyLegalEntity']")
        legal.getparent().remove(legal)
        assert extract_summary(root).seller_name == "Acme Trading"

    def test_date_only_timestamp(self, invoice_tree: etree._ElementTree) -> None:
        root = invoice_tree.getroot()
        (issue_time,) = root.xpath("*[local-name()='IssueTime']")
        root.remove(issue_time)
        assert extract_summary(root).timestamp == "2024-05-01"

    def test_missing_vat_total(self, invoice_tree: etree._ElementTree) -> None:
        root = invoice_tree.getroot()
        (tax_total,) = root.xpath("*[local-name()='TaxTotal']")
        root.remove(tax_total)
        with pytest.raises(MalformedDocumentError) as excinfo:
            extract_summary(root)
        assert excinfo.value.field == "vat_total"

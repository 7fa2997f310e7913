"""
Pytest fixtures for stamping tests.
Provides key material, sample invoices and a clean settings cache.
"""

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding, load_pem_private_key
from cryptography.x509.oid import NameOID
from lxml import etree

from invoice_stamp.core.config import get_settings
from invoice_stamp.core.crypto.hash_chain import InMemoryChainLedger
from invoice_stamp.core.crypto.signing import KeyMaterial, generate_signing_keypair
from invoice_stamp.modules.invoices.builder import build_invoice_document
from invoice_stamp.modules.invoices.schemas import InvoiceData, InvoiceLine
from invoice_stamp.modules.stamping.service import DocumentStamper

SELLER_VAT = "300000000000003"


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Iterator[None]:
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def keypair() -> tuple[str, str]:
    return generate_signing_keypair()


@pytest.fixture
def key_material(keypair: tuple[str, str]) -> KeyMaterial:
    return KeyMaterial.from_pem(keypair[0])


@pytest.fixture
def certificate_pem(keypair: tuple[str, str]) -> bytes:
    """Self-signed certificate for the ``keypair`` fixture."""
    private_key = load_pem_private_key(keypair[0].encode(), password=None)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "EGS1-Acme")])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    return certificate.public_bytes(Encoding.PEM)


@pytest.fixture
def invoice_data() -> InvoiceData:
    return InvoiceData(
        invoice_number="INV-0001",
        issue_datetime=datetime(2024, 5, 1, 10, 30, tzinfo=UTC),
        seller_name="Acme Trading",
        seller_vat=SELLER_VAT,
        lines=[InvoiceLine(name="Widget", quantity=Decimal("2"), price=Decimal("50.00"))],
    )


@pytest.fixture
def invoice_tree(invoice_data: InvoiceData) -> etree._ElementTree:
    return build_invoice_document(invoice_data)


@pytest.fixture
def ledger() -> InMemoryChainLedger:
    return InMemoryChainLedger()


@pytest.fixture
def stamper(ledger: InMemoryChainLedger) -> DocumentStamper:
    return DocumentStamper(ledger)

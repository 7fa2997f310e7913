"""
Cryptographic invoice stamping primitives.

Pure library modules for tamper-evident invoices:
- **canonicalization**: stamp exclusion and exclusive XML canonicalization
- **signing**: SHA-256 digests and ECDSA signatures over them
- **tlv**: Tag-Length-Value encoding of the QR payload
- **hash_chain**: per-entity counter and previous-digest ledgers
- **verification**: stamp and chain verification utilities
"""

from invoice_stamp.core.crypto.canonicalization import (
    canonicalize,
    sha256_hex_document,
    strip_stamp_elements,
)
from invoice_stamp.core.crypto.hash_chain import (
    PLACEHOLDER_DIGEST,
    ChainLedger,
    InMemoryChainLedger,
    OptimisticChainLedger,
    Reservation,
    SequenceRecord,
)
from invoice_stamp.core.crypto.signing import (
    KeyMaterial,
    compute_digest,
    extract_public_key,
    generate_signing_keypair,
    sign_digest,
    strip_pem_envelope,
    verify_digest_signature,
)
from invoice_stamp.core.crypto.tlv import QrTag, TlvField, decode_tlv, encode_tlv
from invoice_stamp.core.crypto.verification import (
    ChainVerificationResult,
    StampVerificationResult,
    verify_stamp_chain,
    verify_stamped_document,
)

__all__ = [
    "canonicalize",
    "strip_stamp_elements",
    "sha256_hex_document",
    "PLACEHOLDER_DIGEST",
    "ChainLedger",
    "InMemoryChainLedger",
    "OptimisticChainLedger",
    "Reservation",
    "SequenceRecord",
    "KeyMaterial",
    "compute_digest",
    "sign_digest",
    "verify_digest_signature",
    "extract_public_key",
    "strip_pem_envelope",
    "generate_signing_keypair",
    "QrTag",
    "TlvField",
    "encode_tlv",
    "decode_tlv",
    "ChainVerificationResult",
    "StampVerificationResult",
    "verify_stamp_chain",
    "verify_stamped_document",
]

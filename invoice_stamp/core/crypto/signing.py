"""
ECDSA digital signing for invoice digests.

Uses the ``cryptography`` library for elliptic-curve key handling, signing,
and verification. The signature covers the raw 32 bytes of the SHA-256
invoice digest and is hashed again with SHA-256 by the ECDSA primitive.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import hashlib
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
    load_pem_public_key,
)

from invoice_stamp.core.config import Settings, get_settings
from invoice_stamp.core.errors import KeyMaterialError, SigningError

DIGEST_HEX_LENGTH = 64

_CURVES: dict[str, type[ec.EllipticCurve]] = {
    "secp256k1": ec.SECP256K1,
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
}


def _as_bytes(material: str | bytes) -> bytes:
    if isinstance(material, str):
        return material.encode("utf-8")
    return material


def compute_digest(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def digest_to_base64(digest_hex: str) -> str:
    """Base64 of the raw digest bytes (not of the hex text)."""
    return base64.b64encode(bytes.fromhex(digest_hex)).decode("ascii")


def _digest_bytes(digest_hex: str) -> bytes:
    if len(digest_hex) != DIGEST_HEX_LENGTH:
        raise SigningError(
            f"Digest must be {DIGEST_HEX_LENGTH} hex characters, got {len(digest_hex)}",
            step="sign",
            field="digest",
        )
    try:
        return bytes.fromhex(digest_hex)
    except ValueError as exc:
        raise SigningError("Digest is not valid hex", step="sign", field="digest") from exc


def _check_curve(curve: ec.EllipticCurve, settings: Settings) -> None:
    if curve.name.lower() not in settings.allowed_signing_curve_set:
        raise KeyMaterialError(
            f"Unsupported elliptic curve: {curve.name}",
            step="load_key",
            field="curve",
        )


def load_private_key(
    private_key_pem: str | bytes,
    *,
    settings: Settings | None = None,
) -> ec.EllipticCurvePrivateKey:
    """Load an unencrypted PEM elliptic-curve private key.

    Raises
    ------
    KeyMaterialError
        If the PEM cannot be parsed, is encrypted, is not an EC key, or
        uses a curve outside ``allowed_signing_curves``.
    """
    settings = settings or get_settings()
    try:
        private_key = load_pem_private_key(_as_bytes(private_key_pem), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyMaterialError(
            "Private key could not be parsed", step="load_key", field="private_key"
        ) from exc
    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise KeyMaterialError(
            "Expected an elliptic-curve private key", step="load_key", field="private_key"
        )
    _check_curve(private_key.curve, settings)
    return private_key


def sign_digest(
    digest_hex: str,
    private_key_pem: str | bytes,
    *,
    settings: Settings | None = None,
) -> str:
    """Sign an invoice digest with an ECDSA private key.

    Parameters
    ----------
    digest_hex:
        Hex-encoded SHA-256 digest of the canonical invoice.
    private_key_pem:
        PEM-encoded EC private key.

    Returns
    -------
    str
        Base64-encoded DER ECDSA signature. ECDSA is randomized, so two
        signatures of the same digest usually differ.
    """
    private_key = load_private_key(private_key_pem, settings=settings)
    data = _digest_bytes(digest_hex)
    try:
        signature = private_key.sign(data, ec.ECDSA(hashes.SHA256()))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningError("Signing primitive rejected the digest", step="sign") from exc
    return base64.b64encode(signature).decode("ascii")


def verify_digest_signature(
    digest_hex: str,
    signature: str,
    public_key_pem: str | bytes,
) -> bool:
    """Verify an ECDSA signature on an invoice digest.

    Parameters
    ----------
    digest_hex:
        Hex-encoded digest that was signed.
    signature:
        Base64-encoded DER signature to verify.
    public_key_pem:
        PEM-encoded EC public key, certificate, or private key.

    Returns
    -------
    bool
        ``True`` if the signature is valid.
    """
    public_key = load_pem_public_key(extract_public_key(public_key_pem))
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise KeyMaterialError(
            "Expected an elliptic-curve public key", step="verify", field="public_key"
        )
    try:
        data = bytes.fromhex(digest_hex)
        raw_signature = base64.b64decode(signature, validate=True)
    except (ValueError, binascii.Error):
        return False
    try:
        public_key.verify(raw_signature, data, ec.ECDSA(hashes.SHA256()))
        return True
    except InvalidSignature:
        return False


def extract_public_key(material: str | bytes) -> bytes:
    """Derive a PEM SubjectPublicKeyInfo from key or certificate material.

    Certificates are tried first, then public keys, then private keys.

    Raises
    ------
    KeyMaterialError
        If no public key can be derived from ``material``.
    """
    data = _as_bytes(material)
    public_key = None
    with contextlib.suppress(ValueError):
        public_key = x509.load_pem_x509_certificate(data).public_key()
    if public_key is None:
        with contextlib.suppress(ValueError, UnsupportedAlgorithm):
            public_key = load_pem_public_key(data)
    if public_key is None:
        with contextlib.suppress(ValueError, TypeError, UnsupportedAlgorithm):
            public_key = load_pem_private_key(data, password=None).public_key()
    if public_key is None:
        raise KeyMaterialError(
            "No public key could be derived from the key material",
            step="extract_public_key",
        )
    return public_key.public_bytes(
        encoding=Encoding.PEM,
        format=PublicFormat.SubjectPublicKeyInfo,
    )


def strip_pem_envelope(pem: str | bytes) -> str:
    """Drop PEM BEGIN/END markers and line breaks, leaving the base64 body."""
    text = pem.decode("ascii") if isinstance(pem, bytes) else pem
    return "".join(
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.startswith("-----")
    )


def generate_signing_keypair(curve: str = "secp256k1") -> tuple[str, str]:
    """Generate a new EC key pair for invoice signing.

    Returns
    -------
    tuple[str, str]
        ``(private_key_pem, public_key_pem)`` as PEM-encoded strings.
    """
    try:
        curve_cls = _CURVES[curve.lower()]
    except KeyError:
        raise KeyMaterialError(f"Unknown curve: {curve}", step="generate_key") from None
    private_key = ec.generate_private_key(curve_cls())
    private_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=Encoding.PEM,
        format=PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


@dataclass(frozen=True, slots=True)
class KeyMaterial:
    """Private key plus optional certificate or public key, all PEM."""

    private_key_pem: bytes = field(repr=False)
    certificate_pem: bytes | None = field(default=None, repr=False)

    @classmethod
    def from_pem(
        cls,
        private_key_pem: str | bytes,
        certificate_pem: str | bytes | None = None,
    ) -> KeyMaterial:
        return cls(
            private_key_pem=_as_bytes(private_key_pem),
            certificate_pem=_as_bytes(certificate_pem) if certificate_pem is not None else None,
        )

    @classmethod
    def from_files(
        cls,
        private_key_path: str | Path,
        certificate_path: str | Path | None = None,
    ) -> KeyMaterial:
        """Read key material from PEM files.

        Raises
        ------
        KeyMaterialError
            If a file is missing, unreadable or empty.
        """
        private_key_pem = _read_pem(private_key_path, field_name="private_key")
        certificate_pem = (
            _read_pem(certificate_path, field_name="certificate")
            if certificate_path
            else None
        )
        return cls(private_key_pem=private_key_pem, certificate_pem=certificate_pem)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> KeyMaterial:
        settings = settings or get_settings()
        if not settings.private_key_path:
            raise KeyMaterialError(
                "private_key_path is not configured", step="load_key", field="private_key"
            )
        return cls.from_files(settings.private_key_path, settings.certificate_path)

    @property
    def public_key_source(self) -> bytes:
        """Material the embedded public key is derived from."""
        return self.certificate_pem or self.private_key_pem


def _read_pem(path: str | Path, *, field_name: str) -> bytes:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise KeyMaterialError(
            f"Unable to read {field_name} file: {path}", step="load_key", field=field_name
        ) from exc
    if not data.strip():
        raise KeyMaterialError(
            f"{field_name} file is empty: {path}", step="load_key", field=field_name
        )
    return data

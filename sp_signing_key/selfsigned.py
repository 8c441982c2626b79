#!/usr/bin/env python3
"""
Self-signed signing certificate generator.

Produces the PFX (private key, passphrase protected) and the CER (public
certificate, DER) that the loader expects.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .errors import SigningKeyError, ValidityWindowError

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def subject_name(subject: str) -> x509.Name:
    """Bare common name ("contoso-signing") or an RFC 4514 DN ("CN=contoso,O=Contoso")."""
    if "=" not in subject:
        return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)])
    try:
        name = x509.Name.from_rfc4514_string(subject)
    except ValueError as e:
        raise SigningKeyError(f"Invalid certificate subject {subject!r}: {e}") from e
    if not name.get_attributes_for_oid(NameOID.COMMON_NAME):
        raise SigningKeyError(f"Certificate subject {subject!r} has no CN")
    return name


def generate_self_signed(
    subject: str,
    *,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    valid_days: int = 365,
    key_size: int = 2048,
) -> Tuple[rsa.RSAPrivateKey, x509.Certificate]:
    start = _as_utc(not_before) if not_before else datetime.now(timezone.utc).replace(microsecond=0)
    end = _as_utc(not_after) if not_after else start + timedelta(days=valid_days)
    if end <= start:
        raise ValidityWindowError(f"notAfter {end.isoformat()} is not after notBefore {start.isoformat()}")

    name = subject_name(subject)
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(end)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return key, cert


def write_certificate_files(
    key: rsa.RSAPrivateKey,
    cert: x509.Certificate,
    pfx_path: Union[str, Path],
    cer_path: Union[str, Path],
    passphrase: str,
) -> None:
    """Write <pfx_path> (PKCS#12, encrypted) and <cer_path> (DER)."""
    if not passphrase:
        raise ValueError("A passphrase is required to protect the PFX private key")

    pfx = pkcs12.serialize_key_and_certificates(
        name=None,
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
    )
    pfx_p = Path(pfx_path)
    cer_p = Path(cer_path)
    for p in (pfx_p, cer_p):
        p.parent.mkdir(parents=True, exist_ok=True)
    pfx_p.write_bytes(pfx)
    cer_p.write_bytes(cert.public_bytes(serialization.Encoding.DER))
    logger.info("Wrote %s and %s", pfx_p, cer_p)

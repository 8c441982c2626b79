#!/usr/bin/env python3
"""
Certificate loader: reads the PFX (private + public key) and the CER (public
key only) that make up one custom signing key.

The raw file bytes are kept as-is because they are uploaded verbatim; the
parsed certificate only feeds the thumbprint and the validity window.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .errors import CertificateLoadError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class CertificateMaterial:
    certificate: x509.Certificate = field(repr=False)
    pfx_bytes: bytes = field(repr=False)
    cer_bytes: bytes = field(repr=False)
    thumbprint: str
    not_before: datetime
    not_after: datetime
    subject: str


def thumbprint_sha1(cert: x509.Certificate) -> str:
    """Windows-style thumbprint: uppercase hex SHA-1 over the DER encoding."""
    der = cert.public_bytes(serialization.Encoding.DER)
    return hashlib.sha1(der).hexdigest().upper()  # nosec B324 (identifier, not a security hash)


def validity_window(cert: x509.Certificate) -> Tuple[datetime, datetime]:
    nb = getattr(cert, "not_valid_before_utc", None)
    na = getattr(cert, "not_valid_after_utc", None)
    if nb is None or na is None:
        # cryptography < 42 only exposes naive UTC datetimes
        nb = cert.not_valid_before.replace(tzinfo=timezone.utc)
        na = cert.not_valid_after.replace(tzinfo=timezone.utc)
    return nb, na


def _read_bytes(path: PathLike, label: str) -> bytes:
    p = Path(path)
    if not p.is_file():
        raise CertificateLoadError(f"{label} file not found: {p}")
    try:
        return p.read_bytes()
    except OSError as e:
        raise CertificateLoadError(f"{label} file not readable: {p}: {e.strerror or e}") from e


def load_pfx(blob: bytes, passphrase: str | None) -> Tuple[Any, x509.Certificate]:
    """Open a PKCS#12 container; the passphrase never appears in errors."""
    try:
        key, cert, _chain = pkcs12.load_key_and_certificates(
            blob, passphrase.encode("utf-8") if passphrase else None
        )
    except (ValueError, TypeError) as e:
        raise CertificateLoadError(
            "PFX load failed: wrong passphrase or malformed PKCS#12 data"
        ) from e
    if cert is None or key is None:
        raise CertificateLoadError("PFX does not contain both cert and private key")
    return key, cert


def load_cer(blob: bytes) -> x509.Certificate:
    """Parse a public certificate, DER first then PEM."""
    try:
        return x509.load_der_x509_certificate(blob)
    except ValueError:
        pass
    try:
        cert = x509.load_pem_x509_certificate(blob)
    except ValueError as e:
        raise CertificateLoadError("CER is neither DER nor PEM encoded X.509") from e
    logger.warning("CER file is PEM encoded; Graph expects DER bytes for AsymmetricX509Cert")
    return cert


def load_certificate_material(
    pfx_path: PathLike, passphrase: str | None, cer_path: PathLike
) -> CertificateMaterial:
    pfx_bytes = _read_bytes(pfx_path, "PFX")
    cer_bytes = _read_bytes(cer_path, "CER")

    _key, cert = load_pfx(pfx_bytes, passphrase)
    public_cert = load_cer(cer_bytes)

    thumb = thumbprint_sha1(cert)
    cer_thumb = thumbprint_sha1(public_cert)
    if thumb != cer_thumb:
        raise CertificateLoadError(
            f"CER does not match PFX certificate (PFX {thumb}, CER {cer_thumb})"
        )

    not_before, not_after = validity_window(cert)
    material = CertificateMaterial(
        certificate=cert,
        pfx_bytes=pfx_bytes,
        cer_bytes=cer_bytes,
        thumbprint=thumb,
        not_before=not_before,
        not_after=not_after,
        subject=cert.subject.rfc4514_string(),
    )
    logger.info(
        "Loaded certificate %s thumbprint=%s valid %s..%s",
        material.subject,
        thumb,
        not_before.isoformat(),
        not_after.isoformat(),
    )
    return material

#!/usr/bin/env python3
"""
Credential payload builder.

Turns loaded certificate material plus the PFX passphrase into the body of a
PATCH on /servicePrincipals/{id}:

  keyCredentials      : [Sign (PFX + password), Verify (CER)]
  passwordCredentials : [passphrase, paired with the Sign entry by keyId]

All three entries share customKeyIdentifier = base64(SHA-256(thumbprint)).
"""
from __future__ import annotations

import base64
import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from .certificate import CertificateMaterial
from .errors import EncodingError, ValidityWindowError

GRAPH_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

SIGN_TYPE = "X509CertAndPassword"
VERIFY_TYPE = "AsymmetricX509Cert"


@dataclass(frozen=True)
class KeyCredential:
    # Field order is the order emitted in the JSON body.
    customKeyIdentifier: str
    endDateTime: str
    keyId: str
    startDateTime: str
    type: str
    usage: str
    key: str = field(repr=False)
    displayName: str


@dataclass(frozen=True)
class PasswordCredential:
    customKeyIdentifier: str
    keyId: str
    endDateTime: str
    startDateTime: str
    secretText: str = field(repr=False)


@dataclass(frozen=True)
class SigningKeyPayload:
    key_credentials: Tuple[KeyCredential, ...]
    password_credentials: Tuple[PasswordCredential, ...]

    @property
    def sign(self) -> KeyCredential:
        return next(k for k in self.key_credentials if k.usage == "Sign")

    @property
    def verify(self) -> KeyCredential:
        return next(k for k in self.key_credentials if k.usage == "Verify")

    @property
    def key_ids(self) -> Tuple[str, ...]:
        return tuple(k.keyId for k in self.key_credentials)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keyCredentials": [asdict(k) for k in self.key_credentials],
            "passwordCredentials": [asdict(p) for p in self.password_credentials],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def custom_key_identifier(thumbprint: str) -> str:
    digest = hashlib.sha256(thumbprint.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def format_graph_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(GRAPH_DATETIME_FORMAT)


def _b64(blob: Any, label: str) -> str:
    if not isinstance(blob, (bytes, bytearray)) or not blob:
        raise EncodingError(f"{label} bytes are missing or unreadable")
    return base64.b64encode(bytes(blob)).decode("ascii")


def _fresh_key_ids(factory: Callable[[], Any]) -> Tuple[str, str]:
    sign_id = str(factory())
    verify_id = str(factory())
    while verify_id == sign_id:
        verify_id = str(factory())
    return sign_id, verify_id


def build_payload(
    material: CertificateMaterial,
    passphrase: str,
    *,
    display_name: Optional[str] = None,
    key_id_factory: Callable[[], Any] = uuid.uuid4,
    now: Optional[datetime] = None,
) -> SigningKeyPayload:
    """
    Build the keyCredentials/passwordCredentials document.

    Pass ``now`` to also reject certificates that have already expired.
    """
    if material.not_after <= material.not_before:
        raise ValidityWindowError(
            f"Certificate validity window is inverted: notBefore={material.not_before.isoformat()} "
            f"notAfter={material.not_after.isoformat()}"
        )
    if now is not None:
        ref = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
        if material.not_after <= ref:
            raise ValidityWindowError(f"Certificate expired at {material.not_after.isoformat()}")

    if not isinstance(material.thumbprint, str) or not material.thumbprint:
        raise EncodingError("Certificate thumbprint is missing")

    pfx_b64 = _b64(material.pfx_bytes, "PFX")
    cer_b64 = _b64(material.cer_bytes, "CER")

    sign_id, verify_id = _fresh_key_ids(key_id_factory)
    cki = custom_key_identifier(material.thumbprint)
    start = format_graph_datetime(material.not_before)
    end = format_graph_datetime(material.not_after)
    name = display_name or material.subject

    sign = KeyCredential(
        customKeyIdentifier=cki,
        endDateTime=end,
        keyId=sign_id,
        startDateTime=start,
        type=SIGN_TYPE,
        usage="Sign",
        key=pfx_b64,
        displayName=name,
    )
    verify = KeyCredential(
        customKeyIdentifier=cki,
        endDateTime=end,
        keyId=verify_id,
        startDateTime=start,
        type=VERIFY_TYPE,
        usage="Verify",
        key=cer_b64,
        displayName=name,
    )
    password = PasswordCredential(
        customKeyIdentifier=cki,
        keyId=sign_id,
        endDateTime=end,
        startDateTime=start,
        secretText=passphrase,
    )
    return SigningKeyPayload(key_credentials=(sign, verify), password_credentials=(password,))

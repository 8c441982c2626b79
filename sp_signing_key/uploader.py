#!/usr/bin/env python3
"""
Graph uploader for the signing key payload.

Operator sequence: pre-flight GET -> PATCH -> confirming GET. Nothing is
retried; after a timeout the service principal must be re-read to learn
whether the PATCH was applied.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import UploadError
from .graph_client import GraphClient, service_principal_path
from .payload import SigningKeyPayload

logger = logging.getLogger(__name__)

SP_SELECT = "id,appId,displayName,keyCredentials,passwordCredentials,preferredTokenSigningKeyThumbprint"


@dataclass
class ServicePrincipalState:
    id: str
    app_id: str
    display_name: str
    key_credentials: List[Dict[str, Any]] = field(default_factory=list)
    password_credentials: List[Dict[str, Any]] = field(default_factory=list)
    preferred_thumbprint: Optional[str] = None

    @staticmethod
    def from_graph(data: Dict[str, Any]) -> "ServicePrincipalState":
        return ServicePrincipalState(
            id=str(data.get("id") or ""),
            app_id=str(data.get("appId") or ""),
            display_name=str(data.get("displayName") or ""),
            key_credentials=list(data.get("keyCredentials") or []),
            password_credentials=list(data.get("passwordCredentials") or []),
            preferred_thumbprint=data.get("preferredTokenSigningKeyThumbprint"),
        )

    def key_ids(self) -> set[str]:
        return {str(k.get("keyId")) for k in self.key_credentials if k.get("keyId")}


@dataclass
class UploadResult:
    service_principal_id: str
    status_code: int
    key_ids: tuple
    confirmed: Optional[bool] = None


class KeyCredentialUploader:
    def __init__(self, client: GraphClient) -> None:
        self.client = client

    def fetch(self, sp_id: str) -> ServicePrincipalState:
        data = self.client.get_json(service_principal_path(sp_id), params={"$select": SP_SELECT})
        return ServicePrincipalState.from_graph(data)

    def preflight(self, sp_id: str) -> ServicePrincipalState:
        """Confirm the target object exists and is the one requested, before mutating it."""
        state = self.fetch(sp_id)
        if state.id.lower() != sp_id.lower():
            raise UploadError(
                UploadError.UNEXPECTED,
                f"Pre-flight returned object {state.id!r}, expected {sp_id!r}",
            )
        logger.info(
            "Pre-flight OK: %s (appId=%s) keyCredentials=%d passwordCredentials=%d",
            state.display_name,
            state.app_id,
            len(state.key_credentials),
            len(state.password_credentials),
        )
        if state.key_credentials or state.password_credentials:
            logger.warning(
                "PATCH replaces the existing credential collections on %s (%d key, %d password)",
                state.id,
                len(state.key_credentials),
                len(state.password_credentials),
            )
        return state

    def upload(self, sp_id: str, payload: SigningKeyPayload) -> UploadResult:
        resp = self.client.request("PATCH", service_principal_path(sp_id), body=payload.to_dict())
        if resp.status_code != 204:
            logger.warning("PATCH %s returned HTTP %s instead of 204", sp_id, resp.status_code)
        logger.info("Uploaded signing key %s to %s", ", ".join(payload.key_ids), sp_id)
        return UploadResult(service_principal_id=sp_id, status_code=resp.status_code, key_ids=payload.key_ids)

    def confirm(self, sp_id: str, payload: SigningKeyPayload) -> bool:
        state = self.fetch(sp_id)
        missing = set(payload.key_ids) - state.key_ids()
        if missing:
            logger.warning("keyIds not visible on %s yet: %s", sp_id, ", ".join(sorted(missing)))
        return not missing

    def set_preferred_thumbprint(self, sp_id: str, thumbprint: str) -> None:
        self.client.request(
            "PATCH", service_principal_path(sp_id), body={"preferredTokenSigningKeyThumbprint": thumbprint}
        )

    def rotate(
        self,
        sp_id: str,
        payload: SigningKeyPayload,
        *,
        set_preferred_thumbprint: Optional[str] = None,
    ) -> UploadResult:
        self.preflight(sp_id)
        result = self.upload(sp_id, payload)
        if set_preferred_thumbprint:
            self.set_preferred_thumbprint(sp_id, set_preferred_thumbprint)
        result.confirmed = self.confirm(sp_id, payload)
        return result

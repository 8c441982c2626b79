#!/usr/bin/env python3
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

import msal
import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization.pkcs12 import load_key_and_certificates

from .errors import CertificateLoadError, ConfigError, SigningKeyError, TokenAcquisitionError, UploadError

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_BASE = "https://graph.microsoft.com/v1.0"
DEFAULT_AUTHORITY = "https://login.microsoftonline.com"
DEFAULT_PASSWORD_ENV = "GRAPH_PFX_PASSWORD"
DEFAULT_TIMEOUT: Tuple[float, float] = (10, 60)

TokenSource = Union[str, Callable[[], str]]


@dataclass
class GraphConfig:
    """Admin app allowed to update service principals (Application.ReadWrite.All)."""

    tenant_id: str
    client_id: str
    pfx_base64: str
    pfx_password_env: str = DEFAULT_PASSWORD_ENV
    graph_base: str = DEFAULT_GRAPH_BASE
    authority_base: str = DEFAULT_AUTHORITY

    @classmethod
    def from_file(cls, path: str) -> "GraphConfig":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls(
                tenant_id=data["tenant_id"],
                client_id=data["client_id"],
                pfx_base64=data["pfx_base64"],
                pfx_password_env=data.get("pfx_password_env", DEFAULT_PASSWORD_ENV),
                graph_base=data.get("graph_base", DEFAULT_GRAPH_BASE),
                authority_base=data.get("authority_base", DEFAULT_AUTHORITY),
            )
        except KeyError as e:
            raise ConfigError(f"{path}: missing {e.args[0]}") from e
        except (OSError, ValueError, TypeError) as e:
            raise ConfigError(f"{path}: unreadable Graph config: {e}") from e

    @classmethod
    def from_env(cls) -> "GraphConfig":
        env = os.environ
        missing = [k for k in ("GRAPH_TENANT_ID", "GRAPH_CLIENT_ID", "GRAPH_PFX_BASE64") if not env.get(k)]
        if missing:
            raise ConfigError(f"No graph_config.json and missing {', '.join(missing)}")
        return cls(
            tenant_id=env["GRAPH_TENANT_ID"],
            client_id=env["GRAPH_CLIENT_ID"],
            pfx_base64=env["GRAPH_PFX_BASE64"],
            pfx_password_env=env.get("GRAPH_PFX_PASSWORD_ENV", DEFAULT_PASSWORD_ENV),
            graph_base=env.get("GRAPH_BASE", DEFAULT_GRAPH_BASE),
            authority_base=env.get("AUTHORITY_BASE", DEFAULT_AUTHORITY),
        )


def service_principal_path(sp_id: str) -> str:
    if not sp_id or "/" in sp_id or "?" in sp_id:
        raise SigningKeyError(f"Invalid service principal object id: {sp_id!r}")
    return f"servicePrincipals/{sp_id}"


class CertificateTokenProvider:
    """App-only Graph token via MSAL, authenticated with the admin app's PFX."""

    def __init__(self, cfg: GraphConfig) -> None:
        self.cfg = cfg
        self._app: Optional[msal.ConfidentialClientApplication] = None
        self._token: Optional[Dict] = None
        self._token_acquired_at: Optional[float] = None

    def __call__(self) -> str:
        return self.acquire_token()

    def _client_credential(self) -> Dict[str, str]:
        password = os.environ.get(self.cfg.pfx_password_env)
        try:
            pfx_bytes = base64.b64decode(self.cfg.pfx_base64, validate=True)
            private_key, cert, _ = load_key_and_certificates(
                pfx_bytes, password.encode() if password else None
            )
        except binascii.Error as e:
            raise CertificateLoadError("Admin app pfx_base64 is not valid base64") from e
        except ValueError as e:
            raise CertificateLoadError(
                f"Admin app PFX load failed: wrong password in ${self.cfg.pfx_password_env} or invalid PKCS12 data"
            ) from e
        if private_key is None or cert is None:
            raise CertificateLoadError("Invalid PFX: private key or certificate missing")

        pem_key = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")
        # MSAL identifies certificate credentials by SHA-1 thumbprint
        return {"private_key": pem_key, "thumbprint": cert.fingerprint(hashes.SHA1()).hex()}  # nosec B303

    def _build_app(self) -> msal.ConfidentialClientApplication:
        if self._app is None:
            credential = self._client_credential()
            authority = f"{self.cfg.authority_base.rstrip('/')}/{self.cfg.tenant_id}"
            # authority discovery happens here and goes over the network
            self._app = msal.ConfidentialClientApplication(
                client_id=self.cfg.client_id,
                authority=authority,
                client_credential=credential,
            )
        return self._app

    def _cached(self) -> Optional[str]:
        if not (self._token and self._token_acquired_at):
            return None
        expires_at = self._token_acquired_at + int(self._token.get("expires_in", 0))
        return self._token["access_token"] if expires_at - time.time() > 120 else None

    def acquire_token(self) -> str:
        cached = self._cached()
        if cached:
            return cached

        resource = self.cfg.graph_base.split("/v1.0")[0].split("/beta")[0].rstrip("/")
        try:
            result = self._build_app().acquire_token_for_client(scopes=[f"{resource}/.default"])
        except requests.Timeout as e:
            raise TokenAcquisitionError(f"Token request to {self.cfg.authority_base} timed out") from e
        except requests.RequestException as e:
            raise TokenAcquisitionError(f"Token request to {self.cfg.authority_base} failed: {e}") from e
        except ValueError as e:
            # MSAL rejects unknown tenants / malformed authorities this way
            raise TokenAcquisitionError(f"MSAL rejected authority for tenant {self.cfg.tenant_id}: {e}") from e
        if "access_token" not in result:
            raise TokenAcquisitionError(
                f"MSAL token acquisition failed: {result.get('error_description') or result.get('error') or 'no access_token'}"
            )
        self._token = result
        self._token_acquired_at = time.time()
        logger.debug("Acquired Graph token for client %s, expires_in=%s", self.cfg.client_id, result.get("expires_in"))
        return result["access_token"]


def mask_token(token: str) -> str:
    if len(token) <= 48:
        return "***"
    return token[:32] + "..." + token[-16:]


def graph_error_message(resp: requests.Response) -> Tuple[str, Optional[str]]:
    """Pull (message, code) out of a Graph error body, falling back to raw text."""
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or resp.reason or "").strip(), None
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return str(err.get("message") or resp.text), err.get("code")
    return resp.text, None


class GraphClient:
    """
    Minimal Graph HTTP client.

    The bearer token (string or zero-arg callable) and the requests session are
    passed in explicitly; nothing is read from an ambient signed-in session.
    """

    def __init__(
        self,
        token: TokenSource,
        session: Optional[requests.Session] = None,
        graph_base: str = DEFAULT_GRAPH_BASE,
        timeout: Tuple[float, float] = DEFAULT_TIMEOUT,
    ) -> None:
        self._token = token
        self.session = session or requests.Session()
        self.graph_base = graph_base.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: GraphConfig, session: Optional[requests.Session] = None) -> "GraphClient":
        return cls(CertificateTokenProvider(cfg), session=session, graph_base=cfg.graph_base)

    def url(self, path: str) -> str:
        return f"{self.graph_base}/{path.lstrip('/')}"

    def _bearer(self) -> str:
        return self._token() if callable(self._token) else self._token

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        url = self.url(path)
        headers = {"Authorization": f"Bearer {self._bearer()}"}
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body)

        logger.debug("%s %s", method, url)
        try:
            resp = self.session.request(
                method, url, headers=headers, params=params, data=data, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise UploadError(
                UploadError.TIMEOUT,
                f"{method} {url} timed out; outcome unknown, re-read the service principal before retrying",
            ) from e
        except requests.RequestException as e:
            raise UploadError(UploadError.CONNECTION, f"{method} {url} failed to send: {e}") from e

        if not resp.ok:
            message, code = graph_error_message(resp)
            logger.debug("%s %s -> HTTP %s %s", method, url, resp.status_code, code or "")
            raise UploadError.for_status(resp.status_code, message, code=code)
        return resp

    def get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        resp = self.request("GET", path, params=params)
        try:
            return resp.json()
        except ValueError as e:
            raise UploadError(
                UploadError.UNEXPECTED, f"GET {self.url(path)} returned non-JSON body", status_code=resp.status_code
            ) from e

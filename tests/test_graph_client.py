# tests/test_graph_client.py
from __future__ import annotations

import base64
import hashlib
import json
import time
from pathlib import Path
from typing import Any, Dict, List

import pytest
import requests

import sp_signing_key.graph_client as gcmod
from conftest import PASSPHRASE, FakeSession, make_response
from sp_signing_key.errors import (
    CertificateLoadError,
    ConfigError,
    SigningKeyError,
    TokenAcquisitionError,
    UploadError,
)
from sp_signing_key.graph_client import (
    CertificateTokenProvider,
    GraphClient,
    GraphConfig,
    mask_token,
    service_principal_path,
)

TENANT = "00000000-0000-0000-0000-000000000000"
CLIENT_ID = "11111111-1111-1111-1111-111111111111"


class StubConfidentialClient:
    """Records how MSAL was set up; answers acquire_token_for_client from `outcome`."""

    instances: List["StubConfidentialClient"] = []
    outcome: Any = {"access_token": "AT_STUB", "expires_in": 3600}

    def __init__(self, *, client_id: str, authority: str, client_credential: Dict[str, str]):
        self.client_id = client_id
        self.authority = authority
        self.client_credential = client_credential
        self.scopes: List[List[str]] = []
        StubConfidentialClient.instances.append(self)

    def acquire_token_for_client(self, *, scopes: List[str]):
        self.scopes.append(scopes)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture
def stub_msal(monkeypatch):
    StubConfidentialClient.instances = []
    StubConfidentialClient.outcome = {"access_token": "AT_STUB", "expires_in": 3600}
    monkeypatch.setattr(gcmod.msal, "ConfidentialClientApplication", StubConfidentialClient)
    return StubConfidentialClient


@pytest.fixture
def admin_cfg(cert_files, monkeypatch) -> GraphConfig:
    # The signing cert doubles as the admin app's certificate credential here
    monkeypatch.setenv("GRAPH_PFX_PASSWORD", PASSPHRASE)
    return GraphConfig(
        tenant_id=TENANT,
        client_id=CLIENT_ID,
        pfx_base64=base64.b64encode(cert_files["pfx"].read_bytes()).decode("ascii"),
    )


@pytest.fixture(autouse=True)
def no_graph_env(monkeypatch):
    for k in ("GRAPH_TENANT_ID", "GRAPH_CLIENT_ID", "GRAPH_PFX_BASE64", "GRAPH_PFX_PASSWORD_ENV", "GRAPH_BASE"):
        monkeypatch.delenv(k, raising=False)


# ----------------------
# Config
# ----------------------
def test_config_file_defaults(tmp_path: Path):
    p = tmp_path / "graph_config.json"
    p.write_text(json.dumps({"tenant_id": TENANT, "client_id": CLIENT_ID, "pfx_base64": "QUJD"}), encoding="utf-8")
    cfg = GraphConfig.from_file(str(p))
    assert (cfg.tenant_id, cfg.client_id) == (TENANT, CLIENT_ID)
    assert cfg.pfx_password_env == "GRAPH_PFX_PASSWORD"
    assert cfg.graph_base == "https://graph.microsoft.com/v1.0"


def test_config_file_missing_key_or_bad_json(tmp_path: Path):
    p = tmp_path / "graph_config.json"
    p.write_text(json.dumps({"tenant_id": TENANT}), encoding="utf-8")
    with pytest.raises(ConfigError, match="client_id"):
        GraphConfig.from_file(str(p))
    p.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        GraphConfig.from_file(str(p))


def test_config_env(monkeypatch):
    monkeypatch.setenv("GRAPH_TENANT_ID", TENANT)
    monkeypatch.setenv("GRAPH_CLIENT_ID", CLIENT_ID)
    monkeypatch.setenv("GRAPH_PFX_BASE64", "QUJD")
    monkeypatch.setenv("GRAPH_PFX_PASSWORD_ENV", "ADMIN_PFX_PW")
    cfg = GraphConfig.from_env()
    assert cfg.pfx_base64 == "QUJD"
    assert cfg.pfx_password_env == "ADMIN_PFX_PW"


def test_config_env_names_what_is_missing(monkeypatch):
    monkeypatch.setenv("GRAPH_TENANT_ID", TENANT)
    with pytest.raises(ConfigError) as ei:
        GraphConfig.from_env()
    assert "GRAPH_CLIENT_ID" in str(ei.value) and "GRAPH_PFX_BASE64" in str(ei.value)


# ----------------------
# MSAL token provider
# ----------------------
def test_provider_builds_certificate_credential(admin_cfg, cert_files, stub_msal):
    assert CertificateTokenProvider(admin_cfg)() == "AT_STUB"

    app = stub_msal.instances[0]
    assert app.authority == f"https://login.microsoftonline.com/{TENANT}"
    assert app.client_id == CLIENT_ID
    assert app.client_credential["thumbprint"] == hashlib.sha1(cert_files["cer"].read_bytes()).hexdigest()
    assert "BEGIN PRIVATE KEY" in app.client_credential["private_key"]
    assert app.scopes == [["https://graph.microsoft.com/.default"]]


def test_provider_reuses_token_until_two_minutes_before_expiry(admin_cfg, stub_msal):
    provider = CertificateTokenProvider(admin_cfg)
    provider.acquire_token()
    provider.acquire_token()
    assert len(stub_msal.instances[0].scopes) == 1

    # 100s of the hour left
    provider._token_acquired_at = time.time() - 3500
    provider.acquire_token()
    assert len(stub_msal.instances[0].scopes) == 2


def test_provider_error_result(admin_cfg, stub_msal):
    stub_msal.outcome = {"error": "invalid_client", "error_description": "AADSTS700027: bad cert"}
    with pytest.raises(TokenAcquisitionError, match="AADSTS700027"):
        CertificateTokenProvider(admin_cfg).acquire_token()


@pytest.mark.parametrize(
    "exc, fragment",
    [
        (requests.ConnectionError("Max retries exceeded with url: /common/discovery"), "failed"),
        (requests.ConnectTimeout("connect timed out"), "timed out"),
        (ValueError("Unable to get authority configuration"), "rejected authority"),
    ],
)
def test_provider_network_and_authority_failures_are_typed(admin_cfg, stub_msal, exc, fragment):
    stub_msal.outcome = exc
    with pytest.raises(TokenAcquisitionError, match=fragment):
        CertificateTokenProvider(admin_cfg).acquire_token()


def test_provider_authority_discovery_failure_is_typed(admin_cfg, monkeypatch):
    def unreachable(**kw):  # noqa: ANN003
        raise requests.ConnectionError("HTTPSConnectionPool(host='login.microsoftonline.com')")

    monkeypatch.setattr(gcmod.msal, "ConfidentialClientApplication", unreachable)
    with pytest.raises(TokenAcquisitionError):
        CertificateTokenProvider(admin_cfg).acquire_token()


def test_provider_bad_base64(admin_cfg, stub_msal):
    admin_cfg.pfx_base64 = "not*base64!"
    with pytest.raises(CertificateLoadError, match="base64"):
        CertificateTokenProvider(admin_cfg).acquire_token()


def test_provider_wrong_pfx_password(admin_cfg, stub_msal, monkeypatch):
    monkeypatch.setenv("GRAPH_PFX_PASSWORD", "wrong-admin-pw")
    with pytest.raises(CertificateLoadError) as ei:
        CertificateTokenProvider(admin_cfg).acquire_token()
    assert "wrong-admin-pw" not in str(ei.value)


# ----------------------
# HTTP + error mapping
# ----------------------
def test_request_sends_bearer_json_and_timeout():
    session = FakeSession(make_response(204))
    client = GraphClient("AT_FAKE", session=session)
    resp = client.request("PATCH", "/servicePrincipals/abc", body={"a": 1})

    assert resp.status_code == 204
    call = session.calls[0]
    assert call["url"] == "https://graph.microsoft.com/v1.0/servicePrincipals/abc"
    assert call["headers"]["Authorization"] == "Bearer AT_FAKE"
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["json"] == {"a": 1}
    assert call["timeout"] == (10, 60)


def test_callable_token_is_resolved_per_request():
    tokens = iter(["T1", "T2"])
    session = FakeSession(make_response(200, {}), make_response(200, {}))
    client = GraphClient(lambda: next(tokens), session=session)
    client.get_json("me")
    client.get_json("me")
    assert [c["headers"]["Authorization"] for c in session.calls] == ["Bearer T1", "Bearer T2"]


def test_4xx_carries_graph_message_and_code():
    body = {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges to complete the operation."}}
    client = GraphClient("AT", session=FakeSession(make_response(403, body)))
    with pytest.raises(UploadError) as ei:
        client.request("PATCH", "servicePrincipals/abc", body={})
    err = ei.value
    assert err.kind == "http4xx"
    assert err.status_code == 403
    assert err.code == "Authorization_RequestDenied"
    assert err.message == "Insufficient privileges to complete the operation."
    assert not err.outcome_unknown


def test_5xx_with_plain_text_body():
    client = GraphClient("AT", session=FakeSession(make_response(503, text="Service Unavailable")))
    with pytest.raises(UploadError) as ei:
        client.get_json("servicePrincipals/abc")
    assert ei.value.kind == "http5xx"
    assert ei.value.message == "Service Unavailable"


def test_timeout_is_distinct_kind():
    client = GraphClient("AT", session=FakeSession(requests.ReadTimeout("read timed out")))
    with pytest.raises(UploadError) as ei:
        client.request("PATCH", "servicePrincipals/abc", body={})
    assert ei.value.kind == "timeout"
    assert ei.value.outcome_unknown


def test_connection_error_kind():
    client = GraphClient("AT", session=FakeSession(requests.ConnectionError("refused")))
    with pytest.raises(UploadError) as ei:
        client.get_json("servicePrincipals/abc")
    assert ei.value.kind == "connection"


@pytest.mark.parametrize("sp_id", ["", "a/b", "../applications/x", "abc?$select=x"])
def test_service_principal_path_rejects_non_ids(sp_id):
    with pytest.raises(SigningKeyError):
        service_principal_path(sp_id)


def test_mask_token():
    assert mask_token("short") == "***"
    long = "a" * 40 + "b" * 40
    assert mask_token(long) == "a" * 32 + "..." + "b" * 16

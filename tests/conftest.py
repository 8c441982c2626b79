# tests/conftest.py

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import requests

# Ensure the repository root (parent of /tests) is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sp_signing_key.selfsigned import generate_self_signed, write_certificate_files  # noqa: E402

PASSPHRASE = "Pa55-w0rd!"
NOT_BEFORE = datetime(2024, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def cert_files(tmp_path_factory) -> Dict[str, Path]:
    """One self-signed signing cert valid 2024-01-01..2025-01-01, as PFX + CER."""
    d = tmp_path_factory.mktemp("certs")
    key, cert = generate_self_signed("contoso-signing", not_before=NOT_BEFORE, not_after=NOT_AFTER)
    pfx, cer = d / "signing.pfx", d / "signing.cer"
    write_certificate_files(key, cert, pfx, cer, PASSPHRASE)
    return {"pfx": pfx, "cer": cer}


@pytest.fixture(scope="session")
def other_cer(tmp_path_factory) -> Path:
    d = tmp_path_factory.mktemp("other")
    key, cert = generate_self_signed("someone-else", not_before=NOT_BEFORE, not_after=NOT_AFTER)
    write_certificate_files(key, cert, d / "other.pfx", d / "other.cer", PASSPHRASE)
    return d / "other.cer"


def make_response(status: int, body: Optional[Any] = None, text: Optional[str] = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    if body is not None:
        resp._content = json.dumps(body).encode("utf-8")
        resp.headers["Content-Type"] = "application/json"
    else:
        resp._content = (text or "").encode("utf-8")
    resp.encoding = "utf-8"
    return resp


class FakeSession:
    """Stands in for requests.Session: replays queued responses, records calls."""

    def __init__(self, *responses: Any) -> None:
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, headers=None, params=None, data=None, timeout=None):  # noqa: ANN001
        self.calls.append(
            {
                "method": method,
                "url": url,
                "headers": dict(headers or {}),
                "params": params,
                "json": json.loads(data) if data else None,
                "timeout": timeout,
            }
        )
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


@pytest.fixture
def fake_session():
    return FakeSession

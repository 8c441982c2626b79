"""
Discovery endpoints that relying-party token validators consume.

Validators of tokens signed with a custom key must use the appid-scoped keys
endpoint; the tenant-wide one does not list the custom key.
"""
from __future__ import annotations

from urllib.parse import quote

from .graph_client import DEFAULT_AUTHORITY


def openid_configuration_url(tenant: str = "common", authority_base: str = DEFAULT_AUTHORITY) -> str:
    return f"{authority_base.rstrip('/')}/{quote(tenant, safe='.-')}/v2.0/.well-known/openid-configuration"


def signing_keys_url(tenant_id: str, app_id: str, authority_base: str = DEFAULT_AUTHORITY) -> str:
    return (
        f"{authority_base.rstrip('/')}/{quote(tenant_id, safe='.-')}"
        f"/discovery/v2.0/keys?appid={quote(app_id, safe='-')}"
    )

#!/usr/bin/env python3
"""Claims-mapping policy create / assign / list."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Union

from .errors import SigningKeyError
from .graph_client import GraphClient, service_principal_path

POLICIES_PATH = "policies/claimsMappingPolicies"


class PolicyDefinitionError(ValueError):
    pass


def load_policy_definition(path: Union[str, Path]) -> Dict[str, Any]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise PolicyDefinitionError(f"Cannot read policy definition {p}: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("ClaimsMappingPolicy"), dict):
        raise PolicyDefinitionError(f"{p} has no top-level ClaimsMappingPolicy object")
    return data


def create_claims_mapping_policy(
    client: GraphClient,
    definition: Dict[str, Any],
    display_name: str,
    *,
    is_organization_default: bool = False,
) -> Dict[str, Any]:
    # Graph wants the definition as a list holding one JSON string
    body = {
        "definition": [json.dumps(definition, separators=(",", ":"))],
        "displayName": display_name,
        "isOrganizationDefault": is_organization_default,
    }
    resp = client.request("POST", POLICIES_PATH, body=body)
    return resp.json()


def assign_claims_mapping_policy(client: GraphClient, sp_id: str, policy_id: str) -> None:
    if not policy_id or "/" in policy_id:
        raise SigningKeyError(f"Invalid claims-mapping policy id: {policy_id!r}")
    body = {"@odata.id": client.url(f"{POLICIES_PATH}/{policy_id}")}
    client.request("POST", f"{service_principal_path(sp_id)}/claimsMappingPolicies/$ref", body=body)


def list_assigned_policies(client: GraphClient, sp_id: str) -> List[Dict[str, Any]]:
    data = client.get_json(f"{service_principal_path(sp_id)}/claimsMappingPolicies")
    return list(data.get("value", []))

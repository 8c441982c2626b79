#!/usr/bin/env python3
"""
sp-signing-key
--------------
Custom signing key rotation for an Entra ID service principal.

Usage:
  python -m sp_signing_key generate --subject CN=contoso-signing --pfx key.pfx --cer key.cer
  python -m sp_signing_key inspect  --pfx key.pfx --cer key.cer
  python -m sp_signing_key build    --pfx key.pfx --cer key.cer --out payload.json
  python -m sp_signing_key check    --sp-id <objectId>
  python -m sp_signing_key upload   --sp-id <objectId> --pfx key.pfx --cer key.cer
  python -m sp_signing_key policy create --definition policy.json --name "Claims policy"
  python -m sp_signing_key policy assign --sp-id <objectId> --policy-id <policyId>
  python -m sp_signing_key policy list   --sp-id <objectId>
  python -m sp_signing_key discovery --tenant <tenantId> --app-id <appId>
Env:
  SIGNING_PFX_PASSWORD   passphrase of the signing PFX (name set by --passphrase-env)
  GRAPH_ACCESS_TOKEN     ready-made Graph bearer token (skips MSAL)
  GRAPH_TENANT_ID, GRAPH_CLIENT_ID, GRAPH_PFX_BASE64, GRAPH_PFX_PASSWORD
                         admin app certificate credentials when no graph_config.json
  LOG_LEVEL              logging level (default WARNING)
"""
from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence, Tuple

from ..certificate import load_certificate_material
from ..claims_policy import (
    PolicyDefinitionError,
    assign_claims_mapping_policy,
    create_claims_mapping_policy,
    list_assigned_policies,
    load_policy_definition,
)
from ..discovery import openid_configuration_url, signing_keys_url
from ..errors import ConfigError, SigningKeyError, UploadError
from ..graph_client import DEFAULT_AUTHORITY, DEFAULT_GRAPH_BASE, GraphClient, GraphConfig, mask_token
from ..payload import build_payload, custom_key_identifier, format_graph_datetime
from ..selfsigned import generate_self_signed, write_certificate_files
from ..uploader import KeyCredentialUploader

PROG = "sp-signing-key"
DEFAULT_PASSPHRASE_ENV = "SIGNING_PFX_PASSWORD"

logger = logging.getLogger(__name__)


def _die(msg: str) -> None:
    print(f"[{PROG}] ERROR: {msg}", file=sys.stderr, flush=True)


def _parse_utc(s: str) -> datetime:
    try:
        value = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 date/time: {s!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def read_passphrase(env_name: str, *, confirm: bool = False) -> str:
    pwd = os.environ.get(env_name)
    if pwd:
        return pwd
    if not sys.stdin.isatty():
        raise SigningKeyError(f"Environment variable '{env_name}' is empty and no terminal to prompt on")
    pwd = getpass.getpass("PFX passphrase: ")
    if confirm and getpass.getpass("Repeat passphrase: ") != pwd:
        raise SigningKeyError("Passphrases do not match")
    if not pwd:
        raise SigningKeyError("Empty passphrase")
    return pwd


def resolve_config(path_arg: Optional[str]) -> Tuple[GraphConfig, str]:
    """Use --config if given; else graph_config.json if present; else env."""
    if path_arg:
        p = Path(path_arg)
        if not p.exists():
            raise ConfigError(f"--config '{path_arg}' not found")
        return GraphConfig.from_file(str(p)), f"file:{p.resolve()}"
    default = Path.cwd() / "graph_config.json"
    if default.exists():
        return GraphConfig.from_file(str(default)), f"file:{default}"
    return GraphConfig.from_env(), "env"


def make_client(args: argparse.Namespace) -> GraphClient:
    token = args.access_token or os.environ.get("GRAPH_ACCESS_TOKEN")
    if token:
        logger.info("Using supplied access token %s", mask_token(token))
        return GraphClient(token, graph_base=args.graph_base or DEFAULT_GRAPH_BASE)
    cfg, mode = resolve_config(args.config)
    if args.graph_base:
        cfg.graph_base = args.graph_base
    logger.info("Graph config mode: %s, authority %s/%s", mode, cfg.authority_base, cfg.tenant_id)
    return GraphClient.from_config(cfg)


# ----- commands -----

def cmd_generate(args: argparse.Namespace) -> int:
    passphrase = read_passphrase(args.passphrase_env, confirm=True)
    key, cert = generate_self_signed(
        args.subject,
        not_before=args.not_before,
        not_after=args.not_after,
        valid_days=args.days,
        key_size=args.key_size,
    )
    write_certificate_files(key, cert, args.pfx, args.cer, passphrase)
    print(f"Wrote {args.pfx} and {args.cer}")
    return cmd_inspect(args, passphrase=passphrase)


def cmd_inspect(args: argparse.Namespace, passphrase: Optional[str] = None) -> int:
    passphrase = passphrase or read_passphrase(args.passphrase_env)
    m = load_certificate_material(args.pfx, passphrase, args.cer)
    print("Certificate details:")
    print(f"  Subject            : {m.subject}")
    print(f"  Issuer             : {m.certificate.issuer.rfc4514_string()}")
    print(f"  Not Before         : {format_graph_datetime(m.not_before)}")
    print(f"  Not After          : {format_graph_datetime(m.not_after)}")
    print(f"  Thumbprint (SHA1)  : {m.thumbprint}")
    print(f"  customKeyIdentifier: {custom_key_identifier(m.thumbprint)}")
    print(f"  PFX bytes          : {len(m.pfx_bytes)}")
    print(f"  CER bytes          : {len(m.cer_bytes)}")
    return 0


def _build(args: argparse.Namespace):
    passphrase = read_passphrase(args.passphrase_env)
    material = load_certificate_material(args.pfx, passphrase, args.cer)
    now = None if args.allow_expired else datetime.now(timezone.utc)
    payload = build_payload(material, passphrase, display_name=args.display_name, now=now)
    return material, payload


def write_private_file(path: Path, text: str) -> None:
    """Owner-only file; the mode is set at creation, never after the secret is on disk."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            # O_CREAT's mode does not apply when the file already existed
            if hasattr(os, "fchmod"):
                os.fchmod(f.fileno(), 0o600)
            f.write(text)
    except OSError as e:
        raise SigningKeyError(f"Cannot write {path}: {e.strerror or e}") from e


def cmd_build(args: argparse.Namespace) -> int:
    _material, payload = _build(args)
    text = payload.to_json()
    if args.out:
        out = Path(args.out)
        write_private_file(out, text)
        print(f"Payload written to {out} (contains the PFX passphrase; delete after upload)")
    else:
        print(text)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    state = KeyCredentialUploader(make_client(args)).preflight(args.sp_id)
    print(f"Service principal : {state.display_name}")
    print(f"  id              : {state.id}")
    print(f"  appId           : {state.app_id}")
    print(f"  preferred thumb : {state.preferred_thumbprint or '-'}")
    print(f"  keyCredentials  : {len(state.key_credentials)}")
    for k in state.key_credentials:
        print(f"    - {k.get('keyId')} {k.get('type')}/{k.get('usage')} until {k.get('endDateTime')}")
    print(f"  passwordCredentials: {len(state.password_credentials)}")
    return 0


def cmd_upload(args: argparse.Namespace) -> int:
    material, payload = _build(args)
    uploader = KeyCredentialUploader(make_client(args))
    result = uploader.rotate(
        args.sp_id,
        payload,
        set_preferred_thumbprint=material.thumbprint if args.set_preferred else None,
    )
    print(f"PATCH servicePrincipals/{args.sp_id}: HTTP {result.status_code}")
    print(f"  Sign keyId   : {payload.sign.keyId}")
    print(f"  Verify keyId : {payload.verify.keyId}")
    print(f"  Confirmed    : {'yes' if result.confirmed else 'no (re-run check)'}")
    return 0 if result.confirmed else 1


def cmd_policy(args: argparse.Namespace) -> int:
    client = make_client(args)
    if args.policy_cmd == "create":
        definition = load_policy_definition(args.definition)
        policy = create_claims_mapping_policy(
            client, definition, args.name, is_organization_default=args.org_default
        )
        print(f"Created claimsMappingPolicy {policy.get('id')} ({policy.get('displayName')})")
        if args.sp_id:
            assign_claims_mapping_policy(client, args.sp_id, policy["id"])
            print(f"Assigned to service principal {args.sp_id}")
    elif args.policy_cmd == "assign":
        assign_claims_mapping_policy(client, args.sp_id, args.policy_id)
        print(f"Assigned {args.policy_id} to service principal {args.sp_id}")
    else:
        policies = list_assigned_policies(client, args.sp_id)
        for p in policies:
            print(f"- {p.get('id')}  {p.get('displayName')}")
        if not policies:
            print("No claims-mapping policy assigned.")
    return 0


def cmd_discovery(args: argparse.Namespace) -> int:
    print(f"OpenID configuration : {openid_configuration_url(args.tenant, args.authority_base)}")
    if args.app_id:
        print(f"App signing keys     : {signing_keys_url(args.tenant, args.app_id, args.authority_base)}")
        print("Configure token validators with the app signing keys URL; the tenant keys omit the custom key.")
    return 0


# ----- parser -----

def _cert_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--pfx", required=True, help="PKCS#12 file with the private key")
    p.add_argument("--cer", required=True, help="Public certificate file (DER)")
    p.add_argument("--passphrase-env", default=DEFAULT_PASSPHRASE_ENV, help="Env var holding the PFX passphrase")


def _payload_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--display-name", default=None, help="displayName of the key credentials (default: cert subject)")
    p.add_argument("--allow-expired", action="store_true", help="Do not reject an already expired certificate")


def _graph_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="Path to graph_config.json (auto-used if present)")
    p.add_argument("--access-token", default=None, help="Graph bearer token (else GRAPH_ACCESS_TOKEN or MSAL)")
    p.add_argument("--graph-base", default=None, help=f"Graph base URL (default {DEFAULT_GRAPH_BASE})")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog=PROG, description="Custom signing key rotation for a service principal")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("generate", help="Create a self-signed certificate (PFX + CER)")
    _cert_args(p)
    p.add_argument("--subject", required=True, help="Bare CN or RFC 4514 DN, e.g. CN=contoso-signing,O=Contoso")
    p.add_argument("--not-before", type=_parse_utc, default=None, help="UTC start (default: now)")
    p.add_argument("--not-after", type=_parse_utc, default=None, help="UTC end (default: start + --days)")
    p.add_argument("--days", type=int, default=365)
    p.add_argument("--key-size", type=int, default=2048)
    p.set_defaults(func=cmd_generate)

    p = sub.add_parser("inspect", help="Show thumbprint, validity and customKeyIdentifier")
    _cert_args(p)
    p.set_defaults(func=cmd_inspect)

    p = sub.add_parser("build", help="Build the keyCredentials/passwordCredentials payload")
    _cert_args(p)
    _payload_args(p)
    p.add_argument("--out", default=None, help="Write payload JSON here instead of stdout")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("check", help="Pre-flight GET of the service principal")
    _graph_args(p)
    p.add_argument("--sp-id", required=True, help="Service principal object id")
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("upload", help="Pre-flight, PATCH the signing key, confirm")
    _cert_args(p)
    _payload_args(p)
    _graph_args(p)
    p.add_argument("--sp-id", required=True, help="Service principal object id")
    p.add_argument("--set-preferred", action="store_true", help="Also set preferredTokenSigningKeyThumbprint")
    p.set_defaults(func=cmd_upload)

    p = sub.add_parser("policy", help="Claims-mapping policy operations")
    psub = p.add_subparsers(dest="policy_cmd", required=True)
    pc = psub.add_parser("create")
    _graph_args(pc)
    pc.add_argument("--definition", required=True, help="JSON file with a ClaimsMappingPolicy object")
    pc.add_argument("--name", required=True, help="Policy displayName")
    pc.add_argument("--org-default", action="store_true")
    pc.add_argument("--sp-id", default=None, help="Assign to this service principal after creation")
    pa = psub.add_parser("assign")
    _graph_args(pa)
    pa.add_argument("--sp-id", required=True)
    pa.add_argument("--policy-id", required=True)
    pl = psub.add_parser("list")
    _graph_args(pl)
    pl.add_argument("--sp-id", required=True)
    p.set_defaults(func=cmd_policy)

    p = sub.add_parser("discovery", help="Print the discovery endpoints for token validators")
    p.add_argument("--tenant", default="common", help="Tenant id ('common' for multi-tenant apps)")
    p.add_argument("--app-id", default=None, help="Application (client) id")
    p.add_argument("--authority-base", default=DEFAULT_AUTHORITY)
    p.set_defaults(func=cmd_discovery)
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except UploadError as e:
        _die(str(e))
        if e.outcome_unknown:
            print(f"[{PROG}] Outcome unknown: run 'check' before retrying.", file=sys.stderr)
            return 2
        return 1
    except (SigningKeyError, PolicyDefinitionError) as e:
        _die(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

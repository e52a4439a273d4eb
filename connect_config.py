"""
connect_config.py — process settings and provisioning data.

Settings come from the environment. Scopes, users, clients and their
allowed scopes are provisioned from a YAML seed file; client secrets are
written there in plaintext and hashed when loaded.
"""

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from connect_clients import BCRYPT_ROUNDS, hash_client_secret
from connect_models import (
    Client,
    ClientScope,
    GrantType,
    Scope,
    User,
    UserConsent,
)
from connect_store import Store
from connect_tokens import ACCESS_TOKEN_LIFETIME, REFRESH_TOKEN_LIFETIME

logger = logging.getLogger("connect-server")

DEFAULT_SEED_PATH = Path(__file__).parent / "seed.yaml"
MIN_SIGNING_KEY_LENGTH = 32


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    issuer: str
    audience: str
    signing_key: str
    access_token_lifetime: int = ACCESS_TOKEN_LIFETIME
    refresh_token_lifetime: int = REFRESH_TOKEN_LIFETIME
    seed_path: Path = DEFAULT_SEED_PATH
    audit_log_path: Path | None = None


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Read settings from the environment. Fails closed without a signing key."""
    env = os.environ if environ is None else environ

    signing_key = env.get("CONNECT_SIGNING_KEY", "")
    if not signing_key:
        raise SystemExit("CONNECT_SIGNING_KEY is not set; refusing to start without a signing key")
    if len(signing_key) < MIN_SIGNING_KEY_LENGTH:
        logger.warning("CONNECT_SIGNING_KEY is shorter than %d characters - use a stronger key",
                       MIN_SIGNING_KEY_LENGTH)

    try:
        access_minutes = int(env.get("CONNECT_ACCESS_TOKEN_MINUTES", "30"))
        refresh_days = int(env.get("CONNECT_REFRESH_TOKEN_DAYS", "30"))
    except ValueError as e:
        raise SystemExit(f"Invalid token lifetime setting: {e}")

    audit_log = env.get("CONNECT_AUDIT_LOG")
    return Settings(
        issuer=env.get("CONNECT_ISSUER", "https://localhost:8443"),
        audience=env.get("CONNECT_AUDIENCE", "connect-api"),
        signing_key=signing_key,
        access_token_lifetime=access_minutes * 60,
        refresh_token_lifetime=refresh_days * 86400,
        seed_path=Path(env.get("CONNECT_SEED_FILE", str(DEFAULT_SEED_PATH))),
        audit_log_path=Path(audit_log) if audit_log else Path.home() / ".connect" / "audit.log",
    )


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

def read_seed(config_path: Path) -> dict[str, Any]:
    """Load and shape-check the seed file."""
    if not config_path.exists():
        example = config_path.with_name("seed.example.yaml")
        msg = f"Seed file not found: {config_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "clients" not in raw or "scopes" not in raw:
        raise SystemExit(f"Invalid seed file: expected 'scopes' and 'clients' keys in {config_path}")
    return raw


def _parse_grant_types(name: str, values: Any) -> set[GrantType]:
    if not isinstance(values, list) or not values:
        raise SystemExit(f"Client '{name}': 'grant_types' must be a non-empty list")
    grant_types: set[GrantType] = set()
    for value in values:
        try:
            grant_types.add(GrantType(str(value).lower()))
        except ValueError:
            raise SystemExit(
                f"Invalid grant type '{value}' for client '{name}'. "
                f"Valid options: {', '.join(g.value for g in GrantType)}"
            )
    return grant_types


async def seed_store(store: Store, raw: dict[str, Any],
                     bcrypt_rounds: int = BCRYPT_ROUNDS) -> None:
    """Provision scopes, users, clients, client scopes and consents."""
    scopes: dict[str, Scope] = {}
    for entry in raw.get("scopes") or []:
        if not isinstance(entry, dict) or "name" not in entry:
            raise SystemExit("Invalid scope entry: 'name' is required")
        scope = await store.scopes.add(Scope(
            name=entry["name"],
            display_name=entry.get("display_name", entry["name"]),
            description=entry.get("description", ""),
            enabled=entry.get("enabled", True),
        ))
        scopes[scope.name] = scope

    users: dict[str, User] = {}
    for entry in raw.get("users") or []:
        if not isinstance(entry, dict) or "username" not in entry:
            raise SystemExit("Invalid user entry: 'username' is required")
        user = await store.users.add(User(
            username=entry["username"],
            email=entry.get("email", ""),
            is_active=entry.get("is_active", True),
        ))
        users[user.username] = user

    clients: dict[str, Client] = {}
    for name, cfg in (raw.get("clients") or {}).items():
        if not isinstance(cfg, dict):
            raise SystemExit(f"Invalid client '{name}': expected a mapping")
        require_secret = cfg.get("require_client_secret", True)
        secret = cfg.get("secret", "")
        if require_secret and not secret:
            raise SystemExit(f"Client '{name}' requires a secret but none is configured")
        redirect_uris = cfg.get("redirect_uris", [])
        if not isinstance(redirect_uris, list):
            raise SystemExit(f"Client '{name}': 'redirect_uris' must be a list")

        client = await store.clients.add(Client(
            client_id=name,
            client_name=cfg.get("client_name", name),
            client_secret_hash=hash_client_secret(secret, rounds=bcrypt_rounds) if secret else "",
            redirect_uris=[str(uri) for uri in redirect_uris],
            allowed_grant_types=_parse_grant_types(name, cfg.get("grant_types")),
            require_client_secret=require_secret,
            require_consent=cfg.get("require_consent", True),
            require_pkce=cfg.get("require_pkce", False),
            allow_plain_pkce=cfg.get("allow_plain_pkce", True),
            enabled=cfg.get("enabled", True),
        ))
        clients[name] = client

        for scope_name in cfg.get("scopes", []):
            scope = scopes.get(scope_name)
            if scope is None:
                raise SystemExit(f"Client '{name}' references unknown scope '{scope_name}'")
            await store.client_scopes.add(ClientScope(client_id=client.id, scope_id=scope.id))

    for entry in raw.get("consents") or []:
        user = users.get(entry.get("user", ""))
        client = clients.get(entry.get("client", ""))
        if user is None or client is None:
            raise SystemExit(f"Invalid consent entry: {entry!r}")
        await store.consents.add(UserConsent(
            user_id=user.id,
            client_id=client.id,
            scopes=" ".join(entry.get("scopes", "").split()),
            granted_at=time.time(),
        ))

    logger.info("seeded %d scopes, %d users, %d clients",
                len(scopes), len(users), len(clients))


async def load_seed(store: Store, config_path: Path,
                    bcrypt_rounds: int = BCRYPT_ROUNDS) -> None:
    await seed_store(store, read_seed(config_path), bcrypt_rounds=bcrypt_rounds)

"""Shared fixtures: a seeded in-memory store and the engine wired to it."""
import asyncio
import copy
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from connect_authorize import AuthorizationRequestProcessor
from connect_clients import ClientValidator
from connect_codes import AuthorizationCodeIssuer
from connect_config import Settings, seed_store
from connect_consent import ConsentLedger
from connect_store import MemoryStore
from connect_token_endpoint import TokenRequestProcessor
from connect_tokens import TokenIssuer

ISSUER = "https://connect.test"
AUDIENCE = "connect-api"
SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789"

WEBAPP_CALLBACK = "https://app.example.com/callback"
SPA_CALLBACK = "http://localhost:3000/callback"
NATIVE_CALLBACK = "myapp://callback"

# Ids follow insertion order: users alice=1, bob=2, carol=3;
# clients webapp=1, spa=2, native=3, svc=4, disabled=5.
SEED = {
    "scopes": [
        {"name": "openid"},
        {"name": "profile"},
        {"name": "email"},
        {"name": "offline_access"},
        {"name": "phone"},
        {"name": "legacy", "enabled": False},
    ],
    "users": [
        {"username": "alice", "email": "alice@example.com"},
        {"username": "bob", "email": "bob@example.com", "is_active": False},
        {"username": "carol"},
    ],
    "clients": {
        "webapp": {
            "client_name": "Web App",
            "secret": "webapp_secret",
            "redirect_uris": [WEBAPP_CALLBACK, "https://app.example.com/other"],
            "grant_types": ["authorization_code", "refresh_token"],
            "scopes": ["openid", "profile", "email", "offline_access"],
        },
        "spa": {
            "client_name": "Single Page App",
            "require_client_secret": False,
            "require_pkce": True,
            "allow_plain_pkce": False,
            "redirect_uris": [SPA_CALLBACK],
            "grant_types": ["authorization_code"],
            "scopes": ["openid", "profile"],
        },
        "native": {
            "require_client_secret": False,
            "require_consent": False,
            "redirect_uris": [NATIVE_CALLBACK],
            "grant_types": ["authorization_code", "refresh_token"],
            "scopes": ["openid", "profile"],
        },
        "svc": {
            "secret": "svc_secret",
            "require_consent": False,
            "grant_types": ["client_credentials"],
            "scopes": ["profile"],
        },
        "disabled": {
            "secret": "disabled_secret",
            "enabled": False,
            "redirect_uris": ["https://disabled.example.com/cb"],
            "grant_types": ["authorization_code"],
            "scopes": ["openid"],
        },
    },
}

ALICE = 1
BOB = 2
CAROL = 3


@pytest.fixture
def seed():
    return copy.deepcopy(SEED)


@pytest.fixture
def store(seed):
    s = MemoryStore()
    run_sync(seed_store(s, seed, bcrypt_rounds=4))
    return s


@pytest.fixture
def settings(tmp_path):
    return Settings(
        issuer=ISSUER,
        audience=AUDIENCE,
        signing_key=SIGNING_KEY,
        seed_path=tmp_path / "seed.yaml",
    )


@pytest.fixture
def issuer():
    return TokenIssuer(issuer=ISSUER, audience=AUDIENCE, signing_key=SIGNING_KEY)


@pytest.fixture
def validator(store):
    return ClientValidator(store)


@pytest.fixture
def consent(store):
    return ConsentLedger(store)


@pytest.fixture
def codes(store):
    return AuthorizationCodeIssuer(store)


@pytest.fixture
def authorizer(validator, consent, codes):
    return AuthorizationRequestProcessor(validator, consent, codes)


@pytest.fixture
def token_processor(store, validator, issuer):
    return TokenRequestProcessor(store, validator, issuer)


def query_of(uri: str) -> dict[str, str]:
    """Single-valued query parameters of a redirect URI."""
    return {k: v[0] for k, v in parse_qs(urlparse(uri).query).items()}


def run_sync(coro):
    """Drive a coroutine on a private loop, leaving the current loop alone."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()

"""
connect_clients.py — client authentication, redirect URI binding, grant-type
allowance and scope legality.

Everything here is read-only against the store. Failures are raised as
``OAuthError`` with the kind decided at the point of failure; an unknown
client and a disabled client are indistinguishable to the caller.
"""

import hmac
import logging

import bcrypt

from connect_logging import audit
from connect_models import (
    Client,
    GrantType,
    OAuthError,
    OAuthErrorCode,
    parse_scopes,
)
from connect_store import Store

logger = logging.getLogger("connect-oauth")

BCRYPT_ROUNDS = 12


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

def hash_client_secret(secret: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash a client secret for storage (bcrypt, salted)."""
    secret_bytes = secret.encode("utf-8")[:72]
    return bcrypt.hashpw(secret_bytes, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_client_secret(secret: str, secret_hash: str) -> bool:
    """Check a presented secret against its stored hash. Fails closed."""
    if not secret or not secret_hash:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8")[:72], secret_hash.encode("utf-8"))
    except ValueError:
        logger.error("stored client secret hash is malformed")
        return False


def secure_compare(a: str | None, b: str | None) -> bool:
    """Constant-time string equality; None never matches."""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class ClientValidator:
    def __init__(self, store: Store):
        self.store = store

    async def _find_client(self, client_id: str) -> Client | None:
        client = await self.store.clients.first(
            lambda c: c.client_id == client_id and not c.is_deleted)
        if client is None or not client.enabled:
            return None
        return client

    async def validate_authorize_client(self, client_id: str | None,
                                        redirect_uri: str | None) -> Client:
        """Resolve the client of an authorization request and bind its redirect URI."""
        if not client_id:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST, "client_id is required")
        if not redirect_uri:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST, "redirect_uri is required")

        client = await self._find_client(client_id)
        if client is None:
            logger.warning("authorize: unknown or disabled client_id %s", client_id)
            raise OAuthError(OAuthErrorCode.UNAUTHORIZED_CLIENT, "Invalid client")

        if redirect_uri not in client.redirect_uris:
            logger.warning("authorize: redirect_uri %s not registered for %s",
                           redirect_uri, client_id)
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST,
                             "redirect_uri not registered for this client")

        self.ensure_grant_allowed(client, GrantType.AUTHORIZATION_CODE)
        return client

    async def authenticate_client(self, client_id: str | None,
                                  client_secret: str | None) -> Client:
        """Authenticate the caller of the token endpoint."""
        if not client_id:
            raise OAuthError(OAuthErrorCode.INVALID_CLIENT, "client_id is required")

        client = await self._find_client(client_id)
        if client is None:
            audit("client_auth_failed", client_id=client_id, reason="unknown_client")
            raise OAuthError(OAuthErrorCode.INVALID_CLIENT, "Invalid client")

        if client.require_client_secret:
            if not client_secret:
                audit("client_auth_failed", client_id=client_id, reason="missing_secret")
                raise OAuthError(OAuthErrorCode.INVALID_CLIENT,
                                 "client_secret is required for this client")
            if not verify_client_secret(client_secret, client.client_secret_hash):
                audit("client_auth_failed", client_id=client_id, reason="bad_secret")
                raise OAuthError(OAuthErrorCode.INVALID_CLIENT, "Invalid client credentials")

        return client

    @staticmethod
    def ensure_grant_allowed(client: Client, grant_type: GrantType) -> None:
        if grant_type not in client.allowed_grant_types:
            logger.warning("client %s does not allow grant %s",
                           client.client_id, grant_type.value)
            raise OAuthError(OAuthErrorCode.UNAUTHORIZED_CLIENT,
                             f"{grant_type.value} grant not allowed for this client")

    async def validate_scopes(self, client: Client, scope_string: str | None) -> list[str]:
        """Check requested scopes against the global set and the client's allowance.

        Returns:
            The requested scopes, de-duplicated, in request order.
        """
        requested = parse_scopes(scope_string)
        if not requested:
            raise OAuthError(OAuthErrorCode.INVALID_SCOPE, "scope parameter is required")

        known = await self.store.scopes.find(lambda s: s.enabled and not s.is_deleted)
        known_names = {s.name.lower() for s in known}
        unknown = [s for s in requested if s.lower() not in known_names]
        if unknown:
            logger.warning("client %s requested unknown scopes: %s",
                           client.client_id, ", ".join(unknown))
            raise OAuthError(OAuthErrorCode.INVALID_SCOPE,
                             f"Unknown scopes: {', '.join(unknown)}")

        allowed = await self.store.get_client_scopes(client.id)
        allowed_names = {s.name.lower() for s in allowed}
        not_allowed = [s for s in requested if s.lower() not in allowed_names]
        if not_allowed:
            logger.warning("client %s requested unauthorized scopes: %s",
                           client.client_id, ", ".join(not_allowed))
            raise OAuthError(OAuthErrorCode.INVALID_SCOPE,
                             f"Client not allowed to request: {', '.join(not_allowed)}")

        return requested

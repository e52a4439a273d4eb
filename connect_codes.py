"""
connect_codes.py — minting single-use authorization codes.
"""

import logging
import secrets
import time

from connect_logging import audit, redact
from connect_models import (
    AUTH_CODE_TTL,
    AuthorizationCode,
    Client,
    OAuthError,
    OAuthErrorCode,
)
from connect_store import Store

logger = logging.getLogger("connect-oauth")


def generate_code() -> str:
    """256 bits from the OS CSPRNG, base64url without padding."""
    return secrets.token_urlsafe(32)


class AuthorizationCodeIssuer:
    def __init__(self, store: Store, ttl: int = AUTH_CODE_TTL):
        self.store = store
        self.ttl = ttl

    async def issue(
        self,
        user_id: int,
        client: Client,
        scopes: list[str],
        redirect_uri: str,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> AuthorizationCode:
        now = time.time()
        auth_code = AuthorizationCode(
            code=generate_code(),
            user_id=user_id,
            client_id=client.id,
            redirect_uri=redirect_uri,
            scopes=" ".join(scopes),
            expires_at=now + self.ttl,
            created_at=now,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method if code_challenge else None,
        )
        try:
            async with self.store.unit_of_work():
                await self.store.authorization_codes.add(auth_code)
                await self.store.authorization_codes.delete_where(
                    lambda ac: ac.expires_at < now)
        except Exception as exc:
            logger.exception("failed to persist authorization code for user %s, client %s",
                             user_id, client.client_id)
            raise OAuthError(OAuthErrorCode.SERVER_ERROR,
                             "Failed to generate authorization code") from exc

        audit("code_issued", user_id=user_id, client_id=client.client_id,
              code=redact(auth_code.code), pkce=bool(code_challenge))
        return auth_code

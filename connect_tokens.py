"""
connect_tokens.py — signed access/identity tokens and opaque refresh tokens.

Access and identity tokens are HS256 JWTs carrying the same claim set
(each with its own ``jti``). Refresh tokens are random strings; their
state lives in the token store, not in the token itself.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any

import jwt

from connect_models import Client, User

logger = logging.getLogger("connect-oauth")

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_LIFETIME = 30 * 60  # 30 minutes
REFRESH_TOKEN_LIFETIME = 30 * 86400  # 30 days


@dataclass
class IssuedTokens:
    access_token: str
    expires_in: int
    scopes: list[str]
    id_token: str | None = None
    refresh_token: str | None = None
    refresh_expires_at: float | None = None

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


class TokenIssuer:
    def __init__(
        self,
        issuer: str,
        audience: str,
        signing_key: str,
        access_token_lifetime: int = ACCESS_TOKEN_LIFETIME,
        refresh_token_lifetime: int = REFRESH_TOKEN_LIFETIME,
    ):
        if not signing_key:
            raise ValueError("signing_key must not be empty")
        self.issuer = issuer.rstrip("/")
        self.audience = audience
        self.signing_key = signing_key
        self.access_token_lifetime = access_token_lifetime
        self.refresh_token_lifetime = refresh_token_lifetime

    # --- claims ---

    def _claims(self, subject: str, name: str, client: Client,
                scopes: list[str], email: str | None, now: int) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "sub": subject,
            "name": name,
            "client_id": client.client_id,
            "scope": list(scopes),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + self.access_token_lifetime,
        }
        if email:
            claims["email"] = email
        return claims

    def _sign(self, claims: dict[str, Any]) -> str:
        payload = {**claims, "jti": secrets.token_hex(16)}
        return jwt.encode(payload, self.signing_key, algorithm=JWT_ALGORITHM)

    # --- issuance ---

    def issue_for_user(self, user: User, client: Client, scopes: list[str]) -> IssuedTokens:
        now = int(time.time())
        claims = self._claims(str(user.id), user.username, client, scopes, user.email, now)
        return IssuedTokens(
            access_token=self._sign(claims),
            id_token=self._sign(claims),
            expires_in=self.access_token_lifetime,
            scopes=list(scopes),
            refresh_token=secrets.token_urlsafe(32),
            refresh_expires_at=now + self.refresh_token_lifetime,
        )

    def issue_for_client(self, client: Client, scopes: list[str]) -> IssuedTokens:
        now = int(time.time())
        claims = self._claims(client.client_id, client.client_id, client, scopes, None, now)
        return IssuedTokens(
            access_token=self._sign(claims),
            expires_in=self.access_token_lifetime,
            scopes=list(scopes),
        )

    # --- verification ---

    def decode(self, token: str) -> dict[str, Any]:
        """Verify a token issued here. Raises ``jwt.InvalidTokenError``."""
        return jwt.decode(
            token,
            self.signing_key,
            algorithms=[JWT_ALGORITHM],
            issuer=self.issuer,
            audience=self.audience,
            options={"require": ["sub", "exp", "iss", "aud", "jti"]},
        )

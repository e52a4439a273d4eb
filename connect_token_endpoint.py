"""
connect_token_endpoint.py — the /connect/token grant state machines.

The client is authenticated before anything else. The grant type is then
parsed into ``GrantType`` and dispatched; each grant runs its checks in a
fixed order and the first failure wins.

Consuming a code and rotating a refresh token are compare-and-set updates
inside one unit of work with the new refresh record, so two concurrent
exchanges of the same credential yield exactly one token response, and a
failure after the flip leaves the credential untouched.
"""

import base64
import hashlib
import hmac
import logging
import time

from connect_clients import ClientValidator, secure_compare
from connect_logging import audit, redact
from connect_models import (
    REFRESH_TOKEN_TYPE,
    Client,
    GrantType,
    OAuthError,
    OAuthErrorCode,
    PkceMethod,
    Token,
    User,
    parse_scopes,
)
from connect_schemas import TokenRequest, TokenResponse
from connect_store import Store
from connect_tokens import IssuedTokens, TokenIssuer

logger = logging.getLogger("connect-oauth")


# ---------------------------------------------------------------------------
# PKCE verification
# ---------------------------------------------------------------------------

def verify_pkce(verifier: str, challenge: str, method: str | None) -> bool:
    """RFC 7636 §4.6. A missing method means ``plain``; unknown methods fail."""
    parsed = PkceMethod.parse(method)
    if parsed is PkceMethod.PLAIN:
        return secure_compare(verifier, challenge)
    if parsed is PkceMethod.S256:
        try:
            verifier_bytes = verifier.encode("ascii")
        except UnicodeEncodeError:
            return False
        digest = hashlib.sha256(verifier_bytes).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        return hmac.compare_digest(expected.encode("ascii"), challenge.encode("utf-8"))
    return False


def _invalid_grant(description: str) -> OAuthError:
    return OAuthError(OAuthErrorCode.INVALID_GRANT, description)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class TokenRequestProcessor:
    def __init__(self, store: Store, validator: ClientValidator, issuer: TokenIssuer):
        self.store = store
        self.validator = validator
        self.issuer = issuer
        self._handlers = {
            GrantType.AUTHORIZATION_CODE: self._authorization_code_grant,
            GrantType.REFRESH_TOKEN: self._refresh_token_grant,
            GrantType.CLIENT_CREDENTIALS: self._client_credentials_grant,
        }

    async def process(self, request: TokenRequest) -> TokenResponse:
        try:
            client = await self.validator.authenticate_client(
                request.client_id, request.client_secret)

            if not request.grant_type:
                raise OAuthError(OAuthErrorCode.INVALID_REQUEST, "grant_type is required")
            try:
                grant_type = GrantType(request.grant_type.lower())
            except ValueError:
                raise OAuthError(OAuthErrorCode.UNSUPPORTED_GRANT_TYPE,
                                 f"Unsupported grant_type: {request.grant_type}") from None

            self.validator.ensure_grant_allowed(client, grant_type)
            return await self._handlers[grant_type](request, client)
        except OAuthError:
            raise
        except Exception as exc:
            logger.exception("token: unexpected failure for client %s", request.client_id)
            raise OAuthError(OAuthErrorCode.SERVER_ERROR,
                             "Internal error processing token request") from exc

    # --- shared ---

    async def _active_user(self, user_id: int) -> User:
        user = await self.store.users.get(user_id)
        if user is None or user.is_deleted or not user.is_active:
            raise _invalid_grant("User not found or inactive")
        return user

    async def _store_refresh_token(self, tokens: IssuedTokens, user: User,
                                   client: Client, scopes: str) -> None:
        if not tokens.refresh_token:
            return
        now = time.time()
        await self.store.tokens.delete_where(
            lambda t: t.token_type == REFRESH_TOKEN_TYPE and t.expires_at < now)
        await self.store.tokens.add(Token(
            token_value=tokens.refresh_token,
            token_type=REFRESH_TOKEN_TYPE,
            user_id=user.id,
            client_id=client.id,
            scopes=scopes,
            expires_at=tokens.refresh_expires_at,
            created_at=now,
        ))

    @staticmethod
    def _response(tokens: IssuedTokens) -> TokenResponse:
        return TokenResponse(
            access_token=tokens.access_token,
            token_type="Bearer",
            expires_in=tokens.expires_in,
            refresh_token=tokens.refresh_token,
            scope=tokens.scope or None,
            id_token=tokens.id_token,
        )

    # --- authorization_code ---

    async def _authorization_code_grant(self, request: TokenRequest,
                                        client: Client) -> TokenResponse:
        if not request.code:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST,
                             "code is required for authorization_code grant")
        if not request.redirect_uri:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST,
                             "redirect_uri is required for authorization_code grant")

        presented = request.code
        auth_code = await self.store.authorization_codes.first(
            lambda ac: not ac.is_deleted and secure_compare(ac.code, presented))
        if auth_code is None:
            logger.warning("token: invalid authorization code attempted by %s", client.client_id)
            raise _invalid_grant("Invalid authorization code")

        if auth_code.is_used:
            audit("code_replay", client_id=client.client_id, code=redact(presented))
            raise _invalid_grant("Authorization code has already been used")

        if auth_code.expires_at < time.time():
            raise _invalid_grant("Authorization code has expired")

        if auth_code.client_id != client.id:
            logger.warning("token: authorization code client mismatch (%s)", client.client_id)
            raise _invalid_grant("Invalid authorization code for this client")

        if auth_code.redirect_uri != request.redirect_uri:
            logger.warning("token: redirect_uri mismatch for %s", client.client_id)
            raise _invalid_grant("redirect_uri does not match authorization request")

        if auth_code.code_challenge:
            if not request.code_verifier:
                raise _invalid_grant("code_verifier is required (PKCE)")
            if not verify_pkce(request.code_verifier, auth_code.code_challenge,
                               auth_code.code_challenge_method):
                logger.warning("token: PKCE verification failed for %s", client.client_id)
                raise _invalid_grant("Invalid code_verifier")

        user = await self._active_user(auth_code.user_id)

        async with self.store.unit_of_work():
            if not await self.store.authorization_codes.compare_and_set(
                    auth_code.id, "is_used", False, True):
                audit("code_replay", client_id=client.client_id, code=redact(presented))
                raise _invalid_grant("Authorization code has already been used")

            tokens = self.issuer.issue_for_user(user, client, auth_code.scope_list)
            await self._store_refresh_token(tokens, user, client, auth_code.scopes)

        audit("token_issued", grant_type=GrantType.AUTHORIZATION_CODE.value,
              user_id=user.id, client_id=client.client_id,
              expires_in=tokens.expires_in)
        logger.info("access token issued for user %s via authorization_code", user.id)
        return self._response(tokens)

    # --- refresh_token ---

    async def _refresh_token_grant(self, request: TokenRequest,
                                   client: Client) -> TokenResponse:
        if not request.refresh_token:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST, "refresh_token is required")

        presented = request.refresh_token
        record = await self.store.tokens.first(
            lambda t: t.token_type == REFRESH_TOKEN_TYPE
            and not t.is_deleted
            and not t.is_revoked
            and secure_compare(t.token_value, presented))
        if record is None:
            raise _invalid_grant("Invalid refresh_token")

        if record.expires_at < time.time():
            raise _invalid_grant("Refresh token has expired")

        if record.client_id != client.id:
            logger.warning("token: refresh token client mismatch (%s)", client.client_id)
            raise _invalid_grant("Invalid refresh_token for this client")

        user = await self._active_user(record.user_id)

        async with self.store.unit_of_work():
            if not await self.store.tokens.compare_and_set(
                    record.id, "is_revoked", False, True):
                audit("refresh_replay", client_id=client.client_id, token=redact(presented))
                raise _invalid_grant("Invalid refresh_token")

            tokens = self.issuer.issue_for_user(user, client, record.scopes.split())
            await self._store_refresh_token(tokens, user, client, record.scopes)

        audit("token_refreshed", user_id=user.id, client_id=client.client_id)
        logger.info("access token refreshed for user %s", user.id)
        return self._response(tokens)

    # --- client_credentials ---

    async def _client_credentials_grant(self, request: TokenRequest,
                                        client: Client) -> TokenResponse:
        scopes = parse_scopes(request.scope)
        tokens = self.issuer.issue_for_client(client, scopes)
        audit("token_issued", grant_type=GrantType.CLIENT_CREDENTIALS.value,
              client_id=client.client_id, expires_in=tokens.expires_in)
        logger.info("client credentials token issued for client %s", client.client_id)
        return self._response(tokens)

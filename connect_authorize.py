"""
connect_authorize.py — the /connect/authorize state machine.

Gates run in a fixed order and the first failure wins:

  1. response_type is literally "code"
  2. client exists, is enabled, owns the redirect URI, allows authorization_code
  3. PKCE parameters are coherent with the client's policy
  4. every scope is known and allowed for the client
  5. the user has already consented (unless the client skips consent)
  6. a code is issued and appended to the redirect URI with the state

Failures other than server_error are turned into an error redirect when the
caller supplied a usable absolute http(s) redirect URI (RFC 6749 §4.1.2.1);
otherwise the OAuthError propagates to the HTTP layer.
"""

import logging
from urllib.parse import urlparse

from mcp.server.auth.provider import construct_redirect_uri

from connect_clients import ClientValidator
from connect_codes import AuthorizationCodeIssuer
from connect_consent import ConsentLedger
from connect_logging import audit
from connect_models import (
    AuthorizeAction,
    Client,
    OAuthError,
    OAuthErrorCode,
    PkceMethod,
    ResponseType,
)
from connect_schemas import AuthorizeRequest, AuthorizeResponse

logger = logging.getLogger("connect-oauth")


def is_redirectable(uri: str | None) -> bool:
    """True for a syntactically valid absolute http/https URI."""
    if not uri:
        return False
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class AuthorizationRequestProcessor:
    """Runs authorization requests on behalf of an already-authenticated user."""

    def __init__(
        self,
        validator: ClientValidator,
        consent: ConsentLedger,
        codes: AuthorizationCodeIssuer,
    ):
        self.validator = validator
        self.consent = consent
        self.codes = codes

    # --- public entry points ---

    async def process(self, request: AuthorizeRequest, user_id: int) -> AuthorizeResponse:
        """Handle a plain /authorize request."""
        try:
            return await self._authorize(request, user_id, record_consent=False)
        except OAuthError as exc:
            return self._error_result(request, exc)

    async def approve(self, request: AuthorizeRequest, user_id: int) -> AuthorizeResponse:
        """The user approved the consent screen: record the grant, then issue a code."""
        try:
            return await self._authorize(request, user_id, record_consent=True)
        except OAuthError as exc:
            return self._error_result(request, exc)

    async def deny(self, request: AuthorizeRequest, user_id: int) -> AuthorizeResponse:
        """The user declined: redirect back with access_denied."""
        try:
            client, _, _, _ = await self._validate(request)
        except OAuthError as exc:
            return self._error_result(request, exc)
        audit("consent_denied", user_id=user_id, client_id=client.client_id)
        return self._error_result(
            request, OAuthError(OAuthErrorCode.ACCESS_DENIED, "The user denied the request"))

    # --- gates ---

    async def _validate(
        self, request: AuthorizeRequest,
    ) -> tuple[Client, list[str], str | None, PkceMethod | None]:
        if not request.response_type:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST, "response_type is required")
        if request.response_type != ResponseType.CODE.value:
            raise OAuthError(OAuthErrorCode.UNSUPPORTED_RESPONSE_TYPE,
                             "Only 'code' is supported")

        client = await self.validator.validate_authorize_client(
            request.client_id, request.redirect_uri)
        challenge, method = self._validate_pkce(request, client)
        scopes = await self.validator.validate_scopes(client, request.scope)
        return client, scopes, challenge, method

    @staticmethod
    def _validate_pkce(
        request: AuthorizeRequest, client: Client,
    ) -> tuple[str | None, PkceMethod | None]:
        if not request.code_challenge:
            if request.code_challenge_method:
                raise OAuthError(OAuthErrorCode.INVALID_REQUEST,
                                 "code_challenge_method given without code_challenge")
            if client.require_pkce:
                raise OAuthError(OAuthErrorCode.INVALID_REQUEST,
                                 "code_challenge is required for this client")
            return None, None

        method = PkceMethod.parse(request.code_challenge_method)
        if method is None:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST,
                             "Unsupported code_challenge_method")
        if method is PkceMethod.PLAIN and not client.allow_plain_pkce:
            raise OAuthError(OAuthErrorCode.INVALID_REQUEST,
                             "plain code_challenge_method is not allowed for this client")
        return request.code_challenge, method

    async def _authorize(self, request: AuthorizeRequest, user_id: int,
                         record_consent: bool) -> AuthorizeResponse:
        try:
            client, scopes, challenge, method = await self._validate(request)

            # Consent and code commit together or not at all.
            async with self.codes.store.unit_of_work():
                if record_consent:
                    await self.consent.grant_consent(user_id, client.id, scopes)
                elif client.require_consent and not await self.consent.has_consent(
                        user_id, client.id, scopes):
                    audit("authorize_consent_required", user_id=user_id,
                          client_id=client.client_id, scopes=" ".join(scopes))
                    logger.info("user %s needs to grant consent for client %s: %s",
                                user_id, client.client_id, " ".join(scopes))
                    return AuthorizeResponse(
                        action=AuthorizeAction.CONSENT,
                        client_name=client.display_name,
                        scopes=scopes,
                        state=request.state,
                    )

                auth_code = await self.codes.issue(
                    user_id, client, scopes, request.redirect_uri,
                    code_challenge=challenge,
                    code_challenge_method=method.value if method else None,
                )
        except OAuthError:
            raise
        except Exception as exc:
            logger.exception("authorize: unexpected failure for client %s", request.client_id)
            raise OAuthError(OAuthErrorCode.SERVER_ERROR,
                             "Internal error processing authorization request") from exc

        redirect = construct_redirect_uri(
            request.redirect_uri, code=auth_code.code, state=request.state or None)
        logger.info("authorization code %s issued for user %s, client %s",
                    auth_code.id, user_id, client.client_id)
        return AuthorizeResponse(
            action=AuthorizeAction.REDIRECT,
            redirect_uri=redirect,
            client_name=client.display_name,
            scopes=scopes,
            state=request.state,
        )

    # --- error delivery ---

    @staticmethod
    def _error_result(request: AuthorizeRequest, exc: OAuthError) -> AuthorizeResponse:
        if exc.error is OAuthErrorCode.SERVER_ERROR or not is_redirectable(request.redirect_uri):
            raise exc
        logger.warning("authorize failed for client %s: %s", request.client_id, exc)
        redirect = construct_redirect_uri(
            request.redirect_uri,
            error=exc.error.value,
            error_description=exc.description,
            state=request.state or None,
        )
        return AuthorizeResponse(
            action=AuthorizeAction.ERROR,
            redirect_uri=redirect,
            state=request.state,
        )

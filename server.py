#!/usr/bin/env python3
"""
Connect — OAuth 2.0 / OpenID Connect authorization server.

HTTP surface over the protocol engine:

  /connect/authorize  — GET|POST, authorization code requests (caller must
                        present a Bearer token issued by this server)
  /connect/consent    — POST, the user's approve/deny decision
  /connect/token      — POST, authorization_code / refresh_token /
                        client_credentials grants

Responses are JSON. The engine decides the OAuth error kind; this module
only maps kinds to status codes and headers.
"""

import argparse
import asyncio
import base64
import binascii
import logging
from pathlib import Path
from urllib.parse import unquote

import jwt
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from connect_authorize import AuthorizationRequestProcessor
from connect_clients import ClientValidator
from connect_codes import AuthorizationCodeIssuer
from connect_config import Settings, load_seed, load_settings
from connect_consent import ConsentLedger
from connect_logging import audit, configure_logging
from connect_models import OAuthError, OAuthErrorCode
from connect_schemas import AuthorizeRequest, AuthorizeResponse, TokenRequest
from connect_store import MemoryStore, Store
from connect_token_endpoint import TokenRequestProcessor
from connect_tokens import TokenIssuer

logger = logging.getLogger("connect-server")

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
_AUTHORIZE_FIELDS = tuple(AuthorizeRequest.model_fields)
_TOKEN_FIELDS = tuple(TokenRequest.model_fields)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _status_for(error: OAuthErrorCode) -> int:
    if error is OAuthErrorCode.INVALID_CLIENT:
        return 401
    if error is OAuthErrorCode.SERVER_ERROR:
        return 500
    return 400


async def _request_params(request: Request, fields: tuple[str, ...]) -> dict[str, str]:
    """Query parameters, overridden by form fields on POST."""
    params = {k: v for k, v in request.query_params.items() if k in fields}
    if request.method == "POST":
        form = await request.form()
        params.update({k: str(v) for k, v in form.items() if k in fields})
    return params


def _basic_credentials(request: Request) -> tuple[str, str] | None:
    """client_secret_basic (RFC 6749 §2.3.1). Raises invalid_client when malformed."""
    auth = request.headers.get("authorization", "")
    if not auth.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(auth[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise OAuthError(OAuthErrorCode.INVALID_CLIENT, "Malformed Basic credentials")
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise OAuthError(OAuthErrorCode.INVALID_CLIENT, "Malformed Basic credentials")
    return unquote(client_id), unquote(client_secret)


def _auth_error() -> JSONResponse:
    return JSONResponse(
        {"error": "unauthorized", "error_description": "valid Bearer token required"},
        status_code=401,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _authorize_json(result: AuthorizeResponse) -> JSONResponse:
    return JSONResponse(result.model_dump(mode="json", exclude_none=True))


def _authorize_error(exc: OAuthError, state: str | None) -> JSONResponse:
    body = {**exc.to_dict(), "state": state}
    return JSONResponse(body, status_code=_status_for(exc.error))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

class ConnectServer:
    """Wires the engine components to a store and exposes the HTTP handlers."""

    def __init__(self, store: Store, settings: Settings):
        self.store = store
        self.settings = settings
        self.issuer = TokenIssuer(
            issuer=settings.issuer,
            audience=settings.audience,
            signing_key=settings.signing_key,
            access_token_lifetime=settings.access_token_lifetime,
            refresh_token_lifetime=settings.refresh_token_lifetime,
        )
        validator = ClientValidator(store)
        self.authorizer = AuthorizationRequestProcessor(
            validator, ConsentLedger(store), AuthorizationCodeIssuer(store))
        self.token_processor = TokenRequestProcessor(store, validator, self.issuer)

    def caller_user_id(self, request: Request) -> int | None:
        """Numeric ``sub`` of a valid Bearer token issued here, else None."""
        auth = request.headers.get("authorization", "")
        if not auth.lower().startswith("bearer "):
            return None
        try:
            claims = self.issuer.decode(auth[7:].strip())
        except jwt.InvalidTokenError as e:
            audit("caller_token_rejected", reason=str(e))
            return None
        sub = str(claims.get("sub", ""))
        if not sub.isdigit():
            logger.warning("caller token subject %r is not a user", sub)
            return None
        return int(sub)

    # --- handlers ---

    async def handle_authorize(self, request: Request) -> Response:
        params = AuthorizeRequest(**await _request_params(request, _AUTHORIZE_FIELDS))
        logger.info("authorization request received for client %s", params.client_id)

        user_id = self.caller_user_id(request)
        if user_id is None:
            return _auth_error()

        try:
            result = await self.authorizer.process(params, user_id)
        except OAuthError as exc:
            return _authorize_error(exc, params.state)
        return _authorize_json(result)

    async def handle_consent(self, request: Request) -> Response:
        form = await request.form()
        params = AuthorizeRequest(**{k: str(v) for k, v in form.items()
                                     if k in _AUTHORIZE_FIELDS})
        decision = str(form.get("decision", "deny"))

        user_id = self.caller_user_id(request)
        if user_id is None:
            return _auth_error()

        try:
            if decision == "approve":
                result = await self.authorizer.approve(params, user_id)
            else:
                result = await self.authorizer.deny(params, user_id)
        except OAuthError as exc:
            return _authorize_error(exc, params.state)
        return _authorize_json(result)

    async def handle_token(self, request: Request) -> Response:
        form = await request.form()
        fields = {k: str(v) for k, v in form.items() if k in _TOKEN_FIELDS}
        logger.info("token request received - grant_type: %s, client_id: %s",
                    fields.get("grant_type"), fields.get("client_id"))

        try:
            basic = _basic_credentials(request)
            if basic is not None:
                fields.setdefault("client_id", basic[0])
                fields.setdefault("client_secret", basic[1])
            result = await self.token_processor.process(TokenRequest(**fields))
        except OAuthError as exc:
            headers = dict(_NO_STORE)
            if exc.error is OAuthErrorCode.INVALID_CLIENT:
                headers["WWW-Authenticate"] = 'Basic realm="connect"'
                logger.warning("client authentication failed - client_id: %s",
                               fields.get("client_id"))
            else:
                logger.warning("token request failed - client_id: %s, grant_type: %s, error: %s",
                               fields.get("client_id"), fields.get("grant_type"),
                               exc.error.value)
            return JSONResponse(exc.to_dict(), status_code=_status_for(exc.error),
                                headers=headers)

        return JSONResponse(result.model_dump(exclude_none=True), headers=_NO_STORE)


def create_app(store: Store, settings: Settings) -> Starlette:
    server = ConnectServer(store, settings)
    app = Starlette(routes=[
        Route("/connect/authorize", server.handle_authorize, methods=["GET", "POST"]),
        Route("/connect/consent", server.handle_consent, methods=["POST"]),
        Route("/connect/token", server.handle_token, methods=["POST"]),
    ])
    app.state.connect = server
    return app


def startup_settings(environ: dict[str, str] | None = None) -> Settings:
    """Load settings with logging already configured, then attach the audit file."""
    configure_logging()
    settings = load_settings(environ)
    configure_logging(audit_log_path=settings.audit_log_path)
    return settings


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Connect authorization server")
    parser.add_argument("--port", type=int, default=8443)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--seed", type=Path, default=None,
                        help="YAML seed file (default: CONNECT_SEED_FILE or ./seed.yaml)")
    args = parser.parse_args()

    settings = startup_settings()
    if args.seed is not None:
        settings.seed_path = args.seed

    import uvicorn

    store = MemoryStore()
    app = create_app(store, settings)

    logger.info(f"connect: starting HTTP server on {args.host}:{args.port}")
    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                            proxy_headers=True, forwarded_allow_ips="*")
    server = uvicorn.Server(config)

    async def _serve_with_seed() -> None:
        logger.info("connect: loading seed data from %s", settings.seed_path)
        await load_seed(store, settings.seed_path)
        await server.serve()

    asyncio.run(_serve_with_seed())

"""
connect_schemas.py — wire shapes of the /connect endpoints.

Fields are all optional on the request side: presence rules belong to the
protocol engine, which reports them as OAuth errors rather than as
validation failures of the model.
"""

from pydantic import BaseModel

from connect_models import AuthorizeAction


class AuthorizeRequest(BaseModel):
    client_id: str | None = None
    redirect_uri: str | None = None
    response_type: str | None = None
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


class AuthorizeResponse(BaseModel):
    action: AuthorizeAction
    redirect_uri: str | None = None
    client_name: str | None = None
    scopes: list[str] | None = None
    state: str | None = None


class TokenRequest(BaseModel):
    grant_type: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    scope: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str | None = None
    scope: str | None = None
    id_token: str | None = None

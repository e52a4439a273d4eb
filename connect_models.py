"""
connect_models.py — domain records and protocol vocabulary for the Connect
authorization server.

Records are plain dataclasses; the store hands out copies, so mutating a
record has no effect until it is written back through a repository.
Protocol strings (grant types, response types, PKCE methods, error codes)
are closed enums so dispatch on them is exhaustive.
"""

from dataclasses import dataclass, field
from enum import Enum


AUTH_CODE_TTL = 600  # 10 minutes
REFRESH_TOKEN_TYPE = "refresh_token"


# ---------------------------------------------------------------------------
# Protocol enums
# ---------------------------------------------------------------------------

class GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"
    CLIENT_CREDENTIALS = "client_credentials"


class ResponseType(str, Enum):
    CODE = "code"


class PkceMethod(str, Enum):
    PLAIN = "plain"
    S256 = "S256"

    @classmethod
    def parse(cls, value: str | None) -> "PkceMethod | None":
        """Case-insensitive lookup; a missing method means ``plain``."""
        if not value:
            return cls.PLAIN
        for method in cls:
            if method.value.lower() == value.lower():
                return method
        return None


class OAuthErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    INVALID_GRANT = "invalid_grant"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    INVALID_SCOPE = "invalid_scope"
    ACCESS_DENIED = "access_denied"
    SERVER_ERROR = "server_error"


class AuthorizeAction(str, Enum):
    REDIRECT = "redirect"
    CONSENT = "consent"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """A terminal protocol failure carrying its RFC 6749 error code."""

    def __init__(self, error: OAuthErrorCode, description: str = ""):
        super().__init__(f"{error.value}: {description}" if description else error.value)
        self.error = error
        self.description = description

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error.value, "error_description": self.description}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Client:
    client_id: str
    client_name: str = ""
    client_secret_hash: str = ""
    redirect_uris: list[str] = field(default_factory=list)
    allowed_grant_types: set[GrantType] = field(default_factory=set)
    require_client_secret: bool = True
    require_consent: bool = True
    require_pkce: bool = False
    allow_plain_pkce: bool = True
    enabled: bool = True
    is_deleted: bool = False
    id: int = 0

    @property
    def display_name(self) -> str:
        return self.client_name or self.client_id


@dataclass
class Scope:
    name: str
    display_name: str = ""
    description: str = ""
    enabled: bool = True
    is_deleted: bool = False
    id: int = 0


@dataclass
class ClientScope:
    client_id: int
    scope_id: int
    id: int = 0


@dataclass
class User:
    username: str
    email: str = ""
    is_active: bool = True
    is_deleted: bool = False
    id: int = 0


@dataclass
class AuthorizationCode:
    code: str
    user_id: int
    client_id: int
    redirect_uri: str
    scopes: str
    expires_at: float
    created_at: float
    is_used: bool = False
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    is_deleted: bool = False
    id: int = 0

    @property
    def scope_list(self) -> list[str]:
        return self.scopes.split()


@dataclass
class Token:
    token_value: str
    user_id: int
    client_id: int
    scopes: str
    expires_at: float
    created_at: float
    token_type: str = REFRESH_TOKEN_TYPE
    is_revoked: bool = False
    is_deleted: bool = False
    id: int = 0


@dataclass
class UserConsent:
    user_id: int
    client_id: int
    scopes: str
    granted_at: float
    id: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_scopes(scope_string: str | None) -> list[str]:
    """Split a space-separated scope string, dropping blanks and duplicates."""
    if not scope_string:
        return []
    seen: list[str] = []
    for scope in scope_string.split():
        if scope not in seen:
            seen.append(scope)
    return seen

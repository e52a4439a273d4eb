"""Tests for connect_authorize.py."""
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from conftest import ALICE, NATIVE_CALLBACK, SPA_CALLBACK, WEBAPP_CALLBACK, query_of
from connect_authorize import is_redirectable
from connect_models import AuthorizeAction, OAuthError, OAuthErrorCode
from connect_schemas import AuthorizeRequest

WEBAPP = 1


def _request(**overrides):
    params = dict(
        client_id="webapp",
        redirect_uri=WEBAPP_CALLBACK,
        response_type="code",
        scope="openid profile",
        state="xyz",
    )
    params.update(overrides)
    return AuthorizeRequest(**params)


# ---------------------------------------------------------------------------
# is_redirectable
# ---------------------------------------------------------------------------

class TestIsRedirectable:
    @pytest.mark.parametrize("uri", ["https://host/cb", "http://localhost:3000/callback"])
    def test_absolute_http(self, uri):
        assert is_redirectable(uri)

    @pytest.mark.parametrize("uri", [None, "", "/relative", "myapp://callback",
                                     "https:///nohost", "not a uri"])
    def test_rejected(self, uri):
        assert not is_redirectable(uri)


# ---------------------------------------------------------------------------
# Happy path and consent
# ---------------------------------------------------------------------------

class TestAuthorizeFlow:
    @pytest.mark.asyncio
    async def test_consent_required_first_time(self, authorizer, store):
        result = await authorizer.process(_request(), ALICE)
        assert result.action is AuthorizeAction.CONSENT
        assert result.client_name == "Web App"
        assert result.scopes == ["openid", "profile"]
        assert result.state == "xyz"
        assert result.redirect_uri is None
        assert await store.authorization_codes.find(lambda ac: True) == []

    @pytest.mark.asyncio
    async def test_redirect_with_prior_consent(self, authorizer, consent, store):
        await consent.grant_consent(ALICE, WEBAPP, ["openid", "profile", "email"])
        result = await authorizer.process(_request(), ALICE)

        assert result.action is AuthorizeAction.REDIRECT
        assert result.redirect_uri.startswith(WEBAPP_CALLBACK + "?")
        query = query_of(result.redirect_uri)
        assert query["state"] == "xyz"
        saved = await store.authorization_codes.first(lambda ac: ac.code == query["code"])
        assert saved is not None
        assert saved.user_id == ALICE
        assert saved.scopes == "openid profile"

    @pytest.mark.asyncio
    async def test_state_is_escaped(self, authorizer, consent):
        await consent.grant_consent(ALICE, WEBAPP, ["openid", "profile"])
        state = "a b&c=d/é"
        result = await authorizer.process(_request(state=state), ALICE)
        assert " " not in result.redirect_uri
        assert query_of(result.redirect_uri)["state"] == state

    @pytest.mark.asyncio
    async def test_no_state_means_no_state_param(self, authorizer, consent):
        await consent.grant_consent(ALICE, WEBAPP, ["openid", "profile"])
        result = await authorizer.process(_request(state=None), ALICE)
        assert "state" not in query_of(result.redirect_uri)

    @pytest.mark.asyncio
    async def test_client_without_consent_requirement(self, authorizer):
        result = await authorizer.process(
            _request(client_id="native", redirect_uri=NATIVE_CALLBACK), ALICE)
        assert result.action is AuthorizeAction.REDIRECT
        assert "code" in query_of(result.redirect_uri)

    @pytest.mark.asyncio
    async def test_approve_records_consent_and_issues_code(self, authorizer, consent):
        result = await authorizer.approve(_request(), ALICE)
        assert result.action is AuthorizeAction.REDIRECT
        assert await consent.has_consent(ALICE, WEBAPP, ["openid", "profile"])

        # The next request goes straight through.
        again = await authorizer.process(_request(scope="profile"), ALICE)
        assert again.action is AuthorizeAction.REDIRECT

    @pytest.mark.asyncio
    async def test_approve_keeps_no_consent_when_code_fails(self, authorizer, consent, store):
        with patch.object(store.authorization_codes, "add", side_effect=RuntimeError("db down")):
            with pytest.raises(OAuthError) as exc:
                await authorizer.approve(_request(), ALICE)
        assert exc.value.error is OAuthErrorCode.SERVER_ERROR
        assert not await consent.has_consent(ALICE, WEBAPP, ["openid", "profile"])
        assert await store.consents.find(lambda uc: True) == []
        assert await store.authorization_codes.find(lambda ac: True) == []

    @pytest.mark.asyncio
    async def test_deny_redirects_with_access_denied(self, authorizer, consent, store):
        result = await authorizer.deny(_request(), ALICE)
        assert result.action is AuthorizeAction.ERROR
        query = query_of(result.redirect_uri)
        assert query["error"] == "access_denied"
        assert query["state"] == "xyz"
        assert not await consent.has_consent(ALICE, WEBAPP, ["openid"])
        assert await store.authorization_codes.find(lambda ac: True) == []


# ---------------------------------------------------------------------------
# Gate order and error delivery
# ---------------------------------------------------------------------------

class TestAuthorizeErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides,expected", [
        ({"response_type": None}, "invalid_request"),
        ({"response_type": "token"}, "unsupported_response_type"),
        ({"response_type": "CODE"}, "unsupported_response_type"),
        ({"client_id": None}, "invalid_request"),
        ({"client_id": "nope"}, "unauthorized_client"),
        ({"scope": None}, "invalid_scope"),
        ({"scope": "openid bogus"}, "invalid_scope"),
        ({"scope": "openid phone"}, "invalid_scope"),
    ])
    async def test_error_redirect(self, authorizer, overrides, expected):
        result = await authorizer.process(_request(**overrides), ALICE)
        assert result.action is AuthorizeAction.ERROR
        query = query_of(result.redirect_uri)
        assert result.redirect_uri.startswith(WEBAPP_CALLBACK + "?")
        assert query["error"] == expected
        assert query["error_description"]
        assert query["state"] == "xyz"

    @pytest.mark.asyncio
    async def test_first_failure_wins(self, authorizer):
        result = await authorizer.process(
            _request(response_type="token", client_id="nope", scope="bogus"), ALICE)
        assert query_of(result.redirect_uri)["error"] == "unsupported_response_type"

    @pytest.mark.asyncio
    async def test_missing_redirect_uri_raises(self, authorizer):
        with pytest.raises(OAuthError) as exc:
            await authorizer.process(_request(redirect_uri=None), ALICE)
        assert exc.value.error is OAuthErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_non_http_redirect_raises(self, authorizer):
        with pytest.raises(OAuthError) as exc:
            await authorizer.process(
                _request(client_id="native", redirect_uri=NATIVE_CALLBACK, scope="bogus"),
                ALICE)
        assert exc.value.error is OAuthErrorCode.INVALID_SCOPE

    @pytest.mark.asyncio
    async def test_unregistered_absolute_uri_still_gets_error_redirect(self, authorizer):
        other = "https://elsewhere.example.com/cb"
        result = await authorizer.process(_request(redirect_uri=other), ALICE)
        assert result.action is AuthorizeAction.ERROR
        assert result.redirect_uri.startswith(other)
        assert query_of(result.redirect_uri)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_persistence_failure_is_not_redirected(self, authorizer, store):
        with patch.object(store.authorization_codes, "add", side_effect=RuntimeError("db down")):
            with pytest.raises(OAuthError) as exc:
                await authorizer.process(
                    _request(client_id="native", redirect_uri=NATIVE_CALLBACK), ALICE)
        assert exc.value.error is OAuthErrorCode.SERVER_ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_server_error(self, authorizer, consent):
        with patch.object(consent, "has_consent", side_effect=RuntimeError("boom")):
            with pytest.raises(OAuthError) as exc:
                await authorizer.process(_request(), ALICE)
        assert exc.value.error is OAuthErrorCode.SERVER_ERROR


# ---------------------------------------------------------------------------
# PKCE capture
# ---------------------------------------------------------------------------

class TestAuthorizePkce:
    @pytest.mark.asyncio
    async def test_challenge_stored_with_method(self, authorizer, consent, store):
        await consent.grant_consent(ALICE, WEBAPP, ["openid", "profile"])
        result = await authorizer.process(
            _request(code_challenge="chal", code_challenge_method="s256"), ALICE)
        code = query_of(result.redirect_uri)["code"]
        saved = await store.authorization_codes.first(lambda ac: ac.code == code)
        assert saved.code_challenge == "chal"
        assert saved.code_challenge_method == "S256"

    @pytest.mark.asyncio
    async def test_method_defaults_to_plain(self, authorizer, consent, store):
        await consent.grant_consent(ALICE, WEBAPP, ["openid", "profile"])
        result = await authorizer.process(_request(code_challenge="chal"), ALICE)
        code = query_of(result.redirect_uri)["code"]
        saved = await store.authorization_codes.first(lambda ac: ac.code == code)
        assert saved.code_challenge_method == "plain"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"code_challenge_method": "S256"},
        {"code_challenge": "chal", "code_challenge_method": "md5"},
    ])
    async def test_incoherent_parameters(self, authorizer, overrides):
        result = await authorizer.process(_request(**overrides), ALICE)
        assert query_of(result.redirect_uri)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_client_requiring_pkce(self, authorizer):
        result = await authorizer.process(
            _request(client_id="spa", redirect_uri=SPA_CALLBACK), ALICE)
        assert query_of(result.redirect_uri)["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_client_rejecting_plain(self, authorizer):
        result = await authorizer.process(
            _request(client_id="spa", redirect_uri=SPA_CALLBACK,
                     code_challenge="chal", code_challenge_method="plain"), ALICE)
        assert query_of(result.redirect_uri)["error"] == "invalid_request"

"""Tests for the OIDC client against an in-process provider."""

from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from src.config.settings import OidcProviderConfig
from src.features.oidc.client import OidcClient, constant_time_equals, create_code_challenge
from src.features.oidc.exceptions import (
    OidcAuthenticationException,
    OidcUnavailableException,
    OidcValidationException,
)

STATE = "state-1"
NONCE = "nonce-1"


def query_params(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def authorize(oidc_client, oidc_provider, state=STATE, nonce=NONCE):
    authorization = oidc_client.generate_authorization_url(state, nonce)
    code = oidc_provider.authorize(authorization.url)
    return authorization, code


async def exchange(oidc_client, authorization, code, received_state=STATE):
    return await oidc_client.exchange_code_for_tokens(
        code,
        authorization.code_verifier,
        expected_state=authorization.state,
        expected_nonce=authorization.nonce,
        received_state=received_state,
    )


class TestPkce:
    def test_code_challenge_matches_reference_vector(self):
        verifier = "dBjftJeZ4CVP-mJ0kjIZFD4TwuBDjVSDtmWN4E7hVK0"
        assert create_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    @pytest.mark.parametrize(
        ("left", "right", "expected"),
        [("abc", "abc", True), ("abc", "abd", False), (None, "abc", False), ("abc", None, False), (None, None, False)],
    )
    def test_constant_time_equals(self, left, right, expected):
        assert constant_time_equals(left, right) is expected


class TestDiscovery:
    async def test_discovery_loads_metadata(self, oidc_client, oidc_provider):
        assert oidc_client.is_available() is True
        assert oidc_client.metadata["issuer"] == oidc_provider.issuer
        assert oidc_client.metadata["token_endpoint"] == f"{oidc_provider.issuer}/token"

    async def test_unreachable_provider(self, oidc_provider, clock):
        oidc_provider.down = True
        async with oidc_provider.http_client() as http_client:
            client = OidcClient(oidc_provider.config, http_client, clock)

            with pytest.raises(OidcUnavailableException):
                await client.discover()
            assert client.is_available() is False

    async def test_issuer_mismatch_rejected(self, oidc_provider, clock):
        config = OidcProviderConfig(
            issuer_url="https://impostor.example.com",
            client_id=oidc_provider.client_id,
            client_secret=oidc_provider.client_secret,
            redirect_uri=oidc_provider.redirect_uri,
        )
        async with oidc_provider.http_client() as http_client:
            client = OidcClient(config, http_client, clock)

            with pytest.raises(OidcUnavailableException):
                await client.discover()

    async def test_incomplete_metadata_rejected(self, oidc_provider, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"issuer": oidc_provider.issuer})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = OidcClient(oidc_provider.config, http_client, clock)

            with pytest.raises(OidcUnavailableException):
                await client.discover()

    async def test_unconfigured_client_is_unavailable(self):
        async with httpx.AsyncClient() as http_client:
            client = OidcClient(None, http_client)

            assert client.is_available() is False
            assert client.generate_logout_url() is None
            with pytest.raises(OidcUnavailableException):
                await client.discover()
            with pytest.raises(OidcUnavailableException):
                client.generate_authorization_url(STATE, NONCE)

    async def test_refresh_keeps_cached_metadata_when_provider_down(self, oidc_client, oidc_provider):
        oidc_provider.down = True

        assert await oidc_client.refresh_metadata() is False
        assert oidc_client.is_available() is True

    async def test_refresh_recovers_after_failed_startup(self, oidc_provider, clock):
        oidc_provider.down = True
        async with oidc_provider.http_client() as http_client:
            client = OidcClient(oidc_provider.config, http_client, clock)
            assert await client.refresh_metadata() is False

            oidc_provider.down = False
            assert await client.refresh_metadata() is True
            assert client.is_available() is True


class TestAuthorizationUrl:
    def test_contains_pkce_and_request_parameters(self, oidc_client, oidc_provider):
        authorization = oidc_client.generate_authorization_url(STATE, NONCE)
        params = query_params(authorization.url)

        assert authorization.url.startswith(f"{oidc_provider.issuer}/authorize?")
        assert params["response_type"] == "code"
        assert params["client_id"] == oidc_provider.client_id
        assert params["redirect_uri"] == oidc_provider.redirect_uri
        assert "openid" in params["scope"].split()
        assert params["state"] == STATE
        assert params["nonce"] == NONCE
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == create_code_challenge(authorization.code_verifier)

    def test_fresh_verifier_each_time(self, oidc_client):
        first = oidc_client.generate_authorization_url(STATE, NONCE)
        second = oidc_client.generate_authorization_url(STATE, NONCE)

        assert first.code_verifier != second.code_verifier
        assert 43 <= len(first.code_verifier) <= 128


class TestCodeExchange:
    async def test_exchange_returns_validated_tokens(self, oidc_client, oidc_provider, clock):
        authorization, code = authorize(oidc_client, oidc_provider)

        token_set = await exchange(oidc_client, authorization, code)

        assert token_set.access_token in oidc_provider.issued_access_tokens
        assert token_set.id_token_claims["sub"] == "provider-user-1"
        assert token_set.id_token_claims["nonce"] == NONCE
        assert token_set.refresh_token
        assert token_set.expires_at == clock.now() + timedelta(seconds=3600)

    async def test_sends_verifier_and_client_credentials(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)

        await exchange(oidc_client, authorization, code)

        form = oidc_provider.token_requests[-1]
        assert form["grant_type"] == "authorization_code"
        assert form["code_verifier"] == authorization.code_verifier
        assert form["client_secret"] == oidc_provider.client_secret

    @pytest.mark.parametrize("received_state", ["other-state", "", None])
    async def test_state_mismatch_rejected_before_network(self, oidc_client, oidc_provider, received_state):
        authorization, code = authorize(oidc_client, oidc_provider)

        with pytest.raises(OidcValidationException):
            await exchange(oidc_client, authorization, code, received_state=received_state)

        assert oidc_provider.token_requests == []

    async def test_wrong_verifier_rejected(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)

        with pytest.raises(OidcValidationException):
            await oidc_client.exchange_code_for_tokens(
                code, "x" * 64, expected_state=STATE, expected_nonce=NONCE, received_state=STATE
            )

    async def test_code_is_single_use(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        await exchange(oidc_client, authorization, code)

        with pytest.raises(OidcValidationException):
            await exchange(oidc_client, authorization, code)

    async def test_provider_error_rejected(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        oidc_provider.token_error = "invalid_grant"

        with pytest.raises(OidcValidationException, match="invalid_grant"):
            await exchange(oidc_client, authorization, code)

    async def test_provider_down_during_exchange(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        oidc_provider.down = True

        with pytest.raises(OidcUnavailableException):
            await exchange(oidc_client, authorization, code)

    async def test_nonce_mismatch_rejected(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        oidc_provider.id_token_overrides = {"nonce": "replayed-nonce"}

        with pytest.raises(OidcValidationException):
            await exchange(oidc_client, authorization, code)


class TestIdTokenValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "another-client"},
            {"iss": "https://impostor.example.com"},
        ],
    )
    async def test_wrong_audience_or_issuer(self, oidc_client, oidc_provider, overrides):
        authorization, code = authorize(oidc_client, oidc_provider)
        oidc_provider.id_token_overrides = overrides

        with pytest.raises(OidcAuthenticationException):
            await exchange(oidc_client, authorization, code)

    async def test_expired_id_token(self, oidc_client, oidc_provider, clock):
        authorization, code = authorize(oidc_client, oidc_provider)
        now = int(clock.now().timestamp())
        oidc_provider.id_token_overrides = {"iat": now - 600, "exp": now - 120}

        with pytest.raises(OidcAuthenticationException):
            await exchange(oidc_client, authorization, code)

    async def test_expiry_within_leeway_accepted(self, oidc_client, oidc_provider, clock):
        authorization, code = authorize(oidc_client, oidc_provider)
        now = int(clock.now().timestamp())
        oidc_provider.id_token_overrides = {"iat": now - 600, "exp": now - 30}

        token_set = await exchange(oidc_client, authorization, code)

        assert token_set.id_token_claims["exp"] == now - 30

    async def test_issued_in_the_future(self, oidc_client, oidc_provider, clock):
        authorization, code = authorize(oidc_client, oidc_provider)
        now = int(clock.now().timestamp())
        oidc_provider.id_token_overrides = {"iat": now + 600, "exp": now + 900}

        with pytest.raises(OidcAuthenticationException):
            await exchange(oidc_client, authorization, code)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"exp": "tomorrow"},
            {"iat": "a while ago"},
            {"exp": [1]},
        ],
    )
    async def test_non_numeric_time_claims(self, oidc_client, oidc_provider, overrides):
        authorization, code = authorize(oidc_client, oidc_provider)
        oidc_provider.id_token_overrides = overrides

        with pytest.raises(OidcAuthenticationException):
            await exchange(oidc_client, authorization, code)

    async def test_signed_with_unpublished_key(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        oidc_provider.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        with pytest.raises(OidcAuthenticationException):
            await exchange(oidc_client, authorization, code)

    async def test_unknown_key_id(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        oidc_provider.key_id = "rotated-key"

        with pytest.raises(OidcAuthenticationException):
            await exchange(oidc_client, authorization, code)


class TestUserInfo:
    async def test_returns_profile(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        token_set = await exchange(oidc_client, authorization, code)

        info = await oidc_client.get_user_info(token_set.access_token)

        assert info.sub == "provider-user-1"
        assert info.email == "federated@example.com"
        assert info.email_verified is True
        assert info.name == "Federated User"

    async def test_rejected_access_token(self, oidc_client):
        with pytest.raises(OidcAuthenticationException):
            await oidc_client.get_user_info("not-issued")

    async def test_missing_subject(self, oidc_client, oidc_provider):
        authorization, code = authorize(oidc_client, oidc_provider)
        token_set = await exchange(oidc_client, authorization, code)
        del oidc_provider.userinfo["sub"]

        with pytest.raises(OidcAuthenticationException):
            await oidc_client.get_user_info(token_set.access_token)


class TestRefreshTokens:
    async def test_rotated_refresh_token_returned(self, oidc_client, oidc_provider):
        token_set = await oidc_client.refresh_tokens("provider-refresh-original")

        assert token_set.access_token in oidc_provider.issued_access_tokens
        assert token_set.refresh_token != "provider-refresh-original"
        assert oidc_provider.token_requests[-1]["grant_type"] == "refresh_token"

    async def test_original_refresh_token_kept_when_not_rotated(self, oidc_client, oidc_provider):
        oidc_provider.rotate_refresh_tokens = False

        token_set = await oidc_client.refresh_tokens("provider-refresh-original")

        assert token_set.refresh_token == "provider-refresh-original"

    async def test_rejected_refresh_token(self, oidc_client, oidc_provider):
        oidc_provider.token_error = "invalid_grant"

        with pytest.raises(OidcValidationException):
            await oidc_client.refresh_tokens("revoked")


class TestLogoutUrl:
    def test_bare_endpoint_without_hints(self, oidc_client, oidc_provider):
        assert oidc_client.generate_logout_url() == f"{oidc_provider.issuer}/logout"

    def test_includes_hints(self, oidc_client, oidc_provider):
        url = oidc_client.generate_logout_url("id-token-value", "https://app.example.com/bye")
        params = query_params(url)

        assert url.startswith(f"{oidc_provider.issuer}/logout?")
        assert params == {"id_token_hint": "id-token-value", "post_logout_redirect_uri": "https://app.example.com/bye"}

    async def test_none_without_end_session_endpoint(self, oidc_provider, clock):
        oidc_provider.end_session_endpoint = None
        async with oidc_provider.http_client() as http_client:
            client = OidcClient(oidc_provider.config, http_client, clock)
            await client.discover()

            assert client.generate_logout_url("id-token-value") is None

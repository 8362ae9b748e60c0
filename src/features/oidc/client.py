"""OpenID Connect client (authorization code flow with PKCE).

The client talks to the provider through an injected ``httpx.AsyncClient`` so
tests can plug in ``httpx.MockTransport``. Provider metadata and signing keys
are fetched once by ``discover()`` and cached; ``refresh_metadata()`` re-fetches
them and keeps the previous copy when the provider is unreachable.
"""

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

import httpx
import jwt
from jwt import PyJWKSet
from jwt.exceptions import PyJWKSetError

from src.config.settings import OidcProviderConfig
from src.shared.clock import Clock, SystemClock

from .exceptions import OidcAuthenticationException, OidcUnavailableException, OidcValidationException

logger = logging.getLogger(__name__)

REQUIRED_METADATA = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")
HMAC_ALGORITHMS = {"HS256", "HS384", "HS512"}
ASYMMETRIC_ALGORITHMS = {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"}


@dataclass(frozen=True)
class AuthorizationUrl:
    """Provider authorization URL plus the secrets bound to it."""

    url: str
    code_verifier: str
    state: str
    nonce: str


@dataclass(frozen=True)
class TokenSet:
    """Tokens returned by the provider token endpoint."""

    access_token: str
    token_type: str = "Bearer"
    id_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    id_token_claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OidcUserInfo:
    """Normalized userinfo profile."""

    sub: str
    email: str | None = None
    email_verified: bool = False
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture: str | None = None


def create_code_challenge(code_verifier: str) -> str:
    """Derive the S256 PKCE challenge for a verifier (RFC 7636)."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def constant_time_equals(left: str | None, right: str | None) -> bool:
    if left is None or right is None:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class OidcClient:
    """Client for a single OpenID Connect provider.

    Constructed with ``config=None`` the client is permanently unavailable,
    which disables the OIDC login path without raising at startup.
    """

    def __init__(
        self,
        config: OidcProviderConfig | None,
        http_client: httpx.AsyncClient,
        clock: Clock | None = None,
        leeway_seconds: int = 60,
    ) -> None:
        self._config = config
        self._http = http_client
        self._clock = clock or SystemClock()
        self._leeway = leeway_seconds
        self._metadata: dict[str, Any] | None = None
        self._jwks: PyJWKSet | None = None

    @property
    def config(self) -> OidcProviderConfig | None:
        return self._config

    @property
    def metadata(self) -> dict[str, Any] | None:
        return self._metadata

    def is_available(self) -> bool:
        """Whether OIDC is configured and discovery has succeeded."""
        return self._config is not None and self._metadata is not None

    async def discover(self) -> None:
        """Fetch provider metadata and signing keys.

        Raises:
            OidcUnavailableException: If OIDC is not configured, or the provider
                is unreachable or returns unusable metadata.

        """
        if self._config is None:
            raise OidcUnavailableException("OIDC is not configured")

        discovery_url = f"{self._config.issuer_url}/.well-known/openid-configuration"
        metadata = await self._get_json(discovery_url)

        missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
        if missing:
            logger.error(f"OIDC discovery document is missing {', '.join(missing)}")
            raise OidcUnavailableException("OIDC provider metadata is incomplete")

        if metadata["issuer"].rstrip("/") != self._config.issuer_url:
            logger.error(f"OIDC issuer mismatch: configured {self._config.issuer_url}, got {metadata['issuer']}")
            raise OidcUnavailableException("OIDC provider issuer does not match configuration")

        jwks_document = await self._get_json(metadata["jwks_uri"])
        try:
            jwks: PyJWKSet | None = PyJWKSet.from_dict(jwks_document)
        except PyJWKSetError as e:
            # HS*-signed ID tokens do not need a key set
            logger.warning(f"OIDC provider published no usable signing keys: {e}")
            jwks = None

        self._metadata = metadata
        self._jwks = jwks
        logger.info(f"OIDC discovery completed for {metadata['issuer']}")

    async def refresh_metadata(self) -> bool:
        """Re-run discovery, keeping cached metadata if the provider is unreachable.

        Returns:
            True if fresh metadata was loaded, False otherwise

        """
        try:
            await self.discover()
        except OidcUnavailableException as e:
            if self._metadata is not None:
                logger.warning(f"OIDC metadata refresh failed, keeping cached metadata: {e.detail}")
            else:
                logger.warning(f"OIDC metadata refresh failed: {e.detail}")
            return False
        return True

    def generate_authorization_url(self, state: str, nonce: str) -> AuthorizationUrl:
        """Build the provider authorization URL with a fresh PKCE verifier."""
        config, metadata = self._require_available()

        code_verifier = secrets.token_urlsafe(64)
        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": config.scope,
            "state": state,
            "nonce": nonce,
            "code_challenge": create_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        url = httpx.URL(metadata["authorization_endpoint"]).copy_merge_params(params)

        return AuthorizationUrl(url=str(url), code_verifier=code_verifier, state=state, nonce=nonce)

    async def exchange_code_for_tokens(
        self,
        code: str,
        code_verifier: str,
        expected_state: str,
        expected_nonce: str,
        received_state: str | None,
    ) -> TokenSet:
        """Exchange an authorization code for tokens and validate the ID token.

        Raises:
            OidcValidationException: On state or nonce mismatch, or when the
                provider rejects the code.
            OidcAuthenticationException: When the ID token fails validation.
            OidcUnavailableException: When the provider cannot be reached.

        """
        if not constant_time_equals(received_state, expected_state):
            logger.warning("OIDC callback state does not match the authorization request")
            raise OidcValidationException("State mismatch")

        config, _ = self._require_available()
        payload = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config.redirect_uri,
                "code_verifier": code_verifier,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            }
        )
        token_set = self._build_token_set(payload)

        if not token_set.id_token:
            raise OidcAuthenticationException("Provider did not return an ID token")

        claims = self._validate_id_token(token_set.id_token)
        if not constant_time_equals(claims.get("nonce"), expected_nonce):
            logger.warning("OIDC ID token nonce does not match the authorization request")
            raise OidcValidationException("Nonce mismatch")

        return replace(token_set, id_token_claims=claims)

    async def get_user_info(self, access_token: str) -> OidcUserInfo:
        """Fetch the userinfo profile for a provider access token."""
        _, metadata = self._require_available()

        endpoint = metadata.get("userinfo_endpoint")
        if not endpoint:
            raise OidcUnavailableException("OIDC provider has no userinfo endpoint")

        try:
            response = await self._http.get(endpoint, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            logger.error(f"OIDC userinfo request failed: {e!r}")
            raise OidcUnavailableException("OIDC provider is unreachable") from e

        if response.status_code == 401:
            raise OidcAuthenticationException("Provider rejected the access token")
        if response.status_code >= 500:
            raise OidcUnavailableException("OIDC provider returned an error")
        if response.status_code >= 400:
            raise OidcValidationException("Userinfo request rejected")

        payload = self._parse_json(response)
        if not payload.get("sub"):
            raise OidcAuthenticationException("Userinfo response has no subject")

        return OidcUserInfo(
            sub=str(payload["sub"]),
            email=payload.get("email"),
            email_verified=payload.get("email_verified") in (True, "true"),
            name=payload.get("name"),
            given_name=payload.get("given_name"),
            family_name=payload.get("family_name"),
            picture=payload.get("picture"),
        )

    async def refresh_tokens(self, refresh_token: str) -> TokenSet:
        """Exchange a provider refresh token for a new token set.

        Providers that do not rotate refresh tokens omit it from the response;
        the original refresh token is carried over in that case.
        """
        config, _ = self._require_available()
        payload = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            }
        )
        token_set = self._build_token_set(payload)

        if token_set.id_token:
            token_set = replace(token_set, id_token_claims=self._validate_id_token(token_set.id_token))
        if not token_set.refresh_token:
            token_set = replace(token_set, refresh_token=refresh_token)

        return token_set

    def generate_logout_url(
        self, id_token_hint: str | None = None, post_logout_redirect_uri: str | None = None
    ) -> str | None:
        """Build the provider end-session URL.

        Returns:
            The logout URL, or None when OIDC is unavailable or the provider
            advertises no end_session_endpoint

        """
        if not self.is_available():
            return None

        endpoint = self._metadata.get("end_session_endpoint")
        if not endpoint:
            return None

        params = {}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        if post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = post_logout_redirect_uri
        if not params:
            return endpoint

        return str(httpx.URL(endpoint).copy_merge_params(params))

    def _require_available(self) -> tuple[OidcProviderConfig, dict[str, Any]]:
        if self._config is None or self._metadata is None:
            raise OidcUnavailableException()
        return self._config, self._metadata

    async def _get_json(self, url: str) -> dict[str, Any]:
        try:
            response = await self._http.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.error(f"OIDC request to {url} failed: {e!r}")
            raise OidcUnavailableException("OIDC provider is unreachable") from e

        if response.status_code >= 400:
            logger.error(f"OIDC request to {url} returned {response.status_code}")
            raise OidcUnavailableException("OIDC provider returned an error")

        return self._parse_json(response)

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        _, metadata = self._require_available()

        try:
            response = await self._http.post(
                metadata["token_endpoint"], data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            logger.error(f"OIDC token request failed: {e!r}")
            raise OidcUnavailableException("OIDC provider is unreachable") from e

        if response.status_code >= 500:
            logger.error(f"OIDC token endpoint returned {response.status_code}")
            raise OidcUnavailableException("OIDC provider returned an error")

        payload = self._parse_json(response)
        if response.status_code >= 400 or "error" in payload:
            error = payload.get("error", "invalid_request")
            logger.warning(f"OIDC token request rejected: {error}")
            raise OidcValidationException(f"Token request rejected: {error}")

        if not payload.get("access_token"):
            raise OidcAuthenticationException("Token response has no access token")

        return payload

    @staticmethod
    def _parse_json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise OidcUnavailableException("OIDC provider returned malformed JSON") from e
        if not isinstance(payload, dict):
            raise OidcUnavailableException("OIDC provider returned malformed JSON")
        return payload

    def _build_token_set(self, payload: dict[str, Any]) -> TokenSet:
        expires_at = None
        expires_in = payload.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = self._clock.now() + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                logger.warning("OIDC token response has a non-numeric expires_in")

        return TokenSet(
            access_token=payload["access_token"],
            token_type=payload.get("token_type", "Bearer"),
            id_token=payload.get("id_token"),
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            scope=payload.get("scope"),
        )

    def _validate_id_token(self, id_token: str) -> dict[str, Any]:
        """Verify ID token signature, issuer, audience and lifetime."""
        config, metadata = self._require_available()

        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise OidcAuthenticationException("Malformed ID token") from e

        algorithm = header.get("alg")
        if algorithm in HMAC_ALGORITHMS:
            key: Any = config.client_secret
        elif algorithm in ASYMMETRIC_ALGORITHMS:
            key = self._find_signing_key(header.get("kid"))
        else:
            raise OidcAuthenticationException("Unsupported ID token algorithm")

        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=[algorithm],
                audience=config.client_id,
                issuer=metadata["issuer"],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["iss", "sub", "aud", "exp", "iat"],
                },
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"OIDC ID token rejected: {e}")
            raise OidcAuthenticationException("ID token validation failed") from e

        try:
            expires_at = int(claims["exp"])
            issued_at = int(claims["iat"])
        except (TypeError, ValueError) as e:
            raise OidcAuthenticationException("ID token has malformed time claims") from e

        now = self._clock.now().timestamp()
        if expires_at + self._leeway < now:
            raise OidcAuthenticationException("ID token has expired")
        if issued_at - self._leeway > now:
            raise OidcAuthenticationException("ID token was issued in the future")

        return claims

    def _find_signing_key(self, kid: str | None) -> Any:
        if self._jwks is None:
            raise OidcAuthenticationException("No signing keys available")

        if kid is None:
            if len(self._jwks.keys) == 1:
                return self._jwks.keys[0].key
            raise OidcAuthenticationException("ID token has no key id")

        for jwk in self._jwks.keys:
            if jwk.key_id == kid:
                return jwk.key

        raise OidcAuthenticationException("Unknown ID token signing key")

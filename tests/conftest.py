"""Test configuration and fixtures.

Each test gets a fresh in-memory SQLite database:
1. An engine on a single shared connection (StaticPool) is created per test
2. The schema is created from the models with create_all
3. The same AsyncSession is used by the test and by the application through
   a dependency override, so rows created in a test are visible to endpoints

Time, QR rendering and the OIDC provider are replaced with deterministic fakes:
the provider is served through httpx.MockTransport.
"""

import base64
import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

from dotenv import load_dotenv

# Load test environment variables before the settings module is imported
load_dotenv(Path(__file__).parent.parent / ".env.test", override=True)

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.config.settings import OidcProviderConfig, settings  # noqa: E402
from src.database.base import Base  # noqa: E402
from src.database.dependencies import get_db_session  # noqa: E402
from src.features.auth.dependencies import build_auth_service, get_clock, get_qr_encoder  # noqa: E402
from src.features.oidc.client import OidcClient, create_code_challenge  # noqa: E402
from src.features.oidc.dependencies import get_oidc_client  # noqa: E402
from src.features.user.models import User, UserRole, UserStatus  # noqa: E402
from src.main import app  # noqa: E402
from src.shared.clock import FrozenClock  # noqa: E402

TEST_PASSWORD = "TestPass123!"
FIXED_NOW = datetime(2026, 3, 2, 9, 30, 0, tzinfo=UTC)

# RSA key generation is slow; one key serves the whole run
_PROVIDER_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeQrEncoder:
    """Deterministic QR encoder: embeds the text instead of rendering an image."""

    def encode(self, data: str) -> str:
        return "data:image/png;base64," + base64.b64encode(data.encode("utf-8")).decode("ascii")


class FakeOidcProvider:
    """In-process OpenID provider answering the requests OidcClient makes.

    authorize() plays the user's browser: it reads the authorization URL and
    registers a code bound to its nonce and PKCE challenge.
    """

    issuer = "https://idp.example.com"
    client_id = "dumbassets-client"
    client_secret = "provider-client-secret"
    redirect_uri = "http://localhost:3000/auth/oidc/callback"
    key_id = "test-key-1"

    def __init__(self, clock: FrozenClock) -> None:
        self.clock = clock
        self.private_key = _PROVIDER_KEY
        self.codes: dict[str, dict] = {}
        self.token_requests: list[dict[str, str]] = []
        self.issued_access_tokens: set[str] = set()
        self.userinfo = {
            "sub": "provider-user-1",
            "email": "federated@example.com",
            "email_verified": True,
            "name": "Federated User",
        }
        self.id_token_overrides: dict = {}
        self.end_session_endpoint: str | None = f"{self.issuer}/logout"
        self.rotate_refresh_tokens = True
        self.down = False
        self.token_error: str | None = None
        self._counter = 0

    @property
    def config(self) -> OidcProviderConfig:
        return OidcProviderConfig(
            issuer_url=self.issuer,
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
        )

    def discovery_document(self) -> dict:
        document = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "jwks_uri": f"{self.issuer}/jwks",
        }
        if self.end_session_endpoint:
            document["end_session_endpoint"] = self.end_session_endpoint
        return document

    def jwks(self) -> dict:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update({"kid": self.key_id, "use": "sig", "alg": "RS256"})
        return {"keys": [jwk]}

    def authorize(self, authorization_url: str, code: str | None = None) -> str:
        params = {k: v[0] for k, v in parse_qs(urlsplit(authorization_url).query).items()}
        self._counter += 1
        code = code or f"auth-code-{self._counter}"
        self.codes[code] = {
            "nonce": params["nonce"],
            "code_challenge": params["code_challenge"],
            "redirect_uri": params["redirect_uri"],
        }
        return code

    def make_id_token(self, nonce: str | None = None, key=None, kid: str | None = None, **overrides) -> str:
        now = int(self.clock.now().timestamp())
        claims = {
            "iss": self.issuer,
            "sub": self.userinfo["sub"],
            "aud": self.client_id,
            "iat": now,
            "exp": now + 300,
        }
        if nonce is not None:
            claims["nonce"] = nonce
        claims.update(self.id_token_overrides)
        claims.update(overrides)
        return jwt.encode(
            claims, key or self.private_key, algorithm="RS256", headers={"kid": kid or self.key_id}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("provider unreachable", request=request)

        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery_document())
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks())
        if path == "/token":
            return self._token(request)
        if path == "/userinfo":
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            if token not in self.issued_access_tokens:
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)

        if self.token_error:
            return httpx.Response(400, json={"error": self.token_error})
        if form.get("client_id") != self.client_id or form.get("client_secret") != self.client_secret:
            return httpx.Response(401, json={"error": "invalid_client"})

        self._counter += 1
        access_token = f"provider-access-{self._counter}"
        self.issued_access_tokens.add(access_token)

        if form.get("grant_type") == "authorization_code":
            pending = self.codes.pop(form.get("code", ""), None)
            if pending is None or create_code_challenge(form.get("code_verifier", "")) != pending["code_challenge"]:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": access_token,
                    "token_type": "Bearer",
                    "expires_in": 3600,
                    "id_token": self.make_id_token(nonce=pending["nonce"]),
                    "refresh_token": f"provider-refresh-{self._counter}",
                    "scope": "openid email profile",
                },
            )

        if form.get("grant_type") == "refresh_token":
            payload = {"access_token": access_token, "token_type": "Bearer", "expires_in": 3600}
            if self.rotate_refresh_tokens:
                payload["refresh_token"] = f"provider-refresh-{self._counter}"
            return httpx.Response(200, json=payload)

        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), timeout=5.0)


# Database Setup - Function Scope (Fresh Database Per Test)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as async_session:
        yield async_session


# Fakes


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def qr_encoder() -> FakeQrEncoder:
    return FakeQrEncoder()


@pytest.fixture
def oidc_provider(clock: FrozenClock) -> FakeOidcProvider:
    return FakeOidcProvider(clock)


@pytest_asyncio.fixture
async def oidc_client(oidc_provider: FakeOidcProvider, clock: FrozenClock) -> AsyncGenerator[OidcClient]:
    """OIDC client that already completed discovery against the fake provider."""
    http_client = oidc_provider.http_client()
    client = OidcClient(oidc_provider.config, http_client, clock)
    await client.discover()
    yield client
    await http_client.aclose()


@pytest_asyncio.fixture
async def auth_service(session, oidc_client, clock, qr_encoder):
    return build_auth_service(session, oidc_client, clock, qr_encoder, settings)


# FastAPI Client & Dependency Overrides


@pytest_asyncio.fixture(autouse=True)
async def override_dependencies(session: AsyncSession, clock: FrozenClock, qr_encoder: FakeQrEncoder):
    """Point the application at the test database, clock and QR encoder."""

    async def _get_test_session():
        yield session

    app.dependency_overrides[get_db_session] = _get_test_session
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_qr_encoder] = lambda: qr_encoder
    yield
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(oidc_client: OidcClient) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP test client (unauthenticated) wired to the fake OIDC provider."""
    app.dependency_overrides[get_oidc_client] = lambda: oidc_client
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def disabled_oidc(client: AsyncClient):
    """Replace the OIDC client with one that has no configuration."""
    http_client = httpx.AsyncClient()
    disabled = OidcClient(None, http_client)
    app.dependency_overrides[get_oidc_client] = lambda: disabled
    yield disabled
    await http_client.aclose()


# Test User Factories


@pytest_asyncio.fixture
async def make_user(session: AsyncSession):
    """Factory fixture to create test users with custom fields.

    Usage:
        user = await make_user()                                   # defaults
        user = await make_user(totp_secret=secret, totp_enabled=True)
        oidc_only = await make_user(password=None, oidc_subject="sub-1")
    """
    counter = 0

    async def _factory(
        email=None,
        password=TEST_PASSWORD,
        full_name="Test User",
        role=UserRole.MEMBER,
        status=UserStatus.ACTIVE,
        **kwargs,
    ) -> User:
        nonlocal counter
        counter += 1

        if email is None:
            email = f"testuser{counter}@example.com"

        user = User(
            email=User.normalize_email(email),
            full_name=full_name,
            hashed_password=User.hash_password(password) if password is not None else None,
            role=role.value,
            status=status.value,
            **kwargs,
        )

        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user

    yield _factory


@pytest_asyncio.fixture
async def login_headers(auth_service, session):
    """Log a user in through the service and return bearer headers plus the session."""

    async def _login(user: User, password: str = TEST_PASSWORD, totp_code: str | None = None):
        result = await auth_service.login(user.email, password, totp_code)
        await session.commit()
        assert result.session is not None
        return {"Authorization": f"Bearer {result.session.access_token}"}, result.session

    return _login

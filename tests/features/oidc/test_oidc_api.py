"""HTTP tests for the /oidc endpoints."""

from fastapi import status
from sqlalchemy import select

from src.config.settings import settings
from src.features.user.models import User

OIDC = f"{settings.api_prefix}/oidc"


async def start_login(client, oidc_provider):
    response = await client.post(f"{OIDC}/login")
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    code = oidc_provider.authorize(body["redirect_url"])
    return body["request_state"], code


class TestAvailability:
    async def test_available(self, client):
        response = await client.get(f"{OIDC}/available")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"available": True}

    async def test_unavailable_when_not_configured(self, client, disabled_oidc):
        response = await client.get(f"{OIDC}/available")

        assert response.json() == {"available": False}


class TestLoginFlow:
    async def test_login_sets_request_cookie(self, client, oidc_provider):
        response = await client.post(f"{OIDC}/login")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["redirect_url"].startswith(f"{oidc_provider.issuer}/authorize?")
        assert client.cookies.get("oidc_request") == body["request_state"]

    async def test_callback_with_cookie_issues_session(self, client, oidc_provider, session):
        request_state, code = await start_login(client, oidc_provider)

        response = await client.post(f"{OIDC}/callback", json={"code": code, "state": request_state})

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["access_token"] and body["refresh_token"]
        assert body["id_token"]
        assert body["provider_refresh_token"]
        user = (await session.execute(select(User).where(User.email == "federated@example.com"))).scalar_one()
        assert user.oidc_subject == "provider-user-1"

        me = await client.get(
            f"{settings.api_prefix}/users/me", headers={"Authorization": f"Bearer {body['access_token']}"}
        )
        assert me.json()["has_local_password"] is False
        assert me.json()["oidc_linked"] is True

    async def test_callback_with_explicit_request_state(self, client, oidc_provider):
        request_state, code = await start_login(client, oidc_provider)
        client.cookies.clear()

        response = await client.post(
            f"{OIDC}/callback", json={"code": code, "state": request_state, "request_state": request_state}
        )

        assert response.status_code == status.HTTP_200_OK

    async def test_callback_replay_rejected(self, client, oidc_provider):
        request_state, code = await start_login(client, oidc_provider)
        payload = {"code": code, "state": request_state, "request_state": request_state}
        await client.post(f"{OIDC}/callback", json=payload)

        response = await client.post(f"{OIDC}/callback", json=payload)

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_state_mismatch_rejected(self, client, oidc_provider):
        request_state, code = await start_login(client, oidc_provider)

        response = await client.post(f"{OIDC}/callback", json={"code": code, "state": "forged"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert oidc_provider.token_requests == []

    async def test_callback_without_request_state(self, client, oidc_provider):
        response = await client.post(f"{OIDC}/callback", json={"code": "abc", "state": "abc"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_provider_error(self, client, oidc_provider):
        request_state, _ = await start_login(client, oidc_provider)

        response = await client.post(
            f"{OIDC}/callback",
            json={"state": request_state, "error": "access_denied", "error_description": "User cancelled"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_unverified_email_cannot_link(self, client, oidc_provider, make_user):
        await make_user(email="federated@example.com")
        oidc_provider.userinfo["email_verified"] = False
        request_state, code = await start_login(client, oidc_provider)

        response = await client.post(f"{OIDC}/callback", json={"code": code, "state": request_state})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_login_disabled(self, client, disabled_oidc):
        response = await client.post(f"{OIDC}/login")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_callback_disabled(self, client, disabled_oidc):
        response = await client.post(f"{OIDC}/callback", json={"code": "abc", "state": "abc", "request_state": "abc"})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestProviderTokens:
    async def test_refresh(self, client, make_user, login_headers):
        headers, _ = await login_headers(await make_user())

        response = await client.post(f"{OIDC}/refresh", headers=headers, json={"refresh_token": "provider-refresh-1"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["access_token"]

    async def test_refresh_requires_session(self, client):
        response = await client.post(f"{OIDC}/refresh", json={"refresh_token": "provider-refresh-1"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_refresh_disabled(self, client, make_user, login_headers, disabled_oidc):
        headers, _ = await login_headers(await make_user())

        response = await client.post(f"{OIDC}/refresh", headers=headers, json={"refresh_token": "provider-refresh-1"})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestLogout:
    async def test_logout_returns_provider_url_and_revokes(self, client, make_user, login_headers, oidc_provider):
        headers, _ = await login_headers(await make_user())

        response = await client.post(
            f"{OIDC}/logout",
            headers=headers,
            json={"id_token_hint": "id-token-value", "post_logout_redirect_uri": "https://app.example.com/"},
        )

        assert response.status_code == status.HTTP_200_OK
        logout_url = response.json()["logout_url"]
        assert logout_url.startswith(f"{oidc_provider.issuer}/logout?")
        assert "id_token_hint=id-token-value" in logout_url

        again = await client.post(f"{OIDC}/logout", headers=headers, json={})
        assert again.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_logout_without_end_session_endpoint(
        self, client, make_user, login_headers, oidc_provider, oidc_client
    ):
        oidc_provider.end_session_endpoint = None
        assert await oidc_client.refresh_metadata() is True
        headers, _ = await login_headers(await make_user())

        response = await client.post(f"{OIDC}/logout", headers=headers, json={})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["logout_url"] is None

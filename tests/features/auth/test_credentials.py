"""Tests for local email/password verification."""

import pytest

from src.features.auth.credentials import CredentialVerifier, Identity
from src.features.auth.exceptions import InvalidCredentialsException
from src.features.auth.stores import SqlIdentityStore
from src.features.user.models import UserRole, UserStatus

PASSWORD = "TestPass123!"


@pytest.fixture
def verifier(session):
    return CredentialVerifier(SqlIdentityStore(session))


class TestCredentialVerifier:
    async def test_returns_identity_of_owner(self, verifier, make_user):
        user = await make_user(email="user@test.com", role=UserRole.ADMIN)

        identity = await verifier.verify("user@test.com", PASSWORD)

        assert identity == Identity(user_id=user.id, email="user@test.com", role="admin", two_factor_enabled=False)

    async def test_email_is_case_insensitive(self, verifier, make_user):
        user = await make_user(email="mixed@example.com")

        identity = await verifier.verify("  MiXeD@Example.COM ", PASSWORD)

        assert identity.user_id == user.id

    async def test_wrong_password_rejected(self, verifier, make_user):
        await make_user(email="wrong@example.com")

        with pytest.raises(InvalidCredentialsException):
            await verifier.verify("wrong@example.com", "NotThePassword1!")

    async def test_unknown_email_rejected_with_same_error(self, verifier, make_user):
        await make_user(email="known@example.com")

        with pytest.raises(InvalidCredentialsException) as unknown:
            await verifier.verify("ghost@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsException) as wrong:
            await verifier.verify("known@example.com", "NotThePassword1!")

        assert unknown.value.detail == wrong.value.detail
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_account_without_local_password_rejected(self, verifier, make_user):
        await make_user(email="federated@example.com", password=None, oidc_subject="sub-123")

        with pytest.raises(InvalidCredentialsException):
            await verifier.verify("federated@example.com", PASSWORD)

    async def test_inactive_account_rejected(self, verifier, make_user):
        await make_user(email="inactive@example.com", status=UserStatus.INACTIVE)

        with pytest.raises(InvalidCredentialsException):
            await verifier.verify("inactive@example.com", PASSWORD)

    async def test_identity_reports_two_factor(self, verifier, make_user):
        await make_user(email="tfa@example.com", totp_secret="JBSWY3DPEHPK3PXP", totp_enabled=True)

        identity = await verifier.verify("tfa@example.com", PASSWORD)

        assert identity.two_factor_enabled is True

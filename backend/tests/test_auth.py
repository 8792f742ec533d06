# tests/test_auth.py — Authentication tests
import pytest
from httpx import AsyncClient

from auth import AuthService
from tests.conftest import get_auth_headers


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_success(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "newuser@example.com",
            "password": "SecurePass123!",
            "display_name": "New User",
        })
        assert res.status_code == 201
        data = res.json()
        assert "access_token" in data
        assert "refresh_token" not in data
        assert data["user"]["email"] == "newuser@example.com"
        assert data["user"]["role"] == "user"

    async def test_register_weak_password(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "weak@example.com",
            "password": "short",
        })
        assert res.status_code == 422

    async def test_register_duplicate_email(self, client: AsyncClient):
        await client.post("/api/v1/auth/register", json={
            "email": "dupe@example.com",
            "password": "SecurePass123!",
        })
        res = await client.post("/api/v1/auth/register", json={
            "email": "dupe@example.com",
            "password": "SecurePass123!",
        })
        assert res.status_code == 409

    async def test_register_invalid_email(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "not-an-email",
            "password": "SecurePass123!",
        })
        assert res.status_code == 422


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, operator_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "operator@itsm.dev",
            "password": "OperatorPass123!",
        })
        assert res.status_code == 200
        data = res.json()
        assert data["user"]["role"] == "operator"
        payload = AuthService.verify_token(data["access_token"])
        assert payload["sub"] == operator_user.id

    async def test_login_wrong_password(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@itsm.dev",
            "password": "WrongPassword123!",
        })
        assert res.status_code == 401

    async def test_login_nonexistent_user(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/login", json={
            "email": "nobody@example.com",
            "password": "SomePassword123!",
        })
        assert res.status_code == 401


@pytest.mark.asyncio
class TestTokens:
    async def test_me(self, client: AsyncClient, admin_user):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["role"] == "administrator"

    async def test_no_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code in (401, 403)

    async def test_invalid_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer invalid.token.here"})
        assert res.status_code == 401

    async def test_unknown_subject(self, client: AsyncClient):
        token = AuthService.create_access_token({"sub": "ghost", "role": "administrator"})
        res = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

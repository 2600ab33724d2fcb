# tests/test_auth.py — Registration, sessions, password flows
import re

import pytest
from sqlalchemy import select

from models import RefreshToken
from tests.conftest import get_auth_headers, make_user

REGISTER_URL = "/api/v1/auth/register"
LOGIN_URL = "/api/v1/auth/login"


async def _register(client, email="nueva@cumpliros.com.ar", password="Segura123"):
    return await client.post(REGISTER_URL, json={
        "email": email,
        "password": password,
        "fullName": "Nueva Usuaria",
    })


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_returns_token_pair(self, client):
        response = await _register(client, email="Nueva@CumpliRos.test")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["accessToken"]
        assert data["refreshToken"]
        assert data["tokenType"] == "Bearer"
        assert data["expiresIn"] == 15 * 60
        assert data["user"]["email"] == "nueva@cumpliros.com.ar"
        assert data["user"]["fullName"] == "Nueva Usuaria"

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, client):
        await _register(client)
        response = await _register(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_weak_password_lists_every_violation(self, client):
        response = await client.post(REGISTER_URL, json={"email": "not-an-email", "password": "short", "fullName": "X"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        fields = {d["field"] for d in body["error"]["details"]}
        assert {"email", "password", "fullName"} <= fields
        assert body["requestId"]

    @pytest.mark.asyncio
    async def test_password_requires_digit(self, client):
        response = await _register(client, password="SinNumeros")
        assert response.status_code == 400


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_success(self, client, owner_user):
        response = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "Password123"})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == owner_user.id

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, owner_user):
        response = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "Wrong1234"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_inactive_user_cannot_login(self, client, db_session, owner_user):
        owner_user.active = False
        await db_session.commit()
        response = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "Password123"})
        assert response.status_code == 401


class TestRefreshRotation:
    @pytest.mark.asyncio
    async def test_refresh_rotates_and_revokes_old_token(self, client):
        tokens = (await _register(client)).json()["data"]

        first = await client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert first.status_code == 200
        rotated = first.json()["data"]
        assert rotated["refreshToken"] != tokens["refreshToken"]

        replay = await client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert replay.status_code == 401

        again = await client.post("/api/v1/auth/refresh", json={"refreshToken": rotated["refreshToken"]})
        assert again.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_refresh_token(self, client):
        response = await client.post("/api/v1/auth/refresh", json={"refreshToken": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_only_hash_is_stored(self, client, db_session):
        tokens = (await _register(client)).json()["data"]
        stored = (await db_session.execute(select(RefreshToken.token_hash))).scalars().all()
        assert tokens["refreshToken"] not in stored
        assert all(len(h) == 64 for h in stored)


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_single_token(self, client):
        tokens = (await _register(client)).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}
        second = (await client.post(LOGIN_URL, json={"email": "nueva@cumpliros.com.ar", "password": "Segura123"})).json()["data"]

        response = await client.post("/api/v1/auth/logout", json={"refreshToken": tokens["refreshToken"]}, headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["success"] is True

        assert (await client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})).status_code == 401
        assert (await client.post("/api/v1/auth/refresh", json={"refreshToken": second["refreshToken"]})).status_code == 200

    @pytest.mark.asyncio
    async def test_logout_without_token_revokes_all(self, client):
        tokens = (await _register(client)).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}
        response = await client.post("/api/v1/auth/logout", headers=headers)
        assert response.status_code == 200
        assert (await client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})).status_code == 401

    @pytest.mark.asyncio
    async def test_logout_requires_auth(self, client):
        response = await client.post("/api/v1/auth/logout")
        assert response.status_code == 401


class TestPasswordReset:
    @pytest.mark.asyncio
    async def test_forgot_password_unknown_email_still_succeeds(self, client, mailer):
        response = await client.post("/api/v1/auth/forgot-password", json={"email": "nadie@cumpliros.com.ar"})
        assert response.status_code == 200
        assert response.json()["data"]["success"] is True
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_full_reset_flow(self, client, mailer, owner_user):
        response = await client.post("/api/v1/auth/forgot-password", json={"email": owner_user.email})
        assert response.status_code == 200

        [message] = mailer.to(owner_user.email)
        token = re.search(r"token=([0-9a-f]+)", message["html"]).group(1)

        reset = await client.post("/api/v1/auth/reset-password", json={"token": token, "newPassword": "NuevaClave1"})
        assert reset.status_code == 200

        reused = await client.post("/api/v1/auth/reset-password", json={"token": token, "newPassword": "OtraClave1"})
        assert reused.status_code == 400

        old = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "Password123"})
        assert old.status_code == 401
        new = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "NuevaClave1"})
        assert new.status_code == 200

    @pytest.mark.asyncio
    async def test_change_password(self, client, owner_user):
        headers = get_auth_headers(owner_user)
        bad = await client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": "Incorrecta1", "newPassword": "NuevaClave1"},
            headers=headers,
        )
        assert bad.status_code == 400

        good = await client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": "Password123", "newPassword": "NuevaClave1"},
            headers=headers,
        )
        assert good.status_code == 200
        login = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "NuevaClave1"})
        assert login.status_code == 200


class TestProfile:
    @pytest.mark.asyncio
    async def test_profile_lists_memberships(self, client, test_org, owner_user):
        response = await client.get("/api/v1/auth/profile", headers=get_auth_headers(owner_user))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == owner_user.email
        assert data["organizations"] == [{
            "organizationId": test_org.id,
            "name": test_org.name,
            "cuit": test_org.cuit,
            "role": "OWNER",
        }]

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get("/api/v1/auth/profile", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_inactive_user_token_rejected(self, client, db_session):
        user = await make_user(db_session, "baja@cumpliros.com.ar")
        headers = get_auth_headers(user)
        user.active = False
        await db_session.commit()
        response = await client.get("/api/v1/auth/profile", headers=headers)
        assert response.status_code == 401


class TestRateLimits:
    @pytest.mark.asyncio
    async def test_register_is_limited_per_client(self, client):
        for n in range(3):
            response = await _register(client, email=f"alta{n}@cumpliros.com.ar")
            assert response.status_code == 201

        blocked = await _register(client, email="alta3@cumpliros.com.ar")
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "TOO_MANY_REQUESTS"
        assert blocked.headers["Retry-After"] == "60"

    @pytest.mark.asyncio
    async def test_forgot_password_is_limited(self, client, mailer, owner_user):
        for _ in range(3):
            response = await client.post("/api/v1/auth/forgot-password", json={"email": owner_user.email})
            assert response.status_code == 200

        blocked = await client.post("/api/v1/auth/forgot-password", json={"email": owner_user.email})
        assert blocked.status_code == 429
        assert len(mailer.sent) == 3

    @pytest.mark.asyncio
    async def test_failed_logins_count_towards_the_limit(self, client, owner_user):
        for _ in range(5):
            response = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "Incorrecta1"})
            assert response.status_code == 401

        blocked = await client.post(LOGIN_URL, json={"email": owner_user.email, "password": "Password123"})
        assert blocked.status_code == 429

# tests/test_users.py — Current user profile
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


@pytest.mark.asyncio
async def test_get_me(client: AsyncClient, test_org, owner_user):
    resp = await client.get("/api/v1/users/me", headers=get_auth_headers(owner_user))
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["id"] == owner_user.id
    assert data["fullName"] == "Olga Owner"
    assert data["active"] is True
    assert [m["role"] for m in data["organizations"]] == ["OWNER"]


@pytest.mark.asyncio
async def test_get_me_without_organizations(client: AsyncClient, outsider_user):
    resp = await client.get("/api/v1/users/me", headers=get_auth_headers(outsider_user))
    assert resp.json()["data"]["organizations"] == []


@pytest.mark.asyncio
async def test_get_me_requires_auth(client: AsyncClient):
    resp = await client.get("/api/v1/users/me")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_update_name(client: AsyncClient, owner_user):
    headers = get_auth_headers(owner_user)
    resp = await client.patch("/api/v1/users/me", json={"fullName": "  Olga Propietaria "}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["fullName"] == "Olga Propietaria"

    again = await client.get("/api/v1/users/me", headers=headers)
    assert again.json()["data"]["fullName"] == "Olga Propietaria"


@pytest.mark.asyncio
async def test_update_name_too_short(client: AsyncClient, owner_user):
    resp = await client.patch("/api/v1/users/me", json={"fullName": "O"}, headers=get_auth_headers(owner_user))
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"][0]["field"] == "fullName"

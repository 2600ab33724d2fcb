# tests/test_jurisdictions.py — Jurisdiction registry
import pytest

from models import DEFAULT_JURISDICTION_ID
from tests.conftest import get_auth_headers

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}


class TestJurisdictions:
    @pytest.mark.asyncio
    async def test_default_is_created_on_demand(self, client):
        first = await client.get("/api/v1/jurisdictions/default")
        assert first.status_code == 200
        data = first.json()["data"]
        assert data["id"] == DEFAULT_JURISDICTION_ID
        assert data["code"] == "ar-sf-rosario"

        second = await client.get("/api/v1/jurisdictions/default")
        assert second.json()["data"]["id"] == DEFAULT_JURISDICTION_ID
        listed = await client.get("/api/v1/jurisdictions")
        assert listed.json()["meta"]["total"] == 1

    @pytest.mark.asyncio
    async def test_create_lowercases_code(self, client):
        response = await client.post(
            "/api/v1/jurisdictions",
            json={"code": "AR-SF-Santa-Fe", "name": "Santa Fe", "province": "Santa Fe"},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 201
        assert response.json()["data"]["code"] == "ar-sf-santa-fe"

        by_code = await client.get("/api/v1/jurisdictions/by-code/AR-SF-SANTA-FE")
        assert by_code.status_code == 200

    @pytest.mark.asyncio
    async def test_duplicate_code(self, client, jurisdiction):
        response = await client.post(
            "/api/v1/jurisdictions", json={"code": "ar-sf-rosario", "name": "Otra"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_bad_code_format(self, client):
        response = await client.post("/api/v1/jurisdictions", json={"code": "rosario", "name": "X"}, headers=ADMIN_HEADERS)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_writes_need_platform_admin(self, client, owner_user):
        body = {"code": "ar-ba-caba", "name": "CABA"}
        assert (await client.post("/api/v1/jurisdictions", json=body)).status_code == 401
        wrong_token = await client.post("/api/v1/jurisdictions", json=body, headers={"X-Admin-Token": "nope"})
        assert wrong_token.status_code == 401
        as_user = await client.post("/api/v1/jurisdictions", json=body, headers=get_auth_headers(owner_user))
        assert as_user.status_code == 403

    @pytest.mark.asyncio
    async def test_detail_counts(self, client, test_org):
        response = await client.get(f"/api/v1/jurisdictions/{DEFAULT_JURISDICTION_ID}")
        data = response.json()["data"]
        assert data["organizationCount"] == 1
        assert data["templateCount"] == 0

    @pytest.mark.asyncio
    async def test_deactivate_hides_from_public_list(self, client, jurisdiction):
        await client.delete(f"/api/v1/jurisdictions/{jurisdiction.id}", headers=ADMIN_HEADERS)

        public = await client.get("/api/v1/jurisdictions")
        assert public.json()["data"] == []
        everything = await client.get("/api/v1/jurisdictions/all", headers=ADMIN_HEADERS)
        assert everything.json()["data"][0]["isActive"] is False

    @pytest.mark.asyncio
    async def test_rename(self, client, jurisdiction):
        response = await client.patch(
            f"/api/v1/jurisdictions/{jurisdiction.id}", json={"name": "Rosario (ciudad)"}, headers=ADMIN_HEADERS
        )
        assert response.json()["data"]["name"] == "Rosario (ciudad)"

    @pytest.mark.asyncio
    async def test_unknown(self, client):
        assert (await client.get("/api/v1/jurisdictions/missing")).status_code == 404

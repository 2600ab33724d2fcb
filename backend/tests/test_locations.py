# tests/test_locations.py — Premises CRUD and soft deactivation
import pytest

from tests.conftest import get_auth_headers, make_obligation, org_url


async def _create(client, org, user, name="Local Centro", **extra):
    return await client.post(
        org_url(org, "/locations"),
        json={"name": name, "address": "Córdoba 1234", "rubric": "Gastronomía", **extra},
        headers=get_auth_headers(user),
    )


class TestCreateLocation:
    @pytest.mark.asyncio
    async def test_admin_creates(self, client, test_org, admin_user):
        response = await _create(client, test_org, admin_user)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["name"] == "Local Centro"
        assert data["organizationId"] == test_org.id
        assert data["active"] is True

    @pytest.mark.asyncio
    async def test_manager_cannot_create(self, client, test_org, manager_user):
        response = await _create(client, test_org, manager_user)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_duplicate_active_name(self, client, test_org, owner_user):
        await _create(client, test_org, owner_user)
        response = await _create(client, test_org, owner_user, name="  Local Centro ")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_name_reusable_after_deactivation(self, client, test_org, owner_user):
        first = (await _create(client, test_org, owner_user)).json()["data"]
        await client.delete(org_url(test_org, f"/locations/{first['id']}"), headers=get_auth_headers(owner_user))
        response = await _create(client, test_org, owner_user)
        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, client, test_org, owner_user):
        response = await _create(client, test_org, owner_user, name="")
        assert response.status_code == 400


class TestListLocations:
    @pytest.mark.asyncio
    async def test_paginated_and_sorted_by_name(self, client, test_org, owner_user, manager_user):
        for name in ("Sucursal Norte", "Local Centro", "Depósito"):
            await _create(client, test_org, owner_user, name=name)

        response = await client.get(
            org_url(test_org, "/locations"), params={"limit": 2}, headers=get_auth_headers(manager_user)
        )
        assert response.status_code == 200
        body = response.json()
        assert [loc["name"] for loc in body["data"]] == ["Depósito", "Local Centro"]
        assert body["meta"] == {
            "total": 3,
            "page": 1,
            "limit": 2,
            "totalPages": 2,
            "hasNextPage": True,
            "hasPreviousPage": False,
        }

    @pytest.mark.asyncio
    async def test_inactive_hidden_unless_requested(self, client, test_org, owner_user):
        location = (await _create(client, test_org, owner_user)).json()["data"]
        await client.delete(org_url(test_org, f"/locations/{location['id']}"), headers=get_auth_headers(owner_user))

        default = await client.get(org_url(test_org, "/locations"), headers=get_auth_headers(owner_user))
        assert default.json()["data"] == []

        everything = await client.get(
            org_url(test_org, "/locations"), params={"includeInactive": "true"}, headers=get_auth_headers(owner_user)
        )
        [inactive] = everything.json()["data"]
        assert inactive["active"] is False

    @pytest.mark.asyncio
    async def test_outsider_forbidden(self, client, test_org, outsider_user):
        response = await client.get(org_url(test_org, "/locations"), headers=get_auth_headers(outsider_user))
        assert response.status_code == 403


class TestLocationDetail:
    @pytest.mark.asyncio
    async def test_detail_counts_obligations(self, client, db_session, test_org, owner_user):
        location = (await _create(client, test_org, owner_user)).json()["data"]
        await make_obligation(db_session, test_org, owner_user, location_id=location["id"])
        await make_obligation(db_session, test_org, owner_user, location_id=location["id"])
        await make_obligation(db_session, test_org, owner_user)

        response = await client.get(
            org_url(test_org, f"/locations/{location['id']}"), headers=get_auth_headers(owner_user)
        )
        assert response.status_code == 200
        assert response.json()["data"]["obligationCount"] == 2

    @pytest.mark.asyncio
    async def test_other_org_location_not_found(self, client, test_org, owner_user, outsider_user):
        other_org = (await client.post(
            "/api/v1/organizations",
            json={"cuit": "30-71234567-1", "name": "Otra Empresa"},
            headers=get_auth_headers(outsider_user),
        )).json()["data"]
        foreign = (await client.post(
            f"/api/v1/organizations/{other_org['id']}/locations",
            json={"name": "Ajeno"},
            headers=get_auth_headers(outsider_user),
        )).json()["data"]

        response = await client.get(
            org_url(test_org, f"/locations/{foreign['id']}"), headers=get_auth_headers(owner_user)
        )
        assert response.status_code == 404


class TestUpdateLocation:
    @pytest.mark.asyncio
    async def test_rename(self, client, test_org, owner_user):
        location = (await _create(client, test_org, owner_user)).json()["data"]
        response = await client.patch(
            org_url(test_org, f"/locations/{location['id']}"),
            json={"name": "Local Pichincha", "rubric": "Bar"},
            headers=get_auth_headers(owner_user),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Local Pichincha"
        assert data["rubric"] == "Bar"
        assert data["address"] == "Córdoba 1234"

    @pytest.mark.asyncio
    async def test_rename_into_existing_name_conflicts(self, client, test_org, owner_user):
        await _create(client, test_org, owner_user, name="Local Centro")
        second = (await _create(client, test_org, owner_user, name="Local Norte")).json()["data"]
        response = await client.patch(
            org_url(test_org, f"/locations/{second['id']}"),
            json={"name": "Local Centro"},
            headers=get_auth_headers(owner_user),
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_accountant_cannot_update(self, client, test_org, owner_user, accountant_user):
        location = (await _create(client, test_org, owner_user)).json()["data"]
        response = await client.patch(
            org_url(test_org, f"/locations/{location['id']}"),
            json={"name": "Otro"},
            headers=get_auth_headers(accountant_user),
        )
        assert response.status_code == 403

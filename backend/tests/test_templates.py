# tests/test_templates.py — Template catalog and rubric application
import pytest
from sqlalchemy import select

from models import Obligation, Task, TaskItem, DEFAULT_JURISDICTION_ID
from tests.conftest import get_auth_headers, make_user, org_url

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}


def _template(key, title, periodicity="ANNUAL", rubric="Gastronomia", checklist=None, **extra):
    body = {
        "jurisdictionId": DEFAULT_JURISDICTION_ID,
        "templateKey": key,
        "rubric": rubric,
        "title": title,
        "type": "PERMIT",
        "defaultPeriodicity": periodicity,
        **extra,
    }
    if checklist is not None:
        body["checklistItems"] = [{"description": d} for d in checklist]
    return body


async def _seed_gastronomia(client):
    await client.post("/api/v1/templates", json=_template(
        "ar-sf-rosario.gastronomia.habilitacion",
        "Habilitación comercial",
        checklist=["Plano del local", "Certificado de bomberos", "Libreta sanitaria"],
        defaultDueRule="Renovar antes del vencimiento anual",
    ), headers=ADMIN_HEADERS)
    await client.post("/api/v1/templates", json=_template(
        "ar-sf-rosario.gastronomia.drei",
        "Derecho de Registro e Inspección",
        periodicity="MONTHLY",
    ), headers=ADMIN_HEADERS)


class TestCatalog:
    @pytest.mark.asyncio
    async def test_create_with_admin_token(self, client, jurisdiction):
        response = await client.post(
            "/api/v1/templates",
            json=_template("ar-sf-rosario.comercio.carteleria", "Permiso de cartelería", checklist=["Foto", "Medidas"]),
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["rubric"] == "gastronomia"
        assert data["version"] == 1
        assert [i["description"] for i in data["checklistItems"]] == ["Foto", "Medidas"]
        assert [i["order"] for i in data["checklistItems"]] == [0, 1]

    @pytest.mark.asyncio
    async def test_create_requires_platform_admin(self, client, jurisdiction, owner_user):
        body = _template("k1", "Título")
        assert (await client.post("/api/v1/templates", json=body)).status_code == 401
        forbidden = await client.post("/api/v1/templates", json=body, headers=get_auth_headers(owner_user))
        assert forbidden.status_code == 403

    @pytest.mark.asyncio
    async def test_platform_admin_email_allowed(self, client, db_session, jurisdiction):
        admin = await make_user(db_session, "platform@cumpliros.com.ar", "Plataforma")
        response = await client.post(
            "/api/v1/templates", json=_template("k2", "Título"), headers=get_auth_headers(admin)
        )
        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_duplicate_key(self, client, jurisdiction):
        await client.post("/api/v1/templates", json=_template("dup", "Uno"), headers=ADMIN_HEADERS)
        response = await client.post("/api/v1/templates", json=_template("dup", "Dos"), headers=ADMIN_HEADERS)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_jurisdiction(self, client):
        body = _template("orphan", "Sin jurisdicción")
        response = await client.post("/api/v1/templates", json=body, headers=ADMIN_HEADERS)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_listing_and_rubrics_are_public(self, client, jurisdiction):
        await _seed_gastronomia(client)
        await client.post("/api/v1/templates", json=_template("est.1", "Habilitación estética", rubric="estetica"),
                          headers=ADMIN_HEADERS)

        listed = await client.get("/api/v1/templates", params={"rubric": "GASTRONOMIA"})
        assert listed.status_code == 200
        assert listed.json()["meta"]["total"] == 2

        rubrics = await client.get("/api/v1/templates/rubrics")
        assert rubrics.json()["data"] == [
            {"rubric": "estetica", "displayName": "Estética y Spa", "templateCount": 1},
            {"rubric": "gastronomia", "displayName": "Gastronomía", "templateCount": 2},
        ]

        by_key = await client.get("/api/v1/templates/by-key/ar-sf-rosario.gastronomia.habilitacion")
        assert len(by_key.json()["data"]["checklistItems"]) == 3

    @pytest.mark.asyncio
    async def test_substantive_update_bumps_version(self, client, jurisdiction):
        created = (await client.post("/api/v1/templates", json=_template("v", "Original"), headers=ADMIN_HEADERS)).json()
        template_id = created["data"]["id"]

        cosmetic = await client.patch(
            f"/api/v1/templates/{template_id}", json={"severity": "HIGH"}, headers=ADMIN_HEADERS
        )
        assert cosmetic.json()["data"]["version"] == 1

        renamed = await client.patch(
            f"/api/v1/templates/{template_id}",
            json={"title": "Revisado", "changelog": "Nuevo nombre"},
            headers=ADMIN_HEADERS,
        )
        assert renamed.json()["data"]["version"] == 2
        assert renamed.json()["data"]["changelog"] == "Nuevo nombre"

    @pytest.mark.asyncio
    async def test_deactivated_template_hidden(self, client, jurisdiction):
        created = (await client.post("/api/v1/templates", json=_template("old", "Viejo"), headers=ADMIN_HEADERS)).json()
        await client.delete(f"/api/v1/templates/{created['data']['id']}", headers=ADMIN_HEADERS)

        active = await client.get("/api/v1/templates")
        assert active.json()["data"] == []
        inactive = await client.get("/api/v1/templates", params={"isActive": "false"})
        assert len(inactive.json()["data"]) == 1


class TestApplyTemplates:
    @pytest.mark.asyncio
    async def test_apply_creates_obligations_and_checklists(self, client, db_session, test_org, manager_user):
        await _seed_gastronomia(client)

        response = await client.post(
            org_url(test_org, "/templates/apply"),
            json={"rubric": "gastronomia"},
            headers=get_auth_headers(manager_user),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["obligationsCreated"] == 2
        assert data["tasksCreated"] == 1
        assert len(data["obligationIds"]) == 2

        obligations = {
            o.title: o for o in (await db_session.execute(select(Obligation))).scalars().all()
        }
        drei = obligations["Derecho de Registro e Inspección"]
        assert drei.recurrence_rule == "FREQ=MONTHLY;INTERVAL=1"
        assert drei.owner_user_id == manager_user.id
        assert drei.due_date.month == 4 and drei.due_date.day == 10

        task = (await db_session.execute(select(Task))).scalar_one()
        assert task.title == "Checklist: Habilitación comercial"
        assert task.description == "Renovar antes del vencimiento anual"
        assert task.obligation_id == obligations["Habilitación comercial"].id
        items = (await db_session.execute(select(TaskItem).order_by(TaskItem.order))).scalars().all()
        assert [i.description for i in items] == ["Plano del local", "Certificado de bomberos", "Libreta sanitaria"]
        assert not any(i.done for i in items)

    @pytest.mark.asyncio
    async def test_second_apply_is_a_no_op(self, client, test_org, owner_user):
        await _seed_gastronomia(client)
        url = org_url(test_org, "/templates/apply")
        headers = get_auth_headers(owner_user)

        first = await client.post(url, json={"rubric": "gastronomia"}, headers=headers)
        assert first.json()["data"]["obligationsCreated"] == 2
        second = await client.post(url, json={"rubric": "gastronomia"}, headers=headers)
        assert second.json()["data"] == {"obligationsCreated": 0, "tasksCreated": 0, "obligationIds": []}

    @pytest.mark.asyncio
    async def test_unknown_rubric(self, client, test_org, owner_user):
        response = await client.post(
            org_url(test_org, "/templates/apply"), json={"rubric": "mineria"}, headers=get_auth_headers(owner_user)
        )
        assert response.status_code == 400
        assert "mineria" in response.json()["error"]["message"]

    @pytest.mark.asyncio
    async def test_accountant_cannot_apply(self, client, test_org, accountant_user):
        response = await client.post(
            org_url(test_org, "/templates/apply"),
            json={"rubric": "gastronomia"},
            headers=get_auth_headers(accountant_user),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_owner_must_belong_to_org(self, client, test_org, owner_user, outsider_user):
        await _seed_gastronomia(client)
        response = await client.post(
            org_url(test_org, "/templates/apply"),
            json={"rubric": "gastronomia", "ownerUserId": outsider_user.id},
            headers=get_auth_headers(owner_user),
        )
        assert response.status_code == 400

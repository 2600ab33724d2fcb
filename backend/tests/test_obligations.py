# tests/test_obligations.py — Obligation CRUD, completion gate, dashboard and calendar
from datetime import timedelta

import pytest
from sqlalchemy import select

from compliance_engine import ObligationStatus, ReviewStatus
from models import Document, Obligation, Organization, Review, Task
from services.obligations import ObligationsService
from tests.conftest import NOW, get_auth_headers, make_obligation, org_url


def _document(org, obligation, user, n=1):
    return Document(
        organization_id=org.id,
        obligation_id=obligation.id,
        uploaded_by_user_id=user.id,
        file_name=f"evidencia_{n}.pdf",
        file_key=f"org/{org.id}/docs/{n}_evidencia.pdf",
        mime_type="application/pdf",
        size_bytes=2048,
        uploaded_at=NOW,
    )


class TestCreateObligation:
    @pytest.mark.asyncio
    async def test_create_enriched(self, client, test_org, owner_user, manager_user):
        response = await client.post(
            org_url(test_org, "/obligations"),
            json={
                "title": "Habilitación comercial",
                "type": "PERMIT",
                "dueDate": "2026-03-20T10:00:00",
                "ownerUserId": manager_user.id,
            },
            headers=get_auth_headers(owner_user),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "PENDING"
        # Naive due dates are Rosario wall-clock time
        assert data["dueDate"].startswith("2026-03-20T13:00:00")
        assert data["daysUntilDue"] == 10
        assert data["trafficLight"] == "YELLOW"

    @pytest.mark.asyncio
    async def test_owner_must_be_member(self, client, test_org, owner_user, outsider_user):
        response = await client.post(
            org_url(test_org, "/obligations"),
            json={
                "title": "Ajena",
                "type": "TAX",
                "dueDate": "2026-04-01T00:00:00Z",
                "ownerUserId": outsider_user.id,
            },
            headers=get_auth_headers(owner_user),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_manager_cannot_create(self, client, test_org, manager_user):
        response = await client.post(
            org_url(test_org, "/obligations"),
            json={"title": "X", "type": "TAX", "dueDate": "2026-04-01T00:00:00Z", "ownerUserId": manager_user.id},
            headers=get_auth_headers(manager_user),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_requires_review_notifies_reviewers(self, client, mailer, test_org, admin_user, owner_user):
        response = await client.post(
            org_url(test_org, "/obligations"),
            json={
                "title": "Certificado de bomberos",
                "type": "INSPECTION",
                "dueDate": "2026-04-15T12:00:00Z",
                "ownerUserId": owner_user.id,
                "requiresReview": True,
            },
            headers=get_auth_headers(admin_user),
        )
        assert response.status_code == 201
        recipients = sorted(m["to"][0] for m in mailer.sent)
        assert recipients == ["contador@cumpliros.com.ar", "manager@cumpliros.com.ar", "owner@cumpliros.com.ar"]


class TestListAndDetail:
    @pytest.mark.asyncio
    async def test_filters(self, client, db_session, test_org, owner_user, manager_user):
        await make_obligation(db_session, test_org, owner_user, title="Rojo", due_date=NOW + timedelta(days=3))
        await make_obligation(db_session, test_org, owner_user, title="Verde", due_date=NOW + timedelta(days=40))
        await make_obligation(db_session, test_org, manager_user, title="Vencida",
                              status=ObligationStatus.OVERDUE, due_date=NOW - timedelta(days=5))
        headers = get_auth_headers(owner_user)

        by_status = await client.get(org_url(test_org, "/obligations"), params={"status": "OVERDUE"}, headers=headers)
        assert [o["title"] for o in by_status.json()["data"]] == ["Vencida"]

        by_owner = await client.get(
            org_url(test_org, "/obligations"), params={"ownerUserId": owner_user.id}, headers=headers
        )
        assert by_owner.json()["meta"]["total"] == 2

        red = await client.get(org_url(test_org, "/obligations"), params={"trafficLight": "RED"}, headers=headers)
        assert [o["title"] for o in red.json()["data"]] == ["Vencida", "Rojo"]

        ranged = await client.get(
            org_url(test_org, "/obligations"),
            params={"dueDateFrom": "2026-03-10", "dueDateTo": "2026-03-31"},
            headers=headers,
        )
        assert [o["title"] for o in ranged.json()["data"]] == ["Rojo"]

    @pytest.mark.asyncio
    async def test_detail_counts(self, client, db_session, test_org, owner_user):
        obligation = await make_obligation(db_session, test_org, owner_user)
        db_session.add(_document(test_org, obligation, owner_user))
        db_session.add(Task(obligation_id=obligation.id, title="Juntar papeles"))
        await db_session.commit()

        response = await client.get(
            org_url(test_org, f"/obligations/{obligation.id}"), headers=get_auth_headers(owner_user)
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["counts"] == {"documents": 1, "tasks": 1, "reviews": 0}
        assert data["owner"]["fullName"] == "Olga Owner"
        assert data["location"] is None

    @pytest.mark.asyncio
    async def test_other_tenant_obligation_is_not_found(self, client, db_session, test_org, owner_user):
        other = Organization(cuit="30-99999999-9", name="Otra", active=True)
        db_session.add(other)
        await db_session.commit()
        foreign = await make_obligation(db_session, other, owner_user)

        response = await client.get(
            org_url(test_org, f"/obligations/{foreign.id}"), headers=get_auth_headers(owner_user)
        )
        assert response.status_code == 404


class TestCompletionGate:
    @pytest.mark.asyncio
    async def test_evidence_required(self, client, db_session, test_org, owner_user, manager_user):
        obligation = await make_obligation(db_session, test_org, owner_user, required_evidence_count=2)
        db_session.add(_document(test_org, obligation, owner_user))
        await db_session.commit()
        url = org_url(test_org, f"/obligations/{obligation.id}/status")

        blocked = await client.patch(url, json={"status": "COMPLETED"}, headers=get_auth_headers(manager_user))
        assert blocked.status_code == 400
        assert "Se requieren al menos 2 evidencias" in blocked.json()["error"]["message"]

        db_session.add(_document(test_org, obligation, owner_user, n=2))
        await db_session.commit()
        done = await client.patch(url, json={"status": "COMPLETED"}, headers=get_auth_headers(manager_user))
        assert done.status_code == 200
        assert done.json()["data"]["status"] == "COMPLETED"
        assert done.json()["data"]["trafficLight"] == "GREEN"

    @pytest.mark.asyncio
    async def test_review_required(self, client, db_session, test_org, owner_user, accountant_user):
        obligation = await make_obligation(db_session, test_org, owner_user, requires_review=True)
        url = org_url(test_org, f"/obligations/{obligation.id}/status")

        blocked = await client.patch(url, json={"status": "COMPLETED"}, headers=get_auth_headers(owner_user))
        assert blocked.status_code == 400
        assert "requiere aprobación" in blocked.json()["error"]["message"]

        db_session.add(Review(obligation_id=obligation.id, reviewer_user_id=accountant_user.id,
                              status=ReviewStatus.APPROVED))
        await db_session.commit()
        done = await client.patch(url, json={"status": "COMPLETED"}, headers=get_auth_headers(owner_user))
        assert done.status_code == 200

    @pytest.mark.asyncio
    async def test_other_transitions_are_free(self, client, db_session, test_org, owner_user, manager_user):
        obligation = await make_obligation(db_session, test_org, owner_user, required_evidence_count=3)
        response = await client.patch(
            org_url(test_org, f"/obligations/{obligation.id}/status"),
            json={"status": "NOT_APPLICABLE"},
            headers=get_auth_headers(manager_user),
        )
        assert response.status_code == 200
        assert response.json()["data"]["daysUntilDue"] == 0


class TestDashboard:
    @pytest.mark.asyncio
    async def test_dashboard_after_overdue_sweep(
        self, client, db_session, session_factory, clock, test_org, owner_user
    ):
        await make_obligation(db_session, test_org, owner_user, title="En 5 días", due_date=NOW + timedelta(days=5))
        await make_obligation(db_session, test_org, owner_user, title="En 10 días", due_date=NOW + timedelta(days=10))
        await make_obligation(db_session, test_org, owner_user, title="En 30 días", due_date=NOW + timedelta(days=30))
        await make_obligation(db_session, test_org, owner_user, title="Ayer", due_date=NOW - timedelta(days=1))
        await make_obligation(db_session, test_org, owner_user, title="Hecha",
                              status=ObligationStatus.COMPLETED, due_date=NOW - timedelta(days=20))

        async with session_factory() as session:
            assert await ObligationsService(session, clock).update_overdue_obligations() == 1

        response = await client.get(org_url(test_org, "/obligations/dashboard"), headers=get_auth_headers(owner_user))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 5
        assert data["completed"] == 1
        assert data["overdue"] == 1
        assert data["red"] == 2
        assert data["yellow"] == 1
        assert data["green"] == 1
        assert [o["title"] for o in data["upcoming7Days"]] == ["En 5 días"]
        assert [o["title"] for o in data["overdueList"]] == ["Ayer"]
        assert data["overdueList"][0]["status"] == "OVERDUE"

    @pytest.mark.asyncio
    async def test_sweep_leaves_today_alone(self, db_session, session_factory, clock, test_org, owner_user):
        # Earlier today in Rosario is still "today"
        due_today = await make_obligation(db_session, test_org, owner_user, due_date=NOW - timedelta(hours=2))
        async with session_factory() as session:
            assert await ObligationsService(session, clock).update_overdue_obligations() == 0
        await db_session.refresh(due_today)
        assert due_today.status == ObligationStatus.PENDING


class TestCalendar:
    @pytest.mark.asyncio
    async def test_range_is_inclusive(self, client, db_session, test_org, owner_user):
        await make_obligation(db_session, test_org, owner_user, title="Marzo", due_date=NOW + timedelta(days=5))
        await make_obligation(db_session, test_org, owner_user, title="Abril", due_date=NOW + timedelta(days=30))

        response = await client.get(
            org_url(test_org, "/obligations/calendar"),
            params={"startDate": "2026-03-01", "endDate": "2026-03-15"},
            headers=get_auth_headers(owner_user),
        )
        assert response.status_code == 200
        assert [o["title"] for o in response.json()["data"]] == ["Marzo"]

    @pytest.mark.asyncio
    async def test_inverted_range(self, client, test_org, owner_user):
        response = await client.get(
            org_url(test_org, "/obligations/calendar"),
            params={"startDate": "2026-03-31", "endDate": "2026-03-01"},
            headers=get_auth_headers(owner_user),
        )
        assert response.status_code == 400


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_update_due_date(self, client, db_session, test_org, owner_user, admin_user):
        obligation = await make_obligation(db_session, test_org, owner_user)
        response = await client.patch(
            org_url(test_org, f"/obligations/{obligation.id}"),
            json={"dueDate": "2026-03-12T09:00:00Z"},
            headers=get_auth_headers(admin_user),
        )
        assert response.status_code == 200
        assert response.json()["data"]["trafficLight"] == "RED"

    @pytest.mark.asyncio
    async def test_delete_detaches_documents(self, client, db_session, test_org, owner_user):
        obligation = await make_obligation(db_session, test_org, owner_user)
        document = _document(test_org, obligation, owner_user)
        db_session.add(document)
        db_session.add(Task(obligation_id=obligation.id, title="Paso 1"))
        await db_session.commit()

        response = await client.delete(
            org_url(test_org, f"/obligations/{obligation.id}"), headers=get_auth_headers(owner_user)
        )
        assert response.status_code == 200

        db_session.expire_all()
        assert (await db_session.execute(select(Obligation))).scalars().all() == []
        assert (await db_session.execute(select(Task))).scalars().all() == []
        kept = (await db_session.execute(select(Document))).scalar_one()
        assert kept.obligation_id is None

    @pytest.mark.asyncio
    async def test_accountant_cannot_delete(self, client, db_session, test_org, owner_user, accountant_user):
        obligation = await make_obligation(db_session, test_org, owner_user)
        response = await client.delete(
            org_url(test_org, f"/obligations/{obligation.id}"), headers=get_auth_headers(accountant_user)
        )
        assert response.status_code == 403

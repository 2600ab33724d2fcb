# tests/test_reviews.py — Approval workflow and its effect on completion
from datetime import timedelta

import pytest

from compliance_engine import ObligationStatus
from models import Obligation
from tests.conftest import NOW, get_auth_headers, make_obligation, org_url


async def _review(client, org, user, obligation, status, comment=None):
    body = {"obligationId": obligation.id, "status": status}
    if comment is not None:
        body["comment"] = comment
    return await client.post(org_url(org, "/reviews"), json=body, headers=get_auth_headers(user))


class TestCreateReview:
    @pytest.mark.asyncio
    async def test_rejection_reopens_and_emails_owner(
        self, client, db_session, mailer, test_org, owner_user, accountant_user
    ):
        obligation = await make_obligation(
            db_session, test_org, owner_user, requires_review=True, status=ObligationStatus.PENDING
        )
        response = await _review(client, test_org, accountant_user, obligation, "REJECTED", "Falta la firma")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "REJECTED"
        assert data["comment"] == "Falta la firma"
        assert data["reviewer"]["fullName"] == "Carla Contadora"

        [message] = mailer.to(owner_user.email)
        assert "Falta la firma" in message["html"]

        obligation_id = obligation.id
        db_session.expire_all()
        reloaded = await db_session.get(Obligation, obligation_id)
        assert reloaded.status == ObligationStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_rejection_needs_comment(self, client, db_session, test_org, owner_user, accountant_user):
        obligation = await make_obligation(db_session, test_org, owner_user, requires_review=True)
        response = await _review(client, test_org, accountant_user, obligation, "REJECTED", "   ")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_obligation_must_require_review(self, client, db_session, test_org, owner_user, accountant_user):
        obligation = await make_obligation(db_session, test_org, owner_user)
        response = await _review(client, test_org, accountant_user, obligation, "APPROVED")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_admin_is_not_a_reviewer(self, client, db_session, test_org, owner_user, admin_user):
        obligation = await make_obligation(db_session, test_org, owner_user, requires_review=True)
        response = await _review(client, test_org, admin_user, obligation, "APPROVED")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_approval_unlocks_completion(self, client, db_session, test_org, owner_user, manager_user):
        obligation = await make_obligation(db_session, test_org, owner_user, requires_review=True)
        status_url = org_url(test_org, f"/obligations/{obligation.id}/status")
        headers = get_auth_headers(owner_user)

        assert (await client.patch(status_url, json={"status": "COMPLETED"}, headers=headers)).status_code == 400
        assert (await _review(client, test_org, manager_user, obligation, "APPROVED")).status_code == 201
        assert (await client.patch(status_url, json={"status": "COMPLETED"}, headers=headers)).status_code == 200


class TestPendingReviews:
    @pytest.mark.asyncio
    async def test_pending_excludes_approved_and_terminal(
        self, client, db_session, test_org, owner_user, accountant_user
    ):
        waiting = await make_obligation(db_session, test_org, owner_user, title="Esperando", requires_review=True)
        rejected = await make_obligation(db_session, test_org, owner_user, title="Rechazada", requires_review=True)
        approved = await make_obligation(db_session, test_org, owner_user, title="Aprobada", requires_review=True)
        await make_obligation(db_session, test_org, owner_user, title="Cerrada", requires_review=True,
                              status=ObligationStatus.NOT_APPLICABLE)
        await make_obligation(db_session, test_org, owner_user, title="Sin revisión")

        await _review(client, test_org, accountant_user, rejected, "REJECTED", "Incompleta")
        await _review(client, test_org, accountant_user, approved, "APPROVED")

        response = await client.get(org_url(test_org, "/reviews/pending"), headers=get_auth_headers(accountant_user))
        assert response.status_code == 200
        rows = {row["obligation"]["title"]: row for row in response.json()["data"]}
        assert set(rows) == {"Esperando", "Rechazada"}
        assert rows["Esperando"]["latestReview"] is None
        assert rows["Rechazada"]["latestReview"]["status"] == "REJECTED"
        assert rows["Rechazada"]["obligation"]["status"] == "IN_PROGRESS"
        assert waiting.id == rows["Esperando"]["obligation"]["id"]
        assert response.json()["meta"]["total"] == 2

    @pytest.mark.asyncio
    async def test_history_for_obligation(self, client, db_session, test_org, owner_user, accountant_user, manager_user):
        obligation = await make_obligation(db_session, test_org, owner_user, requires_review=True)
        await _review(client, test_org, accountant_user, obligation, "REJECTED", "Corregir monto")
        await _review(client, test_org, manager_user, obligation, "APPROVED")

        response = await client.get(
            org_url(test_org, f"/reviews/obligation/{obligation.id}"), headers=get_auth_headers(owner_user)
        )
        reviewers = sorted(r["reviewer"]["email"] for r in response.json()["data"])
        assert reviewers == ["contador@cumpliros.com.ar", "manager@cumpliros.com.ar"]
        assert response.json()["meta"]["total"] == 2

    @pytest.mark.asyncio
    async def test_pending_is_paginated_by_due_date(self, client, db_session, test_org, owner_user, accountant_user):
        for days in (40, 10, 25):
            await make_obligation(db_session, test_org, owner_user, title=f"Vence en {days}",
                                  requires_review=True, due_date=NOW + timedelta(days=days))
        headers = get_auth_headers(accountant_user)

        first = await client.get(org_url(test_org, "/reviews/pending?page=1&limit=2"), headers=headers)
        assert [row["obligation"]["title"] for row in first.json()["data"]] == ["Vence en 10", "Vence en 25"]
        assert first.json()["meta"] == {
            "total": 3, "page": 1, "limit": 2, "totalPages": 2,
            "hasNextPage": True, "hasPreviousPage": False,
        }

        second = await client.get(org_url(test_org, "/reviews/pending?page=2&limit=2"), headers=headers)
        assert [row["obligation"]["title"] for row in second.json()["data"]] == ["Vence en 40"]

        latest_first = await client.get(org_url(test_org, "/reviews/pending?limit=1&sortOrder=desc"), headers=headers)
        assert latest_first.json()["data"][0]["obligation"]["title"] == "Vence en 40"

    @pytest.mark.asyncio
    async def test_history_is_paginated(self, client, db_session, test_org, owner_user, accountant_user):
        obligation = await make_obligation(db_session, test_org, owner_user, requires_review=True)
        for comment in ("Falta CUIT", "Falta firma", "Monto incorrecto"):
            await _review(client, test_org, accountant_user, obligation, "REJECTED", comment)

        response = await client.get(
            org_url(test_org, f"/reviews/obligation/{obligation.id}?limit=2"), headers=get_auth_headers(owner_user)
        )
        body = response.json()
        assert len(body["data"]) == 2
        assert body["meta"]["total"] == 3
        assert body["meta"]["hasNextPage"] is True

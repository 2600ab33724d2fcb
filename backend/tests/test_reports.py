# tests/test_reports.py — Compliance summary, obligation listing and CSV export
from datetime import timedelta

import pytest
import pytest_asyncio

from compliance_engine import ObligationStatus, ObligationType, ReviewStatus
from models import Location, Review
from tests.conftest import NOW, get_auth_headers, make_obligation, org_url


@pytest_asyncio.fixture
async def report_data(db_session, test_org, owner_user, accountant_user):
    location = Location(organization_id=test_org.id, name="Local Centro", active=True)
    db_session.add(location)
    await db_session.commit()

    done = await make_obligation(db_session, test_org, owner_user, title="DReI marzo",
                                 status=ObligationStatus.COMPLETED, due_date=NOW - timedelta(days=3))
    await make_obligation(db_session, test_org, accountant_user, title="Habilitación", type=ObligationType.PERMIT,
                          status=ObligationStatus.OVERDUE, due_date=NOW - timedelta(days=2),
                          location_id=location.id)
    await make_obligation(db_session, test_org, owner_user, title="DReI abril", due_date=NOW + timedelta(days=20))
    await make_obligation(db_session, test_org, owner_user, title="Vieja", created_at=NOW - timedelta(days=60))

    db_session.add(Review(obligation_id=done.id, reviewer_user_id=accountant_user.id, status=ReviewStatus.APPROVED))
    await db_session.commit()
    return location


class TestComplianceReport:
    @pytest.mark.asyncio
    async def test_default_period_is_last_month(self, client, report_data, test_org, accountant_user):
        response = await client.get(org_url(test_org, "/reports/compliance"), headers=get_auth_headers(accountant_user))
        assert response.status_code == 200
        data = response.json()["data"]

        assert data["period"]["start"].startswith("2026-02-10T15:00:00")
        assert data["summary"] == {
            "total": 3,
            "completed": 1,
            "pending": 1,
            "overdue": 1,
            "complianceRate": 33.3,
        }
        by_type = {row["type"]: row for row in data["byType"]}
        assert by_type["TAX"] == {"type": "TAX", "total": 2, "completed": 1, "overdue": 0, "complianceRate": 50.0}
        assert by_type["PERMIT"]["overdue"] == 1

        by_location = {row["locationId"]: row for row in data["byLocation"]}
        assert by_location["global"]["locationName"] == "Sin local"
        assert by_location["global"]["total"] == 2
        assert by_location[report_data.id]["locationName"] == "Local Centro"

        weeks = [entry["week"] for entry in data["timeline"]]
        assert weeks == sorted(weeks)
        assert {"week": "2026-03-02", "completed": 1, "overdue": 1} in data["timeline"]

    @pytest.mark.asyncio
    async def test_explicit_period(self, client, report_data, test_org, owner_user):
        response = await client.get(
            org_url(test_org, "/reports/compliance"),
            params={"startDate": "2026-01-01T00:00:00Z", "endDate": "2026-03-31T00:00:00Z"},
            headers=get_auth_headers(owner_user),
        )
        assert response.json()["data"]["summary"]["total"] == 4

    @pytest.mark.asyncio
    async def test_empty_period(self, client, test_org, owner_user):
        response = await client.get(org_url(test_org, "/reports/compliance"), headers=get_auth_headers(owner_user))
        assert response.json()["data"]["summary"]["complianceRate"] == 0.0

    @pytest.mark.asyncio
    async def test_manager_cannot_read_reports(self, client, test_org, manager_user):
        response = await client.get(org_url(test_org, "/reports/compliance"), headers=get_auth_headers(manager_user))
        assert response.status_code == 403


class TestObligationsReport:
    @pytest.mark.asyncio
    async def test_rows(self, client, report_data, test_org, owner_user):
        response = await client.get(
            org_url(test_org, "/reports/obligations"),
            params={"status": "COMPLETED"},
            headers=get_auth_headers(owner_user),
        )
        [row] = response.json()["data"]
        assert row["title"] == "DReI marzo"
        assert row["dueDate"] == "2026-03-07"
        assert row["ownerName"] == "Olga Owner"
        assert row["locationName"] is None
        assert row["documentsCount"] == 0
        assert row["hasApprovedReview"] is True


class TestCsvExport:
    @pytest.mark.asyncio
    async def test_export(self, client, report_data, test_org, admin_user):
        response = await client.get(org_url(test_org, "/reports/export/csv"), headers=get_auth_headers(admin_user))
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"] == 'attachment; filename="obligaciones_2026-03-10.csv"'

        lines = response.text.strip().split("\n")
        assert lines[0] == (
            '"ID","Título","Tipo","Estado","Fecha de Vencimiento","Local","Responsable","Documentos","Revisión Aprobada"'
        )
        assert len(lines) == 5
        habilitacion = next(line for line in lines if "Habilitación" in line)
        assert '"Local Centro"' in habilitacion
        assert '"Carla Contadora"' in habilitacion
        assert habilitacion.endswith('"No"')

    @pytest.mark.asyncio
    async def test_formula_injection_neutralised(self, client, db_session, test_org, owner_user):
        await make_obligation(db_session, test_org, owner_user, title="=1+1")
        response = await client.get(org_url(test_org, "/reports/export/csv"), headers=get_auth_headers(owner_user))
        row = response.text.strip().split("\n")[1]
        assert '"\'=1+1"' in row
        assert ',"=1+1"' not in row

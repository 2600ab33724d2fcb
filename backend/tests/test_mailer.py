# tests/test_mailer.py — Resend adapter and per-recipient delivery isolation
import json
from datetime import timedelta

import httpx
import pytest

import mailer as mailer_module
from mailer import MailDeliveryError, ResendMailer
from services.notifications import NotificationsService
from tests.conftest import NOW, get_auth_headers, make_obligation, org_url


def _resend(handler):
    calls = []

    def record(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return handler(request)

    return ResendMailer(api_key="re_test", transport=httpx.MockTransport(record)), calls


class TestResendMailer:
    @pytest.mark.asyncio
    async def test_returns_message_id(self):
        resend, calls = _resend(lambda request: httpx.Response(200, json={"id": "msg_123"}))
        assert await resend.send("owner@cumpliros.com.ar", "Hola", "<p>Hola</p>") == "msg_123"

        [request] = calls
        assert request.headers["Authorization"] == "Bearer re_test"
        assert json.loads(request.content)["to"] == ["owner@cumpliros.com.ar"]

    @pytest.mark.asyncio
    async def test_non_json_success_body(self):
        resend, _ = _resend(lambda request: httpx.Response(200, text="OK"))
        assert await resend.send("owner@cumpliros.com.ar", "Hola", "<p>Hola</p>") is None

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        resend, calls = _resend(lambda request: httpx.Response(422, json={"message": "invalid to"}))
        with pytest.raises(MailDeliveryError):
            await resend.send("owner@cumpliros.com.ar", "Hola", "<p>Hola</p>")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, monkeypatch):
        monkeypatch.setattr(mailer_module, "RESEND_RETRY_BASE_DELAY", 0)
        resend, calls = _resend(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(MailDeliveryError):
            await resend.send("owner@cumpliros.com.ar", "Hola", "<p>Hola</p>")
        assert len(calls) == mailer_module.RESEND_MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_dev_mode_only_logs(self):
        resend = ResendMailer(api_key="")
        assert await resend.send("owner@cumpliros.com.ar", "Hola", "<p>Hola</p>") is None


class TestDeliveryIsolation:
    @pytest.mark.asyncio
    async def test_unexpected_failure_skips_only_that_recipient(
        self, session_factory, mailer, clock, test_org, db_session, owner_user, manager_user
    ):
        await make_obligation(db_session, test_org, owner_user, title="Propia", due_date=NOW + timedelta(days=3))
        await make_obligation(db_session, test_org, manager_user, title="Ajena", due_date=NOW + timedelta(days=4))
        owner_email, manager_email = owner_user.email, manager_user.email
        original_send = mailer.send

        async def flaky(to, subject, html):
            if to == owner_email:
                raise ValueError("unexpected provider reply")
            return await original_send(to, subject, html)

        mailer.send = flaky
        async with session_factory() as db:
            sent = await NotificationsService(db, mailer, clock).send_upcoming_notifications()

        assert sent == 1
        assert [m["to"] for m in mailer.sent] == [[manager_email]]

    @pytest.mark.asyncio
    async def test_obligation_is_created_when_reviewer_mail_crashes(
        self, client, mailer, test_org, admin_user, owner_user
    ):
        async def broken(to, subject, html):
            raise RuntimeError("mail provider returned garbage")

        mailer.send = broken
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

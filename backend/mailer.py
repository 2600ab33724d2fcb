# mailer.py — Transactional email delivery (Resend HTTP API)
# Without RESEND_API_KEY the mailer runs in dev mode and only logs.

import os
import asyncio
import logging
import re
import html as html_module
from typing import List, Optional, Sequence, Union

import httpx

logger = logging.getLogger("cumpliros.mail")

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", "CumpliRos <notificaciones@cumpliros.com.ar>")
RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_TIMEOUT_SECONDS = 20.0
RETRY_STATUSES = {429, 500, 502, 503, 504}


class MailDeliveryError(Exception):
    """Raised when an email could not be delivered after retries."""


def html_to_text(content: str) -> str:
    """Plain-text alternative for inbox previews."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<br\s*/?>|</p>|</li>|</tr>", "\n", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*", "\n", text).strip()
    return html_module.unescape(text)


def _message_id(response: httpx.Response) -> Optional[str]:
    """Provider id from a 2xx body; None when the body is not a JSON object."""
    try:
        body = response.json()
    except ValueError:
        logger.warning(f"Resend answered {response.status_code} without a JSON body")
        return None
    return body.get("id") if isinstance(body, dict) else None


class Mailer:
    """Interface for outbound email."""

    async def send(self, to: Union[str, Sequence[str]], subject: str, html: str) -> Optional[str]:
        """Send one message; returns the provider message id (None in dev mode)."""
        raise NotImplementedError


class ResendMailer(Mailer):
    def __init__(
        self,
        api_key: str = RESEND_API_KEY,
        sender: str = EMAIL_FROM,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.sender = sender
        self.transport = transport

    @property
    def dev_mode(self) -> bool:
        return not self.api_key

    async def send(self, to: Union[str, Sequence[str]], subject: str, html: str) -> Optional[str]:
        recipients: List[str] = [to] if isinstance(to, str) else list(to)
        if not recipients:
            return None

        if self.dev_mode:
            logger.info(f"[dev-mail] to={', '.join(recipients)} subject={subject!r}")
            return None

        payload = {
            "from": self.sender,
            "to": recipients,
            "subject": subject,
            "html": html,
            "text": html_to_text(html),
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        last_error: Optional[str] = None
        async with httpx.AsyncClient(timeout=RESEND_TIMEOUT_SECONDS, transport=self.transport) as client:
            for attempt in range(1, RESEND_MAX_ATTEMPTS + 1):
                try:
                    response = await client.post(RESEND_SEND_URL, headers=headers, json=payload)
                except httpx.TransportError as exc:
                    last_error = f"transport error: {exc}"
                else:
                    if response.status_code < 300:
                        message_id = _message_id(response)
                        logger.info(f"Email sent to {len(recipients)} recipient(s) id={message_id}")
                        return message_id
                    last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                    if response.status_code not in RETRY_STATUSES:
                        break
                if attempt < RESEND_MAX_ATTEMPTS:
                    await asyncio.sleep(RESEND_RETRY_BASE_DELAY * (2 ** (attempt - 1)))

        raise MailDeliveryError(f"Resend delivery failed for {', '.join(recipients)}: {last_error}")


_default_mailer = ResendMailer()


def get_mailer() -> Mailer:
    """Dependency for the mailer (FastAPI Depends)"""
    return _default_mailer

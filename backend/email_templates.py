# email_templates.py — HTML bodies for CumpliRos notifications
# Every interpolated value is HTML-escaped.

import os
from html import escape
from typing import Iterable, Tuple

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def _layout(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family:Arial,sans-serif;color:#1f2937\">"
        f"<h2 style=\"color:#0f766e\">{escape(title)}</h2>"
        f"{body}"
        "<p style=\"color:#6b7280;font-size:12px\">Saludos,<br>CumpliRos</p>"
        "</body></html>"
    )


def _items(rows: Iterable[str]) -> str:
    return "<ul>" + "".join(f"<li>{row}</li>" for row in rows) + "</ul>"


def upcoming_subject(org_name: str, count: int, urgent_count: int) -> str:
    if urgent_count > 0:
        return f"[URGENTE] {urgent_count} obligaciones próximas a vencer - {org_name}"
    return f"{count} obligaciones próximas a vencer - {org_name}"


def upcoming_email(owner_name: str, org_name: str, items: Iterable[Tuple[str, int]]) -> str:
    """items: (title, days until due)"""
    items = list(items)
    rows = [f"{escape(title)} (vence en {days} días)" for title, days in items]
    body = (
        f"<p>Hola {escape(owner_name)},</p>"
        f"<p>Tenés {len(items)} obligación(es) próxima(s) a vencer en <strong>{escape(org_name)}</strong>:</p>"
        f"{_items(rows)}"
        f"<p><a href=\"{escape(FRONTEND_URL)}/dashboard\">Revisá el panel de cumplimiento</a> para más detalles.</p>"
    )
    return _layout("Obligaciones próximas a vencer", body)


def overdue_subject(org_name: str, count: int) -> str:
    return f"[VENCIDO] {count} obligaciones vencidas - {org_name}"


def overdue_email(org_name: str, items: Iterable[Tuple[str, str]]) -> str:
    """items: (title, responsible name)"""
    items = list(items)
    rows = [f"{escape(title)} (responsable: {escape(owner)})" for title, owner in items]
    body = (
        f"<p>Alerta: hay {len(items)} obligación(es) vencida(s) en <strong>{escape(org_name)}</strong>:</p>"
        f"{_items(rows)}"
        "<p>Por favor, tomá acción inmediata.</p>"
    )
    return _layout("Obligaciones vencidas", body)


def review_required_subject(obligation_title: str, org_name: str) -> str:
    return f"Revisión requerida: {obligation_title} - {org_name}"


def review_required_email(reviewer_name: str, org_name: str, obligation_title: str) -> str:
    body = (
        f"<p>Hola {escape(reviewer_name)},</p>"
        "<p>Se requiere tu revisión para la siguiente obligación:</p>"
        f"<p><strong>Obligación:</strong> {escape(obligation_title)}<br>"
        f"<strong>Organización:</strong> {escape(org_name)}</p>"
        "<p>Accedé al panel de cumplimiento para aprobarla o rechazarla.</p>"
    )
    return _layout("Revisión requerida", body)


def review_rejected_subject(obligation_title: str, org_name: str) -> str:
    return f"Revisión rechazada: {obligation_title} - {org_name}"


def review_rejected_email(owner_name: str, org_name: str, obligation_title: str, reviewer_name: str, comment: str) -> str:
    body = (
        f"<p>Hola {escape(owner_name)},</p>"
        "<p>La revisión de la siguiente obligación fue rechazada:</p>"
        f"<p><strong>Obligación:</strong> {escape(obligation_title)}<br>"
        f"<strong>Organización:</strong> {escape(org_name)}<br>"
        f"<strong>Revisado por:</strong> {escape(reviewer_name)}<br>"
        f"<strong>Observaciones:</strong> {escape(comment)}</p>"
        "<p>Corregí las observaciones y volvé a enviarla para revisión.</p>"
    )
    return _layout("Revisión rechazada", body)


def invitation_subject(org_name: str) -> str:
    return f"Te invitaron a {org_name} en CumpliRos"


def invitation_email(org_name: str, inviter_name: str, role: str, token: str) -> str:
    link = f"{FRONTEND_URL}/accept-invitation?token={token}"
    body = (
        f"<p>{escape(inviter_name)} te invitó a sumarte a <strong>{escape(org_name)}</strong> "
        f"con el rol <strong>{escape(role)}</strong>.</p>"
        f"<p><a href=\"{escape(link)}\">Aceptar invitación</a></p>"
        "<p>La invitación vence en 7 días.</p>"
    )
    return _layout("Invitación a CumpliRos", body)


def password_reset_subject() -> str:
    return "Restablecé tu contraseña de CumpliRos"


def password_reset_email(full_name: str, token: str) -> str:
    link = f"{FRONTEND_URL}/reset-password?token={token}"
    body = (
        f"<p>Hola {escape(full_name)},</p>"
        "<p>Recibimos un pedido para restablecer tu contraseña.</p>"
        f"<p><a href=\"{escape(link)}\">Elegir una nueva contraseña</a></p>"
        "<p>El enlace vence en 1 hora. Si no lo pediste, ignorá este mensaje.</p>"
    )
    return _layout("Restablecer contraseña", body)

from __future__ import annotations

import html
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .evolution_client import EvolutionClient

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


@dataclass
class AppointmentNotice:
    professional_name: str
    client_name: str
    client_email: str
    appointment_date: str          # YYYY-MM-DD
    appointment_time: str          # HH:MM
    duration_minutes: int = 50
    client_phone: Optional[str] = None
    professional_phone: Optional[str] = None
    virtual_room_link: Optional[str] = None
    access_token: Optional[str] = None

    @property
    def formatted_date(self) -> str:
        year, month, day = self.appointment_date.split("-")
        return f"{day}/{month}/{year}"


def client_email_html(n: AppointmentNotice) -> str:
    esc = html.escape
    room = (
        f'<p style="margin: 5px 0;"><strong>Sala virtual:</strong> <a href="{esc(n.virtual_room_link)}">{esc(n.virtual_room_link)}</a></p>'
        if n.virtual_room_link else ""
    )
    token = (
        f'<p style="margin: 5px 0;"><strong>Código para remarcação:</strong> {esc(n.access_token)}</p>'
        if n.access_token else ""
    )
    return f"""
      <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h1 style="color: #6366f1; margin-bottom: 20px;">Agendamento Confirmado! ✅</h1>
        <p>Olá, <strong>{esc(n.client_name)}</strong>!</p>
        <p>Seu agendamento foi realizado com sucesso.</p>
        <div style="background: #f3f4f6; border-radius: 12px; padding: 20px; margin: 20px 0;">
          <h3 style="margin: 0 0 15px 0; color: #374151;">Detalhes do Agendamento</h3>
          <p style="margin: 5px 0;"><strong>Profissional:</strong> {esc(n.professional_name)}</p>
          <p style="margin: 5px 0;"><strong>Data:</strong> {esc(n.formatted_date)}</p>
          <p style="margin: 5px 0;"><strong>Horário:</strong> {esc(n.appointment_time)}</p>
          <p style="margin: 5px 0;"><strong>Duração:</strong> {n.duration_minutes} minutos</p>
          {room}
          {token}
        </div>
        <hr style="border: none; border-top: 1px solid #e5e7eb; margin: 30px 0;">
        <p style="color: #9ca3af; font-size: 12px; text-align: center;">
          Este e-mail foi enviado automaticamente pelo sistema PsiAgenda.
        </p>
      </div>
    """


def client_whatsapp_text(n: AppointmentNotice) -> str:
    lines = [
        "✅ *Agendamento Confirmado!*",
        "",
        f"Olá, {n.client_name}!",
        "",
        "Seu agendamento foi realizado com sucesso.",
        "",
        "📋 *Detalhes:*",
        f"👤 Profissional: {n.professional_name}",
        f"📅 Data: {n.formatted_date}",
        f"🕐 Horário: {n.appointment_time}",
        f"⏱️ Duração: {n.duration_minutes} minutos",
    ]
    if n.virtual_room_link:
        lines.append(f"🎥 Sala: {n.virtual_room_link}")
    return "\n".join(lines)


def professional_whatsapp_text(n: AppointmentNotice) -> str:
    return "\n".join([
        "📅 *Novo Agendamento!*",
        "",
        "Você tem um novo agendamento:",
        "",
        f"👤 *Cliente:* {n.client_name}",
        f"📱 *Telefone:* {n.client_phone or '-'}",
        f"📧 *E-mail:* {n.client_email}",
        f"📅 *Data:* {n.formatted_date}",
        f"🕐 *Horário:* {n.appointment_time}",
    ])


class AppointmentNotifier:
    """
    Dispara e-mail (Resend) e WhatsApp (Evolution) de um agendamento confirmado.
    Cada canal é best-effort; canal sem configuração é pulado.
    Retorna {"emailToClient": bool, "whatsappToClient": bool, "whatsappToProfessional": bool}.
    """

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        email_from: Optional[str] = None,
        whatsapp: Optional[EvolutionClient] = None,
        timeout: Optional[float] = None,
    ):
        self.resend_api_key = resend_api_key or os.getenv("RESEND_API_KEY")
        self.email_from = email_from or os.getenv("NOTIFY_EMAIL_FROM", "PsiAgenda <onboarding@resend.dev>")
        self.timeout = timeout or float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
        if whatsapp is None and EvolutionClient.configured():
            whatsapp = EvolutionClient.from_env()
        self.whatsapp = whatsapp

    def send_email(self, to: str, subject: str, html: str) -> bool:
        if not self.resend_api_key:
            log.info("RESEND_API_KEY ausente; e-mail não enviado")
            return False
        try:
            r = requests.post(
                RESEND_URL,
                headers={"Authorization": f"Bearer {self.resend_api_key}", "Content-Type": "application/json"},
                json={"from": self.email_from, "to": [to], "subject": subject, "html": html},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.warning("Falha ao enviar e-mail para %s: %s", to, e)
            return False
        if not r.ok:
            log.warning("Resend respondeu %s: %s", r.status_code, r.text[:300])
            return False
        return True

    def send_whatsapp(self, phone: Optional[str], message: str) -> bool:
        if self.whatsapp is None:
            log.info("Evolution API não configurada; WhatsApp não enviado")
            return False
        if not phone:
            return False
        resp = self.whatsapp.send_text(phone, message)
        if resp.get("error"):
            log.warning("Evolution API erro ao enviar para %s: %s", phone, resp)
            return False
        return True

    def send_appointment_notification(self, notice: AppointmentNotice) -> Dict[str, Any]:
        results = {"emailToClient": False, "whatsappToClient": False, "whatsappToProfessional": False}
        results["emailToClient"] = self.send_email(
            notice.client_email,
            f"Agendamento confirmado para {notice.formatted_date} às {notice.appointment_time}",
            client_email_html(notice),
        )
        results["whatsappToClient"] = self.send_whatsapp(notice.client_phone, client_whatsapp_text(notice))
        if notice.professional_phone:
            results["whatsappToProfessional"] = self.send_whatsapp(
                notice.professional_phone, professional_whatsapp_text(notice)
            )
        log.info("Resultado das notificações: %s", results)
        return results

import pytest
import requests

from psiagenda.services import notifications
from psiagenda.services.calendar_sync import CalendarSyncClient, CalendarSyncError
from psiagenda.services.evolution_client import EvolutionClient
from psiagenda.services.notifications import (
    AppointmentNotice,
    AppointmentNotifier,
    client_email_html,
    client_whatsapp_text,
    professional_whatsapp_text,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = str(self._payload)
        self.ok = status_code < 400

    def json(self):
        return self._payload


NOTICE = AppointmentNotice(
    professional_name="Dra. Ana Souza",
    client_name="Maria Silva",
    client_email="maria@example.com",
    appointment_date="2025-03-11",
    appointment_time="14:00",
    client_phone="(11) 99999-0000",
    professional_phone="11988887777",
    virtual_room_link="https://psiagenda.test/sala/ABCD1234",
    access_token="tok123",
)


def test_templates():
    assert NOTICE.formatted_date == "11/03/2025"
    html = client_email_html(NOTICE)
    assert "Maria Silva" in html and "11/03/2025" in html and "tok123" in html
    assert "🎥 Sala: https://psiagenda.test/sala/ABCD1234" in client_whatsapp_text(NOTICE)
    assert "maria@example.com" in professional_whatsapp_text(NOTICE)


def test_email_html_escapes_customer_text():
    notice = AppointmentNotice(
        professional_name="Dra. <b>Ana</b>",
        client_name="<script>alert(1)</script>",
        client_email="maria@example.com",
        appointment_date="2025-03-11",
        appointment_time="14:00",
        virtual_room_link='https://psiagenda.test/sala/X"onclick="y',
    )
    html = client_email_html(notice)
    assert "<script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "Dra. &lt;b&gt;Ana&lt;/b&gt;" in html
    assert 'X&quot;onclick=&quot;y' in html
    assert '"onclick="' not in html


def test_evolution_requires_configuration():
    with pytest.raises(RuntimeError):
        EvolutionClient()
    assert EvolutionClient.configured() is False


def test_evolution_send_text(monkeypatch):
    sent = {}

    def fake_request(method, url, headers=None, json=None, timeout=None):
        sent.update(method=method, url=url, headers=headers, json=json)
        return FakeResponse(201, {"key": {"id": "MSG1"}})

    monkeypatch.setattr(requests, "request", fake_request)
    client = EvolutionClient("https://evo.test/", "k", "psi")
    out = client.send_text("(11) 99999-0000", "oi")

    assert out == {"key": {"id": "MSG1"}}
    assert sent["url"] == "https://evo.test/message/sendText/psi"
    assert sent["json"] == {"number": "5511999990000", "text": "oi"}
    assert sent["headers"]["apikey"] == "k"


def test_evolution_http_error_is_returned_not_raised(monkeypatch):
    monkeypatch.setattr(requests, "request", lambda *a, **k: FakeResponse(401, {"error": "Unauthorized"}))
    out = EvolutionClient("https://evo.test", "k", "psi").send_text("11999990000", "oi")
    assert out["error"] == "Unauthorized"
    assert out["status_code"] == 401


def test_notifier_skips_unconfigured_channels():
    result = AppointmentNotifier().send_appointment_notification(NOTICE)
    assert result == {"emailToClient": False, "whatsappToClient": False, "whatsappToProfessional": False}


def test_notifier_sends_email_and_whatsapp(monkeypatch):
    posted = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        posted.update(url=url, json=json)
        return FakeResponse(200, {"id": "email-1"})

    monkeypatch.setattr(notifications.requests, "post", fake_post)

    class FakeWhatsApp:
        def __init__(self):
            self.sent = []

        def send_text(self, phone, message):
            self.sent.append(phone)
            return {"key": {"id": "x"}}

    wa = FakeWhatsApp()
    result = AppointmentNotifier(resend_api_key="re_123", whatsapp=wa).send_appointment_notification(NOTICE)

    assert result == {"emailToClient": True, "whatsappToClient": True, "whatsappToProfessional": True}
    assert posted["url"] == notifications.RESEND_URL
    assert posted["json"]["to"] == ["maria@example.com"]
    assert wa.sent == ["(11) 99999-0000", "11988887777"]


def test_calendar_sync(monkeypatch):
    assert CalendarSyncClient().sync_appointment("prof-1", "apt-1") == {}

    responses = [
        FakeResponse(200, {"success": True, "meetLink": "https://meet.google.com/x", "eventId": "e1"}),
        FakeResponse(400, {"error": "Google Calendar not connected"}),
        FakeResponse(500, {"error": "boom"}),
    ]
    monkeypatch.setattr(requests, "post", lambda *a, **k: responses.pop(0))
    client = CalendarSyncClient(url="https://sync.test/fn", token="t")

    assert client.sync_appointment("prof-1", "apt-1") == {"meetLink": "https://meet.google.com/x", "eventId": "e1"}
    assert client.sync_appointment("prof-1", "apt-1") == {}
    with pytest.raises(CalendarSyncError):
        client.sync_appointment("prof-1", "apt-1")

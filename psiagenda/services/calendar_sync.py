from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import requests

log = logging.getLogger(__name__)


class CalendarSyncError(RuntimeError):
    pass


class CalendarSyncClient:
    """
    Cliente do serviço de sincronização de agenda (Google Calendar / Meet).
    POST {CALENDAR_SYNC_URL} {"action": "sync-appointment", "professionalId", "appointmentId"}
      -> {"success": true, "eventId": "...", "meetLink": "https://meet.google.com/..."}
    Sem URL configurada ou agenda não conectada -> {} (resultado normal).
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None, timeout: Optional[float] = None):
        self.url = (url or os.getenv("CALENDAR_SYNC_URL", "")).strip() or None
        self.token = (token or os.getenv("CALENDAR_SYNC_TOKEN", "")).strip() or None
        self.timeout = timeout or float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

    def sync_appointment(self, professional_id: str, appointment_id: str) -> Dict[str, Any]:
        if not self.url:
            return {}
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            r = requests.post(
                self.url,
                json={"action": "sync-appointment", "professionalId": professional_id, "appointmentId": appointment_id},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise CalendarSyncError(f"Falha de rede na sincronização de agenda: {e}") from e

        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if r.status_code == 400 and "not connected" in str(data.get("error", "")).lower():
            log.info("Agenda não conectada para o profissional %s", professional_id)
            return {}
        if not r.ok:
            raise CalendarSyncError(f"HTTP {r.status_code}: {data.get('error') or r.text[:200]}")
        out: Dict[str, Any] = {}
        if data.get("meetLink"):
            out["meetLink"] = data["meetLink"]
        if data.get("eventId"):
            out["eventId"] = data["eventId"]
        return out

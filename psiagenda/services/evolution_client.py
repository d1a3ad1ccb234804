from __future__ import annotations

import os
import re
from typing import Any, Dict, Optional

import requests


class EvolutionClient:
    """
    Cliente mínimo da Evolution API (WhatsApp):
      * POST /message/sendText/{instance}   { "number": "55...", "text": "..." }
    Autenticação pelo header `apikey`.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        # normaliza variáveis de ambiente (remove espaços/linhas)
        self.base_url = (base_url or os.getenv("EVOLUTION_API_URL", "")).strip().rstrip("/") or None
        self.api_key = (api_key or os.getenv("EVOLUTION_API_KEY", "")).strip() or None
        self.instance_name = (instance_name or os.getenv("EVOLUTION_INSTANCE_NAME", "")).strip() or None
        self.timeout = timeout or float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

        if not self.base_url or not self.api_key or not self.instance_name:
            raise RuntimeError(
                "Evolution API: faltam EVOLUTION_API_URL, EVOLUTION_API_KEY ou EVOLUTION_INSTANCE_NAME no ambiente."
            )
        self._headers: Dict[str, str] = {"Content-Type": "application/json", "apikey": self.api_key}

    @classmethod
    def from_env(cls) -> "EvolutionClient":
        return cls()

    @classmethod
    def configured(cls) -> bool:
        return all(os.getenv(k, "").strip() for k in ("EVOLUTION_API_URL", "EVOLUTION_API_KEY", "EVOLUTION_INSTANCE_NAME"))

    def _request(self, method: str, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Não levanta exceção em erro HTTP: devolve dict com 'error'/'status_code'/'data'."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            r = requests.request(method.upper(), url, headers=self._headers, json=data, timeout=self.timeout)
        except requests.RequestException as e:
            return {"error": "request_exception", "detail": str(e)}

        try:
            payload = r.json()
        except ValueError:
            payload = {"text": r.text or ""}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        if r.ok:
            return payload
        return {
            "error": payload.get("error") or "http_error",
            "status_code": r.status_code,
            "data": payload,
        }

    def send_text(self, phone: Optional[str], message: str) -> Dict[str, Any]:
        if not phone:
            return {"error": "missing_target", "detail": "Informe o telefone."}
        try:
            number = self.normalize_number(phone)
        except ValueError as e:
            return {"error": "invalid_phone", "detail": str(e)}
        return self._request("POST", f"message/sendText/{self.instance_name}", {"number": number, "text": message})

    @staticmethod
    def normalize_number(phone: str, default_country: str = "55") -> str:
        """Só dígitos, com DDI (Evolution não usa '+')."""
        digits = re.sub(r"\D", "", phone or "")
        if not digits:
            raise ValueError("Telefone ausente.")
        if digits.startswith(default_country):
            return digits
        return f"{default_country}{digits}"

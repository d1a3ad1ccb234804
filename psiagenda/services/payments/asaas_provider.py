# psiagenda/services/payments/asaas_provider.py
from __future__ import annotations
import os
from datetime import date
from typing import Dict, Any, Optional

from .base import (
    PaymentProvider,
    GatewayKind,
    ChargeStatus,
    Payer,
    CardData,
    PixCharge,
    CardCharge,
    WebhookResult,
    ProviderConfigError,
    build_session,
    http_timeout,
    read_json,
    safe_truncate,
)
from ...utils.money import ensure_positive_cents, to_major_units

_APPROVED = {"RECEIVED", "CONFIRMED", "RECEIVED_IN_CASH"}


class AsaasProvider(PaymentProvider):
    """
    Asaas v3: cria o cliente, a cobrança PIX e busca o QR.
    Cartão ainda não suportado (ProviderConfigError).
    """

    kind = GatewayKind.ASAAS
    API_BASE = "https://api.asaas.com/v3"

    def __init__(self, access_token: Optional[str] = None):
        self.token = access_token or os.getenv("ASAAS_ACCESS_TOKEN")
        if not self.token:
            raise ProviderConfigError("Asaas: access token não configurado")
        self.timeout = http_timeout()
        self.session = build_session()

    def _headers(self) -> Dict[str, str]:
        return {"access_token": self.token, "Content-Type": "application/json"}

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.post(f"{self.API_BASE}{path}", json=body, headers=self._headers(), timeout=self.timeout)
        return read_json(resp, "Erro Asaas")

    def _get(self, path: str) -> Dict[str, Any]:
        resp = self.session.get(f"{self.API_BASE}{path}", headers=self._headers(), timeout=self.timeout)
        return read_json(resp, "Erro Asaas")

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        if not payer.email:
            raise ProviderConfigError("Asaas: e-mail do pagador é obrigatório")
        amount = to_major_units(ensure_positive_cents(amount_cents))
        customer_body: Dict[str, Any] = {"name": payer.full_name, "email": payer.email}
        if payer.cpf:
            customer_body["cpfCnpj"] = payer.cpf
        customer = self._post("/customers", customer_body)
        payment = self._post(
            "/payments",
            {
                "customer": customer.get("id"),
                "billingType": "PIX",
                # Asaas aceita string decimal: evita float
                "value": str(amount),
                "dueDate": date.today().isoformat(),
                "description": safe_truncate(description or "Pagamento", 120),
            },
        )
        qr = self._get(f"/payments/{payment.get('id')}/pixQrCode")
        if not qr.get("payload"):
            raise ProviderConfigError(f"Asaas: cobrança sem QR PIX: {payment.get('id')}")
        image = qr.get("encodedImage")
        return PixCharge(
            payment_id=payment.get("id"),
            qr_code=qr.get("payload"),
            qr_image=f"data:image/png;base64,{image}" if image else None,
            status=self._map_status(payment.get("status")),
            expires_at=qr.get("expirationDate"),
            raw=payment,
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        raise ProviderConfigError("Asaas: pagamento com cartão ainda não suportado")

    def check_status(self, payment_id: str) -> ChargeStatus:
        return self._map_status(self._get(f"/payments/{payment_id}").get("status"))

    _EVENTS = {
        "PAYMENT_RECEIVED": ChargeStatus.APPROVED,
        "PAYMENT_CONFIRMED": ChargeStatus.APPROVED,
        "PAYMENT_REFUNDED": ChargeStatus.REFUNDED,
        "PAYMENT_DELETED": ChargeStatus.CANCELLED,
        "PAYMENT_OVERDUE": ChargeStatus.CANCELLED,
    }

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookResult:
        payment = payload.get("payment") or {}
        if not payment.get("id"):
            return WebhookResult(raw=payload)
        return WebhookResult(
            provider_payment_id=payment.get("id"),
            status=cls._EVENTS.get(str(payload.get("event") or "")),
            raw=payload,
        )

    @staticmethod
    def _map_status(s: Optional[str]) -> ChargeStatus:
        s = (s or "PENDING").upper()
        if s in _APPROVED:
            return ChargeStatus.APPROVED
        if s in {"REFUNDED", "REFUND_REQUESTED"}:
            return ChargeStatus.REFUNDED
        if s in {"OVERDUE", "DELETED"}:
            return ChargeStatus.CANCELLED
        return ChargeStatus.PENDING

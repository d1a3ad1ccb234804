# psiagenda/services/payments/pushinpay_provider.py
from __future__ import annotations
import os
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
)
from ...utils.money import ensure_positive_cents


class PushinPayProvider(PaymentProvider):
    """PushinPay: somente PIX (cashIn). Cartão levanta ProviderConfigError."""

    kind = GatewayKind.PUSHINPAY
    API_BASE = "https://api.pushinpay.com.br/api/pix"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("PUSHINPAY_API_KEY")
        if not self.api_key:
            raise ProviderConfigError("PushinPay: api key não configurada")
        self.timeout = http_timeout()
        self.session = build_session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _webhook_url(self) -> str:
        base = os.getenv("PUBLIC_BASE_URL")
        return f"{base.rstrip('/')}/pagamentos/webhook/pushinpay" if base else ""

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        body = {"value": ensure_positive_cents(amount_cents), "webhook_url": self._webhook_url()}
        resp = self.session.post(f"{self.API_BASE}/cashIn", json=body, headers=self._headers(), timeout=self.timeout)
        js = read_json(resp, "Erro ao criar PIX")
        code = js.get("qr_code") or js.get("qrcode") or js.get("pix_code")
        if not code:
            raise ProviderConfigError("PushinPay: resposta sem código PIX")
        b64 = js.get("qr_code_base64") or js.get("qrcode_base64")
        if b64 and not b64.startswith("data:"):
            b64 = f"data:image/png;base64,{b64}"
        return PixCharge(
            payment_id=str(js.get("id") or js.get("transactionId")),
            qr_code=code,
            qr_image=b64,
            status=ChargeStatus.PENDING,
            raw=js,
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        raise ProviderConfigError("PushinPay: pagamento com cartão não suportado")

    def check_status(self, payment_id: str) -> ChargeStatus:
        resp = self.session.get(f"{self.API_BASE}/cashIn/{payment_id}", headers=self._headers(), timeout=self.timeout)
        return self._map_status(read_json(resp, "Erro ao consultar PIX").get("status"))

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookResult:
        payment_id = payload.get("id") or payload.get("transaction_id")
        raw_status = payload.get("status")
        if not payment_id or not raw_status:
            return WebhookResult(raw=payload)
        status = cls._map_status(raw_status)
        if status is ChargeStatus.PENDING:
            return WebhookResult(provider_payment_id=str(payment_id), raw=payload)
        return WebhookResult(provider_payment_id=str(payment_id), status=status, raw=payload)

    @staticmethod
    def _map_status(s: Optional[str]) -> ChargeStatus:
        s = (s or "").lower()
        if s in {"paid", "approved", "completed"}:
            return ChargeStatus.APPROVED
        if s in {"failed", "rejected"}:
            return ChargeStatus.REJECTED
        if s in {"canceled", "cancelled", "expired"}:
            return ChargeStatus.CANCELLED
        if s == "refunded":
            return ChargeStatus.REFUNDED
        return ChargeStatus.PENDING

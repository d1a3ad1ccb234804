# psiagenda/services/payments/pagseguro_provider.py
from __future__ import annotations
import os
import uuid
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
from ...utils.money import ensure_positive_cents


class PagSeguroProvider(PaymentProvider):
    """PagSeguro (API /charges). Valor em centavos no campo amount.value."""

    kind = GatewayKind.PAGSEGURO
    API_BASE = "https://api.pagseguro.com"

    def __init__(self, token: Optional[str] = None):
        self.token = token or os.getenv("PAGSEGURO_TOKEN")
        if not self.token:
            raise ProviderConfigError("PagSeguro: token não configurado")
        self.timeout = http_timeout()
        self.session = build_session()

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    def _create_charge(self, amount_cents: int, description: str, payment_method: Dict[str, Any], default_message: str) -> Dict[str, Any]:
        body = {
            "reference_id": str(uuid.uuid4()),
            "description": safe_truncate(description or "Pagamento", 64),
            "amount": {"value": ensure_positive_cents(amount_cents), "currency": "BRL"},
            "payment_method": payment_method,
        }
        resp = self.session.post(f"{self.API_BASE}/charges", json=body, headers=self._headers(), timeout=self.timeout)
        return read_json(resp, default_message)

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        js = self._create_charge(amount_cents, description, {"type": "PIX"}, "Erro ao criar PIX")
        qr = (js.get("qr_codes") or [{}])[0]
        if not qr.get("text"):
            raise ProviderConfigError(f"PagSeguro: cobrança sem QR PIX: {js.get('id')}")
        image = next(
            (link.get("href") for link in qr.get("links") or [] if "PNG" in str(link.get("media", "")).upper()),
            None,
        )
        return PixCharge(
            payment_id=js.get("id"),
            qr_code=qr.get("text"),
            qr_image=image,
            status=self._map_status(js.get("status")),
            expires_at=qr.get("expiration_date"),
            raw=js,
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        js = self._create_charge(
            amount_cents,
            description,
            {
                "type": "CREDIT_CARD",
                "installments": int(card.installments or 1),
                "capture": True,
                # token do SDK de criptografia do PagSeguro
                "card": {"encrypted": card.token},
            },
            "Erro ao processar cartão",
        )
        status = self._map_status(js.get("status"))
        return CardCharge(payment_id=js.get("id"), approved=status is ChargeStatus.APPROVED, status=status, raw=js)

    def check_status(self, payment_id: str) -> ChargeStatus:
        resp = self.session.get(f"{self.API_BASE}/charges/{payment_id}", headers=self._headers(), timeout=self.timeout)
        return self._map_status(read_json(resp, "Erro ao consultar cobrança").get("status"))

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookResult:
        # o PagSeguro manda o pedido com charges[]; às vezes a própria charge
        charges = payload.get("charges")
        charge = charges[0] if isinstance(charges, list) and charges else payload
        raw_status = charge.get("status")
        payment_id = charge.get("id")
        if not raw_status or not payment_id:
            return WebhookResult(raw=payload)
        return WebhookResult(provider_payment_id=payment_id, status=cls._map_status(raw_status), raw=payload)

    @staticmethod
    def _map_status(s: Optional[str]) -> ChargeStatus:
        s = (s or "").upper()
        if s == "PAID":
            return ChargeStatus.APPROVED
        if s == "DECLINED":
            return ChargeStatus.REJECTED
        if s == "CANCELED":
            return ChargeStatus.CANCELLED
        # WAITING, IN_ANALYSIS, AUTHORIZED
        return ChargeStatus.PENDING

# psiagenda/services/payments/pagarme_provider.py
from __future__ import annotations
import os
import re
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


class PagarmeProvider(PaymentProvider):
    """
    Pagar.me v5 – pedidos (/orders) com um item e um pagamento.
    Opcionais:
      - PAGARME_PIX_EXPIRES_IN        (segundos, default 3600)
      - PAGARME_STATEMENT_DESCRIPTOR  (default "PSIAGENDA")
    """

    kind = GatewayKind.PAGARME
    API_BASE = "https://api.pagar.me/core/v5"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("PAGARME_API_KEY")
        if not self.api_key:
            raise ProviderConfigError("Pagar.me: api key não configurada")
        self.timeout = http_timeout()
        self.session = build_session()

    def _auth(self):
        return (self.api_key, "")

    def _customer(self, payer: Payer) -> Dict[str, Any]:
        customer: Dict[str, Any] = {
            "name": payer.full_name,
            "email": payer.email,
            "type": "individual",
        }
        if payer.cpf:
            customer["document"] = payer.cpf
        phone = re.sub(r"\D", "", payer.phone or "")
        if phone.startswith("55") and len(phone) > 11:
            phone = phone[2:]
        if len(phone) >= 10:
            customer["phones"] = {
                "mobile_phone": {"country_code": "55", "area_code": phone[:2], "number": phone[2:]}
            }
        return customer

    def _create_order(self, amount_cents: int, description: str, payer: Payer, payment: Dict[str, Any], default_message: str) -> Dict[str, Any]:
        body = {
            "items": [
                {
                    "amount": ensure_positive_cents(amount_cents),
                    "description": safe_truncate(description or "Pagamento", 120),
                    "quantity": 1,
                    "code": "service",
                }
            ],
            "customer": self._customer(payer),
            "payments": [payment],
        }
        resp = self.session.post(f"{self.API_BASE}/orders", json=body, auth=self._auth(), timeout=self.timeout)
        return read_json(resp, default_message)

    # ------------------------------- API ----------------------------------

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        js = self._create_order(
            amount_cents,
            description,
            payer,
            {"payment_method": "pix", "pix": {"expires_in": int(os.getenv("PAGARME_PIX_EXPIRES_IN", "3600"))}},
            "Erro ao criar PIX",
        )
        last = ((js.get("charges") or [{}])[0]).get("last_transaction") or {}
        if not last.get("qr_code"):
            raise ProviderConfigError(f"Pagar.me: pedido sem QR PIX: {js.get('id')}")
        return PixCharge(
            payment_id=js.get("id"),
            qr_code=last.get("qr_code"),
            qr_image=last.get("qr_code_url"),
            status=self._map_status(js.get("status")),
            expires_at=last.get("expires_at"),
            raw=js,
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        js = self._create_order(
            amount_cents,
            description,
            payer,
            {
                "payment_method": "credit_card",
                "credit_card": {
                    "card_token": card.token,
                    "installments": int(card.installments or 1),
                    "statement_descriptor": os.getenv("PAGARME_STATEMENT_DESCRIPTOR", "PSIAGENDA")[:13],
                },
            },
            "Erro ao processar cartão",
        )
        status = self._map_status(js.get("status"))
        return CardCharge(payment_id=js.get("id"), approved=status is ChargeStatus.APPROVED, status=status, raw=js)

    def check_status(self, payment_id: str) -> ChargeStatus:
        resp = self.session.get(f"{self.API_BASE}/orders/{payment_id}", auth=self._auth(), timeout=self.timeout)
        return self._map_status(read_json(resp, "Erro ao consultar pedido").get("status"))

    # ----------------------------------------------------------------------

    _EVENTS = {
        "order.paid": ChargeStatus.APPROVED,
        "order.payment_failed": ChargeStatus.REJECTED,
        "order.canceled": ChargeStatus.CANCELLED,
        "order.refunded": ChargeStatus.REFUNDED,
    }

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookResult:
        event = payload.get("event") or payload.get("type")
        if not event:
            return WebhookResult(raw=payload)
        payment_id = (payload.get("data") or {}).get("id") or payload.get("id")
        return WebhookResult(provider_payment_id=payment_id, status=cls._EVENTS.get(event), raw=payload)

    @staticmethod
    def _map_status(s: Optional[str]) -> ChargeStatus:
        s = (s or "").lower()
        if s == "paid":
            return ChargeStatus.APPROVED
        if s == "canceled":
            return ChargeStatus.CANCELLED
        if s == "failed":
            return ChargeStatus.FAILED
        return ChargeStatus.PENDING

# psiagenda/services/payments/stripe_provider.py
from __future__ import annotations
import hashlib
import hmac
import os
import time
from typing import Dict, Any, Optional, Mapping

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


class StripeProvider(PaymentProvider):
    """
    Stripe – PaymentIntents (PIX e cartão).
    Requer:
      - secret key do profissional (ou STRIPE_API_KEY)
    Opcionais:
      - HTTP_TIMEOUT_SECONDS (default 15)
      - STRIPE_WEBHOOK_SECRET       (valida header Stripe-Signature)
      - STRIPE_WEBHOOK_TOLERANCE    (segundos, default 300)
    """

    kind = GatewayKind.STRIPE
    API_BASE = "https://api.stripe.com"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self.api_key:
            raise ProviderConfigError("Stripe: secret key não configurada")
        self.timeout = http_timeout()
        self.session = build_session()

    def _auth(self):
        # Basic Auth: chave como usuário, senha vazia
        return (self.api_key, "")

    def _create_intent(self, data: Dict[str, Any], default_message: str) -> Dict[str, Any]:
        # a Stripe exige form-urlencoded
        resp = self.session.post(
            f"{self.API_BASE}/v1/payment_intents", data=data, auth=self._auth(), timeout=self.timeout
        )
        return read_json(resp, default_message)

    # ------------------------------- API ----------------------------------

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        js = self._create_intent(
            {
                "amount": ensure_positive_cents(amount_cents),
                "currency": "brl",
                "payment_method_types[]": "pix",
                "payment_method_data[type]": "pix",
                "confirm": "true",
                "description": safe_truncate(description or "Pagamento", 120),
                "receipt_email": payer.email or "",
            },
            "Erro ao criar PIX",
        )
        pix = (js.get("next_action") or {}).get("pix_display_qr_code") or {}
        if not pix.get("data"):
            raise ProviderConfigError(f"Stripe: PaymentIntent sem QR PIX: {js.get('id')}")
        return PixCharge(
            payment_id=js.get("id"),
            qr_code=pix.get("data"),
            qr_image=pix.get("image_url_png"),
            status=self._map_status(js.get("status")),
            expires_at=str(pix.get("expires_at")) if pix.get("expires_at") else None,
            raw=js,
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        js = self._create_intent(
            {
                "amount": ensure_positive_cents(amount_cents),
                "currency": "brl",
                "payment_method": card.token,
                "confirm": "true",
                "description": safe_truncate(description or "Pagamento", 120),
                "receipt_email": payer.email or "",
            },
            "Erro ao processar cartão",
        )
        status = self._map_status(js.get("status"))
        return CardCharge(payment_id=js.get("id"), approved=status is ChargeStatus.APPROVED, status=status, raw=js)

    def check_status(self, payment_id: str) -> ChargeStatus:
        resp = self.session.get(
            f"{self.API_BASE}/v1/payment_intents/{payment_id}", auth=self._auth(), timeout=self.timeout
        )
        js = read_json(resp, "Erro ao consultar pagamento")
        return self._map_status(js.get("status"))

    # ----------------------------------------------------------------------

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookResult:
        evt_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object") or {}
        status: Optional[ChargeStatus] = None
        if evt_type == "payment_intent.succeeded":
            status = ChargeStatus.APPROVED
        elif evt_type == "payment_intent.payment_failed":
            status = ChargeStatus.REJECTED
        elif evt_type == "payment_intent.canceled":
            status = ChargeStatus.CANCELLED
        elif evt_type == "charge.refunded":
            status = ChargeStatus.REFUNDED
        payment_id = obj.get("payment_intent") if evt_type == "charge.refunded" else obj.get("id")
        return WebhookResult(provider_payment_id=payment_id if status else None, status=status, raw=payload)

    @classmethod
    def verify_signature(cls, headers: Mapping[str, str], body: bytes) -> bool:
        """Header Stripe-Signature: t=<ts>,v1=<hmac_sha256(secret, "<ts>.<body>")>"""
        secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        if not secret:
            return True
        header = headers.get("Stripe-Signature") or ""
        parts: Dict[str, list] = {}
        for item in header.split(","):
            k, _, v = item.partition("=")
            parts.setdefault(k.strip(), []).append(v.strip())
        ts = (parts.get("t") or [""])[0]
        if not ts.isdigit():
            return False
        tolerance = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
        if abs(time.time() - int(ts)) > tolerance:
            return False
        expected = hmac.new(
            secret.encode(), f"{ts}.".encode() + body, hashlib.sha256
        ).hexdigest()
        return any(hmac.compare_digest(expected, sig) for sig in parts.get("v1", []))

    @staticmethod
    def _map_status(s: Optional[str]) -> ChargeStatus:
        s = (s or "").lower()
        if s == "succeeded":
            return ChargeStatus.APPROVED
        if s == "canceled":
            return ChargeStatus.CANCELLED
        # requires_action, processing, requires_payment_method (cartão recusado vem como HTTP 402)
        return ChargeStatus.PENDING

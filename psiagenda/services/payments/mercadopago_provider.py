# psiagenda/services/payments/mercadopago_provider.py
from __future__ import annotations
import os
import re
import uuid
import logging
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

log = logging.getLogger(__name__)


class MercadoPagoProvider(PaymentProvider):
    """
    Mercado Pago via API de pagamentos (/v1/payments), PIX e cartão tokenizado.
    Requer:
      - access token do profissional (ou MP_ACCESS_TOKEN)
    Opcionais:
      - MP_INTEGRATOR_ID                (header x-integrator-id)
      - MP_NOTIFICATION_URL             (sobrepõe PUBLIC_BASE_URL + rota padrão)
      - MP_STATEMENT_DESCRIPTOR         (texto na fatura, até ~22 chars)
      - HTTP_TIMEOUT_SECONDS            (default 15)
    """

    kind = GatewayKind.MERCADOPAGO
    API_BASE = "https://api.mercadopago.com"

    def __init__(self, access_token: Optional[str] = None):
        self.token = access_token or os.getenv("MP_ACCESS_TOKEN")
        if not self.token:
            raise ProviderConfigError("Mercado Pago: access token não configurado")
        self.integrator_id = os.getenv("MP_INTEGRATOR_ID")
        self.timeout = http_timeout()
        self.session = build_session()

    # ------------------------------- utils ---------------------------------

    def _headers(self, idempotent: bool = False) -> Dict[str, str]:
        h = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        if self.integrator_id:
            h["x-integrator-id"] = self.integrator_id
        if idempotent:
            # o MP deduplica criações repetidas com a mesma chave
            h["X-Idempotency-Key"] = str(uuid.uuid4())
        return h

    def _notification_url(self) -> Optional[str]:
        notif = os.getenv("MP_NOTIFICATION_URL")
        if notif:
            return notif
        base = os.getenv("PUBLIC_BASE_URL")
        if base:
            return f"{base.rstrip('/')}/pagamentos/webhook/mercadopago"
        return None

    def _payer(self, payer: Payer) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "email": payer.email,
            "first_name": payer.first_name,
            "last_name": payer.last_name,
        }
        if payer.cpf:
            out["identification"] = {"type": "CPF", "number": payer.cpf}
        return out

    def _post_payment(self, body: Dict[str, Any], default_message: str) -> Dict[str, Any]:
        notification_url = self._notification_url()
        if notification_url:
            body["notification_url"] = notification_url
        statement = os.getenv("MP_STATEMENT_DESCRIPTOR")
        if statement:
            body["statement_descriptor"] = statement[:22]
        resp = self.session.post(
            f"{self.API_BASE}/v1/payments",
            json=body,
            headers=self._headers(idempotent=True),
            timeout=self.timeout,
        )
        return read_json(resp, default_message)

    # ------------------------------- API -----------------------------------

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        amount = to_major_units(ensure_positive_cents(amount_cents))
        js = self._post_payment(
            {
                # o MP exige number com 2 casas
                "transaction_amount": float(amount),
                "description": safe_truncate(description or "Pagamento", 120),
                "payment_method_id": "pix",
                "payer": self._payer(payer),
            },
            "Erro ao criar pagamento PIX",
        )
        tx = ((js.get("point_of_interaction") or {}).get("transaction_data")) or {}
        qr_code = tx.get("qr_code")
        if not qr_code:
            raise ProviderConfigError(f"Mercado Pago: resposta sem código PIX: {js.get('id')}")
        qr_b64 = tx.get("qr_code_base64")
        return PixCharge(
            payment_id=str(js.get("id")),
            qr_code=qr_code,
            qr_image=f"data:image/png;base64,{qr_b64}" if qr_b64 else None,
            status=self._map_status(str(js.get("status"))),
            expires_at=js.get("date_of_expiration"),
            raw=js,
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        amount = to_major_units(ensure_positive_cents(amount_cents))
        payer_body = {"email": payer.email}
        if payer.cpf:
            payer_body["identification"] = {"type": "CPF", "number": payer.cpf}
        js = self._post_payment(
            {
                "transaction_amount": float(amount),
                "description": safe_truncate(description or "Pagamento", 120),
                "payment_method_id": "credit_card",
                "token": card.token,
                "installments": int(card.installments or 1),
                "payer": payer_body,
            },
            "Erro ao processar cartão",
        )
        status = self._map_status(str(js.get("status")))
        return CardCharge(
            payment_id=str(js.get("id")),
            approved=status is ChargeStatus.APPROVED,
            status=status,
            raw=js,
        )

    def check_status(self, payment_id: str) -> ChargeStatus:
        p = self._get_payment(payment_id)
        if p is None:
            return ChargeStatus.PENDING
        return self._map_status(str(p.get("status")))

    # ----------------------------------------------------------------------

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookResult:
        """
        Normaliza diferentes formatos de webhook do MP. Só o id é extraído:
        o status vem sempre de GET /v1/payments/{id} (check_status).
        """
        provider_payment_id: Optional[str] = None
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

        # 1) { "type": "payment", "data": { "id": "12345" } }
        if data and payload.get("type") in {"payment", "payments"}:
            provider_payment_id = str(data.get("id") or "") or None

        # 2) { "action": "payment.created", "data": { "id": "12345" } }
        if not provider_payment_id and data and "payment" in str(payload.get("action", "")):
            provider_payment_id = str(data.get("id") or "") or None

        # 3) "resource": "https://api.mercadopago.com/v1/payments/1234" (IPN antigo)
        if not provider_payment_id and isinstance(payload.get("resource"), str):
            m = re.search(r"/payments/(\d+)", payload["resource"])
            if m:
                provider_payment_id = m.group(1)

        return WebhookResult(provider_payment_id=provider_payment_id, raw=payload)

    # ----------------------------- helpers ---------------------------------

    def _get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        """GET /v1/payments/{id}"""
        resp = self.session.get(
            f"{self.API_BASE}/v1/payments/{payment_id}",
            headers=self._headers(),
            timeout=self.timeout,
        )
        if resp.status_code == 404:
            return None
        return read_json(resp, "Erro ao consultar pagamento")

    @staticmethod
    def _map_status(s: str) -> ChargeStatus:
        s = (s or "").lower().strip()
        if s in {"approved", "paid"}:
            return ChargeStatus.APPROVED
        if s == "rejected":
            return ChargeStatus.REJECTED
        if s in {"cancelled", "canceled"}:
            return ChargeStatus.CANCELLED
        if s in {"refunded", "charged_back"}:
            return ChargeStatus.REFUNDED
        # 'authorized', 'in_process', 'pending', 'in_mediation', etc.
        return ChargeStatus.PENDING

# psiagenda/services/payments/simulated_provider.py
from __future__ import annotations
import os
import re
import secrets
import time
from typing import Callable, Dict, Any, Optional
from urllib.parse import quote

from .base import (
    PaymentProvider,
    GatewayKind,
    ChargeStatus,
    Payer,
    CardData,
    PixCharge,
    CardCharge,
    WebhookResult,
    PaymentError,
)
from ...utils.money import ensure_positive_cents, to_major_units

QR_IMAGE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data={data}"
_ID_RE = re.compile(r"^sim_(\d+)_[0-9a-f]+$")


class SimulatedProvider(PaymentProvider):
    """
    Cobrança local para demonstração/onboarding (profissional sem gateway).
    Nenhum dinheiro se move:
      - o código PIX é sintético e a imagem do QR é gerada por URL pública;
      - o id carrega o instante de criação (sim_<epoch_ms>_<hex>), então
        check_status não guarda estado e aprova após `approval_seconds`.
    Tudo que sai daqui leva simulated=True.
    """

    kind = GatewayKind.SIMULATED

    def __init__(self, approval_seconds: Optional[float] = None, clock: Callable[[], float] = time.time):
        if approval_seconds is None:
            approval_seconds = float(os.getenv("SIMULATED_APPROVAL_SECONDS", "8"))
        self.approval_seconds = approval_seconds
        self.clock = clock

    def _new_id(self) -> str:
        return f"sim_{int(self.clock() * 1000)}_{secrets.token_hex(4)}"

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        amount = to_major_units(ensure_positive_cents(amount_cents))
        ts = int(self.clock() * 1000)
        code = (
            f"00020126580014br.gov.bcb.pix0136{ts}5204000053039865404{amount}"
            "5802BR5925ACOLHEAQUI6009SAO PAULO62070503***6304"
        )
        return PixCharge(
            payment_id=self._new_id(),
            qr_code=code,
            qr_image=QR_IMAGE_URL.format(data=quote(code, safe="")),
            status=ChargeStatus.PENDING,
            simulated=True,
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        ensure_positive_cents(amount_cents)
        return CardCharge(payment_id=self._new_id(), approved=True, status=ChargeStatus.APPROVED, simulated=True)

    def check_status(self, payment_id: str) -> ChargeStatus:
        m = _ID_RE.match(payment_id or "")
        if not m:
            raise PaymentError(f"Id de cobrança simulada inválido: {payment_id!r}")
        created = int(m.group(1)) / 1000.0
        if self.clock() - created >= self.approval_seconds:
            return ChargeStatus.APPROVED
        return ChargeStatus.PENDING

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookResult:
        # cobrança simulada nunca recebe webhook
        return WebhookResult(raw=payload)

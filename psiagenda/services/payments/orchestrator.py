# psiagenda/services/payments/orchestrator.py
from __future__ import annotations
import logging
from typing import Dict, Any, Optional, Type

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
    resolve_gateway_token,
)
from .mercadopago_provider import MercadoPagoProvider
from .stripe_provider import StripeProvider
from .pagarme_provider import PagarmeProvider
from .pagseguro_provider import PagSeguroProvider
from .pushinpay_provider import PushinPayProvider
from .asaas_provider import AsaasProvider
from .simulated_provider import SimulatedProvider

log = logging.getLogger(__name__)

_PROVIDERS: Dict[GatewayKind, Type[PaymentProvider]] = {
    GatewayKind.MERCADOPAGO: MercadoPagoProvider,
    GatewayKind.STRIPE: StripeProvider,
    GatewayKind.PAGARME: PagarmeProvider,
    GatewayKind.PAGSEGURO: PagSeguroProvider,
    GatewayKind.PUSHINPAY: PushinPayProvider,
    GatewayKind.ASAAS: AsaasProvider,
    GatewayKind.SIMULATED: SimulatedProvider,
}


class PaymentOrchestrator:
    """
    Orquestrador de pagamentos.
    - Seleciona o provider pelo GatewayKind (conjunto fechado).
    - for_professional(...) lê o gateway salvo nas configurações do profissional
      e cai para a cobrança simulada quando não há credenciais ativas.
    - Delega criação de cobrança, consulta de status e webhooks ao provider.
    """

    def __init__(
        self,
        kind: "GatewayKind | str | None" = None,
        token: Optional[str] = None,
        *,
        provider: Optional[PaymentProvider] = None,
    ):
        if provider is not None:
            self.provider = provider
            self.kind = provider.kind
        else:
            self.kind = GatewayKind.parse(kind) if not isinstance(kind, GatewayKind) else kind
            self.provider = self._make_provider(self.kind, token)

    # ------------------------------------------------------------------ #
    # Factory
    # ------------------------------------------------------------------ #
    @staticmethod
    def _make_provider(kind: GatewayKind, token: Optional[str]) -> PaymentProvider:
        cls = _PROVIDERS.get(kind)
        if cls is None:
            raise ProviderConfigError(f"Provider desconhecido: {kind!r}")
        if kind is GatewayKind.SIMULATED:
            return cls()
        return cls(token)

    @classmethod
    def for_professional(cls, professional: Any) -> "PaymentOrchestrator":
        """
        Gateway configurado + ativo + token presente -> provider real.
        Caso contrário -> SimulatedProvider (nenhum dinheiro se move).
        """
        gateway = getattr(professional, "gateway", None)
        active = getattr(professional, "gateway_active", True)
        if gateway and active:
            kind = GatewayKind.parse(gateway)
            token = resolve_gateway_token(kind, getattr(professional, "gateway_credentials", None))
            if token:
                return cls(kind, token)
            log.info("Profissional %s sem credenciais para %s; usando cobrança simulada",
                     getattr(professional, "id", "?"), kind.value)
        return cls(GatewayKind.SIMULATED)

    @staticmethod
    def provider_class(kind: "GatewayKind | str") -> Type[PaymentProvider]:
        """Classe do provider (parse_webhook/verify_signature não exigem credenciais)."""
        kind = kind if isinstance(kind, GatewayKind) else GatewayKind.parse(kind)
        return _PROVIDERS[kind]

    @staticmethod
    def available_providers() -> Dict[str, str]:
        return {
            "mercadopago": "Mercado Pago (PIX e cartão)",
            "stripe": "Stripe PaymentIntents (PIX e cartão)",
            "pagarme": "Pagar.me v5 (PIX e cartão)",
            "pagseguro": "PagSeguro (PIX e cartão)",
            "pushinpay": "PushinPay (somente PIX)",
            "asaas": "Asaas (somente PIX)",
        }

    # ------------------------------------------------------------------ #
    # API pública
    # ------------------------------------------------------------------ #
    @property
    def simulated(self) -> bool:
        return self.kind is GatewayKind.SIMULATED

    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        return self.provider.create_pix_charge(
            amount_cents=amount_cents, description=(description or "Pagamento")[:120], payer=payer
        )

    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        return self.provider.create_card_charge(
            amount_cents=amount_cents, description=(description or "Pagamento")[:120], payer=payer, card=card
        )

    def check_status(self, payment_id: str) -> ChargeStatus:
        return self.provider.check_status(payment_id)

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookResult:
        return self.provider.parse_webhook(payload)

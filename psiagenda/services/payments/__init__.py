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
    ProviderConfigError,
    ProviderHTTPError,
    resolve_gateway_token,
)
from .orchestrator import PaymentOrchestrator
from .simulated_provider import SimulatedProvider

__all__ = [
    "PaymentProvider",
    "GatewayKind",
    "ChargeStatus",
    "Payer",
    "CardData",
    "PixCharge",
    "CardCharge",
    "WebhookResult",
    "PaymentError",
    "ProviderConfigError",
    "ProviderHTTPError",
    "resolve_gateway_token",
    "PaymentOrchestrator",
    "SimulatedProvider",
]

from __future__ import annotations
from typing import TYPE_CHECKING

# Exportamos só os nomes; o carregamento real é feito sob demanda em __getattr__
__all__ = [
    "CheckoutController",
    "CheckoutConfig",
    "CheckoutState",
    "CheckoutError",
    "CheckoutValidationError",
    "FulfillmentOrchestrator",
    "FulfillmentError",
    "PaymentConfirmation",
    "OfferTimer",
    "SlotReservationBook",
    "is_demo_profile",
    "PaymentOrchestrator",
    "PaymentProvider",
]


def __getattr__(name: str):
    if name in {"CheckoutController", "CheckoutConfig", "CheckoutState", "CheckoutError"}:
        from . import checkout
        return getattr(checkout, name)
    if name == "CheckoutValidationError":
        from .validation import CheckoutValidationError
        return CheckoutValidationError
    if name in {"FulfillmentOrchestrator", "FulfillmentError"}:
        from . import fulfillment
        return getattr(fulfillment, name)
    if name == "PaymentConfirmation":
        from .confirmation import PaymentConfirmation
        return PaymentConfirmation
    if name == "OfferTimer":
        from .offer_timer import OfferTimer
        return OfferTimer
    if name == "SlotReservationBook":
        from .reservations import SlotReservationBook
        return SlotReservationBook
    if name == "is_demo_profile":
        from .demo_guard import is_demo_profile
        return is_demo_profile

    # Pagamentos
    if name == "PaymentOrchestrator":
        from .payments.orchestrator import PaymentOrchestrator
        return PaymentOrchestrator
    if name == "PaymentProvider":
        from .payments.base import PaymentProvider
        return PaymentProvider

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(__all__)


# Ajuda para type checkers (mypy/pyright) sem forçar import em runtime
if TYPE_CHECKING:
    from .checkout import CheckoutController, CheckoutConfig, CheckoutState, CheckoutError
    from .validation import CheckoutValidationError
    from .fulfillment import FulfillmentOrchestrator, FulfillmentError
    from .confirmation import PaymentConfirmation
    from .offer_timer import OfferTimer
    from .reservations import SlotReservationBook
    from .demo_guard import is_demo_profile
    from .payments.orchestrator import PaymentOrchestrator
    from .payments.base import PaymentProvider

from datetime import date, timedelta

import pytest

from psiagenda.persistence import db as db_module
from psiagenda.persistence.db import Professional, Service
from psiagenda.persistence.repositories import ProfessionalRepository, ServiceRepository
from psiagenda.services.checkout import CheckoutConfig, CheckoutController
from psiagenda.services.fulfillment import FulfillmentOrchestrator
from psiagenda.services.payments.base import (
    PaymentProvider,
    GatewayKind,
    ChargeStatus,
    PixCharge,
    CardCharge,
    WebhookResult,
)
from psiagenda.services.payments.orchestrator import PaymentOrchestrator
from psiagenda.services.validation import CheckoutForm

VALID_CPF = "529.982.247-25"

_ENV_KEYS = [
    "RESEND_API_KEY",
    "EVOLUTION_API_URL",
    "EVOLUTION_API_KEY",
    "EVOLUTION_INSTANCE_NAME",
    "CALENDAR_SYNC_URL",
    "CALENDAR_SYNC_TOKEN",
    "PUBLIC_BASE_URL",
    "CHECKOUT_POLL_INTERVAL_SECONDS",
    "CHECKOUT_POLL_MAX_ATTEMPTS",
    "CHECKOUT_RESERVE_SLOTS",
    "CHECKOUT_SESSION_TTL_SECONDS",
    "SIMULATED_APPROVAL_SECONDS",
    "STRIPE_WEBHOOK_SECRET",
    "ALLOWED_ORIGINS",
]


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Banco SQLite temporário por teste e nenhuma integração externa configurada."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    db_module.configure(f"sqlite:///{tmp_path}/app.db")
    db_module.init_db()
    yield
    db_module.SessionLocal.remove()


class FakeProvider(PaymentProvider):
    """Gateway falso: devolve os status da lista em ordem (o último se repete)."""

    kind = GatewayKind.MERCADOPAGO

    def __init__(self, statuses=None, card_status=ChargeStatus.APPROVED, fail_on_create=None):
        self.statuses = list(statuses or [ChargeStatus.PENDING])
        self.card_status = card_status
        self.fail_on_create = fail_on_create
        self.calls = {"pix": 0, "card": 0, "status": 0}
        self.last_amount = None

    def create_pix_charge(self, *, amount_cents, description, payer):
        self.calls["pix"] += 1
        self.last_amount = amount_cents
        if self.fail_on_create:
            raise self.fail_on_create
        return PixCharge(payment_id="pay-1", qr_code="00020126PIXFAKE", qr_image="data:image/png;base64,AAA")

    def create_card_charge(self, *, amount_cents, description, payer, card):
        self.calls["card"] += 1
        self.last_amount = amount_cents
        if self.fail_on_create:
            raise self.fail_on_create
        return CardCharge(
            payment_id="card-1",
            approved=self.card_status is ChargeStatus.APPROVED,
            status=self.card_status,
        )

    def check_status(self, payment_id):
        self.calls["status"] += 1
        idx = min(self.calls["status"], len(self.statuses)) - 1
        return self.statuses[idx]

    @classmethod
    def parse_webhook(cls, payload):
        return WebhookResult(raw=payload)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.notices = []

    def send_appointment_notification(self, notice):
        if self.fail:
            raise RuntimeError("smtp fora do ar")
        self.notices.append(notice)
        return {"emailToClient": True, "whatsappToClient": False, "whatsappToProfessional": False}


class StaticCalendar:
    def __init__(self, result=None, fail=False):
        self.result = result or {}
        self.fail = fail
        self.calls = 0

    def sync_appointment(self, professional_id, appointment_id):
        self.calls += 1
        if self.fail:
            raise RuntimeError("calendar indisponível")
        return self.result


def seed(
    *,
    professional_id="prof-1",
    service_id="svc-1",
    is_demo=False,
    gateway="mercadopago",
    credentials="TEST-access-token",
    price_cents=15000,
    checkout_config=None,
):
    ProfessionalRepository().salvar(
        Professional(
            id=professional_id,
            full_name="Dra. Ana Souza",
            email="ana@example.com",
            phone="11988887777",
            is_demo=is_demo,
            gateway=gateway,
            gateway_credentials=credentials,
            gateway_active=True,
        )
    )
    ServiceRepository().salvar(
        Service(
            id=service_id,
            professional_id=professional_id,
            name="Sessão de Psicoterapia",
            price_cents=price_cents,
            duration_minutes=50,
            session_type="Sessão Individual",
            checkout_config=checkout_config,
        )
    )
    return professional_id, service_id


def future_date(days=7) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


def make_form(**overrides) -> CheckoutForm:
    data = dict(
        name="Maria Silva",
        email="maria@example.com",
        phone="(11) 99999-0000",
        cpf=VALID_CPF,
        payment_method="pix",
        appointment_date=future_date(),
        appointment_time="14:00",
    )
    data.update(overrides)
    return CheckoutForm(**data)


def make_controller(service_id, provider, *, calendar=None, notifier=None, reservations=None, **config):
    cfg = dict(poll_interval_seconds=0, poll_max_attempts=60)
    cfg.update(config)
    fulfillment = FulfillmentOrchestrator(
        calendar=calendar or StaticCalendar(),
        notifier=notifier or RecordingNotifier(),
        reservations=reservations,
        base_url="https://psiagenda.test",
    )
    return CheckoutController(
        service_id,
        config=CheckoutConfig(**cfg),
        gateway_for=lambda professional: PaymentOrchestrator(provider=provider),
        fulfillment=fulfillment,
        reservations=reservations,
    )


def count_rows(model) -> int:
    with db_module.get_session() as s:
        return s.query(model).count()

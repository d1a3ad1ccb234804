import hashlib
import hmac
import time
from decimal import Decimal

import pytest

from psiagenda.persistence.db import Professional
from psiagenda.services.payments.base import (
    ChargeStatus,
    GatewayKind,
    Payer,
    CardData,
    ProviderConfigError,
    ProviderHTTPError,
    PaymentError,
    resolve_gateway_token,
    safe_truncate,
)
from psiagenda.services.payments.orchestrator import PaymentOrchestrator
from psiagenda.services.payments.mercadopago_provider import MercadoPagoProvider
from psiagenda.services.payments.stripe_provider import StripeProvider
from psiagenda.services.payments.pagarme_provider import PagarmeProvider
from psiagenda.services.payments.pagseguro_provider import PagSeguroProvider
from psiagenda.services.payments.pushinpay_provider import PushinPayProvider
from psiagenda.services.payments.asaas_provider import AsaasProvider
from psiagenda.services.payments.simulated_provider import SimulatedProvider
from psiagenda.utils.money import ensure_positive_cents, fmt_brl, to_cents, to_major_units


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


class FakeSession:
    """Responde em ordem e guarda cada chamada (method, url, kwargs)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)


PAYER = Payer.from_name("Maria da Silva", "maria@example.com", "52998224725", "11999990000")


# ------------------------------------------------------------- dinheiro

def test_money_helpers():
    assert to_major_units(15000) == Decimal("150.00")
    assert to_major_units(1) == Decimal("0.01")
    assert to_cents("150.10") == 15010
    assert fmt_brl(1234567) == "R$ 12.345,67"
    with pytest.raises(ValueError):
        ensure_positive_cents(0)
    with pytest.raises(ValueError):
        ensure_positive_cents(150.0)
    with pytest.raises(TypeError):
        to_cents(1.5)


def test_payer_from_name_splits_first_and_last():
    p = Payer.from_name("Maria da Silva", "m@x.com")
    assert (p.first_name, p.last_name) == ("Maria", "da Silva")
    assert Payer.from_name("Maria", "m@x.com").last_name == "Maria"


def test_safe_truncate():
    assert safe_truncate("abc", 120) == "abc"
    assert len(safe_truncate("x" * 200, 120)) == 120


# ------------------------------------------------------------- credenciais

@pytest.mark.parametrize(
    "gateway, raw, expected",
    [
        ("mercadopago", '{"accessToken": "APP_USR-1"}', "APP_USR-1"),
        ("pushinpay", '{"apiKey": "push-1"}', "push-1"),
        ("stripe", '{"secretKey": "sk_test_1"}', "sk_test_1"),
        ("mercadopago", "PUBLIC-KEY|APP_USR-2", "APP_USR-2"),
        ("pagarme", "sk_pagarme|ignored", "sk_pagarme"),
        ("asaas", "  $aact_token  ", "$aact_token"),
        ("mercadopago", '{"apiKey": "wrong-key"}', None),
        ("mercadopago", "", None),
        ("mercadopago", None, None),
    ],
)
def test_resolve_gateway_token(gateway, raw, expected):
    assert resolve_gateway_token(gateway, raw) == expected


def test_gateway_kind_is_closed():
    assert GatewayKind.parse(" MercadoPago ") is GatewayKind.MERCADOPAGO
    with pytest.raises(ProviderConfigError):
        GatewayKind.parse("paypal")


def test_for_professional_uses_configured_gateway():
    prof = Professional(id="p", gateway="mercadopago", gateway_credentials="PUB|APP_USR-9", gateway_active=True)
    orch = PaymentOrchestrator.for_professional(prof)
    assert orch.kind is GatewayKind.MERCADOPAGO
    assert orch.provider.token == "APP_USR-9"
    assert orch.simulated is False


@pytest.mark.parametrize(
    "gateway, credentials, active",
    [(None, None, True), ("mercadopago", None, True), ("mercadopago", "PUB|APP_USR-9", False)],
)
def test_for_professional_falls_back_to_simulated(gateway, credentials, active):
    prof = Professional(id="p", gateway=gateway, gateway_credentials=credentials, gateway_active=active)
    orch = PaymentOrchestrator.for_professional(prof)
    assert orch.simulated is True
    assert isinstance(orch.provider, SimulatedProvider)


def test_providers_require_credentials(monkeypatch):
    monkeypatch.delenv("MP_ACCESS_TOKEN", raising=False)
    with pytest.raises(ProviderConfigError):
        PaymentOrchestrator(GatewayKind.MERCADOPAGO, None)


# ------------------------------------------------------------- simulado

def test_simulated_charge_approves_after_delay():
    now = {"t": 1_700_000_000.0}
    provider = SimulatedProvider(approval_seconds=8, clock=lambda: now["t"])

    charge = provider.create_pix_charge(amount_cents=15000, description="Sessão", payer=PAYER)
    assert charge.simulated is True
    assert "150.00" in charge.qr_code
    assert charge.qr_image.startswith("https://api.qrserver.com/")
    assert provider.check_status(charge.payment_id) is ChargeStatus.PENDING

    now["t"] += 8
    assert provider.check_status(charge.payment_id) is ChargeStatus.APPROVED


def test_simulated_card_is_approved_and_bad_ids_rejected():
    provider = SimulatedProvider(approval_seconds=8)
    card = provider.create_card_charge(amount_cents=100, description="x", payer=PAYER, card=CardData("tok"))
    assert card.approved and card.simulated
    with pytest.raises(PaymentError):
        provider.check_status("pay_123")


# ------------------------------------------------------------- Mercado Pago

def test_mercadopago_pix_charge_sends_amount_in_reais(monkeypatch):
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://psiagenda.test")
    provider = MercadoPagoProvider("APP_USR-1")
    provider.session = FakeSession(
        FakeResponse(201, {
            "id": 123,
            "status": "pending",
            "point_of_interaction": {"transaction_data": {"qr_code": "000201PIX", "qr_code_base64": "iVBOR"}},
        })
    )

    charge = provider.create_pix_charge(amount_cents=15000, description="Sessão", payer=PAYER)

    method, url, kwargs = provider.session.calls[0]
    assert url.endswith("/v1/payments")
    assert kwargs["json"]["transaction_amount"] == 150.0
    assert kwargs["json"]["payer"]["identification"] == {"type": "CPF", "number": "52998224725"}
    assert kwargs["json"]["notification_url"] == "https://psiagenda.test/pagamentos/webhook/mercadopago"
    assert "X-Idempotency-Key" in kwargs["headers"]
    assert charge.payment_id == "123"
    assert charge.qr_code == "000201PIX"
    assert charge.qr_image == "data:image/png;base64,iVBOR"


def test_mercadopago_http_error_carries_provider_message():
    provider = MercadoPagoProvider("APP_USR-1")
    provider.session = FakeSession(FakeResponse(400, {"message": "payer.email must be a valid email"}))
    with pytest.raises(ProviderHTTPError) as exc:
        provider.create_pix_charge(amount_cents=100, description="x", payer=PAYER)
    assert exc.value.status_code == 400
    assert "payer.email" in str(exc.value)


def test_mercadopago_status_mapping():
    provider = MercadoPagoProvider("APP_USR-1")
    provider.session = FakeSession(
        FakeResponse(200, {"status": "approved"}),
        FakeResponse(200, {"status": "in_process"}),
        FakeResponse(404, {}),
    )
    assert provider.check_status("1") is ChargeStatus.APPROVED
    assert provider.check_status("1") is ChargeStatus.PENDING
    assert provider.check_status("1") is ChargeStatus.PENDING


@pytest.mark.parametrize(
    "payload, payment_id, status",
    [
        ({"type": "payment", "data": {"id": "555"}}, "555", None),
        ({"action": "payment.updated", "data": {"id": 556}}, "556", None),
        ({"resource": "https://api.mercadopago.com/v1/payments/557", "topic": "payment"}, "557", None),
        ({"type": "payment", "data": {"id": "558", "status": "approved"}}, "558", None),
        ({"type": "merchant_order"}, None, None),
    ],
)
def test_mercadopago_webhook_parsing(payload, payment_id, status):
    result = MercadoPagoProvider.parse_webhook(payload)
    assert result.provider_payment_id == payment_id
    assert result.status is status


# ------------------------------------------------------------- Stripe

def test_stripe_pix_uses_cents_and_form_encoding():
    provider = StripeProvider("sk_test_1")
    provider.session = FakeSession(
        FakeResponse(200, {
            "id": "pi_1",
            "status": "requires_action",
            "next_action": {"pix_display_qr_code": {"data": "000201STRIPE", "image_url_png": "https://img"}},
        })
    )
    charge = provider.create_pix_charge(amount_cents=15000, description="Sessão", payer=PAYER)
    _, _, kwargs = provider.session.calls[0]
    assert kwargs["data"]["amount"] == 15000
    assert kwargs["auth"] == ("sk_test_1", "")
    assert charge.status is ChargeStatus.PENDING
    assert charge.qr_image == "https://img"


def test_stripe_webhook_events():
    ok = StripeProvider.parse_webhook({"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}})
    assert (ok.provider_payment_id, ok.status) == ("pi_1", ChargeStatus.APPROVED)
    refund = StripeProvider.parse_webhook({"type": "charge.refunded", "data": {"object": {"id": "ch_1", "payment_intent": "pi_1"}}})
    assert (refund.provider_payment_id, refund.status) == ("pi_1", ChargeStatus.REFUNDED)
    other = StripeProvider.parse_webhook({"type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    assert other.provider_payment_id is None


def test_stripe_signature(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    body = b'{"type":"payment_intent.succeeded"}'
    ts = str(int(time.time()))
    sig = hmac.new(b"whsec_test", f"{ts}.".encode() + body, hashlib.sha256).hexdigest()

    assert StripeProvider.verify_signature({"Stripe-Signature": f"t={ts},v1={sig}"}, body) is True
    assert StripeProvider.verify_signature({"Stripe-Signature": f"t={ts},v1=deadbeef"}, body) is False
    assert StripeProvider.verify_signature({}, body) is False


# ------------------------------------------------------------- Pagar.me / PagSeguro

def test_pagarme_pix_order():
    provider = PagarmeProvider("sk_pagarme")
    provider.session = FakeSession(
        FakeResponse(200, {
            "id": "or_1",
            "status": "pending",
            "charges": [{"last_transaction": {"qr_code": "000201PAGARME", "qr_code_url": "https://qr"}}],
        })
    )
    charge = provider.create_pix_charge(amount_cents=15000, description="Sessão", payer=PAYER)
    _, url, kwargs = provider.session.calls[0]
    assert url.endswith("/orders")
    assert kwargs["json"]["items"][0]["amount"] == 15000
    assert kwargs["json"]["customer"]["phones"]["mobile_phone"]["area_code"] == "11"
    assert charge.payment_id == "or_1"
    assert PagarmeProvider.parse_webhook({"type": "order.paid", "data": {"id": "or_1"}}).status is ChargeStatus.APPROVED


def test_pagseguro_error_messages_and_webhook():
    provider = PagSeguroProvider("tok")
    provider.session = FakeSession(
        FakeResponse(400, {"error_messages": [{"code": "40002", "description": "invalid_parameter"}]})
    )
    with pytest.raises(ProviderHTTPError) as exc:
        provider.create_pix_charge(amount_cents=100, description="x", payer=PAYER)
    assert "invalid_parameter" in str(exc.value)

    result = PagSeguroProvider.parse_webhook({"id": "ORDE_1", "charges": [{"id": "CHAR_1", "status": "PAID"}]})
    assert (result.provider_payment_id, result.status) == ("CHAR_1", ChargeStatus.APPROVED)


# ------------------------------------------------------------- PushinPay / Asaas

def test_pushinpay_pix_only(monkeypatch):
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://psiagenda.test/")
    provider = PushinPayProvider("push-1")
    provider.session = FakeSession(FakeResponse(200, {"id": "9c1", "qr_code": "000201PUSH", "qr_code_base64": "iVBOR"}))
    charge = provider.create_pix_charge(amount_cents=15000, description="x", payer=PAYER)
    _, _, kwargs = provider.session.calls[0]
    assert kwargs["json"] == {"value": 15000, "webhook_url": "https://psiagenda.test/pagamentos/webhook/pushinpay"}
    assert charge.qr_image == "data:image/png;base64,iVBOR"

    with pytest.raises(ProviderConfigError):
        provider.create_card_charge(amount_cents=100, description="x", payer=PAYER, card=CardData("tok"))
    assert PushinPayProvider.parse_webhook({"id": "9c1", "status": "created"}).status is None
    assert PushinPayProvider.parse_webhook({"id": "9c1", "status": "paid"}).status is ChargeStatus.APPROVED


def test_asaas_creates_customer_payment_and_qr():
    provider = AsaasProvider("$aact")
    provider.session = FakeSession(
        FakeResponse(200, {"id": "cus_1"}),
        FakeResponse(200, {"id": "pay_1", "status": "PENDING"}),
        FakeResponse(200, {"payload": "000201ASAAS", "encodedImage": "iVBOR"}),
    )
    charge = provider.create_pix_charge(amount_cents=15050, description="Sessão", payer=PAYER)
    urls = [call[1] for call in provider.session.calls]
    assert urls[0].endswith("/customers")
    assert urls[1].endswith("/payments")
    assert urls[2].endswith("/payments/pay_1/pixQrCode")
    assert provider.session.calls[1][2]["json"]["value"] == "150.50"
    assert charge.payment_id == "pay_1"

    result = AsaasProvider.parse_webhook({"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_1"}})
    assert result.status is ChargeStatus.APPROVED

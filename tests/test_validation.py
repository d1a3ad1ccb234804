from datetime import date, timedelta

import pytest

from conftest import make_form, VALID_CPF
from psiagenda.services.validation import (
    DEFAULT_CHECKOUT_CONFIG,
    CheckoutForm,
    merge_checkout_config,
    validate_checkout_form,
    validate_cpf,
)

TODAY = date(2025, 3, 10)


def _errors(**overrides):
    overrides.setdefault("appointment_date", (TODAY + timedelta(days=1)).isoformat())
    return validate_checkout_form(make_form(**overrides), merge_checkout_config(None), today=TODAY)


@pytest.mark.parametrize("cpf", [VALID_CPF, "52998224725", "111.444.777-35"])
def test_valid_cpfs(cpf):
    assert validate_cpf(cpf) is True


@pytest.mark.parametrize("cpf", ["", "123", "111.111.111-11", "529.982.247-24", "5299822472a"])
def test_invalid_cpfs(cpf):
    assert validate_cpf(cpf) is False


def test_valid_form_has_no_errors():
    assert _errors() == {}


def test_required_fields_messages():
    errors = _errors(name="  ", email="x@", phone="", cpf="")
    assert errors == {
        "name": "Por favor, preencha seu nome.",
        "email": "Por favor, preencha um e-mail válido.",
        "phone": "Por favor, preencha seu telefone.",
        "cpf": "Por favor, preencha seu CPF.",
    }


def test_phone_and_cpf_can_be_disabled_per_service():
    config = merge_checkout_config({"customerFields": {"enable_cpf": False, "enable_phone": False}})
    form = make_form(phone=None, cpf=None, appointment_date=(TODAY + timedelta(days=1)).isoformat())
    assert validate_checkout_form(form, config, today=TODAY) == {}


def test_payment_method_must_be_enabled():
    config = merge_checkout_config({"paymentMethods": {"pix": False}})
    form = make_form(appointment_date=(TODAY + timedelta(days=1)).isoformat())
    errors = validate_checkout_form(form, config, today=TODAY)
    assert errors == {"payment_method": "Forma de pagamento indisponível."}
    assert _errors(payment_method="boleto")["payment_method"] == "Forma de pagamento indisponível."


def test_card_requires_token():
    assert _errors(payment_method="credit_card", card=None)["card"] == "Dados do cartão não informados."
    assert _errors(payment_method="credit_card", card={"token": "tok"}) == {}


@pytest.mark.parametrize(
    "when, hour",
    [
        ((TODAY - timedelta(days=1)).isoformat(), "10:00"),
        ((TODAY + timedelta(days=91)).isoformat(), "10:00"),
        ("2025-02-30", "10:00"),
        ("10/03/2025", "10:00"),
    ],
)
def test_appointment_date_window(when, hour):
    assert "appointment_date" in _errors(appointment_date=when, appointment_time=hour)


@pytest.mark.parametrize("hour", ["24:00", "9:00", "10:60", ""])
def test_appointment_time_format(hour):
    assert _errors(appointment_time=hour)["appointment_time"] == "Horário do agendamento inválido"


def test_merge_keeps_defaults_and_does_not_mutate_them():
    merged = merge_checkout_config({"timer": {"enabled": True, "minutes": 5}})
    assert merged["timer"]["enabled"] is True
    assert merged["timer"]["text"] == "Esta oferta expira em:"
    assert merged["paymentMethods"]["pix"] is True
    assert DEFAULT_CHECKOUT_CONFIG["timer"]["enabled"] is False


def test_form_from_dict():
    form = CheckoutForm.from_dict({"name": "Ana", "email": "a@b.co", "payment_method": "pix", "cpf": ""})
    assert form.cpf is None
    assert form.appointment_time == ""

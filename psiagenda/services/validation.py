from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Optional

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
MAX_DAYS_AHEAD = 90

PAYMENT_METHODS = ("pix", "credit_card")

DEFAULT_CHECKOUT_CONFIG: Dict[str, Any] = {
    "timer": {
        "enabled": False,
        "minutes": 15,
        "text": "Esta oferta expira em:",
        "bgcolor": "#ef4444",
        "textcolor": "#ffffff",
        "sticky": True,
    },
    "paymentMethods": {"credit_card": True, "pix": True, "boleto": False},
    "customerFields": {"enable_cpf": True, "enable_phone": True},
}


def merge_checkout_config(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Config do serviço sobre os defaults (um nível de profundidade por seção)."""
    merged = copy.deepcopy(DEFAULT_CHECKOUT_CONFIG)
    for section, value in (raw or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(section), dict):
            merged[section].update(value)
        else:
            merged[section] = value
    return merged


def only_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def validate_cpf(cpf: Optional[str]) -> bool:
    """Dígitos verificadores do CPF (aceita pontuação)."""
    digits = only_digits(cpf)
    if len(digits) != 11 or digits == digits[0] * 11:
        return False
    for size in (9, 10):
        total = sum(int(digits[i]) * (size + 1 - i) for i in range(size))
        check = (total * 10) % 11
        if check == 10:
            check = 0
        if check != int(digits[size]):
            return False
    return True


class CheckoutValidationError(ValueError):
    """Formulário inválido. Nenhum efeito colateral foi produzido."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__("; ".join(errors.values()))
        self.errors = errors


@dataclass
class CheckoutForm:
    name: str
    email: str
    payment_method: str
    appointment_date: str
    appointment_time: str
    phone: Optional[str] = None
    cpf: Optional[str] = None
    card: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckoutForm":
        return cls(
            name=str(data.get("name") or ""),
            email=str(data.get("email") or ""),
            payment_method=str(data.get("payment_method") or ""),
            appointment_date=str(data.get("appointment_date") or ""),
            appointment_time=str(data.get("appointment_time") or ""),
            phone=data.get("phone") or None,
            cpf=data.get("cpf") or None,
            card=data.get("card") or None,
        )


def validate_checkout_form(form: CheckoutForm, config: Dict[str, Any], *, today: Optional[date] = None) -> Dict[str, str]:
    """
    Retorna {campo: mensagem}. Vazio = válido.
    `config` já mesclado com os defaults (merge_checkout_config).
    """
    errors: Dict[str, str] = {}
    fields = config.get("customerFields") or {}
    methods = config.get("paymentMethods") or {}
    today = today or date.today()

    if not form.name.strip():
        errors["name"] = "Por favor, preencha seu nome."

    email = form.email.strip()
    if not EMAIL_RE.match(email) or len(email) > 254:
        errors["email"] = "Por favor, preencha um e-mail válido."

    if fields.get("enable_phone"):
        if not (form.phone or "").strip():
            errors["phone"] = "Por favor, preencha seu telefone."
        elif not 10 <= len(only_digits(form.phone)) <= 15:
            errors["phone"] = "Telefone inválido."

    if fields.get("enable_cpf"):
        if not (form.cpf or "").strip():
            errors["cpf"] = "Por favor, preencha seu CPF."
        elif not validate_cpf(form.cpf):
            errors["cpf"] = "CPF inválido. Por favor, verifique os números."

    if form.payment_method not in PAYMENT_METHODS or not methods.get(form.payment_method):
        errors["payment_method"] = "Forma de pagamento indisponível."
    elif form.payment_method == "credit_card" and not (form.card or {}).get("token"):
        errors["card"] = "Dados do cartão não informados."

    if not _valid_date(form.appointment_date, today):
        errors["appointment_date"] = "Data do agendamento inválida"
    if not TIME_RE.match(form.appointment_time or ""):
        errors["appointment_time"] = "Horário do agendamento inválido"
    return errors


def parse_date(value: str) -> date:
    return date.fromisoformat(value)


def _valid_date(value: str, today: date) -> bool:
    if not DATE_RE.match(value or ""):
        return False
    try:
        d = parse_date(value)
    except ValueError:
        return False
    return today <= d <= today + timedelta(days=MAX_DAYS_AHEAD)


def ensure_valid(form: CheckoutForm, config: Dict[str, Any], *, today: Optional[date] = None) -> None:
    errors = validate_checkout_form(form, config, today=today)
    if errors:
        raise CheckoutValidationError(errors)

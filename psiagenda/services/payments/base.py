# psiagenda/services/payments/base.py
from __future__ import annotations
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Mapping, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

JSONDict = Dict[str, Any]


# ----------------------------- Tipos & Enums -----------------------------

class GatewayKind(str, Enum):
    """Conjunto fechado de gateways suportados."""
    MERCADOPAGO = "mercadopago"
    STRIPE = "stripe"
    PAGARME = "pagarme"
    PAGSEGURO = "pagseguro"
    PUSHINPAY = "pushinpay"
    ASAAS = "asaas"
    SIMULATED = "simulated"

    @classmethod
    def parse(cls, name: str) -> "GatewayKind":
        try:
            return cls((name or "").strip().lower())
        except ValueError as e:
            raise ProviderConfigError(f"Gateway não suportado: {name!r}") from e


class ChargeStatus(str, Enum):
    """Status normalizado de uma cobrança."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"  # estorno ou chargeback

    @property
    def is_terminal_failure(self) -> bool:
        return self in (ChargeStatus.REJECTED, ChargeStatus.CANCELLED, ChargeStatus.FAILED)


@dataclass
class Payer:
    email: str
    first_name: str
    last_name: str
    cpf: Optional[str] = None   # só dígitos
    phone: Optional[str] = None

    @classmethod
    def from_name(cls, name: str, email: str, cpf: Optional[str] = None, phone: Optional[str] = None) -> "Payer":
        parts = (name or "").split()
        first = parts[0] if parts else ""
        last = " ".join(parts[1:]) or first
        return cls(email=email, first_name=first, last_name=last, cpf=cpf or None, phone=phone or None)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or "Cliente"


@dataclass
class CardData:
    """Cartão já tokenizado pelo SDK do gateway no navegador. Nunca o PAN."""
    token: str
    installments: int = 1


@dataclass
class PixCharge:
    """
    Cobrança PIX criada.
    - qr_image: data URI (base64) ou URL da imagem do QR
    - qr_code: código "copia e cola"
    - simulated: True apenas para a cobrança local de demonstração
    """
    payment_id: str
    qr_code: str
    qr_image: Optional[str] = None
    status: ChargeStatus = ChargeStatus.PENDING
    expires_at: Optional[str] = None
    simulated: bool = False
    raw: Optional[JSONDict] = None


@dataclass
class CardCharge:
    payment_id: str
    approved: bool
    status: ChargeStatus = ChargeStatus.PENDING
    simulated: bool = False
    raw: Optional[JSONDict] = None


@dataclass
class WebhookResult:
    """
    Resultado normalizado de um webhook de pagamento.
    status é só o que o payload alega (fica no evento de auditoria); a
    confirmação sempre consulta check_status antes de mexer no ledger.
    """
    provider_payment_id: Optional[str] = None
    status: Optional[ChargeStatus] = None
    raw: JSONDict = field(default_factory=dict)

    def to_dict(self) -> JSONDict:
        return {
            "status": self.status.value if self.status else None,
            "provider_payment_id": self.provider_payment_id,
        }


# ----------------------------- Exceptions -----------------------------

class PaymentError(Exception):
    """Erro genérico no fluxo de pagamento."""


class ProviderConfigError(PaymentError):
    """Configuração ausente/inválida do provider (ex.: credenciais, ação não suportada)."""


class ProviderHTTPError(PaymentError):
    """Erro HTTP ao chamar o provider (status >= 400)."""
    def __init__(self, status_code: int, message: str, payload: Optional[JSONDict] = None):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.payload = payload or {}


# ----------------------------- Helpers comuns -----------------------------

def safe_truncate(text: str, max_len: int) -> str:
    """Corta texto com segurança para limites de providers (ex.: 120 chars)."""
    t = (text or "").strip()
    return t if len(t) <= max_len else (t[: max_len - 1] + "…")


def build_session(retry_methods: Tuple[str, ...] = ("GET",)) -> requests.Session:
    """
    Sessão com retry básico. Só métodos idempotentes entram no retry:
    criação de cobrança (POST) nunca é repetida automaticamente.
    """
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=0.3,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(retry_methods),
    )
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.mount("http://", HTTPAdapter(max_retries=retries))
    return session


def http_timeout() -> float:
    return float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))


def read_json(resp: requests.Response, default_message: str) -> JSONDict:
    """Decodifica a resposta; HTTP >= 400 vira ProviderHTTPError com a mensagem do provider."""
    try:
        data = resp.json()
    except ValueError:
        data = {"text": resp.text or ""}
    if not isinstance(data, dict):
        data = {"data": data}
    if resp.status_code >= 400:
        err = data.get("error")
        msg = data.get("message") or (err.get("message") if isinstance(err, dict) else err)
        # PagSeguro: error_messages[]; Asaas: errors[]
        for key in ("error_messages", "errors"):
            items = data.get(key)
            if not msg and isinstance(items, list) and items and isinstance(items[0], dict):
                msg = items[0].get("description") or items[0].get("message")
        raise ProviderHTTPError(resp.status_code, str(msg or default_message), data)
    return data


_TOKEN_KEY_BY_GATEWAY = {
    GatewayKind.MERCADOPAGO: "accessToken",
    GatewayKind.PUSHINPAY: "apiKey",
    GatewayKind.PAGARME: "apiKey",
    GatewayKind.PAGSEGURO: "token",
    GatewayKind.STRIPE: "secretKey",
    GatewayKind.ASAAS: "accessToken",
}


def resolve_gateway_token(gateway: "GatewayKind | str", raw: Optional[str]) -> Optional[str]:
    """
    Extrai o token secreto das credenciais salvas pelo profissional.
    Formatos aceitos:
      - JSON: {"accessToken": "..."} (chave depende do gateway)
      - legado "public|secret": mercadopago/stripe/pagseguro usam a 2ª parte, os demais a 1ª
      - token único
    """
    if not raw or not str(raw).strip():
        return None
    kind = gateway if isinstance(gateway, GatewayKind) else GatewayKind.parse(gateway)
    raw = str(raw).strip()
    token = raw

    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        key = _TOKEN_KEY_BY_GATEWAY.get(kind)
        value = parsed.get(key) if key else None
        token = value if isinstance(value, str) else ""
    elif "|" in raw:
        parts = raw.split("|")
        if kind in (GatewayKind.MERCADOPAGO, GatewayKind.STRIPE, GatewayKind.PAGSEGURO):
            token = parts[1] or parts[0] or raw
        else:
            token = parts[0] or raw
    return token.strip() or None


# ----------------------------- Interface Base -----------------------------

class PaymentProvider(ABC):
    """
    Interface base para providers de pagamento.
    Valores sempre em centavos (int) na fronteira.
    """

    kind: GatewayKind

    @abstractmethod
    def create_pix_charge(self, *, amount_cents: int, description: str, payer: Payer) -> PixCharge:
        """Cria uma cobrança PIX (QR + copia e cola)."""
        raise NotImplementedError

    @abstractmethod
    def create_card_charge(self, *, amount_cents: int, description: str, payer: Payer, card: CardData) -> CardCharge:
        """Cobra um cartão tokenizado."""
        raise NotImplementedError

    @abstractmethod
    def check_status(self, payment_id: str) -> ChargeStatus:
        """Consulta o status atual da cobrança no provider."""
        raise NotImplementedError

    @classmethod
    @abstractmethod
    def parse_webhook(cls, payload: JSONDict) -> WebhookResult:
        """Normaliza o webhook do provider. Não depende de credenciais."""
        raise NotImplementedError

    # --- Opcional: validação de assinatura ---
    @classmethod
    def verify_signature(cls, headers: Mapping[str, str], body: bytes) -> bool:
        """
        Hook opcional para validação de assinatura do webhook (quando o provider suportar).
        Implementações podem sobrescrever. Por padrão, retorna True.
        """
        return True

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from ..persistence.db import Professional, Service
from ..persistence.repositories import (
    PAYMENT_APPROVED,
    PAYMENT_REJECTED,
    LedgerTransitionError,
    ProfessionalRepository,
    ServiceRepository,
    TransactionLedger,
)
from .demo_guard import DEMO_BLOCK_MESSAGE, is_demo_profile
from .fulfillment import FulfillmentError, FulfillmentOrchestrator, FulfillmentOutcome
from .payments.base import CardData, ChargeStatus, Payer, PaymentError
from .payments.orchestrator import PaymentOrchestrator
from .reservations import SLOT_TAKEN_MESSAGE, SlotReservationBook, SlotUnavailable, slot_key
from .validation import (
    CheckoutForm,
    CheckoutValidationError,
    ensure_valid,
    merge_checkout_config,
    only_digits,
    parse_date,
)

log = logging.getLogger(__name__)

CHARGE_FAILED_MESSAGE = "Não foi possível criar o pagamento. Tente novamente."
MESSAGES = {
    "awaiting": "Aguardando a confirmação do pagamento.",
    "approved": "Pagamento aprovado! Estamos confirmando seu agendamento.",
    "rejected": "Pagamento recusado. Tente novamente ou escolha outra forma de pagamento.",
    "timeout": "Pagamento não confirmado. Se você já pagou, aguarde a confirmação por e-mail.",
    "slot_unavailable": SLOT_TAKEN_MESSAGE,
    "fulfilled": "Pagamento aprovado! Seu agendamento está confirmado.",
    "blocked": DEMO_BLOCK_MESSAGE,
}

# erros de rede/gateway durante a cobrança
_GATEWAY_ERRORS = (PaymentError, requests.RequestException, ValueError)


# ----------------------------- Configuração -----------------------------
@dataclass
class CheckoutConfig:
    poll_interval_seconds: float = 5.0
    poll_max_attempts: int = 60
    reserve_slots: bool = False
    reservation_minutes: int = 15
    copied_reset_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "CheckoutConfig":
        return cls(
            poll_interval_seconds=float(os.getenv("CHECKOUT_POLL_INTERVAL_SECONDS", "5")),
            poll_max_attempts=int(os.getenv("CHECKOUT_POLL_MAX_ATTEMPTS", "60")),
            reserve_slots=os.getenv("CHECKOUT_RESERVE_SLOTS", "0").strip().lower() in {"1", "true", "yes", "on"},
            reservation_minutes=int(os.getenv("CHECKOUT_RESERVATION_MINUTES", "15")),
        )


# ----------------------------- Estados -----------------------------
class CheckoutState(str, Enum):
    FORM_ENTRY = "form_entry"
    DEMO_CHECK = "demo_check"
    BLOCKED = "blocked"
    CREATING = "creating"
    CHARGE_REQUESTED = "charge_requested"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"
    FULFILLMENT_FAILED = "fulfillment_failed"


# projeção exposta para a interface
PUBLIC_STATE: Dict[CheckoutState, str] = {
    CheckoutState.FORM_ENTRY: "FormEntry",
    CheckoutState.DEMO_CHECK: "Processing",
    CheckoutState.CREATING: "Processing",
    CheckoutState.CHARGE_REQUESTED: "Processing",
    CheckoutState.AWAITING_CONFIRMATION: "AwaitingConfirmation",
    CheckoutState.APPROVED: "Approved",
    CheckoutState.REJECTED: "Rejected",
    CheckoutState.BLOCKED: "Blocked",
    CheckoutState.FULFILLED: "Fulfilled",
    CheckoutState.FULFILLMENT_FAILED: "FulfillmentFailed",
}

# estados em que a sessão não faz mais nada sozinha (Rejected ainda aceita reset)
FINISHED_STATES = frozenset({
    CheckoutState.BLOCKED,
    CheckoutState.REJECTED,
    CheckoutState.FULFILLED,
    CheckoutState.FULFILLMENT_FAILED,
})

_S = CheckoutState
TRANSITIONS: Dict[CheckoutState, frozenset] = {
    _S.FORM_ENTRY: frozenset({_S.DEMO_CHECK}),
    _S.DEMO_CHECK: frozenset({_S.BLOCKED, _S.CREATING}),
    # CREATING -> FORM_ENTRY: gateway mal configurado, nada gravado
    _S.CREATING: frozenset({_S.CHARGE_REQUESTED, _S.FORM_ENTRY}),
    _S.CHARGE_REQUESTED: frozenset({_S.AWAITING_CONFIRMATION, _S.APPROVED, _S.REJECTED, _S.FORM_ENTRY}),
    _S.AWAITING_CONFIRMATION: frozenset({_S.APPROVED, _S.REJECTED}),
    _S.APPROVED: frozenset({_S.FULFILLED, _S.FULFILLMENT_FAILED}),
    _S.REJECTED: frozenset({_S.FORM_ENTRY}),
    _S.BLOCKED: frozenset(),
    _S.FULFILLED: frozenset(),
    _S.FULFILLMENT_FAILED: frozenset(),
}


class CheckoutError(RuntimeError):
    """Operação inválida para o estado atual da sessão."""


class ServiceNotFound(CheckoutError):
    pass


# ----------------------------- Sessão -----------------------------
@dataclass
class CheckoutSession:
    service_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: CheckoutState = CheckoutState.FORM_ENTRY
    professional_id: Optional[str] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    simulated: bool = False
    pix_qr_code: Optional[str] = None
    pix_code: Optional[str] = None
    message: Optional[str] = None
    reason: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    last_tick_at: Optional[float] = None
    copied_until: float = 0.0
    cancelled: bool = False
    fulfillment: Optional[FulfillmentOutcome] = None
    finished_at: Optional[float] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def public_state(self) -> str:
        return PUBLIC_STATE[self.state]

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        out: Dict[str, Any] = {
            "session_id": self.id,
            "service_id": self.service_id,
            "state": self.public_state,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "payment_method": self.payment_method,
            "simulated": self.simulated,
            "attempts": self.attempts,
            "cancelled": self.cancelled,
        }
        if self.errors:
            out["errors"] = dict(self.errors)
        if self.reason:
            out["reason"] = self.reason
        if self.pix_code:
            out["pix"] = {
                "qr_code": self.pix_qr_code,
                "code": self.pix_code,
                "copied": now < self.copied_until,
            }
        if self.fulfillment is not None:
            out["appointment"] = self.fulfillment.to_dict()
        return out


# ----------------------------- Controller -----------------------------
class CheckoutController:
    """
    Máquina de estados de uma sessão de checkout.
    FormEntry -> DemoCheck -> (Blocked | Creating -> ChargeRequested ->
    AwaitingConfirmation | Approved) -> Fulfilled.
    Validação e checagem de demo acontecem antes de qualquer escrita no ledger.
    """

    def __init__(
        self,
        service_id: str,
        *,
        config: Optional[CheckoutConfig] = None,
        ledger: Optional[TransactionLedger] = None,
        professionals: Optional[ProfessionalRepository] = None,
        services: Optional[ServiceRepository] = None,
        gateway_for: Callable[[Professional], PaymentOrchestrator] = PaymentOrchestrator.for_professional,
        fulfillment: Optional[FulfillmentOrchestrator] = None,
        reservations: Optional[SlotReservationBook] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CheckoutConfig.from_env()
        self.ledger = ledger or TransactionLedger()
        self.professionals = professionals or ProfessionalRepository()
        self.services = services or ServiceRepository()
        self.gateway_for = gateway_for
        self.reservations = reservations if self.config.reserve_slots else None
        if self.config.reserve_slots and self.reservations is None:
            self.reservations = SlotReservationBook(ttl_seconds=self.config.reservation_minutes * 60)
        self.fulfillment = fulfillment or FulfillmentOrchestrator(ledger=self.ledger, reservations=self.reservations)
        self.clock = clock
        self.session = CheckoutSession(service_id=service_id)
        self.gateway: Optional[PaymentOrchestrator] = None
        self._cancel_event = threading.Event()

    # ------------------------------------------------------------------ #
    @property
    def state(self) -> CheckoutState:
        return self.session.state

    def _transition(self, target: CheckoutState, message: Optional[str] = None) -> None:
        current = self.session.state
        if target not in TRANSITIONS[current]:
            raise CheckoutError(f"Transição inválida: {current.value} -> {target.value}")
        log.debug("checkout %s: %s -> %s", self.session.id, current.value, target.value)
        self.session.state = target
        self.session.message = message
        self.session.finished_at = self.clock() if target in FINISHED_STATES else None

    # ------------------------------------------------------------------ #
    # Envio do formulário
    # ------------------------------------------------------------------ #
    def submit(self, form: CheckoutForm) -> CheckoutSession:
        with self.session.lock:
            if self.session.state is not CheckoutState.FORM_ENTRY:
                raise CheckoutError(f"Checkout já em andamento ({self.session.public_state})")
            service = self.services.obter(self.session.service_id)
            if service is None:
                raise ServiceNotFound(f"Serviço não encontrado: {self.session.service_id}")
            professional = self.professionals.obter(service.professional_id)
            if professional is None:
                raise ServiceNotFound(f"Profissional não encontrado: {service.professional_id}")

            config = merge_checkout_config(service.checkout_config)
            try:
                ensure_valid(form, config, today=date.fromtimestamp(self.clock()))
            except CheckoutValidationError as e:
                self.session.errors = dict(e.errors)
                self.session.message = str(e)
                raise
            self.session.errors = {}
            self.session.professional_id = professional.id
            self.session.payment_method = form.payment_method

            self._transition(CheckoutState.DEMO_CHECK)
            if is_demo_profile(professional):
                log.info("Checkout bloqueado: perfil de demonstração %s", professional.id)
                self._transition(CheckoutState.BLOCKED, MESSAGES["blocked"])
                return self.session

            self._transition(CheckoutState.CREATING)
            try:
                self.gateway = self.gateway_for(professional)
            except PaymentError as e:
                log.error("Gateway inválido para o profissional %s: %s", professional.id, e)
                self._transition(CheckoutState.FORM_ENTRY, CHARGE_FAILED_MESSAGE)
                return self.session

            self._create_transaction(form, service)
            self._transition(CheckoutState.CHARGE_REQUESTED)

            if self.reservations is not None:
                try:
                    self.reservations.acquire(
                        slot_key(professional.id, form.appointment_date, form.appointment_time),
                        self.session.transaction_id,
                    )
                except SlotUnavailable:
                    self.ledger.marcar_rejected(self.session.transaction_id, "slot_unavailable")
                    self.session.reason = "slot_unavailable"
                    self._transition(CheckoutState.REJECTED, MESSAGES["slot_unavailable"])
                    return self.session

            payer = Payer.from_name(form.name, form.email.strip(), only_digits(form.cpf) or None, form.phone)
            if form.payment_method == "pix":
                self._charge_pix(service, payer)
            else:
                self._charge_card(service, payer, form.card or {})
            return self.session

    def _create_transaction(self, form: CheckoutForm, service: Service) -> None:
        s = self.session
        s.simulated = self.gateway.simulated
        s.transaction_id = self.ledger.criar_pending(
            professional_id=s.professional_id,
            service_id=service.id,
            customer_name=form.name.strip(),
            customer_email=form.email.strip(),
            customer_phone=form.phone,
            customer_cpf=only_digits(form.cpf) or None,
            amount_cents=service.price_cents,
            payment_method=form.payment_method,
            gateway=self.gateway.kind.value,
            simulated=s.simulated,
            appointment_date=parse_date(form.appointment_date),
            appointment_time=form.appointment_time,
        )
        s.attempts = 0
        s.reason = None
        s.gateway_payment_id = s.pix_code = s.pix_qr_code = None

    def _charge_failed(self, e: Exception) -> None:
        log.warning("Falha ao criar cobrança da transação %s: %s", self.session.transaction_id, e)
        self.ledger.registrar_evento(
            self.session.transaction_id, "charge_failed", {"error": str(e)}, gateway=self.gateway.kind.value
        )
        self._release_slot()
        self._transition(CheckoutState.FORM_ENTRY, CHARGE_FAILED_MESSAGE)

    def _charge_pix(self, service: Service, payer: Payer) -> None:
        try:
            charge = self.gateway.create_pix_charge(
                amount_cents=service.price_cents, description=service.name, payer=payer
            )
        except _GATEWAY_ERRORS as e:
            self._charge_failed(e)
            return
        s = self.session
        s.gateway_payment_id = charge.payment_id
        s.pix_qr_code = charge.qr_image
        s.pix_code = charge.qr_code
        self.ledger.set_charge(
            s.transaction_id, gateway_payment_id=charge.payment_id, pix_qr_code=charge.qr_image, pix_code=charge.qr_code
        )
        self._transition(CheckoutState.AWAITING_CONFIRMATION, MESSAGES["awaiting"])
        s.last_tick_at = self.clock()

    def _charge_card(self, service: Service, payer: Payer, card: Dict[str, Any]) -> None:
        try:
            charge = self.gateway.create_card_charge(
                amount_cents=service.price_cents,
                description=service.name,
                payer=payer,
                card=CardData(token=str(card.get("token")), installments=int(card.get("installments") or 1)),
            )
        except _GATEWAY_ERRORS as e:
            self._charge_failed(e)
            return
        s = self.session
        s.gateway_payment_id = charge.payment_id
        self.ledger.set_charge(s.transaction_id, gateway_payment_id=charge.payment_id)
        if charge.approved:
            self._approve()
        elif charge.status.is_terminal_failure:
            self._reject(charge.status.value)
        else:
            # cartão em análise: segue o mesmo caminho do PIX
            self._transition(CheckoutState.AWAITING_CONFIRMATION, MESSAGES["awaiting"])
            s.last_tick_at = self.clock()

    # ------------------------------------------------------------------ #
    # Polling
    # ------------------------------------------------------------------ #
    def poll_once(self) -> CheckoutState:
        """Um tick: consulta o ledger (webhook pode ter chegado) e depois o gateway."""
        with self.session.lock:
            s = self.session
            if s.state is not CheckoutState.AWAITING_CONFIRMATION or self._cancel_event.is_set():
                return s.state
            s.attempts += 1
            s.last_tick_at = self.clock()
            status = self._current_status()

            if self._cancel_event.is_set():
                # a interface saiu, mas o dinheiro pode ter se movido
                if status is ChargeStatus.APPROVED:
                    self._settle_after_cancel()
                return s.state

            if status is ChargeStatus.APPROVED:
                self._approve()
            elif status is not None and (status.is_terminal_failure or status is ChargeStatus.REFUNDED):
                self._reject(status.value)
            elif s.attempts >= self.config.poll_max_attempts:
                self._timeout()
            return s.state

    def _current_status(self) -> Optional[ChargeStatus]:
        s = self.session
        txn = self.ledger.obter(s.transaction_id)
        if txn is not None and txn.payment_status == PAYMENT_APPROVED:
            return ChargeStatus.APPROVED
        if txn is not None and txn.payment_status == PAYMENT_REJECTED:
            return ChargeStatus.REJECTED
        try:
            status = self.gateway.check_status(s.gateway_payment_id)
        except (PaymentError, requests.RequestException) as e:
            log.warning("Tentativa %s de consulta falhou (%s): %s", s.attempts, s.transaction_id, e)
            return None
        log.debug("Tentativa %s: transação %s está %s", s.attempts, s.transaction_id, status.value)
        return status

    def poll_if_due(self, now: Optional[float] = None) -> CheckoutState:
        """Só faz o tick se o intervalo já passou (o cliente HTTP pode atualizar mais rápido)."""
        with self.session.lock:
            s = self.session
            if s.state is not CheckoutState.AWAITING_CONFIRMATION or self._cancel_event.is_set():
                return s.state
            now = self.clock() if now is None else now
            if s.last_tick_at is not None and now - s.last_tick_at < self.config.poll_interval_seconds:
                return s.state
            return self.poll_once()

    def run_polling(self, cancel_event: Optional[threading.Event] = None) -> CheckoutState:
        """Loop bloqueante: espera o intervalo, faz o tick, até estado terminal ou cancelamento."""
        if cancel_event is not None:
            self._cancel_event = cancel_event
        while self.session.state is CheckoutState.AWAITING_CONFIRMATION:
            if self._cancel_event.wait(self.config.poll_interval_seconds):
                break
            self.poll_once()
        if self._cancel_event.is_set():
            self.session.cancelled = True
        return self.session.state

    def cancel(self) -> None:
        """Cancelamento do lado do cliente. Não cancela o pagamento."""
        self._cancel_event.set()
        with self.session.lock:
            self.session.cancelled = True
        log.info("Checkout %s cancelado pelo cliente (estado %s)", self.session.id, self.session.state.value)

    # ------------------------------------------------------------------ #
    # Resultados
    # ------------------------------------------------------------------ #
    def _approve(self) -> None:
        s = self.session
        try:
            self.ledger.marcar_approved(s.transaction_id, {"gateway_payment_id": s.gateway_payment_id})
        except LedgerTransitionError:
            log.error("Transação %s já rejeitada no ledger; aprovação ignorada", s.transaction_id)
            self._release_slot()
            s.reason = "rejected"
            self._transition(CheckoutState.REJECTED, MESSAGES["rejected"])
            return
        self._transition(CheckoutState.APPROVED, MESSAGES["approved"])
        self._run_fulfillment()

    def _run_fulfillment(self) -> None:
        s = self.session
        try:
            outcome = self.fulfillment.fulfill(s.transaction_id)
        except FulfillmentError as e:
            self._transition(CheckoutState.FULFILLMENT_FAILED, str(e))
            raise
        s.fulfillment = outcome
        self._transition(CheckoutState.FULFILLED, MESSAGES["fulfilled"])

    def _settle_after_cancel(self) -> None:
        s = self.session
        try:
            self.ledger.marcar_approved(s.transaction_id, {"gateway_payment_id": s.gateway_payment_id})
            self.fulfillment.fulfill(s.transaction_id)
        except (LedgerTransitionError, FulfillmentError):
            log.exception("Falha ao registrar aprovação após cancelamento (%s)", s.transaction_id)

    def _reject(self, reason: str) -> None:
        s = self.session
        try:
            self.ledger.marcar_rejected(s.transaction_id, reason)
        except LedgerTransitionError:
            # webhook aprovou antes: o ledger manda
            log.warning("Transação %s já aprovada; ignorando status %s do gateway", s.transaction_id, reason)
            self._approve_from_ledger()
            return
        self._release_slot()
        s.reason = reason
        self._transition(CheckoutState.REJECTED, MESSAGES["rejected"])

    def _approve_from_ledger(self) -> None:
        self._transition(CheckoutState.APPROVED, MESSAGES["approved"])
        self._run_fulfillment()

    def _timeout(self) -> None:
        s = self.session
        log.warning("Transação %s sem confirmação após %s tentativas", s.transaction_id, s.attempts)
        self.ledger.registrar_evento(s.transaction_id, "poll_timeout", {"attempts": s.attempts})
        self._release_slot()
        s.reason = "timeout"
        self._transition(CheckoutState.REJECTED, MESSAGES["timeout"])

    def _release_slot(self) -> None:
        if self.reservations is not None and self.session.transaction_id:
            self.reservations.release(self.session.transaction_id)

    # ------------------------------------------------------------------ #
    # Interface
    # ------------------------------------------------------------------ #
    def reset(self) -> CheckoutSession:
        """Rejected -> FormEntry (nova tentativa cria nova transação)."""
        with self.session.lock:
            self._transition(CheckoutState.FORM_ENTRY)
            self._cancel_event = threading.Event()
            self.session.cancelled = False
            return self.session

    def copy_pix_code(self) -> str:
        with self.session.lock:
            if not self.session.pix_code:
                raise CheckoutError("Nenhum código PIX disponível")
            self.session.copied_until = self.clock() + self.config.copied_reset_seconds
            return self.session.pix_code

    @property
    def copied(self) -> bool:
        return self.clock() < self.session.copied_until

    def to_dict(self) -> Dict[str, Any]:
        return self.session.to_dict(now=self.clock())

from __future__ import annotations

import logging
import os
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..persistence.db import Transaction
from ..persistence.repositories import (
    PAYMENT_APPROVED,
    AccessTokenRepository,
    AppointmentAlreadyExists,
    AppointmentRepository,
    ProfessionalRepository,
    ServiceRepository,
    TransactionLedger,
)
from .calendar_sync import CalendarSyncClient
from .notifications import AppointmentNotice, AppointmentNotifier

log = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
ROOM_CODE_LENGTH = 8


class StepPolicy(str, Enum):
    FATAL = "fatal"
    RECOVERABLE = "recoverable"


STEP_POLICY: Dict[str, StepPolicy] = {
    "create_appointment": StepPolicy.FATAL,
    "create_access_token": StepPolicy.RECOVERABLE,
    "sync_calendar": StepPolicy.RECOVERABLE,
    "notify": StepPolicy.RECOVERABLE,
}


@dataclass
class StepResult:
    name: str
    ok: bool
    value: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "ok": self.ok, "error": self.error}


@dataclass
class FulfillmentOutcome:
    transaction_id: str
    appointment_id: str
    access_token: Optional[str]
    virtual_room_link: str
    steps: List[StepResult] = field(default_factory=list)
    degraded: bool = False
    already_fulfilled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "access_token": self.access_token,
            "virtual_room_link": self.virtual_room_link,
            "degraded": self.degraded,
            "steps": [s.to_dict() for s in self.steps],
        }


class FulfillmentError(RuntimeError):
    """Pagamento capturado e agendamento NÃO criado. Precisa de atenção manual."""

    def __init__(self, transaction_id: str, message: str, step: Optional[StepResult] = None):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.step = step


class TransactionNotApproved(FulfillmentError):
    pass


def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def room_link(code: str, base_url: Optional[str] = None) -> str:
    base = (base_url or os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")).rstrip("/")
    return f"{base}/sala/{code}"


@dataclass
class _Context:
    transaction: Transaction
    room_code: str
    room_link: str
    duration_minutes: int = 50
    session_type: Optional[str] = None
    professional_name: str = "Profissional"
    professional_phone: Optional[str] = None
    appointment_id: Optional[str] = None
    access_token: Optional[str] = None


class FulfillmentOrchestrator:
    """
    Provisiona o agendamento de uma transação aprovada.
    Passos em ordem, cada um devolvendo StepResult; a política de cada passo
    está em STEP_POLICY (só create_appointment é fatal).
    Idempotente por transação: uma segunda chamada devolve o agendamento existente.
    """

    def __init__(
        self,
        ledger: Optional[TransactionLedger] = None,
        appointments: Optional[AppointmentRepository] = None,
        tokens: Optional[AccessTokenRepository] = None,
        professionals: Optional[ProfessionalRepository] = None,
        services: Optional[ServiceRepository] = None,
        calendar: Optional[CalendarSyncClient] = None,
        notifier: Optional[AppointmentNotifier] = None,
        reservations: Any = None,
        base_url: Optional[str] = None,
    ):
        self.ledger = ledger or TransactionLedger()
        self.appointments = appointments or AppointmentRepository()
        self.tokens = tokens or AccessTokenRepository()
        self.professionals = professionals or ProfessionalRepository()
        self.services = services or ServiceRepository()
        self.calendar = calendar or CalendarSyncClient()
        self.notifier = notifier or AppointmentNotifier()
        self.reservations = reservations
        self.base_url = base_url
        self.steps: List[Tuple[str, Callable[[_Context], Any]]] = [
            ("create_appointment", self._create_appointment),
            ("create_access_token", self._create_access_token),
            ("sync_calendar", self._sync_calendar),
            ("notify", self._notify),
        ]

    # ------------------------------------------------------------------ #
    def fulfill(self, transaction_id: str) -> FulfillmentOutcome:
        txn = self.ledger.obter(transaction_id)
        if txn is None:
            raise KeyError(f"Transação não encontrada: {transaction_id}")
        if txn.payment_status != PAYMENT_APPROVED:
            raise TransactionNotApproved(
                transaction_id, f"Transação {transaction_id} não está aprovada ({txn.payment_status})"
            )

        existing = self._existing_outcome(transaction_id)
        if existing is not None:
            return existing

        ctx = self._context(txn)
        results: List[StepResult] = []
        for name, step in self.steps:
            try:
                value = step(ctx)
            except AppointmentAlreadyExists:
                # outra confirmação (webhook x polling) criou primeiro
                existing = self._existing_outcome(transaction_id)
                if existing is not None:
                    return existing
                raise
            except Exception as e:
                result = StepResult(name=name, ok=False, error=str(e) or e.__class__.__name__)
                results.append(result)
                if STEP_POLICY[name] is StepPolicy.FATAL:
                    log.exception("Falha fatal no passo %s da transação %s", name, transaction_id)
                    self.ledger.registrar_evento(transaction_id, "fulfillment_failed", {"step": name, "error": result.error})
                    raise FulfillmentError(
                        transaction_id,
                        "Pagamento aprovado, mas não foi possível criar o agendamento. Entre em contato com o profissional.",
                        result,
                    ) from e
                log.warning("Passo %s falhou para a transação %s: %s", name, transaction_id, e)
                continue
            results.append(StepResult(name=name, ok=True, value=value))

        outcome = FulfillmentOutcome(
            transaction_id=transaction_id,
            appointment_id=ctx.appointment_id or "",
            access_token=ctx.access_token,
            virtual_room_link=ctx.room_link,
            steps=results,
            degraded=any(not r.ok for r in results),
        )
        self.ledger.registrar_evento(
            transaction_id,
            "fulfilled",
            {"appointment_id": outcome.appointment_id, "degraded": outcome.degraded},
        )
        return outcome

    # ------------------------------------------------------------------ #
    def _existing_outcome(self, transaction_id: str) -> Optional[FulfillmentOutcome]:
        apt = self.appointments.obter_por_transacao(transaction_id)
        if apt is None:
            return None
        return FulfillmentOutcome(
            transaction_id=transaction_id,
            appointment_id=apt.id,
            access_token=self.tokens.obter_por_agendamento(apt.id),
            virtual_room_link=apt.virtual_room_link or "",
            already_fulfilled=True,
        )

    def _context(self, txn: Transaction) -> _Context:
        code = generate_room_code()
        ctx = _Context(transaction=txn, room_code=code, room_link=room_link(code, self.base_url))
        service = self.services.obter(txn.service_id)
        if service is not None:
            ctx.duration_minutes = service.duration_minutes or 50
            ctx.session_type = service.session_type
        professional = self.professionals.obter(txn.professional_id)
        if professional is not None:
            ctx.professional_name = professional.full_name or ctx.professional_name
            ctx.professional_phone = professional.phone
        return ctx

    # --------------------------- passos -------------------------------- #
    def _create_appointment(self, ctx: _Context) -> str:
        ctx.appointment_id = self.appointments.criar_confirmado(
            transaction=ctx.transaction,
            duration_minutes=ctx.duration_minutes,
            session_type=ctx.session_type,
            virtual_room_code=ctx.room_code,
            virtual_room_link=ctx.room_link,
        )
        if self.reservations is not None:
            self.reservations.convert(ctx.transaction.id)
        return ctx.appointment_id

    def _create_access_token(self, ctx: _Context) -> str:
        ctx.access_token = self.tokens.criar(ctx.appointment_id, ctx.transaction.customer_email)
        return ctx.access_token

    def _sync_calendar(self, ctx: _Context) -> Dict[str, Any]:
        result = self.calendar.sync_appointment(ctx.transaction.professional_id, ctx.appointment_id) or {}
        meet = result.get("meetLink")
        if meet:
            self.appointments.atualizar_link_sala(ctx.appointment_id, meet)
            ctx.room_link = meet
        return result

    def _notify(self, ctx: _Context) -> Dict[str, Any]:
        txn = ctx.transaction
        return self.notifier.send_appointment_notification(
            AppointmentNotice(
                professional_name=ctx.professional_name,
                professional_phone=ctx.professional_phone,
                client_name=txn.customer_name,
                client_email=txn.customer_email,
                client_phone=txn.customer_phone,
                appointment_date=txn.appointment_date.isoformat(),
                appointment_time=txn.appointment_time,
                duration_minutes=ctx.duration_minutes,
                virtual_room_link=ctx.room_link,
                access_token=ctx.access_token,
            )
        )

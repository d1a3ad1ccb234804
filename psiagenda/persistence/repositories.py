# -*- coding: utf-8 -*-
from __future__ import annotations
import uuid
import secrets
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional, List

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .db import (
    get_session,
    Professional,
    Service,
    Transaction,
    PaymentEvent,
    Appointment,
    AccessToken,
)

PAYMENT_PENDING = "pending"
PAYMENT_APPROVED = "approved"
PAYMENT_REJECTED = "rejected"


def _gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class LedgerTransitionError(RuntimeError):
    """Tentativa de mover uma transação entre status terminais."""

    def __init__(self, transaction_id: str, current: str, requested: str):
        super().__init__(
            f"Transação {transaction_id}: transição {current} -> {requested} não permitida"
        )
        self.transaction_id = transaction_id
        self.current = current
        self.requested = requested


# ========= Profissionais / Serviços =========
class ProfessionalRepository:
    def obter(self, professional_id: str) -> Optional[Professional]:
        with get_session() as db:
            return db.get(Professional, professional_id)

    def salvar(self, professional: Professional) -> Professional:
        with get_session() as db:
            return db.merge(professional)


class ServiceRepository:
    def obter(self, service_id: str) -> Optional[Service]:
        with get_session() as db:
            return db.get(Service, service_id)

    def salvar(self, service: Service) -> Service:
        with get_session() as db:
            return db.merge(service)


# ========= Ledger de transações =========
class TransactionLedger:
    """
    Fonte única de verdade do status de pagamento.
      - criar_pending(...) -> id           (sempre ANTES de chamar o gateway)
      - set_charge(id, ...)                 (artefatos do gateway: id, QR PIX)
      - marcar_approved(id) / marcar_rejected(id, reason)
            pending -> approved | rejected; repetir o mesmo status é no-op;
            status terminal oposto levanta LedgerTransitionError.
      - obter, obter_por_gateway_payment_id, listar_pending, eventos
    Não existe operação de remoção nem de alteração de valor/pagador/método.
    """

    def criar_pending(
        self,
        *,
        professional_id: str,
        service_id: str,
        customer_name: str,
        customer_email: str,
        amount_cents: int,
        payment_method: str,
        gateway: str,
        simulated: bool = False,
        customer_phone: Optional[str] = None,
        customer_cpf: Optional[str] = None,
        appointment_date: Optional[date] = None,
        appointment_time: Optional[str] = None,
    ) -> str:
        transaction_id = _gen_id("txn")
        with get_session() as db:
            db.add(
                Transaction(
                    id=transaction_id,
                    professional_id=professional_id,
                    service_id=service_id,
                    customer_name=customer_name,
                    customer_email=customer_email,
                    customer_phone=customer_phone or None,
                    customer_cpf=customer_cpf or None,
                    amount_cents=int(amount_cents),
                    payment_method=payment_method,
                    payment_status=PAYMENT_PENDING,
                    gateway=gateway,
                    simulated=bool(simulated),
                    appointment_date=appointment_date,
                    appointment_time=appointment_time,
                )
            )
        self._event(transaction_id, gateway, "created", {"amount_cents": int(amount_cents)})
        return transaction_id

    def set_charge(
        self,
        transaction_id: str,
        *,
        gateway_payment_id: Optional[str],
        pix_qr_code: Optional[str] = None,
        pix_code: Optional[str] = None,
    ) -> None:
        with get_session() as db:
            db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(
                    gateway_payment_id=str(gateway_payment_id) if gateway_payment_id else None,
                    pix_qr_code=pix_qr_code,
                    pix_code=pix_code,
                    updated_at=datetime.utcnow(),
                )
            )
        self._event(transaction_id, None, "charge_created", {"gateway_payment_id": gateway_payment_id})

    def obter(self, transaction_id: str) -> Optional[Transaction]:
        with get_session() as db:
            return db.get(Transaction, transaction_id)

    def obter_por_gateway_payment_id(self, gateway: str, gateway_payment_id: str) -> Optional[Transaction]:
        with get_session() as db:
            return (
                db.query(Transaction)
                .filter(Transaction.gateway == gateway)
                .filter(Transaction.gateway_payment_id == str(gateway_payment_id))
                .first()
            )

    def listar_pending(self, *, older_than: Optional[timedelta] = None, include_simulated: bool = False) -> List[Transaction]:
        with get_session() as db:
            q = db.query(Transaction).filter(Transaction.payment_status == PAYMENT_PENDING)
            if not include_simulated:
                q = q.filter(Transaction.simulated.is_(False))
            if older_than is not None:
                q = q.filter(Transaction.created_at <= datetime.utcnow() - older_than)
            return q.order_by(Transaction.created_at.asc()).all()

    def listar_approved_sem_agendamento(self) -> List[Transaction]:
        with get_session() as db:
            return (
                db.query(Transaction)
                .outerjoin(Appointment, Appointment.transaction_id == Transaction.id)
                .filter(Transaction.payment_status == PAYMENT_APPROVED)
                .filter(Appointment.id.is_(None))
                .order_by(Transaction.created_at.asc())
                .all()
            )

    def marcar_approved(self, transaction_id: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Retorna True se o status mudou agora, False se já estava approved."""
        return self._transition(transaction_id, PAYMENT_APPROVED, payload)

    def marcar_rejected(self, transaction_id: str, reason: Optional[str] = None) -> bool:
        """Retorna True se o status mudou agora, False se já estava rejected."""
        return self._transition(transaction_id, PAYMENT_REJECTED, {"reason": reason} if reason else None)

    def _transition(self, transaction_id: str, target: str, payload: Optional[Dict[str, Any]]) -> bool:
        with get_session() as db:
            # update condicional: só sai de pending
            res = db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .where(Transaction.payment_status == PAYMENT_PENDING)
                .values(payment_status=target, updated_at=datetime.utcnow())
            )
            changed = res.rowcount == 1
            if not changed:
                row = db.get(Transaction, transaction_id)
                if row is None:
                    raise KeyError(f"Transação não encontrada: {transaction_id}")
                if row.payment_status != target:
                    raise LedgerTransitionError(transaction_id, row.payment_status, target)
        if changed:
            self._event(transaction_id, None, target, payload or {})
        return changed

    def registrar_evento(self, transaction_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None, gateway: Optional[str] = None) -> None:
        self._event(transaction_id, gateway, event_type, payload or {})

    def eventos(self, transaction_id: str) -> List[Dict[str, Any]]:
        with get_session() as db:
            rows = (
                db.query(PaymentEvent)
                .filter(PaymentEvent.transaction_id == transaction_id)
                .order_by(PaymentEvent.id.asc())
                .all()
            )
            return [
                {
                    "id": r.id,
                    "gateway": r.gateway,
                    "event_type": r.event_type,
                    "payload": r.payload or {},
                    "created_at": r.created_at,
                }
                for r in rows
            ]

    def _event(self, transaction_id: str, gateway: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        with get_session() as db:
            db.add(PaymentEvent(transaction_id=transaction_id, gateway=gateway, event_type=event_type, payload=payload))


# ========= Agendamentos =========
class AppointmentAlreadyExists(RuntimeError):
    def __init__(self, transaction_id: str):
        super().__init__(f"Transação {transaction_id} já possui agendamento")
        self.transaction_id = transaction_id


class AppointmentRepository:
    def criar_confirmado(
        self,
        *,
        transaction: Transaction,
        duration_minutes: int,
        session_type: Optional[str],
        virtual_room_code: str,
        virtual_room_link: str,
    ) -> str:
        appointment_id = _gen_id("apt")
        try:
            with get_session() as db:
                db.add(
                    Appointment(
                        id=appointment_id,
                        professional_id=transaction.professional_id,
                        transaction_id=transaction.id,
                        client_name=transaction.customer_name,
                        client_email=transaction.customer_email.lower().strip(),
                        client_phone=transaction.customer_phone,
                        appointment_date=transaction.appointment_date,
                        appointment_time=transaction.appointment_time,
                        duration_minutes=duration_minutes,
                        session_type=session_type,
                        status="confirmed",
                        payment_status="paid",
                        payment_method=transaction.payment_method,
                        amount_cents=transaction.amount_cents,
                        virtual_room_code=virtual_room_code,
                        virtual_room_link=virtual_room_link,
                    )
                )
        except IntegrityError as e:
            if self.obter_por_transacao(transaction.id) is not None:
                raise AppointmentAlreadyExists(transaction.id) from e
            raise
        return appointment_id

    def obter(self, appointment_id: str) -> Optional[Appointment]:
        with get_session() as db:
            return db.get(Appointment, appointment_id)

    def obter_por_transacao(self, transaction_id: str) -> Optional[Appointment]:
        with get_session() as db:
            return db.query(Appointment).filter(Appointment.transaction_id == transaction_id).first()

    def existe_no_horario(self, professional_id: str, appointment_date: "date | str", appointment_time: str) -> bool:
        if isinstance(appointment_date, str):
            appointment_date = date.fromisoformat(appointment_date)
        with get_session() as db:
            return (
                db.query(Appointment.id)
                .filter(Appointment.professional_id == professional_id)
                .filter(Appointment.appointment_date == appointment_date)
                .filter(Appointment.appointment_time == appointment_time)
                .filter(Appointment.status != "cancelled")
                .first()
                is not None
            )

    def atualizar_link_sala(self, appointment_id: str, link: str) -> None:
        with get_session() as db:
            db.execute(
                update(Appointment)
                .where(Appointment.id == appointment_id)
                .values(virtual_room_link=link, updated_at=datetime.utcnow())
            )

    def contar(self) -> int:
        with get_session() as db:
            return db.query(Appointment).count()


# ========= Tokens de acesso (remarcação sem login) =========
class AccessTokenRepository:
    def criar(self, appointment_id: str, client_email: str) -> str:
        token = secrets.token_urlsafe(24)
        with get_session() as db:
            db.add(AccessToken(appointment_id=appointment_id, client_email=client_email.lower().strip(), token=token))
        return token

    def obter_por_agendamento(self, appointment_id: str) -> Optional[str]:
        with get_session() as db:
            row = db.query(AccessToken).filter(AccessToken.appointment_id == appointment_id).first()
            return row.token if row else None

    def obter_agendamento(self, token: str, client_email: str) -> Optional[Appointment]:
        """Só devolve o agendamento se token e e-mail conferem."""
        with get_session() as db:
            row = db.query(AccessToken).filter(AccessToken.token == token).first()
            if not row or row.client_email != (client_email or "").lower().strip():
                return None
            return db.get(Appointment, row.appointment_id)

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from ..persistence.db import Transaction
from ..persistence.repositories import (
    LedgerTransitionError,
    ProfessionalRepository,
    TransactionLedger,
)
from .fulfillment import FulfillmentError, FulfillmentOrchestrator
from .payments.base import ChargeStatus, GatewayKind, PaymentError, ProviderConfigError, resolve_gateway_token
from .payments.orchestrator import PaymentOrchestrator

log = logging.getLogger(__name__)


class PaymentConfirmation:
    """
    Confirmação de pagamento fora da sessão do navegador:
      - handle_webhook: gateway -> backend -> ledger -> fulfillment
      - reconcile_pending: reconsulta pendentes antigos e agenda aprovados sem agendamento
    Transações simuladas nunca passam por aqui.
    """

    def __init__(
        self,
        ledger: Optional[TransactionLedger] = None,
        professionals: Optional[ProfessionalRepository] = None,
        fulfillment: Optional[FulfillmentOrchestrator] = None,
        gateway_factory: Callable[[GatewayKind, Optional[str]], PaymentOrchestrator] = PaymentOrchestrator,
    ):
        self.ledger = ledger or TransactionLedger()
        self.professionals = professionals or ProfessionalRepository()
        self.fulfillment = fulfillment or FulfillmentOrchestrator(ledger=self.ledger)
        self.gateway_factory = gateway_factory

    # ------------------------------------------------------------------ #
    # Webhook
    # ------------------------------------------------------------------ #
    def handle_webhook(
        self,
        gateway: str,
        payload: Dict[str, Any],
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        """Sempre devolve um dict (o servidor responde 200 ao gateway)."""
        try:
            kind = GatewayKind.parse(gateway)
        except ProviderConfigError:
            log.warning("Webhook de gateway desconhecido: %r", gateway)
            return {"ok": True, "ignored": "unknown_gateway"}
        if kind is GatewayKind.SIMULATED:
            return {"ok": True, "ignored": "simulated"}

        provider_cls = PaymentOrchestrator.provider_class(kind)
        if body is not None and not provider_cls.verify_signature(headers or {}, body):
            log.warning("Webhook %s com assinatura inválida", kind.value)
            return {"ok": False, "ignored": "invalid_signature"}

        result = provider_cls.parse_webhook(payload or {})
        if not result.provider_payment_id:
            return {"ok": True, "ignored": "no_payment_id"}

        txn = self.ledger.obter_por_gateway_payment_id(kind.value, result.provider_payment_id)
        if txn is None or txn.simulated:
            log.info("Webhook %s para pagamento desconhecido %s", kind.value, result.provider_payment_id)
            return {"ok": True, "ignored": "unknown_payment"}

        self.ledger.registrar_evento(
            txn.id, "webhook", {"claimed_status": result.status.value if result.status else None}, gateway=kind.value
        )
        # o payload só identifica a transação; quem decide o status é o gateway
        status = self._check_status(txn)
        if status is None:
            return {"ok": True, "transaction_id": txn.id, "status": None}
        return self._apply(txn, status)

    # ------------------------------------------------------------------ #
    # Reconciliação
    # ------------------------------------------------------------------ #
    def reconcile_pending(self, older_than_minutes: int = 10) -> Dict[str, int]:
        summary = {"checked": 0, "approved": 0, "rejected": 0, "fulfilled": 0, "errors": 0}
        for txn in self.ledger.listar_pending(older_than=timedelta(minutes=older_than_minutes)):
            if not txn.gateway_payment_id:
                # cobrança nunca criada; fica pendente como trilha de auditoria
                continue
            summary["checked"] += 1
            status = self._check_status(txn)
            if status is None:
                summary["errors"] += 1
                continue
            applied = self._apply(txn, status)
            if applied.get("ledger") == "approved":
                summary["approved"] += 1
            elif applied.get("ledger") == "rejected":
                summary["rejected"] += 1
            if applied.get("fulfilled"):
                summary["fulfilled"] += 1
            if applied.get("error"):
                summary["errors"] += 1

        for txn in self.ledger.listar_approved_sem_agendamento():
            if self._fulfill(txn.id).get("fulfilled"):
                summary["fulfilled"] += 1
            else:
                summary["errors"] += 1
        log.info("Reconciliação concluída: %s", summary)
        return summary

    # ------------------------------------------------------------------ #
    def _gateway_for(self, txn: Transaction) -> PaymentOrchestrator:
        kind = GatewayKind.parse(txn.gateway)
        professional = self.professionals.obter(txn.professional_id)
        token = None
        if professional is not None and (professional.gateway or "").lower() == kind.value:
            token = resolve_gateway_token(kind, professional.gateway_credentials)
        return self.gateway_factory(kind, token)

    def _check_status(self, txn: Transaction) -> Optional[ChargeStatus]:
        try:
            status = self._gateway_for(txn).check_status(txn.gateway_payment_id)
        except (PaymentError, requests.RequestException) as e:
            log.warning("Não foi possível consultar a transação %s: %s", txn.id, e)
            return None
        self.ledger.registrar_evento(txn.id, "status_checked", {"status": status.value}, gateway=txn.gateway)
        return status

    def _apply(self, txn: Transaction, status: ChargeStatus) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": True, "transaction_id": txn.id, "status": status.value}
        if status is ChargeStatus.APPROVED:
            try:
                self.ledger.marcar_approved(txn.id)
            except LedgerTransitionError as e:
                log.error("Aprovação recebida para transação já rejeitada: %s", e)
                out["error"] = "ledger_conflict"
                return out
            out["ledger"] = "approved"
            out.update(self._fulfill(txn.id))
        elif status.is_terminal_failure:
            try:
                self.ledger.marcar_rejected(txn.id, status.value)
                out["ledger"] = "rejected"
            except LedgerTransitionError as e:
                log.warning("Status %s ignorado, ledger já terminal: %s", status.value, e)
                out["error"] = "ledger_conflict"
        elif status is ChargeStatus.REFUNDED:
            # o ledger não tem estado de estorno; fica registrado como evento
            self.ledger.registrar_evento(txn.id, "refunded", {}, gateway=txn.gateway)
            out["ledger"] = "refund_recorded"
        return out

    def _fulfill(self, transaction_id: str) -> Dict[str, Any]:
        try:
            outcome = self.fulfillment.fulfill(transaction_id)
        except FulfillmentError as e:
            # já registrado (log.exception + evento fulfillment_failed); a reconciliação tenta de novo
            return {"fulfilled": False, "error": str(e)}
        return {"fulfilled": True, "appointment_id": outcome.appointment_id}

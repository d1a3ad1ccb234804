#!/usr/bin/env python
# psiagenda/main.py - CLI do checkout (seed, checkout com polling, reconciliação)
from __future__ import annotations

import os
import sys
import json
import argparse
import logging
import threading
from typing import Optional, Any, List

from .persistence.db import init_db, Professional, Service
from .persistence.repositories import (
    ProfessionalRepository,
    ServiceRepository,
    TransactionLedger,
    AccessTokenRepository,
)
from .services.checkout import CheckoutController, CheckoutConfig, CheckoutState
from .services.confirmation import PaymentConfirmation
from .services.fulfillment import FulfillmentError
from .services.offer_timer import OfferTimer, JsonFileStore
from .services.validation import CheckoutForm, CheckoutValidationError, merge_checkout_config
from .utils.money import fmt_brl

log = logging.getLogger("psiagenda")


# -----------------------------------------------------------------------------
# Helpers básicos
# -----------------------------------------------------------------------------
def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _timer_file() -> str:
    return os.getenv("CHECKOUT_TIMER_FILE", os.path.join("data", "checkout_timer.json"))


# -----------------------------------------------------------------------------
# Comandos
# -----------------------------------------------------------------------------
def cmd_init_db(args):
    init_db()
    _print_json({"ok": True})


def cmd_seed(args):
    """Cria/atualiza um profissional e um serviço (útil para testar o checkout localmente)."""
    ProfessionalRepository().salvar(
        Professional(
            id=args.professional_id,
            full_name=args.nome,
            email=args.email,
            phone=args.phone,
            is_demo=bool(args.demo),
            gateway=args.gateway,
            gateway_credentials=args.credentials,
            gateway_active=True,
        )
    )
    config = None
    if args.timer_minutes:
        config = {"timer": {"enabled": True, "minutes": args.timer_minutes}}
    ServiceRepository().salvar(
        Service(
            id=args.service_id,
            professional_id=args.professional_id,
            name=args.service_name,
            price_cents=args.price_cents,
            checkout_config=config,
        )
    )
    _print_json({"professional_id": args.professional_id, "service_id": args.service_id, "preco": fmt_brl(args.price_cents)})


def cmd_checkout(args):
    service = ServiceRepository().obter(args.service_id)
    if service is None:
        print(f"❌ Serviço não encontrado: {args.service_id}", file=sys.stderr)
        return 2

    timer_cfg = merge_checkout_config(service.checkout_config)["timer"]
    if timer_cfg.get("enabled"):
        timer = OfferTimer(JsonFileStore(_timer_file()))
        timer.start(service.id, int(timer_cfg.get("minutes") or 15))
        remaining = timer.remaining_seconds(service.id)
        print(f"⏳ {timer_cfg.get('text')} {OfferTimer.format_remaining(remaining)}")

    controller = CheckoutController(service.id, config=CheckoutConfig.from_env())
    form = CheckoutForm(
        name=args.nome,
        email=args.email,
        phone=args.phone,
        cpf=args.cpf,
        payment_method=args.metodo,
        appointment_date=args.data,
        appointment_time=args.hora,
        card={"token": args.card_token, "installments": args.parcelas} if args.card_token else None,
    )
    try:
        controller.submit(form)
    except CheckoutValidationError as e:
        _print_json({"state": "FormEntry", "errors": e.errors})
        return 1
    except FulfillmentError as e:
        print(f"❌ {e}", file=sys.stderr)
        _print_json(controller.to_dict())
        return 3

    session = controller.session
    if session.state is CheckoutState.AWAITING_CONFIRMATION:
        if session.pix_code:
            print("PIX copia e cola:")
            print(session.pix_code)
            if session.pix_qr_code and not session.pix_qr_code.startswith("data:"):
                print(f"QR: {session.pix_qr_code}")
        print("Aguardando confirmação (Ctrl+C cancela a espera; o pagamento continua válido)...")
        cancel = threading.Event()
        try:
            controller.run_polling(cancel)
        except KeyboardInterrupt:
            controller.cancel()
        except FulfillmentError as e:
            print(f"❌ {e}", file=sys.stderr)
            _print_json(controller.to_dict())
            return 3

    _print_json(controller.to_dict())
    return 0 if session.state in (CheckoutState.FULFILLED, CheckoutState.AWAITING_CONFIRMATION) else 1


def cmd_reconcile(args):
    summary = PaymentConfirmation().reconcile_pending(older_than_minutes=args.older_than_minutes)
    _print_json(summary)


def cmd_transaction_events(args):
    ledger = TransactionLedger()
    txn = ledger.obter(args.transaction_id)
    if txn is None:
        print(f"❌ Transação não encontrada: {args.transaction_id}", file=sys.stderr)
        return 2
    _print_json({
        "transaction_id": txn.id,
        "payment_status": txn.payment_status,
        "gateway": txn.gateway,
        "simulated": txn.simulated,
        "valor": fmt_brl(txn.amount_cents),
        "eventos": ledger.eventos(txn.id),
    })


def cmd_lookup_appointment(args):
    apt = AccessTokenRepository().obter_agendamento(args.token, args.email)
    if apt is None:
        print("❌ Agendamento não encontrado para este token/e-mail.", file=sys.stderr)
        return 2
    _print_json({
        "appointment_id": apt.id,
        "data": apt.appointment_date.isoformat(),
        "hora": apt.appointment_time,
        "status": apt.status,
        "sala": apt.virtual_room_link,
    })


# -----------------------------------------------------------------------------
# Parsers / CLI
# -----------------------------------------------------------------------------
def _lazy(name: str):
    return lambda args: globals()[name](args)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="psiagenda", description="CLI PsiAgenda – checkout e agendamento")

    sp = p.add_subparsers(dest="cmd")  # subcomando OPCIONAL

    sp_init = sp.add_parser("init-db", help="Cria as tabelas no banco configurado")
    sp_init.set_defaults(func=_lazy("cmd_init_db"))

    sp_seed = sp.add_parser("seed", help="Cria/atualiza profissional e serviço")
    sp_seed.add_argument("--professional-id", default="prof-local")
    sp_seed.add_argument("--nome", default="Profissional Local")
    sp_seed.add_argument("--email")
    sp_seed.add_argument("--phone")
    sp_seed.add_argument("--demo", action="store_true", help="Marca o perfil como demonstração")
    sp_seed.add_argument("--gateway", help="mercadopago|stripe|pagarme|pagseguro|pushinpay|asaas")
    sp_seed.add_argument("--credentials", help="Credenciais (JSON, 'public|secret' ou token)")
    sp_seed.add_argument("--service-id", default="svc-local")
    sp_seed.add_argument("--service-name", default="Sessão de Psicoterapia")
    sp_seed.add_argument("--price-cents", type=int, default=15000)
    sp_seed.add_argument("--timer-minutes", type=int, default=0)
    sp_seed.set_defaults(func=_lazy("cmd_seed"))

    sp_co = sp.add_parser("checkout", help="Executa um checkout completo (PIX aguarda confirmação)")
    sp_co.add_argument("--service-id", required=True)
    sp_co.add_argument("--nome", required=True)
    sp_co.add_argument("--email", required=True)
    sp_co.add_argument("--phone")
    sp_co.add_argument("--cpf")
    sp_co.add_argument("--metodo", choices=["pix", "credit_card"], default="pix")
    sp_co.add_argument("--card-token", help="Token do cartão gerado pelo SDK do gateway")
    sp_co.add_argument("--parcelas", type=int, default=1)
    sp_co.add_argument("--data", required=True, help="YYYY-MM-DD")
    sp_co.add_argument("--hora", required=True, help="HH:MM")
    sp_co.set_defaults(func=_lazy("cmd_checkout"))

    sp_rec = sp.add_parser("reconcile", help="Reconsulta transações pendentes e agenda aprovadas")
    sp_rec.add_argument("--older-than-minutes", type=int, default=10)
    sp_rec.set_defaults(func=_lazy("cmd_reconcile"))

    sp_evt = sp.add_parser("transaction-events", help="Mostra status e eventos de uma transação")
    sp_evt.add_argument("--transaction-id", required=True)
    sp_evt.set_defaults(func=_lazy("cmd_transaction_events"))

    sp_apt = sp.add_parser("lookup-appointment", help="Consulta agendamento pelo token de acesso")
    sp_apt.add_argument("--token", required=True)
    sp_apt.add_argument("--email", required=True)
    sp_apt.set_defaults(func=_lazy("cmd_lookup_appointment"))

    # sem subcomando -> imprime help e retorna 0
    def _no_cmd(args, _p=p):
        _p.print_help()
        return 0
    p.set_defaults(func=_no_cmd)

    return p


def main(argv: Optional[List[str]] = None):
    logging.basicConfig(
        level=os.getenv("LOGLEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    parser = build_parser()
    args = parser.parse_args(argv)
    ret = args.func(args)
    return 0 if ret is None else ret


if __name__ == "__main__":
    raise SystemExit(main())

from datetime import date, timedelta

import pytest

from conftest import seed, count_rows, RecordingNotifier, StaticCalendar
from psiagenda.persistence.db import Appointment
from psiagenda.persistence.repositories import AppointmentRepository, TransactionLedger
from psiagenda.services.fulfillment import (
    STEP_POLICY,
    FulfillmentError,
    FulfillmentOrchestrator,
    StepPolicy,
    TransactionNotApproved,
    generate_room_code,
    room_link,
)


def _approved_txn(approve=True):
    seed()
    ledger = TransactionLedger()
    txn_id = ledger.criar_pending(
        professional_id="prof-1",
        service_id="svc-1",
        customer_name="Maria Silva",
        customer_email="maria@example.com",
        customer_phone="11999990000",
        amount_cents=15000,
        payment_method="pix",
        gateway="mercadopago",
        appointment_date=date.today() + timedelta(days=2),
        appointment_time="10:30",
    )
    if approve:
        ledger.marcar_approved(txn_id)
    return txn_id


def _orchestrator(**kwargs):
    kwargs.setdefault("calendar", StaticCalendar())
    kwargs.setdefault("notifier", RecordingNotifier())
    return FulfillmentOrchestrator(base_url="https://psiagenda.test", **kwargs)


def test_only_appointment_creation_is_fatal():
    assert STEP_POLICY["create_appointment"] is StepPolicy.FATAL
    assert {STEP_POLICY[k] for k in ("create_access_token", "sync_calendar", "notify")} == {StepPolicy.RECOVERABLE}


def test_room_code_and_link():
    code = generate_room_code()
    assert len(code) == 8 and code.isalnum() and code.upper() == code
    assert room_link("ABCD1234", "https://x.test/") == "https://x.test/sala/ABCD1234"


def test_fulfill_creates_appointment_token_and_notifies():
    txn_id = _approved_txn()
    notifier = RecordingNotifier()
    outcome = _orchestrator(notifier=notifier).fulfill(txn_id)

    assert outcome.degraded is False
    assert [s.name for s in outcome.steps] == ["create_appointment", "create_access_token", "sync_calendar", "notify"]
    apt = AppointmentRepository().obter(outcome.appointment_id)
    assert apt.status == "confirmed"
    assert apt.payment_status == "paid"
    assert apt.duration_minutes == 50
    assert apt.virtual_room_link == outcome.virtual_room_link
    assert outcome.access_token
    notice = notifier.notices[0]
    assert notice.professional_name == "Dra. Ana Souza"
    assert notice.access_token == outcome.access_token
    assert "fulfilled" in [e["event_type"] for e in TransactionLedger().eventos(txn_id)]


def test_meet_link_replaces_room_link():
    txn_id = _approved_txn()
    cal = StaticCalendar(result={"meetLink": "https://meet.google.com/abc-defg-hij", "eventId": "evt1"})
    outcome = _orchestrator(calendar=cal).fulfill(txn_id)

    assert outcome.virtual_room_link == "https://meet.google.com/abc-defg-hij"
    assert AppointmentRepository().obter(outcome.appointment_id).virtual_room_link == outcome.virtual_room_link


def test_fulfill_twice_returns_same_appointment():
    txn_id = _approved_txn()
    orch = _orchestrator()
    first = orch.fulfill(txn_id)
    second = orch.fulfill(txn_id)

    assert second.already_fulfilled is True
    assert second.appointment_id == first.appointment_id
    assert second.access_token == first.access_token
    assert count_rows(Appointment) == 1


def test_pending_transaction_is_never_fulfilled():
    txn_id = _approved_txn(approve=False)
    with pytest.raises(TransactionNotApproved):
        _orchestrator().fulfill(txn_id)
    assert count_rows(Appointment) == 0


def test_calendar_and_notification_failures_are_degraded():
    txn_id = _approved_txn()
    outcome = _orchestrator(calendar=StaticCalendar(fail=True), notifier=RecordingNotifier(fail=True)).fulfill(txn_id)

    assert outcome.degraded is True
    failed = {s.name for s in outcome.steps if not s.ok}
    assert failed == {"sync_calendar", "notify"}
    apt = AppointmentRepository().obter(outcome.appointment_id)
    assert apt.virtual_room_link.startswith("https://psiagenda.test/sala/")


def test_appointment_failure_raises_and_keeps_approval(monkeypatch):
    txn_id = _approved_txn()

    def boom(self, **kwargs):
        raise RuntimeError("constraint failed")

    monkeypatch.setattr(AppointmentRepository, "criar_confirmado", boom)
    with pytest.raises(FulfillmentError) as exc:
        _orchestrator().fulfill(txn_id)

    assert exc.value.transaction_id == txn_id
    assert exc.value.step.name == "create_appointment"
    assert TransactionLedger().obter(txn_id).payment_status == "approved"
    assert count_rows(Appointment) == 0

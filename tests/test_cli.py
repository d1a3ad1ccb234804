import json

from conftest import future_date, count_rows
from psiagenda.main import main
from psiagenda.persistence.db import Appointment
from psiagenda.persistence.repositories import ServiceRepository


def _out(capsys):
    return json.loads(capsys.readouterr().out)


def test_seed_creates_professional_and_service(capsys):
    assert main(["seed", "--service-id", "svc-cli", "--price-cents", "9990", "--timer-minutes", "5"]) == 0
    out = _out(capsys)
    assert out["service_id"] == "svc-cli"
    assert out["preco"] == "R$ 99,90"
    assert ServiceRepository().obter("svc-cli").checkout_config["timer"]["minutes"] == 5


def test_simulated_checkout_runs_until_fulfilled(capsys, monkeypatch, tmp_path):
    monkeypatch.setenv("SIMULATED_APPROVAL_SECONDS", "0")
    monkeypatch.setenv("CHECKOUT_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("CHECKOUT_TIMER_FILE", str(tmp_path / "timer.json"))
    main(["seed", "--service-id", "svc-cli"])
    capsys.readouterr()

    code = main([
        "checkout", "--service-id", "svc-cli", "--nome", "Maria Silva", "--email", "maria@example.com",
        "--phone", "11999990000", "--cpf", "52998224725", "--data", future_date(), "--hora", "10:00",
    ])

    printed = capsys.readouterr().out
    assert code == 0
    assert "PIX copia e cola:" in printed
    assert '"state": "Fulfilled"' in printed
    assert count_rows(Appointment) == 1


def test_checkout_validation_and_unknown_service(capsys):
    main(["seed", "--service-id", "svc-cli"])
    capsys.readouterr()

    code = main(["checkout", "--service-id", "svc-cli", "--nome", "", "--email", "x", "--data", future_date(), "--hora", "10:00"])
    assert code == 1
    assert set(_out(capsys)["errors"]) >= {"name", "email"}

    assert main(["checkout", "--service-id", "nada", "--nome", "A", "--email", "a@b.co", "--data", "2030-01-01", "--hora", "10:00"]) == 2


def test_transaction_events_not_found(capsys):
    assert main(["transaction-events", "--transaction-id", "nao-existe"]) == 2
    assert "Transação não encontrada" in capsys.readouterr().err


def test_reconcile_with_nothing_pending(capsys):
    assert main(["reconcile", "--older-than-minutes", "0"]) == 0
    assert _out(capsys)["checked"] == 0

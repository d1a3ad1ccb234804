from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

_CENT = Decimal("0.01")


def ensure_positive_cents(amount_cents: int) -> int:
    """
    Garante que o valor em centavos é um inteiro positivo.
    Levanta ValueError se inválido.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValueError("amount_cents deve ser inteiro (centavos).")
    if amount_cents <= 0:
        raise ValueError("amount_cents deve ser > 0 (centavos).")
    return amount_cents


def to_major_units(amount_cents: int) -> Decimal:
    """Centavos -> reais com duas casas (Decimal, sem float)."""
    return (Decimal(int(amount_cents)) / 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: "Decimal | str | int") -> int:
    """Reais (Decimal/str) -> centavos. Não aceita float."""
    if isinstance(amount, float):
        raise TypeError("use Decimal ou str para valores monetários")
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fmt_brl(amount_cents: int) -> str:
    """1234567 -> 'R$ 12.345,67'"""
    reais = to_major_units(amount_cents)
    inteiro, cent = f"{reais:.2f}".split(".")
    sinal = ""
    if inteiro.startswith("-"):
        sinal, inteiro = "-", inteiro[1:]
    s = f"{int(inteiro):,}".replace(",", ".")
    return f"{sinal}R$ {s},{cent}"

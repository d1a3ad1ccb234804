"""Checkout e confirmação de agendamentos do PsiAgenda."""

__all__ = [
    "services",
    "persistence",
    "utils",
]
__version__ = "0.1.0"

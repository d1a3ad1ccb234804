from __future__ import annotations

from typing import Any

DEMO_BLOCK_MESSAGE = (
    "Este é um perfil de demonstração. Nenhum pagamento é processado aqui; "
    "crie sua conta para receber agendamentos reais."
)


def is_demo_profile(professional: Any) -> bool:
    """Perfil de demonstração nunca chega ao ledger nem ao gateway."""
    if professional is None:
        return False
    return bool(getattr(professional, "is_demo", False))

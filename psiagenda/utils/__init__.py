from .money import ensure_positive_cents, to_major_units, to_cents, fmt_brl

__all__ = ["ensure_positive_cents", "to_major_units", "to_cents", "fmt_brl"]

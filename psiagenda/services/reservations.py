from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional, Tuple

from ..persistence.repositories import AppointmentRepository

log = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = "Este horário já está reservado. Por favor, escolha outro horário."

SlotKey = Tuple[str, str, str]


class SlotUnavailable(RuntimeError):
    def __init__(self, key: SlotKey):
        super().__init__(SLOT_TAKEN_MESSAGE)
        self.key = key


@dataclass
class _Reservation:
    holder: str          # transaction id
    expires_at: float


def slot_key(professional_id: str, appointment_date: "date | str", appointment_time: str) -> SlotKey:
    d = appointment_date.isoformat() if isinstance(appointment_date, date) else str(appointment_date)
    return (professional_id, d, appointment_time)


class SlotReservationBook:
    """
    Reserva curta do horário durante a janela de pagamento.
      acquire  -> antes da chamada ao gateway
      release  -> falha na cobrança, rejeição ou timeout
      convert  -> agendamento criado (o próprio agendamento passa a ocupar o horário)
    Reservas expiradas são ignoradas. Ligado por CHECKOUT_RESERVE_SLOTS=1.
    """

    def __init__(
        self,
        ttl_seconds: float = 15 * 60,
        appointments: Optional[AppointmentRepository] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.appointments = appointments or AppointmentRepository()
        self.clock = clock
        self._lock = threading.Lock()
        self._slots: Dict[SlotKey, _Reservation] = {}

    def acquire(self, key: SlotKey, holder: str, ttl_seconds: Optional[float] = None) -> None:
        now = self.clock()
        with self._lock:
            current = self._slots.get(key)
            if current and current.holder != holder and current.expires_at > now:
                raise SlotUnavailable(key)
            if self.appointments.existe_no_horario(*key):
                raise SlotUnavailable(key)
            self._slots[key] = _Reservation(holder=holder, expires_at=now + (ttl_seconds or self.ttl_seconds))
        log.debug("Horário %s reservado para %s", key, holder)

    def release(self, holder: str) -> None:
        with self._lock:
            for key in [k for k, r in self._slots.items() if r.holder == holder]:
                del self._slots[key]

    def convert(self, holder: str) -> None:
        self.release(holder)

    def holder_of(self, key: SlotKey) -> Optional[str]:
        with self._lock:
            r = self._slots.get(key)
            if r is None or r.expires_at <= self.clock():
                return None
            return r.holder

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from typing import Callable, Dict, MutableMapping, Optional, Protocol

log = logging.getLogger(__name__)

KEY_PREFIX = "checkoutTimer_"


class KeyValueStore(Protocol):
    """Armazenamento chave/valor do navegador (get/set/remove)."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Persiste num arquivo JSON (CLI: o prazo sobrevive entre execuções)."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            log.warning("Arquivo de timer ilegível, recomeçando: %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, str]) -> None:
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)


class MappingStore:
    """Adapta qualquer MutableMapping (ex.: flask.session)."""

    def __init__(self, mapping: MutableMapping[str, str]):
        self.mapping = mapping

    def get(self, key: str) -> Optional[str]:
        value = self.mapping.get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        self.mapping[key] = value

    def remove(self, key: str) -> None:
        self.mapping.pop(key, None)


def timer_key(service_id: Optional[str]) -> str:
    return f"{KEY_PREFIX}{service_id or 'default'}"


class OfferTimer:
    """
    Contagem regressiva da oferta. Só pressão visual: não mexe em preço,
    elegibilidade nem no ledger. O prazo (epoch em ms) fica no store e
    sobrevive a recarregamentos até expirar ou ser limpo.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _deadline(self, service_key: Optional[str]) -> Optional[int]:
        raw = self.store.get(timer_key(service_key))
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    def start(self, service_key: Optional[str], duration_minutes: int) -> int:
        """Reaproveita um prazo futuro; senão grava now + duração. Retorna o prazo (ms)."""
        deadline = self._deadline(service_key)
        now = self._now_ms()
        if deadline is not None and deadline > now:
            return deadline
        deadline = now + int(duration_minutes) * 60 * 1000
        self.store.set(timer_key(service_key), str(deadline))
        return deadline

    def remaining_seconds(self, service_key: Optional[str]) -> int:
        deadline = self._deadline(service_key)
        if deadline is None:
            return 0
        remaining = max(0, math.floor((deadline - self._now_ms()) / 1000))
        if remaining == 0:
            self.clear(service_key)
        return remaining

    def clear(self, service_key: Optional[str]) -> None:
        self.store.remove(timer_key(service_key))

    @staticmethod
    def format_remaining(seconds: int) -> str:
        seconds = max(0, int(seconds))
        return f"{seconds // 60:02d}:{seconds % 60:02d}"

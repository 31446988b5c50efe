from __future__ import annotations

import random
from itertools import count
from threading import Lock
from typing import Iterable, Optional

from kami.core.errors import ConfigurationError


class CredentialPool:
    """Uniform random pick from a static set of interchangeable API keys.

    There is no health tracking: a key that was just rate limited can be drawn
    again on the next attempt and will simply be rejected again downstream.
    """

    strategy = "random"

    def __init__(self, credentials: Iterable[str], rng: Optional[random.Random] = None) -> None:
        cleaned = tuple(item.strip() for item in credentials if isinstance(item, str) and item.strip())
        if not cleaned:
            raise ConfigurationError("no completion API keys configured (GROQ_API_KEY_1..6 or GROQ_API_KEYS)")
        self._credentials = cleaned
        self._rng = rng or random.Random()

    @property
    def size(self) -> int:
        return len(self._credentials)

    def select(self) -> str:
        return self._rng.choice(self._credentials)

    def next(self) -> str:
        return self.select()

    def __len__(self) -> int:
        return self.size


class RoundRobinCredentialPool(CredentialPool):
    strategy = "round_robin"

    def __init__(self, credentials: Iterable[str]) -> None:
        super().__init__(credentials)
        self._cursor = count()
        self._lock = Lock()

    def select(self) -> str:
        with self._lock:
            idx = next(self._cursor)
        return self._credentials[idx % len(self._credentials)]


def build_pool(credentials: Iterable[str], strategy: str = "random") -> CredentialPool:
    if strategy == "round_robin":
        return RoundRobinCredentialPool(credentials)
    return CredentialPool(credentials)


def mask_key(credential: str) -> str:
    if len(credential) <= 8:
        return "***"
    return f"{credential[:4]}...{credential[-4:]}"

"""Holder for the shared secret that authenticates inbound events."""

from __future__ import annotations

import threading
from enum import Enum


class HandshakeState(str, Enum):
    """Whether a secret has been bound yet."""
    AWAITING_SECRET = "awaiting_secret"
    BOUND = "bound"


class SecretStore:
    """Single-slot, last-write-wins secret.

    Readers always see either the previous or the new value; there is no
    other state to keep consistent with it.
    """

    def __init__(self, initial: str | None = None) -> None:
        self._secret = initial or None
        self._lock = threading.Lock()

    def set(self, secret: str) -> None:
        with self._lock:
            self._secret = secret

    def get(self) -> str | None:
        with self._lock:
            return self._secret

    @property
    def is_bound(self) -> bool:
        return self.get() is not None

    @property
    def state(self) -> HandshakeState:
        return HandshakeState.BOUND if self.is_bound else HandshakeState.AWAITING_SECRET

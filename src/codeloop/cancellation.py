"""Cooperative cancellation shared by the model call, retry sleeps and tools."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from codeloop.errors import AbortedError

_log = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancellation signal.

    Tokens form a tree: a child token created with :meth:`child` fires when its
    parent fires, but cancelling a child never affects the parent.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._children: list[CancellationToken] = []
        self._parent: CancellationToken | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the token, its callbacks and every derived token."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            children = list(self._children)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                _log.warning("Cancellation callback failed", exc_info=True)
        for child in children:
            child.cancel()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError()

    def wait(self, timeout: float | None = None) -> bool:
        """Block up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def child(self) -> "CancellationToken":
        token = CancellationToken()
        token._parent = self
        with self._lock:
            self._children.append(token)
            already = self._event.is_set()
        if already:
            token.cancel()
        return token

    def dispose(self) -> None:
        """Detach from the parent so the parent no longer holds a reference."""
        parent = self._parent
        if parent is None:
            return
        with parent._lock:
            if self in parent._children:
                parent._children.remove(self)
        self._parent = None


def cancellable_sleep(seconds: float, token: CancellationToken | None = None) -> None:
    """Sleep for ``seconds``; raise AbortedError as soon as ``token`` fires."""
    if token is None:
        time.sleep(max(0.0, seconds))
        return
    if token.wait(max(0.0, seconds)):
        raise AbortedError()

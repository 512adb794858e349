"""Cooperative cancellation for blocking deployment steps.

A :class:`CancelToken` is handed to ``deploy()`` and threaded through every
suspension point (command execution, health probes, readiness polling,
canary observation windows).  Those points wait on the token instead of
calling ``time.sleep`` so a cancel request is noticed immediately.
"""

from __future__ import annotations

import contextlib
import logging
import signal
import threading
from typing import Iterator, Optional, Sequence

from .errors import DeploymentCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """Thread-safe, one-shot cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DeploymentCancelled(f"Deployment cancelled: {self._reason}")

    def wait(self, seconds: float) -> None:
        """Sleep for *seconds*, raising :class:`DeploymentCancelled` if cancelled."""
        if seconds > 0:
            self._event.wait(timeout=seconds)
        self.raise_if_cancelled()


_NEVER = CancelToken()


def ensure_token(cancel: Optional[CancelToken]) -> CancelToken:
    """Return *cancel*, or a shared token that is never cancelled."""
    return cancel if cancel is not None else _NEVER


@contextlib.contextmanager
def cancel_on_signals(
    token: CancelToken,
    signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[CancelToken]:
    """Cancel *token* when the process receives one of *signals*.

    Must be entered from the main thread.  Previous handlers are restored
    on exit.
    """
    previous = {}

    def _handler(signum: int, _frame: object) -> None:
        name = signal.Signals(signum).name
        logger.warning("Received %s, cancelling deployment at next checkpoint", name)
        token.cancel(f"received {name}")

    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

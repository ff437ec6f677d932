"""Cancellation and polling primitives for vmctl."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from vmctl.exceptions import CanceledByCaller, ReadinessTimeout
from vmctl.utils import log

T = TypeVar("T")


class CancelToken:
    """A cancellation flag that can be chained to a parent token."""

    def __init__(self, parent: Optional["CancelToken"] = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "canceled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def canceled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.canceled

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True early if canceled."""
        deadline = time.monotonic() + timeout
        while True:
            if self.canceled:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            # Parent cancellation is only observed between slices.
            self._event.wait(min(remaining, 0.1))

    def raise_if_canceled(self) -> None:
        if self.canceled:
            reason = self.reason or (self._parent.reason if self._parent else None)
            raise CanceledByCaller(reason or "canceled by caller")

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)


@dataclass
class RetryPolicy:
    """Repeat an attempt every ``interval`` seconds until it yields a value.

    The attempt is bounded by ``timeout`` seconds and/or ``max_attempts``; a
    ``None`` bound is unlimited. Exceptions listed in ``retry_on`` count as a
    failed attempt and the last one is attached to the final timeout.
    """

    interval: float
    timeout: Optional[float] = None
    max_attempts: Optional[int] = None
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def run(
        self,
        attempt: Callable[[], Optional[T]],
        cancel: Optional[CancelToken] = None,
        label: str = "operation",
    ) -> T:
        token = cancel or CancelToken()
        deadline = time.monotonic() + self.timeout if self.timeout is not None else None
        attempts = 0
        last_error: Optional[BaseException] = None

        while True:
            token.raise_if_canceled()
            attempts += 1
            try:
                result = attempt()
            except CanceledByCaller:
                raise
            except self.retry_on as exc:
                last_error = exc
                log("DEBUG", f"{label}: attempt {attempts} failed: {exc}")
                result = None
            if result is not None and result is not False:
                return result

            if self.max_attempts is not None and attempts >= self.max_attempts:
                break
            sleep_for = self.interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sleep_for = min(sleep_for, remaining)
            if token.wait(sleep_for):
                token.raise_if_canceled()

        message = f"{label} did not succeed after {attempts} attempt(s)"
        if last_error is not None:
            message += f": {last_error}"
        raise ReadinessTimeout(message)

"""Observable engine signals and the error sink.

This module provides:
- Signal: Observer list for one kind of notification
- EngineSignals: The signals exposed to the UI collaborator
- ErrorSink: Single destination for errors the engine swallows

Observers are called on the engine thread. An observer that raises is
reported to the error sink and never affects the engine.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Kinds of best-effort operations whose failures are swallowed."""

    PUSH = "push"
    REGISTRATION = "registration"
    UNPAIR = "unpair"
    HANDLER = "handler"
    LEDGER = "ledger"
    MESSAGE = "message"
    OBSERVER = "observer"
    RECOVERY = "recovery"
    CONNECTION = "connection"


class ErrorSink:
    """Collects swallowed errors so chronic failures stay visible.

    Every report is logged and counted per category. Operators can read
    ``counts`` (e.g. from ``devicesync status``) to spot a push that has
    been failing for hours.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[ErrorCategory] = Counter()
        self._last_errors: dict[ErrorCategory, str] = {}

    def report(
        self,
        category: ErrorCategory,
        error: BaseException,
        context: str = "",
    ) -> None:
        """Record a swallowed error.

        Args:
            category: Which best-effort operation failed.
            error: The exception that was swallowed.
            context: Short description (event id, endpoint...).
        """
        with self._lock:
            self._counts[category] += 1
            self._last_errors[category] = str(error)
            count = self._counts[category]

        suffix = f" ({context})" if context else ""
        logger.warning("%s failed%s: %s [total=%d]", category.value, suffix, error, count)
        logger.debug("Full traceback:", exc_info=error)

    @property
    def counts(self) -> dict[str, int]:
        """Failure count per category."""
        with self._lock:
            return {category.value: count for category, count in self._counts.items()}

    def last_error(self, category: ErrorCategory) -> str | None:
        """Message of the most recent failure in a category."""
        with self._lock:
            return self._last_errors.get(category)


class Signal:
    """A named list of observer callbacks."""

    def __init__(self, name: str, sink: ErrorSink | None = None) -> None:
        self.name = name
        self._sink = sink
        self._lock = threading.Lock()
        self._observers: list[Callable[..., None]] = []

    def connect(self, callback: Callable[..., None]) -> Callable[..., None]:
        """Register an observer. Returns it, so this works as a decorator."""
        with self._lock:
            self._observers.append(callback)
        return callback

    def disconnect(self, callback: Callable[..., None]) -> None:
        """Remove an observer (no-op if not registered)."""
        with self._lock:
            if callback in self._observers:
                self._observers.remove(callback)

    def emit(self, *args: Any) -> None:
        """Call every observer with the given arguments."""
        with self._lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(*args)
            except Exception as e:
                if self._sink:
                    self._sink.report(ErrorCategory.OBSERVER, e, self.name)
                else:
                    logger.warning("Observer of %s failed: %s", self.name, e)


@dataclass
class EngineSignals:
    """Signals exposed to the UI collaborator.

    Attributes:
        status_changed: ``(ConnectionState)`` on every state entry.
        session_recovered: ``()`` after a silent token reissue.
        session_expired: ``(recoverable: bool)`` when re-pairing is needed.
        data_changed: ``()`` after an event changed local state.
        connection_failed: ``(attempts: int)`` when reconnection gave up.
    """

    sink: ErrorSink = field(default_factory=ErrorSink)
    status_changed: Signal = field(init=False)
    session_recovered: Signal = field(init=False)
    session_expired: Signal = field(init=False)
    data_changed: Signal = field(init=False)
    connection_failed: Signal = field(init=False)

    def __post_init__(self) -> None:
        self.status_changed = Signal("status_changed", self.sink)
        self.session_recovered = Signal("session_recovered", self.sink)
        self.session_expired = Signal("session_expired", self.sink)
        self.data_changed = Signal("data_changed", self.sink)
        self.connection_failed = Signal("connection_failed", self.sink)

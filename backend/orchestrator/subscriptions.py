"""
Subscriber sets with isolated dispatch.

A handler that raises is logged and skipped; its siblings still run and
the emitter never sees the exception.
"""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

from observability.logger import log_event

T = TypeVar("T")

Unsubscribe = Callable[[], None]


def noop_unsubscribe() -> None:
    return None


class Subscribers(Generic[T]):
    """Ordered set of callbacks receiving one value per emit."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._handlers: list[Callable[[T], None]] = []

    def subscribe(self, handler: Callable[[T], None]) -> Unsubscribe:
        """Register `handler`; the returned callable removes it (idempotent)."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, value: T) -> None:
        # Snapshot: handlers may unsubscribe during dispatch
        for handler in tuple(self._handlers):
            try:
                handler(value)
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_event(
                    {
                        "event_type": "SUBSCRIBER_HANDLER_FAILED",
                        "channel": self._name,
                        "exception": type(e).__name__,
                        "message": str(e),
                    },
                    level="error",
                )

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)

"""
Signal - process-wide notifications (auth expired, logged out, connectivity changed).

Callbacks may be plain functions or coroutine functions. A failing
callback is logged and does not stop delivery to the others.
"""

import inspect
from typing import Any, Callable

from loguru import logger


class Signal:
    """
    Minimal publish/subscribe hook.

    Usage:
        auth_expired = Signal("auth_expired")
        auth_expired.connect(lambda: show_login())
        await auth_expired.emit()
    """

    def __init__(self, name: str):
        self.name = name
        self._callbacks: list[Callable[..., Any]] = []
        self.emit_count = 0

    def connect(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register a callback; returns a function that disconnects it."""
        self._callbacks.append(callback)

        def disconnect() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return disconnect

    async def emit(self, *args: Any) -> None:
        self.emit_count += 1
        logger.debug(f"Signal '{self.name}' emitted to {len(self._callbacks)} receivers")
        for callback in list(self._callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Receiver of '{self.name}' failed: {type(e).__name__}: {e}")


class Signals:
    """The signals shared by every component of one runtime."""

    def __init__(self) -> None:
        self.auth_expired = Signal("auth_expired")
        self.logged_out = Signal("logged_out")
        self.connectivity_changed = Signal("connectivity_changed")

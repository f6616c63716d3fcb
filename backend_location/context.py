"""
Cancellation contexts.

A :class:`Context` is cancelled explicitly, when its timeout expires, or
when its parent is cancelled. Blocking work such as establishing a backend
connection runs through :meth:`Context.run`, which returns control as soon
as the context is cancelled, without waiting for the work to finish.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import TYPE_CHECKING, TypeVar

from backend_location.exceptions import CancellationError

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any

__all__ = ["Context"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELED = "context canceled"
DEADLINE_EXCEEDED = "context deadline exceeded"


class Context:
    """
    Cancellation context with optional timeout and parent.

    Example:
        >>> ctx = Context(timeout=30)
        >>> be = open_backend('sftp:host:/srv/repo', ctx=ctx)
        >>> ctx.cancel()
    """

    def __init__(self, parent: Context | None = None, timeout: float | None = None) -> None:
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._waiters: list[threading.Event] = []
        # weak so that finished children of a long-lived parent can go away
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        self._parent = parent
        self._timer: threading.Timer | None = None

        if parent is not None:
            parent._add_child(self)

        if timeout is not None:
            self._timer = threading.Timer(timeout, self.cancel, args=(DEADLINE_EXCEEDED,))
            self._timer.daemon = True
            self._timer.start()

    def _add_child(self, child: Context) -> None:
        with self._lock:
            reason = self._reason
            if reason is None:
                self._children.add(child)
        if reason is not None:
            child.cancel(reason)

    def _remove_child(self, child: Context) -> None:
        with self._lock:
            self._children.discard(child)

    def cancel(self, reason: str = CANCELED) -> None:
        """Cancel the context and all of its children. Later calls do nothing."""
        with self._lock:
            if self._reason is not None:
                return
            self._reason = reason
            waiters, self._waiters = self._waiters, []
            children = list(self._children)
            self._children.clear()

        if self._timer is not None:
            self._timer.cancel()
        for event in waiters:
            event.set()
        for child in children:
            child.cancel(reason)
        if self._parent is not None:
            self._parent._remove_child(self)

        logger.debug(f"Context cancelled: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    def err(self) -> CancellationError | None:
        """Return the cancellation error, or None while the context is active."""
        reason = self._reason
        return CancellationError(reason) if reason is not None else None

    def check(self) -> None:
        """
        Raise if the context is cancelled.

        Raises:
            CancellationError: If the context is cancelled.
        """
        err = self.err()
        if err is not None:
            raise err

    def run(self, fn: Callable[..., T], *args: Any) -> T:
        """
        Run ``fn(*args)`` in a worker thread until it finishes or the context is cancelled.

        If the context is cancelled first, :class:`CancellationError` is raised
        immediately. A result the worker produces afterwards is closed (when it
        has a ``close`` method) instead of being returned.

        Raises:
            CancellationError: If the context is cancelled before ``fn`` returns.
        """
        self.check()

        wake = threading.Event()
        state: dict[str, Any] = {"done": False, "abandoned": False}

        def target() -> None:
            try:
                value = fn(*args)
            except BaseException as e:
                error: BaseException | None = e
                value = None
            else:
                error = None

            with self._lock:
                state.update(done=True, value=value, error=error)
                abandoned = state["abandoned"]
            wake.set()

            if abandoned and value is not None and hasattr(value, "close"):
                logger.debug(f"Closing {type(value).__name__} finished after cancellation")
                try:
                    value.close()
                except Exception as e:
                    logger.warning(f"Failed to close late result: {e}")

        with self._lock:
            if self._reason is None:
                self._waiters.append(wake)
        if self.cancelled:
            wake.set()

        name = getattr(fn, "__name__", "task")
        worker = threading.Thread(target=target, name=f"context-run-{name}", daemon=True)
        worker.start()
        wake.wait()

        with self._lock:
            reason = self._reason
            finished = state["done"]
            if reason is not None and not finished:
                state["abandoned"] = True
            if wake in self._waiters:
                self._waiters.remove(wake)

        if reason is not None:
            if finished and hasattr(state["value"], "close"):
                state["value"].close()
            raise CancellationError(reason)
        if state["error"] is not None:
            raise state["error"]
        return state["value"]

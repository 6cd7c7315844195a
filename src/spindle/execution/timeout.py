"""Watchdog timeouts for node invocations.

:func:`run_with_timeout` races a callable against a deadline on a dedicated
worker thread. Python threads cannot be killed, so on expiry the invocation
keeps running in the background while the caller gets :class:`TimeoutExpired`
and moves on; the result of the abandoned call is discarded.

Example:
    >>> run_with_timeout(lambda: 42, timeout_seconds=1.0)
    42
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, TypeVar

T = TypeVar("T")


class TimeoutExpired(TimeoutError):
    """Raised when an operation exceeds its deadline.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the operation ran before the watchdog gave up
        operation: Name/description of the operation
    """

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation
        msg = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"
        super().__init__(msg)


@dataclass
class Deadline:
    """Absolute deadline on the monotonic clock.

    Used by the engine for the overall workflow timeout.
    """

    timeout_seconds: float
    start_time: float = field(default_factory=time.monotonic)

    @property
    def deadline(self) -> float:
        return self.start_time + self.timeout_seconds

    def remaining(self) -> float:
        """Remaining time until deadline in seconds (negative if expired)."""
        return self.deadline - time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def is_expired(self) -> bool:
        return time.monotonic() >= self.deadline


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    operation: str | None = None,
    args: tuple[Any, ...] | None = None,
    kwargs: dict[str, Any] | None = None,
) -> T:
    """Run a callable with a timeout on a daemon watchdog thread.

    Args:
        func: Callable to execute
        timeout_seconds: Maximum execution time
        operation: Name for error messages
        args: Positional arguments for func
        kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Raises:
        TimeoutExpired: If execution exceeds timeout
        Exception: Any exception raised by func
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()
    pos_args = args or ()
    kw_args = kwargs or {}
    future: Future[T] = Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(func(*pos_args, **kw_args))
        except BaseException as exc:
            future.set_exception(exc)

    # Abandoned calls keep running on this daemon thread.
    worker = threading.Thread(target=_target, name=f"watchdog-{operation or 'call'}", daemon=True)
    worker.start()
    try:
        return future.result(timeout=timeout_seconds)
    except TimeoutError:
        if future.done() and not future.cancelled() and future.exception() is not None:
            raise
        elapsed = time.monotonic() - start
        raise TimeoutExpired(
            timeout=timeout_seconds,
            elapsed=elapsed,
            operation=operation or getattr(func, "__name__", "unknown"),
        ) from None

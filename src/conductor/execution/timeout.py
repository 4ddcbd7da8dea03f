"""Bounded handler runs.

Handlers may block on sockets or subprocesses, so the executor cannot rely
on an event loop to interrupt them. :func:`run_with_timeout` runs the
callable on a daemon thread and waits on it in short polls, watching two
things:

- the hard deadline: the handler is signalled to stop (``on_timeout``) and
  :class:`~conductor.core.errors.HandlerTimeoutError` is raised;
- the cancel event: the handler gets ``grace_seconds`` to acknowledge,
  after which :class:`~conductor.core.errors.ExecutionCancelled` is raised.

In both cases the thread is abandoned, not killed; cooperative handlers
observe the signal and return on their own.

Architecture:
    ::

        caller thread                    handler thread (daemon)
        ─────────────                    ───────────────────────
        run_with_timeout(func, 30s) ──▶  func(*args)
            │  wait(future, poll)             │
            │  deadline passed? ──────────────┼──▶ on_timeout()
            │  cancel set + grace over?       │
            ▼                                 ▼
        result | HandlerTimeoutError     future.set_result / set_exception
               | ExecutionCancelled

Tags:
    timeout, deadline, cancellation, execution, conductor

Doc-Types:
    api-reference
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from conductor.core.errors import ExecutionCancelled, HandlerTimeoutError

POLL_INTERVAL = 0.05

T = TypeVar("T")


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float | None,
    operation: str | None = None,
    args: tuple[Any, ...] | None = None,
    kwargs: dict[str, Any] | None = None,
    *,
    cancel_event: threading.Event | None = None,
    grace_seconds: float = 0.0,
    on_timeout: Callable[[], None] | None = None,
) -> T:
    """Run a callable with a hard timeout and cooperative cancellation.

    Args:
        func: Callable to execute
        timeout_seconds: Maximum execution time (None = unbounded)
        operation: Name for error messages
        args: Positional arguments for func
        kwargs: Keyword arguments for func
        cancel_event: When set, the call is abandoned after ``grace_seconds``
        grace_seconds: Time a cancelled handler gets to acknowledge
        on_timeout: Invoked once when the deadline passes, before raising

    Raises:
        HandlerTimeoutError: If execution exceeds timeout
        ExecutionCancelled: If cancel was requested and the grace period ran out
        Exception: Any exception raised by func
    """
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    name = operation or getattr(func, "__name__", "handler")
    pos_args = args or ()
    kw_args = kwargs or {}
    future: concurrent.futures.Future[T] = concurrent.futures.Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = func(*pos_args, **kw_args)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    threading.Thread(target=_target, name=f"conductor-{name}", daemon=True).start()

    start = time.monotonic()
    deadline = start + timeout_seconds if timeout_seconds is not None else None
    cancel_seen_at: float | None = None

    while True:
        wait = POLL_INTERVAL
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        done, _ = concurrent.futures.wait([future], timeout=wait)
        if done:
            return future.result()

        now = time.monotonic()
        if cancel_event is not None and cancel_event.is_set():
            if cancel_seen_at is None:
                cancel_seen_at = now
            if now - cancel_seen_at >= grace_seconds:
                raise ExecutionCancelled(
                    f"'{name}' did not acknowledge cancellation within {grace_seconds}s"
                )
        if deadline is not None and now >= deadline:
            if on_timeout is not None:
                on_timeout()
            elapsed = now - start
            raise HandlerTimeoutError(
                f"'{name}' timed out after {timeout_seconds}s (ran for {elapsed:.2f}s)",
                timeout=timeout_seconds,
                elapsed=elapsed,
            )

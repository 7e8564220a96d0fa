"""
Best-effort side effects that must never fail the request that triggers them.

``run`` awaits the operation inline (ordering matters, e.g. the user turn must be
logged before the assistant turn). ``spawn`` detaches it into a task that keeps
running when the caller goes away. Both swallow ``Exception`` and report it on a
dedicated channel: a ``best_effort.failed`` warning event plus a per-operation
failure counter.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Awaitable, Optional

from .logging import log_event

logger = logging.getLogger("meterchat.side_channel")

_failures: Counter = Counter()
# Strong references so detached tasks are not garbage collected mid-flight
_background_tasks: set[asyncio.Task] = set()


async def run(operation: str, awaitable: Awaitable[Any], **context) -> Optional[Any]:
    """Await ``awaitable``; on failure log it and return None."""
    try:
        return await awaitable
    except Exception as exc:
        _failures[operation] += 1
        log_event(
            logger,
            logging.WARNING,
            "best_effort.failed",
            f"operation={operation} error={type(exc).__name__}: {exc}",
            operation=operation,
            error_type=type(exc).__name__,
            **context,
        )
        return None


def spawn(operation: str, awaitable: Awaitable[Any], **context) -> asyncio.Task:
    """Run ``awaitable`` as a detached task. Await the task to wait for it."""
    task = asyncio.create_task(run(operation, awaitable, **context))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def failure_count(operation: Optional[str] = None) -> int:
    if operation is None:
        return sum(_failures.values())
    return _failures[operation]


def reset() -> None:
    _failures.clear()


async def drain(timeout: float = 5.0) -> None:
    """Wait for detached tasks still in flight (used on shutdown)."""
    pending = [task for task in _background_tasks if not task.done()]
    if pending:
        await asyncio.wait(pending, timeout=timeout)

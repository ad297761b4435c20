"""
Handler invocation: the execution context handed to every handler and the
dispatch shim that runs async and sync handlers alike.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any

from portal_jobs.config.logging import get_logger
from portal_jobs.v1.core.registries import HandlerRegistration

logger = get_logger(__name__)


@dataclass
class ExecutionContext:
    """
    Per-execution view of a job for its handler.

    hints carry governor advice such as batch_size. cancel_event is set when
    the worker shuts down; long handlers should check it between units of
    work and stop early.
    """

    job_id: int
    job_type: str
    queue: str
    attempt: int
    max_attempts: int
    worker_id: str
    hints: dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    costs: list[int] = field(default_factory=list)

    @property
    def batch_size(self) -> int | None:
        return self.hints.get("batch_size")

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def report_cost(self, cents: int) -> None:
        """Report metered spend; recorded against the budget after execution."""
        if cents < 0:
            raise ValueError("cost must be non-negative")
        self.costs.append(int(cents))

    @property
    def total_cost(self) -> int:
        return sum(self.costs)


def _entrypoint(handler: Any):
    if hasattr(handler, "handle"):
        return handler.handle
    return handler


async def execute_handler(
    registration: HandlerRegistration,
    payload: dict[str, Any],
    context: ExecutionContext,
) -> Any:
    """Run a handler; blocking handlers are moved off the event loop."""
    entrypoint = _entrypoint(registration.handler)

    if inspect.iscoroutinefunction(entrypoint):
        return await entrypoint(payload, context)

    result = await asyncio.to_thread(entrypoint, payload, context)
    # A sync callable may still hand back an awaitable
    if inspect.isawaitable(result):
        return await result
    return result

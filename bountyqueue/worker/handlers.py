"""
Job handler registry.

Business handlers (agent runners, notification senders) live outside this
package and register themselves per queue name. Handlers must be idempotent:
a job can be delivered more than once after a crash or a replay.
"""

import importlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from bountyqueue.types.job import Job, JobWithMetadata, WorkOptions

logger = logging.getLogger(__name__)

# Receives the fetched batch; raising fails every job of the batch
JobHandler = Callable[[list[Job] | list[JobWithMetadata]], Awaitable[Any]]


@dataclass
class Registration:
    """A handler bound to a queue name with its work options."""

    queue: str
    handler: JobHandler
    options: WorkOptions


# Handler registry
_handlers: dict[str, Registration] = {}


def register_handler(
    queue: str,
    options: WorkOptions | None = None,
) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler for a queue.

    Args:
        queue: The queue name this handler processes.
        options: Work options (batch size, priority, polling interval).

    Returns:
        Decorator function.

    Example:
        @register_handler("agent-execution", WorkOptions(batch_size=5))
        async def run_agents(jobs: list[Job]) -> None:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        if queue in _handlers:
            logger.warning(f"Replacing handler for queue: {queue}")
        _handlers[queue] = Registration(
            queue=queue,
            handler=handler,
            options=options or WorkOptions(),
        )
        logger.info(f"Registered handler for queue: {queue}")
        return handler
    return decorator


def get_handler(queue: str) -> Registration | None:
    """
    Get the registration for a queue.

    Args:
        queue: The queue name.

    Returns:
        The registration or None if not found.
    """
    return _handlers.get(queue)


def list_handlers() -> list[str]:
    """List all queues with a registered handler."""
    return list(_handlers.keys())


def unregister_handler(queue: str) -> bool:
    """Remove a queue's handler. Returns False if none was registered."""
    return _handlers.pop(queue, None) is not None


def load_handler_modules(modules: Iterable[str]) -> None:
    """Import modules whose import registers handlers."""
    for module in modules:
        importlib.import_module(module)
        logger.info(f"Loaded handler module: {module}")

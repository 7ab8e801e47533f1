"""Job handler registry."""

from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional, Union

from jobq.jobs.models import Outcome

# Handler signature: async def handler(ctx: JobContext, payload: dict | bytes) -> Outcome
# Batch handler:     async def handler(ctx: JobContext, payloads: list[dict | bytes]) -> list[Outcome]
JobHandler = Callable[..., Coroutine[Any, Any, Union[Outcome, list[Outcome], None]]]


@dataclass(frozen=True)
class HandlerRegistration:
    """How a queue's jobs are executed."""

    queue: str
    handler: JobHandler
    resource: Optional[str] = None  # rate-limited downstream resource
    concurrency: Optional[int] = None  # per-queue slot cap
    batch_size: int = 1
    batch_timeout: float = 0.0  # seconds
    auto_heartbeat: bool = False
    max_attempts: Optional[int] = None

    @property
    def is_batch(self) -> bool:
        return self.batch_size > 1


class JobRegistry:
    """Registry mapping queues to their handlers."""

    def __init__(self):
        self._registrations: dict[str, HandlerRegistration] = {}

    def register(self, queue: str, handler: JobHandler, **options: Any) -> None:
        """Register a handler for a queue."""
        registration = HandlerRegistration(queue=queue, handler=handler, **options)
        if registration.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if registration.batch_timeout < 0:
            raise ValueError("batch_timeout must be >= 0")
        self._registrations[queue] = registration

    def get(self, queue: str) -> HandlerRegistration:
        """Get the registration for a queue. Raises KeyError if not found."""
        if queue not in self._registrations:
            raise KeyError(f"No handler registered for queue: {queue}")
        return self._registrations[queue]

    def __contains__(self, queue: str) -> bool:
        return queue in self._registrations

    @property
    def queues(self) -> list[str]:
        return list(self._registrations)

    def handler(self, queue: str, **options: Any) -> Callable[[JobHandler], JobHandler]:
        """Decorator to register a handler."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(queue, fn, **options)
            return fn

        return decorator


# Global registry instance
default_registry = JobRegistry()

from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def unregister(self, name: str) -> None:
        """Remove an implementation (tests and hot reload only)."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers supplied by business modules."""

    async def handle(
        self,
        payload: dict[str, Any],
        context: Any,  # ExecutionContext
    ) -> dict[str, Any] | None:
        """
        Execute one job.

        Args:
            payload: Job arguments exactly as submitted
            context: Execution context with governor hints and cancellation signal

        Returns:
            Optional result dictionary, logged with the completed job

        Raises:
            TransientFailure: the attempt failed but may succeed later
            PermanentFailure: the input can never succeed
            AdmissionDeferred: postpone without consuming the attempt
        """
        ...


@dataclass(frozen=True)
class HandlerRegistration:
    """A handler plus the queue it prefers when the router has no opinion."""

    job_type: str
    handler: Any  # JobHandler or plain callable
    queue_hint: str | None = None


class JobRegistry(Registry[HandlerRegistration]):
    """Registry for background job handlers, keyed by job type."""

    def __init__(self):
        super().__init__("Job")

    def register_handler(
        self, job_type: str, handler: Any, queue_hint: str | None = None
    ) -> HandlerRegistration:
        """Register a handler for a job type; a type has exactly one handler."""
        if not job_type:
            raise ValueError("job_type must be a non-empty string")
        if job_type in self:
            raise ValueError(f"Handler already registered for job type: {job_type}")
        if not (hasattr(handler, "handle") or callable(handler)):
            raise TypeError(
                f"Handler for {job_type} must define handle() or be callable"
            )

        registration = HandlerRegistration(
            job_type=job_type, handler=handler, queue_hint=queue_hint
        )
        self.register(job_type, registration)
        return registration


# Global registry instance (singleton)
job_registry = JobRegistry()

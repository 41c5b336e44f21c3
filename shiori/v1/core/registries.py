from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar, Union
from uuid import UUID

from shiori.config.logging import get_logger
from shiori.v1.core.exceptions import UnknownJobTypeError

logger = get_logger(__name__)

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
                "registry is frozen"
            )
        if name in self._implementations:
            logger.warning(
                "Replacing registered implementation",
                registry=self.name,
                name=name,
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

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
@dataclass(frozen=True)
class JobContext:
    """What a handler knows about the invocation it is serving."""

    job_id: UUID
    type: str
    owner_id: str | None
    attempt: int
    max_retries: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_retries + 1


class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks.

    Handlers must be idempotent: a job can be invoked again after a failed
    attempt or after a crash between execution and finalize.
    """

    def handle(self, payload: Any, context: JobContext) -> Any:
        """
        Handle a background job.

        Args:
            payload: Job-specific parameters as stored at enqueue time
            context: Identity and attempt number of the job

        Returns:
            Optional JSON-serializable result (or an awaitable of one) to
            store with the completed job. Raise HandlerExecutionError or
            return a HandlerFailure to report a failure.
        """
        ...


HandlerFunction = Callable[[Any, JobContext], Union[Any, Awaitable[Any]]]


class JobRegistry(Registry[Union[JobHandler, HandlerFunction]]):
    """Registry for background job handlers keyed by job type."""

    def __init__(self):
        super().__init__("Job")

    def register(
        self, name: str, implementation: Union[JobHandler, HandlerFunction]
    ) -> None:
        if not name or not name.strip():
            raise ValueError("Job type must be a non-empty string")
        if not callable(getattr(implementation, "handle", implementation)):
            raise TypeError(
                f"Handler for '{name}' must be callable or define handle()"
            )
        super().register(name, implementation)

    def resolve(self, name: str) -> HandlerFunction:
        """Return the callable that runs jobs of type ``name``."""
        try:
            implementation = self.get(name)
        except KeyError:
            raise UnknownJobTypeError(name) from None
        return getattr(implementation, "handle", implementation)


# Global registry instance (singleton)
job_registry = JobRegistry()

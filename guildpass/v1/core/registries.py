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

    def has(self, name: str) -> bool:
        """Check whether a name is registered."""
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Family Registry - per-family queue behaviour
class JobFamilyDefinition(Protocol):
    """Protocol for job family definitions.

    A family names its scope tuple (the dedup key) and may provide hooks that
    add execution context on claim and apply side effects on completion.
    """

    name: str
    scope_fields: tuple[str, ...]

    def normalize_scope(self, scope: dict[str, Any]) -> dict[str, str]:
        """Validate and trim a scope mapping."""
        ...

    def scope_key(self, scope: dict[str, str]) -> str:
        """Canonical dedup key for a normalized scope."""
        ...


class JobFamilyRegistry(Registry[JobFamilyDefinition]):
    """Registry for job families (role_sync, seat_audit, signal_mirror)."""

    def __init__(self):
        super().__init__("JobFamily")


# Global registry instances (singletons)
job_family_registry = JobFamilyRegistry()

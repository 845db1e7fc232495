"""Exception hierarchy for terrik."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SourceLocation:
    """Where a construct was declared in a document."""

    file: str
    line: int | None = None
    column: int | None = None

    def __str__(self) -> str:
        if self.line is None:
            return self.file
        if self.column is None:
            return f"{self.file}:{self.line}"
        return f"{self.file}:{self.line}:{self.column}"


class TerrikError(Exception):
    """Base error for terrik."""


class PlanError(TerrikError):
    """A plan could not be computed for a valid document."""


class ConfigError(TerrikError):
    """A document could not be turned into a valid resource graph."""

    def __init__(self, message: str, location: SourceLocation | None = None) -> None:
        self.message = message
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


class ParseError(ConfigError):
    """Malformed document syntax."""


class SchemaError(ConfigError):
    """Unknown resource type, missing attribute or dangling reference."""


class CycleError(ConfigError):
    """The reference graph is not acyclic."""

    def __init__(
        self,
        cycle: list[str],
        location: SourceLocation | None = None,
    ) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}", location)


class StateError(TerrikError):
    """The state store is unreadable or incompatible."""


class LockHeldError(StateError):
    """Another run holds the state lock."""


class ProviderError(TerrikError):
    """A provider operation failed."""


class TransientError(ProviderError):
    """A provider failure that may succeed if retried."""


class PermanentError(ProviderError):
    """A provider failure that will not succeed if retried."""

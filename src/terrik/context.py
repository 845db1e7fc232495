"""Runtime context handed to provider operations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .state import StateRecord

if TYPE_CHECKING:
    from .retry import RetryPolicy


class ProviderContext:
    """Per-call state passed to a provider operation."""

    def __init__(
        self,
        type: str,
        name: str,
        *,
        prior: StateRecord | None = None,
        dependencies: list[str] | None = None,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.type = type
        self.name = name
        self.prior = prior
        self.dependencies = list(dependencies or [])
        self.timeout = timeout
        self.retry = retry

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    def record(self, attributes: dict[str, Any], *, id: str | None = None) -> StateRecord:
        """Build the state record a provider returns for this resource."""
        return StateRecord(
            type=self.type,
            name=self.name,
            id=id,
            attributes=dict(attributes),
            dependencies=self.dependencies,
        )

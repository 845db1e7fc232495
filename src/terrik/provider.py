"""Provider adapter interface and provider registration."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from enum import StrEnum
from typing import Any, ClassVar

from .context import ProviderContext
from .state import StateRecord

logger = logging.getLogger(__name__)


class ReplaceStrategy(StrEnum):
    """Order of the two halves of a replacement."""

    DELETE_BEFORE_CREATE = "delete_before_create"
    CREATE_BEFORE_DELETE = "create_before_delete"


# -- Provider Registry --

_provider_registry: dict[str, type[Provider]] = {}


def provider(name: str):
    """Register a Provider class as the adapter for a resource type."""

    def decorator(cls):
        cls.type_name = name
        _provider_registry[name] = cls
        return cls

    return decorator


# -- Provider ABC --


class Provider(ABC):
    """Create/read/update/delete operations for one resource type.

    Operations raise TransientError for failures worth retrying and
    PermanentError (or anything else) for failures that are not.
    """

    type_name: ClassVar[str] = ""

    required: ClassVar[frozenset[str]] = frozenset()
    """Attributes a resource block must declare."""

    immutable: ClassVar[frozenset[str]] = frozenset()
    """Attributes whose change forces a replacement."""

    computed: ClassVar[frozenset[str]] = frozenset()
    """Attributes assigned by the provider rather than declared."""

    replace_strategy: ClassVar[ReplaceStrategy] = ReplaceStrategy.DELETE_BEFORE_CREATE

    @abstractmethod
    def create(self, ctx: ProviderContext, attrs: dict[str, Any]) -> StateRecord:
        """Create the resource and return its record."""

    def read(self, ctx: ProviderContext, prior: StateRecord) -> StateRecord | None:
        """Return the live record, or None if the resource no longer exists."""
        return prior

    @abstractmethod
    def update(self, ctx: ProviderContext, attrs: dict[str, Any], prior: StateRecord) -> StateRecord:
        """Update mutable attributes in place and return the new record."""

    @abstractmethod
    def delete(self, ctx: ProviderContext, prior: StateRecord) -> None:
        """Delete the resource."""


class ProviderRegistry(Mapping[str, Provider]):
    """Provider instances keyed by resource type name."""

    def __init__(self, providers: Mapping[str, Provider] | None = None) -> None:
        if providers is None:
            providers = {name: cls() for name, cls in _provider_registry.items()}
        self._providers = dict(providers)

    def __getitem__(self, name: str) -> Provider:
        return self._providers[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    def __repr__(self) -> str:
        return f"ProviderRegistry({sorted(self._providers)})"

"""Resolver — walk attribute trees and resolve ${...} interpolation."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_INTERP_PATTERN = re.compile(r"\$\$\{|(\$\{([^{}]+)\})")

_REF_PATTERN = re.compile(r"([A-Za-z_][\w-]*)\.([A-Za-z_][\w-]*)((?:\.[\w-]+)*)")

# roots resolved while loading a document rather than at apply time
PARSE_ROOTS = frozenset({"var", "env", "path"})


class Unknown:
    """Placeholder for a value a provider will only assign during apply."""

    _instance: Unknown | None = None

    def __new__(cls) -> Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = Unknown()


class PlannedValues(dict):
    """Attribute mapping whose missing keys are not known until apply."""

    def __missing__(self, key: str) -> Unknown:
        return UNKNOWN


@dataclass(frozen=True)
class Reference:
    """A ``${type.name.attr}`` reference to another resource."""

    type: str
    name: str
    path: tuple[str, ...] = ()

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def attribute(self) -> str | None:
        return self.path[0] if self.path else None

    def __str__(self) -> str:
        return ".".join((self.type, self.name, *self.path))


def parse_reference(expr: str) -> Reference | None:
    """Parse the body of a ``${...}`` expression as a resource reference."""
    match = _REF_PATTERN.fullmatch(expr.strip())
    if match is None or match.group(1) in PARSE_ROOTS:
        return None
    path = tuple(p for p in match.group(3).split(".") if p)
    return Reference(type=match.group(1), name=match.group(2), path=path)


def find_references(obj: Any) -> Iterator[Reference]:
    """Yield every resource reference found in strings of a nested structure."""
    if isinstance(obj, dict):
        for value in obj.values():
            yield from find_references(value)
    elif isinstance(obj, list):
        for item in obj:
            yield from find_references(item)
    elif isinstance(obj, str) and "${" in obj:
        for m in _INTERP_PATTERN.finditer(obj):
            if m.group(0) == "$${":
                continue
            ref = parse_reference(m.group(2))
            if ref is not None:
                yield ref


def contains_unknown(value: Any) -> bool:
    """Return True if any part of a resolved value is not yet known."""
    if isinstance(value, Unknown):
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


class Resolver:
    """Resolve ${...} interpolation references against a context dict.

    A strict resolver fails on any reference it cannot resolve. A non-strict
    resolver leaves references whose root is not in its context untouched, so
    that variables can be substituted while resource references are kept for
    later.
    """

    def __init__(self, context: dict[str, Any] | None = None, *, strict: bool = True) -> None:
        self._context = context or {}
        self._strict = strict

    def _owns(self, ref: str) -> bool:
        return self._strict or ref.split(".", 1)[0] in self._context

    def _resolve_ref(self, ref: str) -> Any:
        """Resolve a dotted reference (e.g., 'bucket.site.id') against the context."""
        parts = ref.split(".")
        current: Any = self._context

        for part in parts:
            if isinstance(current, Unknown):
                return UNKNOWN
            if isinstance(current, list) and part.isdigit():
                try:
                    current = current[int(part)]
                    continue
                except IndexError:
                    raise ValueError(f"undefined variable '{ref}'") from None
            try:
                current = current[part]
            except (KeyError, TypeError):
                try:
                    current = getattr(current, part)
                except AttributeError:
                    raise ValueError(f"undefined variable '{ref}'") from None

        if callable(current) and not isinstance(current, type):
            current = current()

        return current

    def _resolve_value(self, value: str) -> str | Any:
        """Resolve ${...} interpolations in a single string value.

        If the entire string is a single ${ref}, returns the resolved object
        directly (preserving type). If ${ref} is embedded in a larger string,
        the resolved value is stringified. Use $${...} for literal ${...}.
        """
        # Fast path: no interpolation
        if "${" not in value:
            return value

        # Check if the entire string is a single interpolation
        match = re.fullmatch(r"\$\{([^{}]+)\}", value)
        if match:
            ref = match.group(1).strip()
            if not self._owns(ref):
                return value
            return self._resolve_ref(ref)

        unknown = False

        # Mixed string: replace each interpolation with its stringified value
        def _replace(m: re.Match) -> str:  # type: ignore[type-arg]
            nonlocal unknown
            if m.group(0) == "$${":
                # keep the escape for a later pass when resource refs remain
                return "${" if self._strict else "$${"
            ref = m.group(2).strip()
            if not self._owns(ref):
                return m.group(0)
            resolved = self._resolve_ref(ref)
            if isinstance(resolved, Unknown):
                unknown = True
            return str(resolved)

        result = _INTERP_PATTERN.sub(_replace, value)
        return UNKNOWN if unknown else result

    def resolve(self, data: dict[str, Any]) -> dict[str, Any]:
        """Recursively walk a parsed dict and resolve all ${...} interpolations."""
        return self._walk(data)

    def _walk(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: self._walk(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self._walk(item) for item in obj]
        if isinstance(obj, str):
            return self._resolve_value(obj)
        return obj

"""Workspace — an accumulating collection of parsed document blocks."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import SchemaError, SourceLocation
from .graph import Graph, Lifecycle, OutputBinding, ResourceNode, build_graph
from .hcl import block_lines, loads, render
from .provider import ProviderRegistry
from .resolve import Resolver

logger = logging.getLogger(__name__)


class _Environ(dict):
    """Environment variables; unset names expand to an empty string."""

    def __missing__(self, key: str) -> str:
        logger.warning("Environment variable '%s' is not set", key)
        return ""


def _strip_meta(attrs: dict[str, Any]) -> dict[str, Any]:
    """Drop parser bookkeeping keys such as ``__start_line__``."""
    return {k: v for k, v in attrs.items() if not (k.startswith("__") and k.endswith("__"))}


def _first_block(value: Any) -> dict[str, Any]:
    """Return a single nested block, which HCL parses as a one-element list."""
    if isinstance(value, list):
        return value[0] if value else {}
    return value or {}


def _dependency_address(value: str) -> str:
    value = value.strip()
    if value.startswith("${") and value.endswith("}"):
        value = value[2:-1].strip()
    return value


@dataclass
class BlockRef(ABC):
    """Base class for all parsed top-level blocks."""

    name: str
    source: SourceLocation | None = field(default=None, kw_only=True)

    def _resolve_attrs(self, attrs: dict[str, Any], resolver: Resolver) -> dict[str, Any]:
        try:
            return resolver.resolve(attrs)
        except ValueError as exc:
            raise SchemaError(f"{self.label}: {exc}", self.source) from None

    @property
    @abstractmethod
    def label(self) -> str: ...


@dataclass
class ResourceRef(BlockRef):
    """A ``resource "<type>" "<name>"`` block."""

    type: str
    attrs: dict[str, Any]

    @property
    def label(self) -> str:
        return f"{self.type}.{self.name}"

    def resolve(self, resolver: Resolver, registry: ProviderRegistry) -> ResourceNode:
        """Validate against the provider and substitute parse-time variables."""
        if self.type not in registry:
            raise SchemaError(f"Unknown resource type: '{self.type}'", self.source)
        provider = registry[self.type]

        attrs = _strip_meta(self.attrs)
        missing = sorted(provider.required - attrs.keys())
        if missing:
            raise SchemaError(
                f"Resource '{self.label}' is missing required attribute(s): {', '.join(missing)}",
                self.source,
            )

        depends_on = attrs.pop("depends_on", [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        lifecycle_data = _strip_meta(_first_block(attrs.pop("lifecycle", None)))
        unknown = set(lifecycle_data) - {"create_before_destroy", "prevent_destroy"}
        if unknown:
            raise SchemaError(
                f"Resource '{self.label}' has unknown lifecycle setting(s): {', '.join(sorted(unknown))}",
                self.source,
            )

        logger.debug("Decoding resource '%s' -> %s", self.label, type(provider).__name__)
        return ResourceNode(
            type=self.type,
            name=self.name,
            attributes=self._resolve_attrs(attrs, resolver),
            depends_on=tuple(_dependency_address(d) for d in depends_on),
            lifecycle=Lifecycle(**lifecycle_data),
            source=self.source,
        )


@dataclass
class OutputRef(BlockRef):
    """An ``output "<name>"`` block."""

    attrs: dict[str, Any]

    @property
    def label(self) -> str:
        return f"output.{self.name}"

    def resolve(self, resolver: Resolver) -> OutputBinding:
        attrs = _strip_meta(self.attrs)
        if "value" not in attrs:
            raise SchemaError(f"Output '{self.name}' has no value", self.source)
        attrs = self._resolve_attrs(attrs, resolver)
        return OutputBinding(
            name=self.name,
            value=attrs["value"],
            description=attrs.get("description", ""),
            sensitive=bool(attrs.get("sensitive", False)),
            source=self.source,
        )


@dataclass
class VariableRef(BlockRef):
    """A ``variable "<name>"`` block."""

    attrs: dict[str, Any]

    @property
    def label(self) -> str:
        return f"var.{self.name}"

    def resolve(self, overrides: Mapping[str, Any]) -> Any:
        if self.name in overrides:
            return overrides[self.name]
        if "default" in self.attrs:
            return self.attrs["default"]
        raise SchemaError(f"No value for variable '{self.name}'", self.source)


class Workspace(Mapping[str, ResourceNode]):
    """Accumulates blocks from one or more documents and builds the resource graph."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry | None = None,
        variables: Mapping[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        base_dir: str | Path | None = None,
    ) -> None:
        self._registry = registry
        self._variables = dict(variables or {})
        self._context = context
        self._base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        self._resources: dict[str, ResourceRef] = {}
        self._outputs: dict[str, OutputRef] = {}
        self._variable_refs: dict[str, VariableRef] = {}
        self._settings: dict[str, Any] = {}
        self._graph: Graph | None = None

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = ProviderRegistry()
        return self._registry

    @property
    def context(self) -> dict[str, Any] | None:
        """Template context used when rendering documents."""
        return self._context

    @property
    def settings(self) -> dict[str, Any]:
        """Merged ``settings`` blocks from all loaded documents."""
        return dict(self._settings)

    def scan(self, path: str | Path, *, recurse: bool = True) -> None:
        """Load every .hcl file under a directory."""
        root = Path(path)
        if not root.is_dir():
            logger.debug("Nothing to scan at %s", root)
            return
        pattern = "**/*.hcl" if recurse else "*.hcl"
        for file in sorted(root.glob(pattern)):
            self.load_file(file)

    def load_file(self, file: str | Path) -> None:
        """Render and parse a single document file."""
        file = Path(file)
        text = render(file.read_text(), context=self._context, source=str(file))
        self.load(loads(text, source=str(file)), source=str(file), text=text)

    def load(
        self,
        data: dict[str, Any],
        *,
        source: str = "<string>",
        text: str | None = None,
    ) -> None:
        """Extract resource, output, variable and settings blocks from a parsed dict.

        Raises SchemaError if any block is already loaded.
        """
        lines = block_lines(text) if text is not None else {}

        def where(*key: str) -> SourceLocation:
            return SourceLocation(source, lines.get(key))

        for block in data.get("resource", []):
            for type_name, named in block.items():
                for name, attrs in named.items():
                    loc = where("resource", type_name, name)
                    address = f"{type_name}.{name}"
                    if address in self._resources:
                        raise SchemaError(f"Duplicate resource: '{address}'", loc)
                    logger.debug("Found resource '%s'", address)
                    self._resources[address] = ResourceRef(name, type=type_name, attrs=dict(attrs), source=loc)

        for block in data.get("output", []):
            for name, attrs in block.items():
                loc = where("output", name)
                if name in self._outputs:
                    raise SchemaError(f"Duplicate output: '{name}'", loc)
                self._outputs[name] = OutputRef(name, attrs=dict(attrs), source=loc)

        for block in data.get("variable", []):
            for name, attrs in block.items():
                loc = where("variable", name)
                if name in self._variable_refs:
                    raise SchemaError(f"Duplicate variable: '{name}'", loc)
                self._variable_refs[name] = VariableRef(name, attrs=_strip_meta(dict(attrs)), source=loc)

        for block in data.get("settings", []):
            for key, value in _strip_meta(block).items():
                if key in self._settings:
                    raise SchemaError(f"Duplicate setting: '{key}'", SourceLocation(source))
                self._settings[key] = value

        unknown = set(data) - {"resource", "output", "variable", "settings"}
        if unknown:
            raise SchemaError(f"Unknown block type(s): {', '.join(sorted(unknown))}", SourceLocation(source))

        self._graph = None

    def _resolver(self) -> Resolver:
        for name in self._variables:
            if name not in self._variable_refs:
                logger.warning("Value given for undeclared variable '%s'", name)
        values = {name: ref.resolve(self._variables) for name, ref in self._variable_refs.items()}
        context = {
            "var": values,
            "env": _Environ(os.environ),
            "path": {"cwd": os.getcwd, "module": str(self._base_dir)},
        }
        return Resolver(context, strict=False)

    def graph(self) -> Graph:
        """Resolve all pending blocks into a checked resource graph."""
        if self._graph is None:
            logger.debug(
                "Resolving %d resource(s) and %d output(s)",
                len(self._resources),
                len(self._outputs),
            )
            resolver = self._resolver()
            nodes = [ref.resolve(resolver, self.registry) for ref in self._resources.values()]
            outputs = [ref.resolve(resolver) for ref in self._outputs.values()]
            self._graph = build_graph(nodes, outputs, registry=self.registry)
        return self._graph

    def __getitem__(self, address: str) -> ResourceNode:
        return self.graph()[address]

    def __contains__(self, address: object) -> bool:
        return address in self._resources

    def __iter__(self) -> Iterator[str]:
        return iter(self.graph())

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return (
            f"Workspace(resources={len(self._resources)}, outputs={len(self._outputs)}, "
            f"variables={len(self._variable_refs)})"
        )

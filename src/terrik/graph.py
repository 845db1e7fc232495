"""Resource graph — typed resource nodes and the references between them."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import CycleError, SchemaError, SourceLocation
from .provider import ProviderRegistry
from .resolve import Reference, Resolver, find_references
from .state import StateRecord, reference_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lifecycle:
    """Per-resource overrides of replacement behavior."""

    create_before_destroy: bool | None = None
    prevent_destroy: bool = False


@dataclass(frozen=True)
class ResourceNode:
    """A resource block: identity, declared attributes and explicit dependencies."""

    type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict, hash=False)
    depends_on: tuple[str, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    source: SourceLocation | None = field(default=None, compare=False)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    def references(self) -> list[Reference]:
        return list(find_references(self.attributes))


@dataclass(frozen=True)
class ReferenceEdge:
    """A dependent resource's reliance on a dependency.

    ``attribute`` is the referenced attribute, or None for ``depends_on``.
    """

    dependent: str
    dependency: str
    attribute: str | None = None


@dataclass(frozen=True)
class OutputBinding:
    """A named value exposed after a run."""

    name: str
    value: Any
    description: str = ""
    sensitive: bool = False
    source: SourceLocation | None = field(default=None, compare=False)

    def evaluate(self, records: dict[str, StateRecord]) -> Any:
        """Resolve the bound expression against applied state."""
        return Resolver(reference_context(records)).resolve({"value": self.value})["value"]


class Graph(Mapping[str, ResourceNode]):
    """Resource nodes keyed by address plus their reference edges.

    Read-only once built; safe for concurrent reads.
    """

    def __init__(
        self,
        nodes: Iterable[ResourceNode] = (),
        edges: Iterable[ReferenceEdge] = (),
        outputs: Iterable[OutputBinding] = (),
    ) -> None:
        self._nodes = {node.address: node for node in nodes}
        self._edges = list(dict.fromkeys(edges))
        self._outputs = {out.name: out for out in outputs}
        self._deps: dict[str, set[str]] = {addr: set() for addr in self._nodes}
        self._rdeps: dict[str, set[str]] = {addr: set() for addr in self._nodes}
        for edge in self._edges:
            self._deps[edge.dependent].add(edge.dependency)
            self._rdeps[edge.dependency].add(edge.dependent)
        self._order = self._sort()

    @property
    def edges(self) -> list[ReferenceEdge]:
        return list(self._edges)

    @property
    def outputs(self) -> dict[str, OutputBinding]:
        return dict(self._outputs)

    def dependencies(self, address: str) -> list[str]:
        """Addresses the given resource directly depends on."""
        return sorted(self._deps[address])

    def dependents(self, address: str) -> list[str]:
        """Addresses that directly depend on the given resource."""
        return sorted(self._rdeps[address])

    def topological_order(self) -> list[str]:
        """Addresses ordered so every dependency precedes its dependents."""
        return list(self._order)

    def _sort(self) -> list[str]:
        """Depth-first sort with a recursion-stack check; raises CycleError."""
        order: list[str] = []
        done: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(addr: str) -> None:
            stack.append(addr)
            on_stack.add(addr)
            for dep in sorted(self._deps[addr]):
                if dep in on_stack:
                    cycle = stack[stack.index(dep) :] + [dep]
                    raise CycleError(cycle, self._nodes[dep].source)
                if dep not in done:
                    visit(dep)
            stack.pop()
            on_stack.discard(addr)
            done.add(addr)
            order.append(addr)

        for addr in sorted(self._nodes):
            if addr not in done:
                visit(addr)
        return order

    def __getitem__(self, address: str) -> ResourceNode:
        return self._nodes[address]

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"Graph(nodes={len(self._nodes)}, edges={len(self._edges)}, outputs={len(self._outputs)})"


def _check_reference(
    owner: str,
    ref: Reference,
    nodes: dict[str, ResourceNode],
    registry: ProviderRegistry | None,
    source: SourceLocation | None,
) -> None:
    target = nodes.get(ref.address)
    if target is None:
        raise SchemaError(f"'{owner}' references undeclared resource '{ref.address}'", source)
    attr = ref.attribute
    if attr is None or attr == "id" or attr in target.attributes:
        return
    if registry is not None and target.type in registry and attr in registry[target.type].computed:
        return
    raise SchemaError(f"'{owner}' references unknown attribute '{attr}' of '{ref.address}'", source)


def build_graph(
    nodes: Iterable[ResourceNode],
    outputs: Iterable[OutputBinding] = (),
    *,
    registry: ProviderRegistry | None = None,
) -> Graph:
    """Derive reference edges from node attributes and return a checked Graph."""
    by_address: dict[str, ResourceNode] = {}
    for node in nodes:
        if node.address in by_address:
            raise SchemaError(f"Duplicate resource: '{node.address}'", node.source)
        by_address[node.address] = node

    edges: list[ReferenceEdge] = []
    for node in by_address.values():
        refs = node.references()
        for ref in refs:
            _check_reference(node.address, ref, by_address, registry, node.source)
            edges.append(ReferenceEdge(node.address, ref.address, ref.attribute))
        for dep in node.depends_on:
            if dep not in by_address:
                raise SchemaError(
                    f"'{node.address}' depends on undeclared resource '{dep}'", node.source
                )
            edges.append(ReferenceEdge(node.address, dep))
        logger.debug("Resource '%s' has %d reference(s)", node.address, len(refs))

    outputs = list(outputs)
    for out in outputs:
        for ref in find_references(out.value):
            _check_reference(f"output.{out.name}", ref, by_address, registry, out.source)

    return Graph(by_address.values(), edges, outputs)

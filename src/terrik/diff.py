"""Differ — classify each resource as create/update/replace/delete/no-op."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from .errors import PlanError, SchemaError
from .graph import Graph, OutputBinding, ResourceNode
from .provider import Provider, ProviderRegistry, ReplaceStrategy
from .resolve import PlannedValues, Resolver, contains_unknown
from .state import StateRecord, StateStore

logger = logging.getLogger(__name__)

REPLACED_SUFFIX = "#replaced"


class Action(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


@dataclass(frozen=True)
class AttributeChange:
    """Old and new value of one attribute."""

    old: Any
    new: Any
    forces_replacement: bool = False


@dataclass(frozen=True)
class PlanAction:
    """A single step of a plan, bound to one resource address.

    ``depends_on`` names the keys of the other actions of the same plan
    that must complete before this one may start. A delete-before-create
    replacement is planned as two actions: a ``replaced`` DELETE of the old
    object followed by the REPLACE that creates the new one.
    """

    action: Action
    address: str
    type: str
    node: ResourceNode | None = None
    prior: StateRecord | None = None
    changes: dict[str, AttributeChange] = field(default_factory=dict, hash=False)
    depends_on: frozenset[str] = frozenset()
    replace_strategy: ReplaceStrategy | None = None
    replaced: bool = False

    @property
    def key(self) -> str:
        """Identifies the action within its plan."""
        return self.address + REPLACED_SUFFIX if self.replaced else self.address


@dataclass
class Plan:
    """Ordered actions computed by ``diff``; never persisted."""

    actions: list[PlanAction] = field(default_factory=list)
    unchanged: list[PlanAction] = field(default_factory=list)
    outputs: dict[str, OutputBinding] = field(default_factory=dict)
    destroy: bool = False

    def __iter__(self) -> Iterator[PlanAction]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def __getitem__(self, index: int) -> PlanAction:
        return self.actions[index]

    @property
    def has_changes(self) -> bool:
        return bool(self.actions)

    def count(self, action: Action) -> int:
        return sum(1 for a in self.actions if a.action is action and not a.replaced)

    def summary(self) -> str:
        return (
            f"Plan: {self.count(Action.CREATE)} to add, {self.count(Action.UPDATE)} to change, "
            f"{self.count(Action.REPLACE)} to replace, {self.count(Action.DELETE)} to destroy."
        )


def _provider(registry: ProviderRegistry, node: ResourceNode) -> Provider:
    if node.type not in registry:
        raise SchemaError(f"Unknown resource type: '{node.type}'", node.source)
    return registry[node.type]


def _desired(node: ResourceNode, known: dict[str, dict[str, Any]]) -> dict[str, Any]:
    """Resolve a node's references against values known at plan time."""
    try:
        return Resolver(known).resolve(node.attributes)
    except ValueError as exc:
        raise PlanError(f"{node.address}: {exc}") from None


def _compare(
    desired: dict[str, Any],
    prior: StateRecord,
    provider: Provider,
) -> dict[str, AttributeChange]:
    changes: dict[str, AttributeChange] = {}
    current = prior.attributes
    for key in sorted(desired.keys() | current.keys()):
        if key not in desired and key in provider.computed:
            continue
        new = desired.get(key)
        old = current.get(key)
        if contains_unknown(new) or new != old:
            changes[key] = AttributeChange(old, new, key in provider.immutable)
    return changes


def _replace_strategy(node: ResourceNode, provider: Provider) -> ReplaceStrategy:
    cbd = node.lifecycle.create_before_destroy
    if cbd is None:
        return provider.replace_strategy
    return ReplaceStrategy.CREATE_BEFORE_DELETE if cbd else ReplaceStrategy.DELETE_BEFORE_CREATE


def _delete_order(orphans: dict[str, StateRecord]) -> list[str]:
    """Orphan addresses with every dependent ahead of its dependencies."""
    order: list[str] = []
    done: set[str] = set()

    def visit(addr: str) -> None:
        done.add(addr)
        for dep in sorted(orphans[addr].dependencies):
            if dep in orphans and dep not in done:
                visit(dep)
        order.append(addr)

    for addr in sorted(orphans):
        if addr not in done:
            visit(addr)
    return list(reversed(order))


def _linearize(steps: list[PlanAction]) -> list[PlanAction]:
    """Order steps after everything they depend on, otherwise keeping their order."""
    pending = list(steps)
    done: set[str] = set()
    ordered: list[PlanAction] = []
    while pending:
        for index, step in enumerate(pending):
            if step.depends_on <= done:
                break
        else:
            stuck = ", ".join(step.key for step in pending)
            raise PlanError(
                f"Cannot order actions for {stuck}; consider lifecycle.create_before_destroy"
            )
        ordered.append(pending.pop(index))
        done.add(step.key)
    return ordered


def diff(
    graph: Graph,
    store: StateStore | Mapping[str, StateRecord],
    *,
    registry: ProviderRegistry | None = None,
    destroy: bool = False,
    refreshed: Mapping[str, StateRecord | None] | None = None,
) -> Plan:
    """Compare the graph against stored state and return an ordered plan.

    ``refreshed`` overrides stored records with live ones (None marks a
    resource that no longer exists). The store is never written.
    """
    registry = registry if registry is not None else ProviderRegistry()
    records = store.snapshot() if isinstance(store, StateStore) else dict(store)
    for addr, live in (refreshed or {}).items():
        if live is None:
            records.pop(addr, None)
        else:
            records[addr] = live

    planned: dict[str, PlanAction] = {}
    unchanged: list[PlanAction] = []
    known: dict[str, dict[str, Any]] = {}

    for addr in [] if destroy else graph.topological_order():
        node = graph[addr]
        provider = _provider(registry, node)
        prior = records.get(addr)
        desired = _desired(node, known)
        strategy = None

        if prior is None:
            action = Action.CREATE
            changes = {k: AttributeChange(None, v) for k, v in desired.items()}
        else:
            changes = _compare(desired, prior, provider)
            if not changes:
                action = Action.NOOP
            elif any(c.forces_replacement for c in changes.values()):
                action = Action.REPLACE
                strategy = _replace_strategy(node, provider)
                if node.lifecycle.prevent_destroy:
                    forcing = ", ".join(k for k, c in changes.items() if c.forces_replacement)
                    raise PlanError(
                        f"{addr}: lifecycle.prevent_destroy is set but changing {forcing} requires replacement"
                    )
            else:
                action = Action.UPDATE

        if action in (Action.CREATE, Action.REPLACE):
            values = PlannedValues(desired)
        else:
            values = PlannedValues({**prior.values(), **desired})
        known.setdefault(node.type, {})[node.name] = values

        step = PlanAction(
            action=action,
            address=addr,
            type=node.type,
            node=node,
            prior=prior,
            changes=changes,
            depends_on=frozenset(d for d in graph.dependencies(addr) if d in planned),
            replace_strategy=strategy,
        )
        logger.debug("Planned %s for '%s'", action, addr)
        if action is Action.NOOP:
            unchanged.append(step)
        else:
            planned[addr] = step

    orphans = {addr: rec for addr, rec in records.items() if destroy or addr not in graph}
    if destroy:
        for addr in orphans:
            if addr in graph and graph[addr].lifecycle.prevent_destroy:
                raise PlanError(f"{addr}: lifecycle.prevent_destroy is set; refusing to destroy")

    # the old object of a delete-before-create replacement is removed by its
    # own step, ordered like a delete: after whatever still references it
    halves = {
        addr: step
        for addr, step in planned.items()
        if step.action is Action.REPLACE and step.replace_strategy is ReplaceStrategy.DELETE_BEFORE_CREATE
    }

    def key(addr: str) -> str:
        return addr + REPLACED_SUFFIX if addr in halves else addr

    def orphans_of(addr: str) -> set[str]:
        return {other for other, rec in orphans.items() if addr in rec.dependencies}

    removals: list[PlanAction] = []
    for addr in reversed(list(halves)):
        step = halves[addr]
        waits = {key(other) for other, s in halves.items() if addr in s.prior.dependencies}
        removals.append(
            PlanAction(
                action=Action.DELETE,
                address=addr,
                type=step.type,
                node=step.node,
                prior=step.prior,
                depends_on=frozenset(waits | orphans_of(addr)),
                replaced=True,
            )
        )

    for addr, step in planned.items():
        if step.action is not Action.REPLACE:
            continue
        extra = {key(addr)} if addr in halves else orphans_of(addr)
        planned[addr] = replace(step, depends_on=step.depends_on | extra)

    deletes: list[PlanAction] = []
    for addr in _delete_order(orphans):
        record = orphans[addr]
        waits = orphans_of(addr)
        waits |= {
            key(other)
            for other, step in planned.items()
            if step.prior is not None and addr in step.prior.dependencies
        }
        logger.debug("Planned delete for orphan '%s'", addr)
        deletes.append(
            PlanAction(
                action=Action.DELETE,
                address=addr,
                type=record.type,
                prior=record,
                changes={k: AttributeChange(v, None) for k, v in record.attributes.items()},
                depends_on=frozenset(waits),
            )
        )

    plan = Plan(
        actions=_linearize([*removals, *planned.values(), *deletes]),
        unchanged=unchanged,
        outputs=graph.outputs,
        destroy=destroy,
    )
    logger.info(plan.summary())
    return plan

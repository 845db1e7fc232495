"""Engine — plan, apply and destroy a workspace against its state."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from . import hcl
from .config import EngineConfig
from .context import ProviderContext
from .diff import Plan, diff
from .errors import PlanError, ProviderError
from .executor import ExecutionReport, Executor, call_with_timeout
from .graph import Graph
from .provider import ProviderRegistry
from .state import StateRecord, StateStore
from .workspace import Workspace

logger = logging.getLogger(__name__)


class Engine:
    """Ties a workspace, a state store and the providers together."""

    def __init__(
        self,
        workspace: Workspace,
        store: StateStore,
        *,
        config: EngineConfig | None = None,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self.workspace = workspace
        self.store = store
        self.config = config if config is not None else EngineConfig()
        self.registry = registry if registry is not None else workspace.registry
        self.executor = Executor(
            store,
            self.registry,
            parallelism=self.config.parallelism,
            retry=self.config.retry,
            timeout=self.config.timeout,
        )

    @classmethod
    def from_directory(
        cls,
        path: str | Path,
        *,
        recurse: bool = True,
        registry: ProviderRegistry | None = None,
        variables: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> Engine:
        """Scan a directory of documents; ``overrides`` take precedence over its settings."""
        ws = hcl.scan(path, recurse=recurse, registry=registry, variables=variables, context=context)
        config = EngineConfig.from_settings(ws.settings, **overrides)
        store = StateStore(config.state_path(path))
        logger.debug("Using state %s", store.path)
        return cls(ws, store, config=config, registry=registry)

    @property
    def graph(self) -> Graph:
        return self.workspace.graph()

    def refresh(self) -> dict[str, StateRecord | None]:
        """Read every recorded resource back from its provider."""
        live: dict[str, StateRecord | None] = {}
        for address, prior in self.store.snapshot().items():
            if prior.deposed or prior.type not in self.registry:
                continue
            ctx = ProviderContext(
                prior.type,
                prior.name,
                prior=prior,
                dependencies=prior.dependencies,
                timeout=self.config.timeout,
                retry=self.config.retry,
            )
            try:
                read = self.registry[prior.type].read
                live[address] = self.config.retry.call(call_with_timeout, self.config.timeout, read, ctx, prior)
            except ProviderError as exc:
                raise PlanError(f"{address}: refresh failed: {exc}") from exc
            if live[address] is None:
                logger.info("%s no longer exists", address)
        return live

    def _plan(self, *, destroy: bool, refresh: bool | None) -> Plan:
        graph = self.graph
        refreshed = self.refresh() if (self.config.refresh if refresh is None else refresh) else None
        return diff(graph, self.store, registry=self.registry, destroy=destroy, refreshed=refreshed)

    def plan(self, *, destroy: bool = False, refresh: bool | None = None) -> Plan:
        """Compute actions without applying them."""
        with self.store.lock():
            return self._plan(destroy=destroy, refresh=refresh)

    def apply(self, *, destroy: bool = False, refresh: bool | None = None) -> tuple[Plan, ExecutionReport]:
        """Plan and execute under the state lock.

        Planning errors propagate before anything changes; execution errors
        are captured in the report.
        """
        with self.store.lock():
            plan = self._plan(destroy=destroy, refresh=refresh)
            logger.info("Applying %d action(s)", len(plan))
            return plan, self.executor.execute(plan)

    def destroy(self, *, refresh: bool | None = None) -> tuple[Plan, ExecutionReport]:
        return self.apply(destroy=True, refresh=refresh)

    def cancel(self) -> None:
        self.executor.cancel()

    def outputs(self) -> dict[str, Any]:
        """Evaluate output bindings against the current state."""
        records = self.store.snapshot()
        values: dict[str, Any] = {}
        for name, binding in self.graph.outputs.items():
            try:
                values[name] = binding.evaluate(records)
            except ValueError as exc:
                logger.debug("Output '%s' is unavailable: %s", name, exc)
        return values

"""Plan executor — apply plan actions in dependency order with a worker pool."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from .context import ProviderContext
from .diff import Action, Plan, PlanAction
from .errors import PermanentError, ProviderError, TransientError
from .provider import Provider, ProviderRegistry, ReplaceStrategy
from .resolve import Resolver
from .retry import RetryPolicy
from .state import StateRecord, StateStore, reference_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(timeout: float | None, fn: Callable[..., T], *args: Any) -> T:
    """Run ``fn`` on its own thread, giving up on it after ``timeout`` seconds.

    An abandoned call is not interrupted; its outcome is unknown, so the
    timeout is raised as a ``PermanentError``.
    """
    if not timeout:
        return fn(*args)
    calls = ThreadPoolExecutor(1, "terrik-call")
    fut = calls.submit(fn, *args)
    try:
        return fut.result(timeout=timeout)
    except FutureTimeout:
        if fut.cancel():
            raise PermanentError(f"timed out after {timeout}s before the call started") from None
        raise PermanentError(f"timed out after {timeout}s; the resource may be in an unknown state") from None
    finally:
        calls.shutdown(wait=False, cancel_futures=True)


class Status(StrEnum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ResourceResult:
    """Outcome of one plan action."""

    address: str
    action: Action
    status: Status
    error: str | None = None
    attempts: int = 0


@dataclass
class ExecutionReport:
    """Applied, failed and skipped resources of a run."""

    results: dict[str, ResourceResult] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def _with(self, status: Status) -> list[str]:
        return [addr for addr, r in self.results.items() if r.status is status]

    @property
    def applied(self) -> list[str]:
        return self._with(Status.APPLIED)

    @property
    def failed(self) -> list[str]:
        return self._with(Status.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with(Status.SKIPPED)

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.status is Status.APPLIED for r in self.results.values())

    def summary(self) -> str:
        return (
            f"Apply {'cancelled' if self.cancelled else 'complete'}! "
            f"{len(self.applied)} applied, {len(self.failed)} failed, {len(self.skipped)} skipped."
        )


class Executor:
    """Runs a plan against providers, writing state after each confirmed change.

    Independent actions run concurrently up to ``parallelism``. A failed
    action marks every transitive dependent as skipped; nothing already
    applied is rolled back.
    """

    def __init__(
        self,
        store: StateStore,
        registry: ProviderRegistry | None = None,
        *,
        parallelism: int = 10,
        retry: RetryPolicy | None = None,
        timeout: float | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.store = store
        self.registry = registry if registry is not None else ProviderRegistry()
        self.parallelism = parallelism
        self.retry = retry if retry is not None else RetryPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self._cancel = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop dispatching new actions; in-flight actions run to completion."""
        logger.warning("Cancellation requested; waiting for in-flight actions")
        self._cancel.set()

    def execute(self, plan: Plan) -> ExecutionReport:
        report = ExecutionReport()
        actions = {a.key: a for a in plan.actions}
        waiting = {key: set(a.depends_on) & actions.keys() for key, a in actions.items()}
        dependents: dict[str, set[str]] = {key: set() for key in actions}
        for key, deps in waiting.items():
            for dep in deps:
                dependents[dep].add(key)

        ready = deque(key for key in actions if not waiting[key])
        running: dict[Future[ResourceResult], str] = {}

        def skip_dependents(failed: str) -> None:
            todo = [failed]
            while todo:
                for dep in sorted(dependents[todo.pop()]):
                    if dep not in report.results:
                        step = actions[dep]
                        report.results[dep] = ResourceResult(
                            step.address, step.action, Status.SKIPPED, f"dependency '{failed}' did not apply"
                        )
                        logger.warning("Skipping %s of %s; dependency '%s' did not apply", step.action, dep, failed)
                        todo.append(dep)

        with ThreadPoolExecutor(self.parallelism, "terrik-apply") as pool:
            while ready or running:
                while ready and len(running) < self.parallelism and not self.cancelled:
                    key = ready.popleft()
                    if key in report.results:
                        continue
                    logger.debug("Dispatching %s for '%s'", actions[key].action, key)
                    running[pool.submit(self._run, actions[key])] = key
                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in done:
                    key = running.pop(fut)
                    result = fut.result()
                    report.results[key] = result
                    if result.status is Status.APPLIED:
                        for dep in sorted(dependents[key]):
                            waiting[dep].discard(key)
                            if not waiting[dep] and dep not in report.results:
                                ready.append(dep)
                    else:
                        skip_dependents(key)

        if self.cancelled:
            report.cancelled = True
        for key, action in actions.items():
            if key not in report.results:
                report.results[key] = ResourceResult(action.address, action.action, Status.SKIPPED, "cancelled")

        records = self.store.snapshot()
        for name, binding in plan.outputs.items():
            try:
                report.outputs[name] = binding.evaluate(records)
            except ValueError as exc:
                logger.warning("Output '%s' is unavailable: %s", name, exc)
        logger.info(report.summary())
        return report

    def _context(self, action: PlanAction, prior: StateRecord | None) -> ProviderContext:
        deps = sorted({ref.address for ref in action.node.references()} | set(action.node.depends_on))
        return ProviderContext(
            action.node.type,
            action.node.name,
            prior=prior,
            dependencies=deps,
            timeout=self.timeout,
            retry=self.retry,
        )

    def _resolve(self, action: PlanAction) -> dict[str, Any]:
        try:
            return Resolver(reference_context(self.store.snapshot())).resolve(action.node.attributes)
        except ValueError as exc:
            raise PermanentError(f"unresolved reference: {exc}") from None

    def _call(self, result: ResourceResult, fn: Callable[..., Any], *args: Any) -> Any:
        """Invoke a provider operation under the retry policy and call timeout."""

        def attempt() -> Any:
            result.attempts += 1
            return call_with_timeout(self.timeout, fn, *args)

        def retrying(attempts: int, exc: TransientError) -> None:
            logger.info("Retrying %s of %s after attempt %d: %s", result.action, result.address, attempts, exc)

        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        return self.retry.call(attempt, on_retry=retrying, **kwargs)

    def _run(self, action: PlanAction) -> ResourceResult:
        """Apply one action; provider errors are captured, never raised."""
        result = ResourceResult(action.address, action.action, Status.FAILED)
        try:
            with self.store.locked(action.address):
                provider = self.registry[action.type]
                self._apply(action, provider, result)
        except ProviderError as exc:
            kind = "transient" if isinstance(exc, TransientError) else "permanent"
            result.error = f"{kind}: {exc}"
            logger.error("Failed to %s %s: %s", action.action, action.address, result.error)
            return result
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            logger.exception("Failed to %s %s", action.action, action.address)
            return result
        result.status = Status.APPLIED
        logger.info("%s %s", action.action.capitalize(), action.address)
        return result

    def _apply(self, action: PlanAction, provider: Provider, result: ResourceResult) -> None:
        match action.action:
            case Action.CREATE:
                attrs = self._resolve(action)
                record = self._call(result, provider.create, self._context(action, None), attrs)
                self.store.put(record)
            case Action.UPDATE:
                attrs = self._resolve(action)
                ctx = self._context(action, action.prior)
                record = self._call(result, provider.update, ctx, attrs, action.prior)
                self.store.put(record)
            case Action.DELETE:
                prior = action.prior
                ctx = ProviderContext(prior.type, prior.name, prior=prior, timeout=self.timeout, retry=self.retry)
                self._call(result, provider.delete, ctx, prior)
                self.store.delete(action.address)
            case Action.REPLACE:
                self._replace(action, provider, result)
            case _:
                raise ValueError(f"Cannot execute {action.action} action")

    def _replace(self, action: PlanAction, provider: Provider, result: ResourceResult) -> None:
        prior = action.prior
        old_ctx = ProviderContext(prior.type, prior.name, prior=prior, timeout=self.timeout, retry=self.retry)
        if action.replace_strategy is ReplaceStrategy.CREATE_BEFORE_DELETE:
            attrs = self._resolve(action)
            record = self._call(result, provider.create, self._context(action, None), attrs)
            self.store.put(record)
            try:
                self._call(result, provider.delete, old_ctx, prior)
            except ProviderError:
                deposed = prior.model_copy(update={"deposed": uuid.uuid4().hex[:8]})
                self.store.put(deposed)
                logger.warning("Kept old %s as %s for a later delete", action.address, deposed.address)
                raise
        else:
            # diff plans the old object's removal as a preceding delete step
            if action.address in self.store:
                self._call(result, provider.delete, old_ctx, prior)
                self.store.delete(action.address)
            attrs = self._resolve(action)
            record = self._call(result, provider.create, self._context(action, None), attrs)
            self.store.put(record)

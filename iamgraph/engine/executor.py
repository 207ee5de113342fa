"""
Apply / destroy execution over a DependencyGraph.

Nodes run on a bounded thread pool. A node starts only after every node it
waits on (its dependencies on apply, its dependents on destroy) has
finished successfully. Among ready nodes the one earliest in the graph's
topological order goes first, so a run with ``parallelism=1`` visits nodes
in exactly ``graph.topological_order()`` (or its reverse for destroy).
"""
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from rich.console import Console

from iamgraph.engine.diff import (
    Change,
    ChangeAction,
    Plan,
    build_plan,
    delete_change,
    plan_change,
    render_change,
    resolve_attributes,
    sensitive_fields,
    state_lookup,
)
from iamgraph.engine.lifecycle import OPERATION_APPLY, OPERATION_DESTROY, Lifecycle
from iamgraph.errors import (
    ImmutableFieldReplaceRequired,
    PartialApplyError,
    ProviderCallError,
    ResourceNotFoundError,
)
from iamgraph.graph.builder import DependencyGraph
from iamgraph.models.kinds import get_kind
from iamgraph.models.state import RemoteResourceState, ResourceStatus
from iamgraph.outputs import mask_id
from iamgraph.providers.base import Provider
from iamgraph.state.store import StateStore

DEFAULT_PARALLELISM = 4


@dataclass
class ApplyResult:
    operation: str
    order: List[str] = field(default_factory=list)       # nodes in the order they started
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    changes: Dict[str, Change] = field(default_factory=dict)
    notices: List[ImmutableFieldReplaceRequired] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.replaced or self.deleted)

    def counts(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "replaced": len(self.replaced),
            "deleted": len(self.deleted),
            "unchanged": len(self.unchanged),
        }


@dataclass
class _RunOutcome:
    order: List[str]
    succeeded: List[str]
    failed: Dict[str, ProviderCallError]
    not_attempted: List[str]


class Executor:
    def __init__(
        self,
        provider: Provider,
        state: StateStore,
        parallelism: int = DEFAULT_PARALLELISM,
        console: Optional[Console] = None,
    ):
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.provider = provider
        self.state = state
        self.parallelism = parallelism
        self.console = console if console is not None else Console(stderr=True)
        self.lifecycle = Lifecycle()
        self._cancel = threading.Event()
        self._result_lock = threading.Lock()

    # ------------------------------------------------------------ control
    def cancel(self) -> None:
        """Stop starting new nodes. Calls already in flight run to completion."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------ plan
    def orphans(self, graph: DependencyGraph) -> DependencyGraph:
        """State entries with no declaration in ``graph``."""
        return DependencyGraph.from_state(e for e in self.state.entries() if e.address not in graph)

    def plan(self, graph: DependencyGraph) -> Plan:
        return build_plan(graph, self.state, self.orphans(graph).reverse_topological_order())

    # ------------------------------------------------------------ apply
    def apply(self, graph: DependencyGraph) -> ApplyResult:
        """
        Converge remote state on ``graph``.

        Orphaned entries and nodes that must be replaced are deleted first,
        dependents before dependencies. Every node is then created, updated or
        left alone in topological order. The first provider failure stops
        scheduling; whatever already succeeded stays recorded in the state.
        """
        self._cancel.clear()
        result = ApplyResult(OPERATION_APPLY)
        plan = self.plan(graph)
        replacing = {c.address: c for c in plan.changes if c.action == ChangeAction.REPLACE}
        doomed = DependencyGraph.from_state(
            e for e in self.state.entries() if e.address not in graph or e.address in replacing
        )
        self._prepare(OPERATION_APPLY, list(graph) + [a for a in doomed if a not in graph])

        if len(doomed):
            outcome = self._run(
                doomed.reverse_topological_order(),
                doomed.dependents,
                lambda addr: self._destroy_node(addr, result, replacing.get(addr), OPERATION_APPLY),
                abort_on_failure=True,
            )
            result.order.extend(outcome.order)
            if outcome.failed or outcome.not_attempted:
                raise PartialApplyError(
                    OPERATION_APPLY,
                    outcome.succeeded,
                    outcome.failed,
                    outcome.not_attempted + [a for a in graph if a not in doomed],
                    cancelled=self.cancelled,
                    result=result,
                )

        outcome = self._run(
            graph.topological_order(),
            graph.dependencies,
            lambda addr: self._apply_node(graph, addr, result, addr in replacing),
            abort_on_failure=True,
        )
        result.order.extend(outcome.order)
        if outcome.failed or outcome.not_attempted:
            raise PartialApplyError(
                OPERATION_APPLY,
                outcome.succeeded,
                outcome.failed,
                outcome.not_attempted,
                cancelled=self.cancelled,
                result=result,
            )
        return result

    def _apply_node(self, graph: DependencyGraph, address: str, result: ApplyResult,
                    replacing: bool = False) -> None:
        decl = graph.node(address)
        kind = get_kind(decl.kind, address)
        # Every dependency finished before this node was scheduled.
        desired = resolve_attributes(decl, state_lookup(self.state.get))
        prior = self.state.get(address)
        masked = sensitive_fields(decl)
        change = plan_change(address, kind, prior, desired, masked)
        dependencies = graph.dependencies(address)

        with self._result_lock:
            result.changes[address] = change

        if change.action == ChangeAction.NOOP:
            self._record(result.unchanged, address)
            return

        self._print_change(change)
        if change.action == ChangeAction.CREATE:
            self._create(address, decl.kind, decl.name, desired, dependencies, masked)
            self._record(result.replaced if replacing else result.created, address)
        elif change.action == ChangeAction.UPDATE:
            self._update(address, prior, desired, dependencies, masked)
            self._record(result.updated, address)
        elif change.action == ChangeAction.REPLACE:
            self._notice(result, change.reason)
            self._delete(address, prior, OPERATION_APPLY)
            self._create(address, decl.kind, decl.name, desired, dependencies, masked)
            self._record(result.replaced, address)

    # ------------------------------------------------------------ destroy
    def destroy_graph(self, graph: DependencyGraph, include_orphans: bool = True) -> DependencyGraph:
        """
        ``graph`` plus the dependencies recorded in state, and (by default)
        the orphaned entries, so a state-only resource still holds back
        whatever it was attached to.
        """
        entries = [e for e in self.state.entries() if include_orphans or e.address in graph]
        return graph.with_state(entries)

    def destroy_order(self, graph: DependencyGraph, include_orphans: bool = True) -> List[str]:
        """Addresses that destroy would delete, in the order it starts them."""
        target = self.destroy_graph(graph, include_orphans)
        return [a for a in target.reverse_topological_order() if a in self.state]

    def destroy(self, graph: DependencyGraph, include_orphans: bool = True) -> ApplyResult:
        """
        Delete every node of ``graph`` that has a state entry, dependents
        first. A failed delete blocks the nodes it depends on; unrelated
        branches carry on.
        """
        self._cancel.clear()
        result = ApplyResult(OPERATION_DESTROY)
        target = self.destroy_graph(graph, include_orphans)
        self._prepare(OPERATION_DESTROY, list(target))

        outcome = self._run(
            target.reverse_topological_order(),
            target.dependents,
            lambda addr: self._destroy_node(addr, result),
            abort_on_failure=False,
        )
        result.order.extend(outcome.order)
        if outcome.failed or outcome.not_attempted:
            raise PartialApplyError(
                OPERATION_DESTROY, outcome.succeeded, outcome.failed, outcome.not_attempted,
                cancelled=self.cancelled, result=result,
            )
        return result

    def _destroy_node(self, address: str, result: ApplyResult,
                      replacement: Optional[Change] = None,
                      operation: str = OPERATION_DESTROY) -> None:
        prior = self.state.get(address)
        if prior is None:
            return
        if replacement is not None:
            self._notice(result, replacement.reason)
            self._delete(address, prior, OPERATION_APPLY)
            return
        change = delete_change(address, prior)
        with self._result_lock:
            result.changes[address] = change
        self._print_change(change)
        self._delete(address, prior, operation)
        self._record(result.deleted, address)

    def _notice(self, result: ApplyResult, notice: ImmutableFieldReplaceRequired) -> None:
        with self._result_lock:
            result.notices.append(notice)
        self.console.print(f"[yellow]Replace:[/yellow] {notice}", highlight=False)

    # ------------------------------------------------------------ node operations
    def _provider_call(self, address: str, operation: str, fn: Callable, *args):
        try:
            return fn(*args)
        except Exception as exc:
            raise ProviderCallError(address, operation, exc) from exc

    def _create(self, address: str, kind: str, name: str, desired: dict, dependencies: List[str],
                masked: List[str]) -> None:
        self.lifecycle.transition(address, ResourceStatus.PENDING)
        self.console.print(f"{address}: Creating...", markup=False, highlight=False)
        try:
            remote_id, outputs = self._provider_call(address, "create", self.provider.create, kind, desired)
        except ProviderCallError:
            self.lifecycle.fail(address, OPERATION_APPLY)
            raise
        entry = RemoteResourceState(
            kind=kind,
            name=name,
            remote_id=remote_id,
            attributes=desired,
            outputs=outputs,
            dependencies=dependencies,
            sensitive_attributes=list(masked),
            status=ResourceStatus.CREATED,
        )
        self.state.update(address, lambda _: entry)
        self.lifecycle.transition(address, ResourceStatus.CREATED)
        self.console.print(
            f"{address}: Creation complete [id={mask_id(kind, remote_id)}]", markup=False, highlight=False
        )

    def _update(self, address: str, prior: RemoteResourceState, desired: dict, dependencies: List[str],
                masked: List[str]) -> None:
        self.lifecycle.transition(address, ResourceStatus.PENDING)
        self.console.print(
            f"{address}: Modifying... [id={mask_id(prior.kind, prior.remote_id)}]", markup=False, highlight=False
        )
        try:
            outputs = self._provider_call(
                address, "update", self.provider.update, prior.kind, prior.remote_id, desired
            )
        except ProviderCallError:
            self.lifecycle.fail(address, OPERATION_APPLY)
            raise

        def apply_update(current: Optional[RemoteResourceState]) -> RemoteResourceState:
            entry = current or prior
            updated = replace(
                entry,
                remote_id=str(outputs.get("id", entry.remote_id)),
                attributes=desired,
                outputs=outputs,
                dependencies=dependencies,
                sensitive_attributes=list(masked),
            )
            updated.touch(ResourceStatus.UPDATED)
            return updated

        entry = self.state.update(address, apply_update)
        self.lifecycle.transition(address, ResourceStatus.UPDATED)
        self.console.print(
            f"{address}: Modifications complete [id={mask_id(entry.kind, entry.remote_id)}]",
            markup=False, highlight=False,
        )

    def _delete(self, address: str, prior: RemoteResourceState, operation: str) -> None:
        self.lifecycle.transition(address, ResourceStatus.DESTROYING)
        self.console.print(
            f"{address}: Destroying... [id={mask_id(prior.kind, prior.remote_id)}]", markup=False, highlight=False
        )
        try:
            self._provider_call(address, "delete", self.provider.delete, prior.kind, prior.remote_id)
        except ProviderCallError as exc:
            if not isinstance(exc.cause, ResourceNotFoundError):
                self.lifecycle.fail(address, operation)
                raise
            self.console.print(
                f"[yellow]Warning:[/yellow] {address} was already deleted remotely", highlight=False
            )
        self.state.update(address, lambda _: None)
        self.lifecycle.transition(address, ResourceStatus.ABSENT)
        self.console.print(f"{address}: Destruction complete", markup=False, highlight=False)

    # ------------------------------------------------------------ scheduling
    def _prepare(self, operation: str, addresses: List[str]) -> None:
        """
        Seed lifecycle state from the store. Nodes left ``failed`` by an
        earlier run on this executor may only be retried by the same operation.
        """
        for address in addresses:
            entry = self.state.get(address)
            prior = entry.status if entry is not None else ResourceStatus.ABSENT
            if self.lifecycle.status(address) is ResourceStatus.FAILED:
                self.lifecycle.retry(address, operation, prior)
            else:
                self.lifecycle.seed(address, prior)

    def _record(self, bucket: List[str], address: str) -> None:
        with self._result_lock:
            bucket.append(address)

    def _print_change(self, change: Change) -> None:
        for line in render_change(change):
            self.console.print(line, markup=False, highlight=False)

    def _run(
        self,
        priority_order: List[str],
        waits_on: Callable[[str], List[str]],
        work: Callable[[str], None],
        abort_on_failure: bool,
    ) -> _RunOutcome:
        rank = {addr: i for i, addr in enumerate(priority_order)}
        done: set = set()
        started: set = set()
        order: List[str] = []
        failed: Dict[str, ProviderCallError] = {}
        unexpected: Optional[BaseException] = None
        stop = False

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="iamgraph") as pool:
            running: Dict[Future, str] = {}
            while True:
                if not stop and not self._cancel.is_set():
                    for addr in priority_order:
                        if len(running) >= self.parallelism:
                            break
                        if addr in started:
                            continue
                        if all(dep in done for dep in waits_on(addr)):
                            started.add(addr)
                            order.append(addr)
                            running[pool.submit(work, addr)] = addr
                if not running:
                    break
                try:
                    finished, _ = wait(list(running), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.console.print("[yellow]Interrupt received:[/yellow] waiting for in-flight calls…")
                    self.cancel()
                    continue
                for future in sorted(finished, key=lambda f: rank[running[f]]):
                    addr = running.pop(future)
                    exc = future.exception()
                    if exc is None:
                        done.add(addr)
                    elif isinstance(exc, ProviderCallError):
                        failed[addr] = exc
                        self.console.print(f"[red]Error:[/red] {exc}", highlight=False)
                        if abort_on_failure:
                            stop = True
                    else:
                        unexpected = unexpected or exc
                        stop = True

        if unexpected is not None:
            raise unexpected

        return _RunOutcome(
            order=order,
            succeeded=[a for a in order if a in done],
            failed=failed,
            not_attempted=[a for a in priority_order if a not in started],
        )

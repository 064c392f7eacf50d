"""
infracore - Apply Executor

Executes plans against providers.
Runs independent operations in parallel, isolates failures to the dependents
of the failed operation and checkpoints the state after every operation.
"""

from __future__ import annotations
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple
import threading
import time
import logging

from infracore.engine.expressions import contains_unknown, resolve_references
from infracore.engine.graph import DependencyGraph
from infracore.errors import NotFoundError
from infracore.models import (
    ApplyResult,
    ApplyStatus,
    ApplySummary,
    ChangeAction,
    Configuration,
    OperationKind,
    Plan,
    PlannedChange,
    ResourceRecord,
    ResultStatus,
)
from infracore.providers.base import ApplyRequest, ApplyResponse, Provider
from infracore.state import StateStore

logger = logging.getLogger(__name__)


# Operations each planned action is executed as
OPERATIONS: Dict[ChangeAction, List[OperationKind]] = {
    ChangeAction.CREATE: [OperationKind.CREATE],
    ChangeAction.UPDATE: [OperationKind.UPDATE],
    ChangeAction.DELETE: [OperationKind.DELETE],
    ChangeAction.REPLACE: [OperationKind.DELETE, OperationKind.CREATE],
}


def _node(kind: OperationKind, address: str) -> str:
    return f"{kind.value}:{address}"


def _split(node: str) -> Tuple[OperationKind, str]:
    kind, address = node.split(":", 1)
    return OperationKind(kind), address


class ApplyExecutor:
    """
    Executes the operations of a plan.

    Responsibilities:
    - Build the execution DAG from planned changes
    - Run ready operations on a bounded thread pool
    - Resolve desired attributes against the live state before each operation
    - Record results and persist the state after each operation
    - Skip dependents of failed operations, honour cancellation

    Error Handling:
    - Each operation is wrapped in try/except
    - A failure skips only its transitive dependents
    - All results are captured regardless of status
    """

    def __init__(
        self,
        store: StateStore,
        providers: Dict[str, Provider],
        parallelism: int = 10,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize executor.

        Args:
            store: Locked state store of the target workspace
            providers: Configured provider instances by name
            parallelism: Maximum number of concurrent operations
            cancel_event: Event that stops scheduling once set
        """
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.store = store
        self.providers = providers
        self.parallelism = parallelism
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logging.getLogger(__name__)

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight ones finish."""
        self.cancel_event.set()
        self.logger.warning("Apply cancellation requested")

    # =========================================================================
    # EXECUTION DAG
    # =========================================================================

    def build_graph(self, plan: Plan) -> DependencyGraph:
        """
        Build the operation graph of a plan.

        A create or update waits for the create/update of its dependencies.
        A delete waits for the deletes of the resources depending on it, and
        for updates of resources that drop their dependency on it. A replace
        is a delete followed by a create of the same address.
        """
        changes = {c.address: c for c in plan.actionable}
        recorded: Dict[str, List[str]] = {}
        for address in changes:
            try:
                recorded[address] = self.store.get(address).dependencies
            except NotFoundError:
                recorded[address] = []

        nodes: List[str] = []
        for change in plan.actionable:
            nodes.extend(_node(kind, change.address) for kind in OPERATIONS[change.action])
        present = set(nodes)

        def upsert_node(address: str) -> Optional[str]:
            for kind in (OperationKind.CREATE, OperationKind.UPDATE):
                if _node(kind, address) in present:
                    return _node(kind, address)
            return None

        dependencies: Dict[str, List[str]] = {node: [] for node in nodes}
        for change in plan.actionable:
            address = change.address
            delete = _node(OperationKind.DELETE, address)
            upsert = upsert_node(address)

            if upsert is not None:
                for dependency in change.dependencies:
                    target = upsert_node(dependency)
                    if target is not None:
                        dependencies[upsert].append(target)
                if delete in present:
                    dependencies[upsert].append(delete)

            if delete in present:
                for other in plan.actionable:
                    if other.address == address:
                        continue
                    new_deps = set(other.dependencies)
                    old_deps = set(recorded[other.address])
                    if address not in new_deps | old_deps:
                        continue
                    other_delete = _node(OperationKind.DELETE, other.address)
                    if other_delete in present:
                        dependencies[delete].append(other_delete)
                    elif other.action == ChangeAction.UPDATE and address not in new_deps:
                        dependencies[delete].append(_node(OperationKind.UPDATE, other.address))

        return DependencyGraph(
            nodes,
            {node: list(dict.fromkeys(deps)) for node, deps in dependencies.items()},
        )

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def execute(self, plan: Plan, config: Optional[Configuration] = None) -> ApplySummary:
        """
        Execute a plan.

        Args:
            plan: Plan to execute
            config: Configuration the plan was computed from (not needed for
                plans that only delete)

        Returns:
            ApplySummary with one result per planned change
        """
        started_at = datetime.utcnow()
        started = time.monotonic()
        changes = {c.address: c for c in plan.actionable}
        results = {
            address: ApplyResult(address=address, action=change.action)
            for address, change in changes.items()
        }

        graph = self.build_graph(plan)
        self.logger.info(
            f"Starting apply on workspace '{plan.workspace}': "
            f"{len(changes)} changes, {len(graph)} operations, parallelism {self.parallelism}"
        )

        position = {node: i for i, node in enumerate(graph.order)}
        waiting: Dict[str, Set[str]] = {node: set(graph.dependencies_of(node)) for node in graph.order}
        ready = [node for node in graph.order if not waiting[node]]
        finished: Set[str] = set()
        skipped: Set[str] = set()
        futures: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="apply") as pool:
            while ready or futures:
                while ready and len(futures) < self.parallelism and not self.cancel_event.is_set():
                    node = ready.pop(0)
                    kind, address = _split(node)
                    if results[address].started_at is None:
                        results[address].started_at = datetime.utcnow()
                    futures[pool.submit(self._run_operation, kind, changes[address], config)] = node

                if not futures:
                    break

                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    node = futures.pop(future)
                    finished.add(node)
                    kind, address = _split(node)
                    error = future.result()
                    result = results[address]

                    if error is None:
                        if node == _node(OPERATIONS[result.action][-1], address):
                            self._finish(result, ResultStatus.COMPLETED)
                        for dependent in graph.dependents_of(node):
                            waiting[dependent].discard(node)
                            if not waiting[dependent] and dependent not in skipped:
                                ready.append(dependent)
                        ready.sort(key=position.get)
                        continue

                    self._finish(result, ResultStatus.FAILED, error)
                    self.logger.error(f"{kind.value} {address} failed: {error}")
                    for dependent in graph.transitive_dependents(node):
                        skipped.add(dependent)
                        _, dependent_address = _split(dependent)
                        dependent_result = results[dependent_address]
                        if dependent_result.status == ResultStatus.PENDING:
                            dependent_result.status = ResultStatus.SKIPPED
                            dependent_result.error_message = f"dependency {address} failed"
                            self.logger.warning(f"Skipping {dependent_address}: dependency {address} failed")

        for node in graph.order:
            if node in finished or node in skipped:
                continue
            _, address = _split(node)
            if results[address].status == ResultStatus.PENDING:
                self._finish(results[address], ResultStatus.CANCELLED, "apply cancelled")

        self._store_outputs(plan, config)

        summary = self._summarize(plan, list(results.values()), started_at, time.monotonic() - started)
        self.logger.info(
            f"Apply finished on workspace '{plan.workspace}': {summary.status.value} - "
            f"{summary.completed} completed, {summary.failed} failed, "
            f"{summary.skipped} skipped, {summary.cancelled} cancelled"
        )
        return summary

    def _run_operation(
        self,
        kind: OperationKind,
        change: PlannedChange,
        config: Optional[Configuration],
    ) -> Optional[str]:
        """
        Run one provider operation and record its outcome.

        Returns:
            None on success, otherwise the error message
        """
        address = change.address
        self.logger.info(f"{kind.value.capitalize()} {address}")
        try:
            provider = self.providers[change.provider]

            if kind == OperationKind.DELETE:
                if not self.store.exists(address):
                    return None
                prior = self.store.get(address).attributes
                response = provider.apply(
                    ApplyRequest(kind=kind, address=address, resource_type=change.resource_type, prior=prior)
                )
                if not response.success:
                    return response.error_message or "delete failed"
                self.store.remove(address)
                self.store.persist()
                return None

            resource = config.get_resource(address) if config else None
            if resource is None:
                return f"{address} is not part of the configuration"

            known = {}
            for reference in resource.references:
                if self.store.exists(reference):
                    known[reference] = self.store.get(reference).attributes
            desired = resolve_references(resource.attributes, known)
            desired = {name: value for name, value in desired.items() if value is not None}
            if contains_unknown(desired):
                return "desired attributes reference values that are not known"

            prior = self.store.get(address).attributes if kind == OperationKind.UPDATE else None
            response: ApplyResponse = provider.apply(
                ApplyRequest(
                    kind=kind,
                    address=address,
                    resource_type=change.resource_type,
                    desired=desired,
                    prior=prior,
                )
            )
            if not response.success:
                return response.error_message or f"{kind.value} failed"

            schema = provider.schema(change.resource_type)
            self.store.put(
                address,
                ResourceRecord(
                    address=address,
                    type=change.resource_type,
                    provider=change.provider,
                    attributes=response.attributes,
                    dependencies=change.dependencies,
                    schema_version=schema.version,
                ),
            )
            self.store.persist()
            return None

        except Exception as e:
            self.logger.exception(f"Operation error: {kind.value} {address}")
            return str(e) or type(e).__name__

    def _finish(self, result: ApplyResult, status: ResultStatus, error: Optional[str] = None) -> None:
        result.status = status
        result.error_message = error
        result.completed_at = datetime.utcnow()
        if result.started_at is not None:
            result.duration_seconds = (result.completed_at - result.started_at).total_seconds()

    def _store_outputs(self, plan: Plan, config: Optional[Configuration]) -> None:
        """Evaluate root outputs against the final state and persist them."""
        outputs = {}
        if config is not None and not plan.destroy:
            known = {record.address: record.attributes for record in self.store.records()}
            for output in config.root_outputs:
                outputs[output.name] = resolve_references(output.value, known, missing=None)
        self.store.set_outputs(outputs)
        self.store.persist()

    def _summarize(
        self,
        plan: Plan,
        results: List[ApplyResult],
        started_at: datetime,
        duration: float,
    ) -> ApplySummary:
        counts = {status: 0 for status in ResultStatus}
        for result in results:
            counts[result.status] += 1

        if counts[ResultStatus.FAILED]:
            status = ApplyStatus.FAILED
        elif counts[ResultStatus.CANCELLED]:
            status = ApplyStatus.CANCELLED
        else:
            status = ApplyStatus.COMPLETED

        return ApplySummary(
            workspace=plan.workspace,
            status=status,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            duration_seconds=duration,
            total=len(results),
            completed=counts[ResultStatus.COMPLETED],
            failed=counts[ResultStatus.FAILED],
            skipped=counts[ResultStatus.SKIPPED],
            cancelled=counts[ResultStatus.CANCELLED],
            results=results,
            state_serial=self.store.serial,
            outputs=self.store.outputs,
        )

"""
infracore - Engine Service

Facade over parser, graph builder, plan engine, executor and state store.
Every command (plan, apply, state manipulation, workspaces) is a thin
orchestration of those components; the HTTP API wraps this class.
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
import threading
import logging

from infracore.engine.executor import ApplyExecutor
from infracore.engine.graph import DependencyGraph, GraphBuilder
from infracore.engine.parser import ConfigParser
from infracore.engine.planner import PlanEngine
from infracore.errors import (
    ApplyError,
    ConfigurationError,
    GraphError,
    ProviderError,
    StalePlanError,
    WorkspaceError,
)
from infracore.models import (
    ApplyResult,
    ApplyStatus,
    ApplySummary,
    ChangeAction,
    Configuration,
    DriftEntry,
    Plan,
    ResourceRecord,
    ResultStatus,
    StateSnapshot,
    ValidateResponse,
    WorkspaceInfo,
)
from infracore.providers import Provider, ProviderRegistry
from infracore.settings import EngineSettings, get_settings
from infracore.state import StateStore
from infracore.storage import StateBackend, create_backend, validate_workspace_name

logger = logging.getLogger(__name__)


class Engine:
    """
    Infrastructure engine facade.

    Responsibilities:
    - Parse configurations and build their dependency graphs
    - Keep one configured provider instance per provider name
    - Run plan/apply/destroy/refresh under the workspace lock
    - Expose state manipulation and workspace management
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        backend: Optional[StateBackend] = None,
        providers: Optional[Dict[str, Provider]] = None,
    ):
        """
        Initialize engine.

        Args:
            settings: Engine settings (environment settings by default)
            backend: State backend (created from settings by default)
            providers: Pre-built provider instances by name
        """
        self.settings = settings or get_settings()
        self.backend = backend or create_backend(self.settings.backend, self.settings.state_path)
        self.providers: Dict[str, Provider] = dict(providers or {})
        self.parser = ConfigParser()
        self.graph_builder = GraphBuilder()
        self.logger = logging.getLogger(__name__)

        self._providers_lock = threading.Lock()
        self._runs_lock = threading.Lock()
        self._runs: List[threading.Event] = []

    # =========================================================================
    # WORKSPACE CONTEXT
    # =========================================================================

    @property
    def workspace(self) -> str:
        """Currently selected workspace."""
        return self.backend.get_current_workspace(self.settings.workspace)

    def store(self, workspace: Optional[str] = None) -> StateStore:
        """
        Open a store handle on a workspace (the current one by default).

        Raises:
            WorkspaceError: If a non-default workspace does not exist
        """
        name = workspace or self.workspace
        if name != self.settings.workspace and not self.backend.exists(name):
            raise WorkspaceError(f"Workspace '{name}' does not exist")
        return StateStore(
            self.backend,
            name,
            lock_timeout=self.settings.lock_timeout,
            lock_poll_interval=self.settings.lock_poll_interval,
        )

    def init(self) -> WorkspaceInfo:
        """Prepare the current workspace (created empty if missing)."""
        store = self.store()
        self.logger.info(f"Initialized workspace '{store.workspace}' at serial {store.serial}")
        return self._workspace_info(store.workspace)

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def load(
        self,
        config_yaml: str,
        variables: Optional[Dict[str, Any]] = None,
        base_dir: Optional[str] = None,
    ) -> Configuration:
        """Parse a configuration and configure its providers."""
        config = self.parser.parse(config_yaml, variables=variables, base_dir=base_dir)
        self._configure_providers(config)
        return config

    def load_file(self, path: str, variables: Optional[Dict[str, Any]] = None) -> Configuration:
        config = self.parser.parse_file(path, variables=variables)
        self._configure_providers(config)
        return config

    def validate(
        self,
        config_yaml: str,
        variables: Optional[Dict[str, Any]] = None,
        base_dir: Optional[str] = None,
    ) -> ValidateResponse:
        """
        Validate a configuration: syntax, references, graph and schemas.

        Returns:
            ValidateResponse listing every problem found
        """
        try:
            config = self.load(config_yaml, variables=variables, base_dir=base_dir)
            self.graph_builder.build(config)
            self._planner().validate(config)
        except (ConfigurationError, GraphError, ProviderError) as e:
            return ValidateResponse(valid=False, errors=e.errors or [e.message])
        return ValidateResponse(valid=True, resources=[r.address for r in config.resources])

    def _configure_providers(self, config: Configuration) -> None:
        for name in config.provider_names:
            settings = config.providers[name].settings if name in config.providers else {}
            provider = self._provider(name, settings)
            if settings:
                provider.configure(settings)

    def _provider(self, name: str, settings: Optional[Dict[str, Any]] = None) -> Provider:
        with self._providers_lock:
            if name not in self.providers:
                self.providers[name] = ProviderRegistry.create(name, settings)
                self.logger.info(f"Created provider: {name}")
            return self.providers[name]

    def _ensure_state_providers(self, snapshot: StateSnapshot) -> None:
        """Recorded resources may belong to providers no longer configured."""
        for record in snapshot.resources.values():
            self._provider(record.provider)

    def _planner(self) -> PlanEngine:
        return PlanEngine(self.providers)

    # =========================================================================
    # PLAN / APPLY
    # =========================================================================

    def plan(
        self,
        config: Optional[Configuration] = None,
        destroy: bool = False,
        refresh: Optional[bool] = None,
    ) -> Plan:
        """
        Compute a plan for the current workspace.

        Args:
            config: Parsed configuration (optional in destroy mode)
            destroy: Plan deletion of every recorded resource
            refresh: Check for drift first (settings default when None)

        Raises:
            DriftDetectedError: If refresh finds out-of-band changes
        """
        store = self.store()
        return self._plan(store.snapshot(), config, destroy, refresh)

    def _plan(
        self,
        snapshot: StateSnapshot,
        config: Optional[Configuration],
        destroy: bool,
        refresh: Optional[bool],
    ) -> Plan:
        self._ensure_state_providers(snapshot)
        planner = self._planner()

        if self.settings.refresh_before_plan if refresh is None else refresh:
            planner.check_drift(snapshot)

        graph: Optional[DependencyGraph] = None
        if config is not None and not destroy:
            graph = self.graph_builder.build(config)
        elif not destroy:
            raise ConfigurationError("A configuration is required to plan")
        return planner.create_plan(snapshot, config=config, graph=graph, destroy=destroy)

    def apply(
        self,
        config: Optional[Configuration] = None,
        plan: Optional[Plan] = None,
        parallelism: Optional[int] = None,
        refresh: Optional[bool] = None,
    ) -> ApplySummary:
        """
        Plan (unless a saved plan is given) and apply under the workspace lock.

        Raises:
            StalePlanError: If the saved plan no longer matches the state
            LockTimeoutError: If the workspace stays locked
            ApplyError: If any operation failed
        """
        store = self.store()
        with self._run() as cancel_event, store.lock(operation="apply"):
            if plan is None:
                plan = self._plan(store.snapshot(), config, False, refresh)
            else:
                self._check_plan(plan, store, config)
                self._ensure_state_providers(store.snapshot())
            summary = self._execute(store, plan, config, parallelism, cancel_event)

        if summary.status == ApplyStatus.FAILED:
            raise ApplyError(summary)
        return summary

    def destroy(self, parallelism: Optional[int] = None, refresh: Optional[bool] = None) -> ApplySummary:
        """
        Delete every recorded resource of the current workspace.

        Raises:
            ApplyError: If any delete failed
        """
        store = self.store()
        with self._run() as cancel_event, store.lock(operation="destroy"):
            plan = self._plan(store.snapshot(), None, True, refresh)
            summary = self._execute(store, plan, None, parallelism, cancel_event)

        if summary.status == ApplyStatus.FAILED:
            raise ApplyError(summary)
        return summary

    def _execute(
        self,
        store: StateStore,
        plan: Plan,
        config: Optional[Configuration],
        parallelism: Optional[int],
        cancel_event: threading.Event,
    ) -> ApplySummary:
        if plan.is_empty and not plan.destroy:
            self.logger.info("No changes. Infrastructure matches the configuration.")

        if cancel_event.is_set():
            self.logger.warning(f"Apply on workspace '{plan.workspace}' cancelled before any operation")
            return self._cancelled_summary(plan, store)

        executor = ApplyExecutor(
            store,
            self.providers,
            parallelism=parallelism or self.settings.parallelism,
            cancel_event=cancel_event,
        )
        return executor.execute(plan, config)

    def _cancelled_summary(self, plan: Plan, store: StateStore) -> ApplySummary:
        now = datetime.utcnow()
        results = [
            ApplyResult(
                address=change.address,
                action=change.action,
                status=ResultStatus.CANCELLED,
                error_message="apply cancelled",
                completed_at=now,
            )
            for change in plan.actionable
        ]
        return ApplySummary(
            workspace=plan.workspace,
            status=ApplyStatus.CANCELLED,
            started_at=now,
            completed_at=now,
            total=len(results),
            cancelled=len(results),
            results=results,
            state_serial=store.serial,
            outputs=store.outputs,
        )

    @contextmanager
    def _run(self) -> Iterator[threading.Event]:
        """Register the cancel event of one apply or destroy."""
        event = threading.Event()
        with self._runs_lock:
            self._runs.append(event)
        try:
            yield event
        finally:
            with self._runs_lock:
                self._runs.remove(event)

    def cancel(self) -> None:
        """
        Cancel every apply or destroy running on this engine.

        Takes effect whether the run is still planning or already executing;
        completed operations stay recorded.
        """
        with self._runs_lock:
            for event in self._runs:
                event.set()
        self.logger.warning("Cancellation requested")

    def _check_plan(self, plan: Plan, store: StateStore, config: Optional[Configuration]) -> None:
        if plan.workspace != store.workspace:
            raise StalePlanError(
                f"Plan was created for workspace '{plan.workspace}', not '{store.workspace}'"
            )
        if plan.state_lineage != store.lineage or plan.state_serial != store.serial:
            raise StalePlanError(
                f"Plan was created against serial {plan.state_serial}; "
                f"state is now at serial {store.serial}",
                errors=["re-run plan against the current state"],
            )
        if config is None and any(c.action != ChangeAction.DELETE for c in plan.actionable):
            raise ConfigurationError("The configuration the plan was created from is required")

    def refresh(self) -> List[DriftEntry]:
        """
        Accept real-world values into state.

        Resources that no longer exist are removed from state.

        Returns:
            The drift that was reconciled
        """
        store = self.store()
        with store.lock(operation="refresh"):
            snapshot = store.snapshot()
            self._ensure_state_providers(snapshot)
            planner = self._planner()
            actual = planner.read_actual(snapshot)
            drifts = planner.detect_drift(snapshot, actual)

            for address in {d.address for d in drifts}:
                if actual[address] is None:
                    store.remove(address)
                else:
                    record = store.get(address)
                    store.put(address, record.model_copy(update={"attributes": actual[address]}))

        self.logger.info(f"Refreshed workspace '{store.workspace}': {len(drifts)} differences accepted")
        return drifts

    def output(self, name: Optional[str] = None) -> Any:
        """
        Recorded root outputs (or one of them).

        Raises:
            KeyError: If the named output is not recorded
        """
        outputs = self.store().outputs
        if name is None:
            return outputs
        if name not in outputs:
            raise KeyError(name)
        return outputs[name]

    # =========================================================================
    # STATE COMMANDS
    # =========================================================================

    def state_list(self, prefix: Optional[str] = None) -> List[str]:
        return self.store().list(prefix)

    def state_show(self, address: str) -> ResourceRecord:
        return self.store().get(address)

    def state_rm(self, address: str) -> ResourceRecord:
        """Forget a resource without destroying it."""
        store = self.store()
        with store.lock(operation="state rm"):
            return store.remove(address)

    def state_mv(self, source: str, destination: str) -> List[str]:
        """Rename a resource (or a whole module) in state."""
        store = self.store()
        with store.lock(operation="state mv"):
            return store.move(source, destination)

    def taint(self, address: str) -> None:
        store = self.store()
        with store.lock(operation="taint"):
            store.taint(address)

    def untaint(self, address: str) -> None:
        store = self.store()
        with store.lock(operation="untaint"):
            store.untaint(address)

    def force_unlock(self, lock_id: str) -> None:
        self.store().force_unlock(lock_id)

    # =========================================================================
    # WORKSPACES
    # =========================================================================

    def workspace_new(self, name: str) -> WorkspaceInfo:
        """
        Create a workspace and select it.

        Raises:
            WorkspaceError: If the name is invalid or already taken
        """
        validate_workspace_name(name)
        initial = StateSnapshot(workspace=name)
        if not self.backend.create_workspace(name, initial.model_dump(mode="json")):
            raise WorkspaceError(f"Workspace '{name}' already exists")
        self.backend.set_current_workspace(name)
        self.logger.info(f"Created and selected workspace '{name}'")
        return self._workspace_info(name)

    def workspace_select(self, name: str) -> WorkspaceInfo:
        validate_workspace_name(name)
        if name != self.settings.workspace and not self.backend.exists(name):
            raise WorkspaceError(f"Workspace '{name}' does not exist")
        self.backend.set_current_workspace(name)
        self.store(name)
        self.logger.info(f"Selected workspace '{name}'")
        return self._workspace_info(name)

    def workspace_list(self) -> List[WorkspaceInfo]:
        names = self.backend.workspaces()
        if self.settings.workspace not in names:
            names.append(self.settings.workspace)
        return [self._workspace_info(name) for name in sorted(names)]

    def workspace_delete(self, name: str, force: bool = False) -> None:
        """
        Delete a workspace and its history.

        Raises:
            WorkspaceError: If it is current, the default one, missing,
                or still records resources (unless forced)
        """
        if name == self.workspace:
            raise WorkspaceError(f"Cannot delete the currently selected workspace '{name}'")
        if name == self.settings.workspace:
            raise WorkspaceError(f"Cannot delete the default workspace '{name}'")
        if not self.backend.exists(name):
            raise WorkspaceError(f"Workspace '{name}' does not exist")

        store = self.store(name)
        with store.lock(operation="workspace delete"):
            if store.list() and not force:
                raise WorkspaceError(
                    f"Workspace '{name}' still records {len(store.list())} resources",
                    errors=["destroy them first or delete with force"],
                )
        self.backend.delete_workspace(name)
        self.logger.info(f"Deleted workspace '{name}'")

    def _workspace_info(self, name: str) -> WorkspaceInfo:
        blob = self.backend.read(name)
        snapshot = StateSnapshot(**blob) if blob else None
        return WorkspaceInfo(
            name=name,
            is_current=name == self.workspace,
            serial=snapshot.serial if snapshot else 0,
            resource_count=len(snapshot.resources) if snapshot else 0,
        )


# Global engine instance
_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Get or create the engine instance."""
    global _engine
    if _engine is None:
        _engine = Engine()
    return _engine


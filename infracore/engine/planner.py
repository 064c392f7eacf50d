"""
infracore - Plan Engine

Creates execution plans from a configuration and the current state.
Determines the action per resource, the attribute-level diff and the order
in which changes are applied.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from infracore.engine.expressions import contains_unknown, resolve_references
from infracore.engine.graph import DependencyGraph
from infracore.errors import ConfigurationError, DriftDetectedError, ProviderError
from infracore.models import (
    UNKNOWN,
    AttributeChange,
    ChangeAction,
    Configuration,
    DriftEntry,
    Plan,
    PlannedChange,
    ResourceConfig,
    ResourceRecord,
    StateSnapshot,
)
from infracore.providers.base import Provider, ResourceSchema

logger = logging.getLogger(__name__)


class PlanEngine:
    """
    Computes plans from desired configuration and recorded state.

    Responsibilities:
    - Validate desired attributes against provider schemas
    - Diff desired against recorded attributes per resource
    - Classify each resource as no-op, create, update, replace or delete
    - Order changes (creates/updates by dependency, deletes in reverse)
    - Detect drift between recorded state and the real world

    Action Rules:
    1. Not recorded -> create
    2. Tainted -> replace
    3. Change to an immutable attribute -> replace
    4. Any other change (unknown values included) -> update
    5. Recorded but not configured (or destroy mode) -> delete
    """

    def __init__(self, providers: Dict[str, Provider]):
        """
        Initialize plan engine.

        Args:
            providers: Configured provider instances by name
        """
        self.providers = providers
        self.logger = logging.getLogger(__name__)

    def provider(self, name: str) -> Provider:
        if name not in self.providers:
            raise ProviderError(f"Provider '{name}' is not configured")
        return self.providers[name]

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self, config: Configuration) -> None:
        """
        Validate every resource against its provider schema.

        Raises:
            ConfigurationError: With one entry per problem found
        """
        errors = []
        for resource in config.resources:
            try:
                schema = self.provider(resource.provider).schema(resource.type)
            except ProviderError as e:
                errors.append(f"{resource.address}: {e.message}")
                continue
            errors.extend(f"{resource.address}: {error}" for error in schema.validate(resource.attributes))

        if errors:
            raise ConfigurationError("Configuration does not match provider schemas", errors=errors)

    # =========================================================================
    # PLANNING
    # =========================================================================

    def create_plan(
        self,
        snapshot: StateSnapshot,
        config: Optional[Configuration] = None,
        graph: Optional[DependencyGraph] = None,
        destroy: bool = False,
    ) -> Plan:
        """
        Create a plan.

        Args:
            snapshot: Current state
            config: Desired configuration (not needed in destroy mode)
            graph: Dependency graph of the configuration
            destroy: Plan deletion of every recorded resource

        Returns:
            Plan bound to the snapshot's serial and lineage
        """
        changes: List[PlannedChange] = []
        outputs: Dict[str, Any] = {}

        if not destroy:
            if config is None or graph is None:
                raise ValueError("A configuration and its graph are required unless destroying")
            self.validate(config)

            # Attribute values as they will be after apply, for reference resolution
            known: Dict[str, Dict[str, Any]] = {}
            for address in graph.order:
                resource = config.get_resource(address)
                change = self._plan_resource(
                    resource,
                    snapshot.resources.get(address),
                    graph.dependencies_of(address),
                    known,
                )
                known[address] = change.after or {}
                changes.append(change)

            for output in config.root_outputs:
                outputs[output.name] = resolve_references(output.value, known)

        changes.extend(self._plan_deletes(snapshot, config, destroy))

        plan = Plan(
            workspace=snapshot.workspace,
            state_serial=snapshot.serial,
            state_lineage=snapshot.lineage,
            destroy=destroy,
            changes=changes,
            outputs=outputs,
        )

        counts = plan.summary()
        self.logger.info(
            f"Created plan for workspace '{snapshot.workspace}': "
            + ", ".join(f"{count} {action}" for action, count in counts.items() if count)
            + (" (no changes)" if plan.is_empty else "")
        )
        return plan

    def _plan_resource(
        self,
        resource: ResourceConfig,
        record: Optional[ResourceRecord],
        dependencies: List[str],
        known: Dict[str, Dict[str, Any]],
    ) -> PlannedChange:
        """Decide the action for one configured resource."""
        schema = self.provider(resource.provider).schema(resource.type)
        desired = resolve_references(resource.attributes, known)
        desired = {name: value for name, value in desired.items() if value is not None}

        change = PlannedChange(
            address=resource.address,
            action=ChangeAction.NOOP,
            resource_type=resource.type,
            provider=resource.provider,
            dependencies=dependencies,
        )

        if record is None:
            change.action = ChangeAction.CREATE
            change.after = self._with_unknown_computed(desired, schema)
            change.attribute_changes = [
                AttributeChange(name=name, before=None, after=value)
                for name, value in desired.items()
            ]
            self.logger.debug(f"{resource.address}: create")
            return change

        change.before = dict(record.attributes)
        diffs = self._diff(schema, record.attributes, desired)
        change.attribute_changes = diffs
        replacing = [d.name for d in diffs if d.forces_replacement]

        if record.tainted:
            change.action = ChangeAction.REPLACE
            change.reason = "tainted"
        elif replacing:
            change.action = ChangeAction.REPLACE
            change.reason = f"forces replacement: {', '.join(replacing)}"
        elif diffs:
            change.action = ChangeAction.UPDATE
        else:
            change.after = dict(record.attributes)
            return change

        if change.action == ChangeAction.REPLACE:
            change.after = self._with_unknown_computed(desired, schema)
        else:
            after = dict(record.attributes)
            for diff in diffs:
                if diff.after is None:
                    after.pop(diff.name, None)
                else:
                    after[diff.name] = diff.after
            change.after = after

        self.logger.debug(f"{resource.address}: {change.action.value} ({len(diffs)} attributes)")
        return change

    def _diff(
        self,
        schema: ResourceSchema,
        recorded: Dict[str, Any],
        desired: Dict[str, Any],
    ) -> List[AttributeChange]:
        """Attribute-level diff of configurable attributes."""
        names = list(desired) + [
            name for name in schema.configurable
            if name in recorded and name not in desired
        ]

        diffs = []
        for name in names:
            before = recorded.get(name)
            after = desired.get(name)
            if before == after and not contains_unknown(after):
                continue
            diffs.append(
                AttributeChange(
                    name=name,
                    before=before,
                    after=after,
                    forces_replacement=schema.is_immutable(name),
                )
            )
        return diffs

    def _with_unknown_computed(self, desired: Dict[str, Any], schema: ResourceSchema) -> Dict[str, Any]:
        after = dict(desired)
        for name in schema.computed:
            after[name] = UNKNOWN
        return after

    def _plan_deletes(
        self,
        snapshot: StateSnapshot,
        config: Optional[Configuration],
        destroy: bool,
    ) -> List[PlannedChange]:
        """Deletes for orphaned records (every record in destroy mode), dependents first."""
        configured = set() if destroy or config is None else {r.address for r in config.resources}
        recorded = DependencyGraph.from_records(snapshot.resources.values())

        deletes = []
        for address in recorded.reverse_order():
            if address in configured:
                continue
            record = snapshot.resources[address]
            deletes.append(
                PlannedChange(
                    address=address,
                    action=ChangeAction.DELETE,
                    resource_type=record.type,
                    provider=record.provider,
                    before=dict(record.attributes),
                    reason="destroy" if destroy else "orphaned",
                    dependencies=list(record.dependencies),
                )
            )
        return deletes

    # =========================================================================
    # DRIFT
    # =========================================================================

    def read_actual(self, snapshot: StateSnapshot) -> Dict[str, Optional[Dict[str, Any]]]:
        """
        Read every recorded resource back through its provider.

        Returns:
            Current attributes per address (None for resources that no longer exist)
        """
        actual = {}
        for address, record in snapshot.resources.items():
            actual[address] = self.provider(record.provider).read(record.type, record.attributes)
        return actual

    def detect_drift(
        self,
        snapshot: StateSnapshot,
        actual: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
    ) -> List[DriftEntry]:
        """
        Compare recorded attributes with the real world.

        Args:
            snapshot: Recorded state
            actual: Values from read_actual (read now when omitted)

        Returns:
            One entry per differing attribute or missing resource
        """
        if actual is None:
            actual = self.read_actual(snapshot)

        drifts = []
        for address, record in snapshot.resources.items():
            current = actual.get(address)
            if current is None:
                drifts.append(DriftEntry(address=address, recorded=record.attributes))
                continue
            for name in sorted(set(record.attributes) | set(current)):
                if record.attributes.get(name) != current.get(name):
                    drifts.append(
                        DriftEntry(
                            address=address,
                            attribute=name,
                            recorded=record.attributes.get(name),
                            actual=current.get(name),
                        )
                    )

        if drifts:
            self.logger.warning(
                f"Detected drift on {len({d.address for d in drifts})} resources "
                f"in workspace '{snapshot.workspace}'"
            )
        return drifts

    def check_drift(self, snapshot: StateSnapshot) -> None:
        """
        Raises:
            DriftDetectedError: If any recorded resource drifted
        """
        drifts = self.detect_drift(snapshot)
        if drifts:
            raise DriftDetectedError(drifts)

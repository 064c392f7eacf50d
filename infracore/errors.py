"""
infracore - Error Taxonomy

All exceptions raised by the engine. Every error carries a human readable
message and an optional list of detail strings so callers (and the HTTP API)
can report several problems at once.
"""

from __future__ import annotations
from typing import Any, List, Optional


class InfraCoreError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "errors": self.errors,
        }


# =============================================================================
# CONFIGURATION / GRAPH
# =============================================================================

class ConfigurationError(InfraCoreError):
    """Parse or validation failure, reported before any planning."""


class GraphError(InfraCoreError):
    """Failure while building the dependency graph."""


class CycleError(GraphError):
    """A reference cycle was detected."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            errors=[f"cycle: {' -> '.join(cycle)}"],
        )


class UnresolvedReferenceError(GraphError):
    """A referenced address does not exist in the configuration."""

    def __init__(self, reference: str, source: Optional[str] = None):
        self.reference = reference
        self.source = source
        where = f" (referenced from {source})" if source else ""
        super().__init__(f"Reference to undeclared address '{reference}'{where}")


# =============================================================================
# PLANNING
# =============================================================================

class PlanError(InfraCoreError):
    """Failure while computing or validating a plan."""


class DriftDetectedError(PlanError):
    """Real-world resources disagree with the recorded state."""

    def __init__(self, drifts: List[Any]):
        self.drifts = drifts
        addresses = sorted({d.address for d in drifts})
        super().__init__(
            f"Drift detected on {len(addresses)} resource(s): {', '.join(addresses)}",
            errors=[str(d) for d in drifts],
        )


class StalePlanError(PlanError):
    """The plan was computed against a state that has since changed."""


# =============================================================================
# STATE
# =============================================================================

class StateError(InfraCoreError):
    """Failure in the state store or one of its backends."""


class NotFoundError(StateError):
    """No record at the requested address."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"No resource recorded at address '{address}'")


class AddressConflictError(StateError):
    """The destination address of a state mutation is already taken."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Address '{address}' already exists in state")


class LockedError(StateError):
    """The state is locked by another holder, or not locked by the caller."""

    def __init__(self, message: str, holder: Optional[dict] = None):
        self.holder = holder
        errors = [f"lock held by: {holder}"] if holder else []
        super().__init__(message, errors=errors)


class LockTimeoutError(LockedError):
    """The lock could not be acquired within the configured timeout."""


class StateConflictError(StateError):
    """A snapshot write would not advance the stored serial."""


class WorkspaceError(StateError):
    """Invalid workspace operation."""


# =============================================================================
# PROVIDERS / APPLY
# =============================================================================

class ProviderError(InfraCoreError):
    """Unknown provider or resource type."""


class ApplyError(InfraCoreError):
    """One or more planned operations failed during apply."""

    def __init__(self, summary: Any):
        self.summary = summary
        failures = [
            f"{r.address}: {r.error_message}" for r in summary.failed_results
        ]
        super().__init__(
            f"Apply failed: {len(failures)} operation(s) failed",
            errors=failures,
        )

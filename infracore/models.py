"""
infracore - Domain Models

Defines all Pydantic models for configuration, state, plans, apply results
and API payloads. These models form the core data structures that flow
through the entire system.
"""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
import json
import re
import uuid

from pydantic import BaseModel, ConfigDict, Field


# Placeholder for values that are only known once a resource has been applied
UNKNOWN = "(known after apply)"

RESERVED_MODULE_KEYWORD = "module"

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_INSTANCE_RE = re.compile(r'^([A-Za-z_][A-Za-z0-9_-]*)(?:\[(\d+|"[^"]*")\])?$')


# =============================================================================
# ENUMS
# =============================================================================

class ChangeAction(str, Enum):
    """Action the plan engine proposes for a single resource."""
    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class OperationKind(str, Enum):
    """Operation kinds understood by providers."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ResultStatus(str, Enum):
    """Status of an individual apply operation."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ApplyStatus(str, Enum):
    """Overall status of an apply run."""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# ADDRESSING
# =============================================================================

def split_segments(text: str) -> List[str]:
    """
    Split a dotted address into segments, ignoring dots inside brackets.

    >>> split_segments('module.net.fake_vpc.main["a.b"].id')
    ['module', 'net', 'fake_vpc', 'main["a.b"]', 'id']
    """
    segments: List[str] = []
    current = []
    depth = 0
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        if char == "." and depth == 0:
            segments.append("".join(current))
            current = []
        else:
            current.append(char)
    segments.append("".join(current))
    return segments


def format_index(index: Union[int, str, None]) -> str:
    """Render an instance index the way it appears in an address."""
    if index is None:
        return ""
    if isinstance(index, int):
        return f"[{index}]"
    return f"[{json.dumps(index)}]"


def module_prefix(module_path: Tuple[str, ...]) -> str:
    """Render a module path as ``module.a.module.b``."""
    return ".".join(f"{RESERVED_MODULE_KEYWORD}.{m}" for m in module_path)


def parse_module_path(text: str) -> Tuple[str, ...]:
    """
    Parse ``module.a.module.b`` into ``("a", "b")``.

    Raises:
        ValueError: If the text is not a module address
    """
    segments = split_segments(text)
    if len(segments) % 2 != 0:
        raise ValueError(f"Invalid module address: {text!r}")
    path = []
    for keyword, name in zip(segments[0::2], segments[1::2]):
        if keyword != RESERVED_MODULE_KEYWORD or not _NAME_RE.match(name):
            raise ValueError(f"Invalid module address: {text!r}")
        path.append(name)
    return tuple(path)


class ResourceAddress(BaseModel):
    """
    Unique path-like identifier of one managed object.

    String form: ``module.<m1>.module.<m2>.<type>.<name>[<index>]``.
    """
    model_config = ConfigDict(frozen=True)

    module_path: Tuple[str, ...] = ()
    type: str
    name: str
    index: Optional[Union[int, str]] = None

    def __str__(self) -> str:
        parts = [module_prefix(self.module_path)] if self.module_path else []
        parts.append(f"{self.type}.{self.name}{format_index(self.index)}")
        return ".".join(parts)

    @property
    def resource_key(self) -> str:
        """Address without the instance index."""
        return str(self.model_copy(update={"index": None}))

    @property
    def module(self) -> str:
        """Address of the owning module (empty string for root)."""
        return module_prefix(self.module_path)

    def in_module(self, module_path: Tuple[str, ...]) -> bool:
        """Check whether this address is owned by a module (or its children)."""
        return self.module_path[: len(module_path)] == tuple(module_path)

    def with_module_path(self, module_path: Tuple[str, ...]) -> ResourceAddress:
        """Return a copy re-homed under another module path."""
        return self.model_copy(update={"module_path": tuple(module_path)})

    @classmethod
    def parse(cls, text: str) -> ResourceAddress:
        """
        Parse an address string.

        Raises:
            ValueError: If the text is not a valid resource address
        """
        address, rest = cls.parse_reference(text)
        if rest:
            raise ValueError(f"Invalid resource address: {text!r}")
        return address

    @classmethod
    def parse_reference(cls, text: str) -> Tuple[ResourceAddress, List[str]]:
        """
        Parse a reference such as ``module.net.fake_vpc.main.id``.

        Returns:
            Tuple of (address, attribute path)

        Raises:
            ValueError: If no resource address can be read from the text
        """
        segments = split_segments(text.strip())
        module_path = []
        i = 0
        while i < len(segments) and segments[i] == RESERVED_MODULE_KEYWORD:
            if i + 1 >= len(segments) or not _NAME_RE.match(segments[i + 1]):
                raise ValueError(f"Invalid module segment in {text!r}")
            module_path.append(segments[i + 1])
            i += 2

        if len(segments) - i < 2:
            raise ValueError(f"Invalid resource address: {text!r}")

        resource_type = segments[i]
        if not _NAME_RE.match(resource_type):
            raise ValueError(f"Invalid resource type in {text!r}")

        match = _INSTANCE_RE.match(segments[i + 1])
        if not match:
            raise ValueError(f"Invalid resource name in {text!r}")

        name, raw_index = match.groups()
        index: Optional[Union[int, str]] = None
        if raw_index is not None:
            index = json.loads(raw_index) if raw_index.startswith('"') else int(raw_index)

        address = cls(
            module_path=tuple(module_path),
            type=resource_type,
            name=name,
            index=index,
        )
        return address, segments[i + 2:]


# =============================================================================
# CONFIGURATION (YAML -> Domain Model)
# =============================================================================

class VariableDefinition(BaseModel):
    """Input variable of a module scope."""
    model_config = ConfigDict(extra="forbid")

    type: str = Field(default="any", description="string, number, bool, list, map or any")
    default: Any = None
    required: bool = Field(default=False, description="True when no default is declared")
    description: Optional[str] = None
    sensitive: bool = False


class OutputDefinition(BaseModel):
    """Output value declared by a module."""
    model_config = ConfigDict(extra="forbid")

    value: Any = None
    description: Optional[str] = None
    sensitive: bool = False


class ResourceBlock(BaseModel):
    """Resource block as written in the configuration."""
    model_config = ConfigDict(extra="forbid")

    type: str = Field(..., description="Resource type, e.g. fake_vpc")
    name: str = Field(..., description="Local name within the module")
    provider: Optional[str] = None
    count: Any = None
    for_each: Any = None
    depends_on: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)


class ModuleBlock(BaseModel):
    """Module block: a namespaced, reusable collection of resources."""
    model_config = ConfigDict(extra="forbid")

    source: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, VariableDefinition] = Field(default_factory=dict)
    resources: List[ResourceBlock] = Field(default_factory=list)
    modules: Dict[str, ModuleBlock] = Field(default_factory=dict)
    outputs: Dict[str, OutputDefinition] = Field(default_factory=dict)


class RootModule(ModuleBlock):
    """Top-level configuration document."""
    providers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


ModuleBlock.model_rebuild()
RootModule.model_rebuild()


class ProviderConfig(BaseModel):
    """Provider block after variable interpolation."""
    name: str
    settings: Dict[str, Any] = Field(default_factory=dict)


class ResourceConfig(BaseModel):
    """
    A single resource instance after module and count expansion.

    Attributes hold literal values and absolute resource references
    (``${module.net.fake_vpc.main.id}``); variables are already resolved.
    """
    address: str
    type: str
    name: str
    module_path: Tuple[str, ...] = ()
    index: Optional[Union[int, str]] = None
    provider: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    references: List[str] = Field(default_factory=list, description="Referenced resource addresses")
    depends_on: List[str] = Field(default_factory=list, description="Explicit resource or module addresses")

    @property
    def resource_address(self) -> ResourceAddress:
        return ResourceAddress(
            module_path=self.module_path,
            type=self.type,
            name=self.name,
            index=self.index,
        )


class OutputConfig(BaseModel):
    """Output after module expansion."""
    name: str
    module_path: Tuple[str, ...] = ()
    value: Any = None
    references: List[str] = Field(default_factory=list)
    sensitive: bool = False

    @property
    def is_root(self) -> bool:
        return not self.module_path


class Configuration(BaseModel):
    """
    Complete desired state - single source of truth for planning.

    Produced by the parser; consumed by the graph builder and plan engine.
    """
    resources: List[ResourceConfig] = Field(default_factory=list)
    outputs: List[OutputConfig] = Field(default_factory=list)
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    modules: List[str] = Field(default_factory=list, description="Addresses of all expanded modules")
    source_path: Optional[str] = None

    def get_resource(self, address: str) -> Optional[ResourceConfig]:
        for resource in self.resources:
            if resource.address == address:
                return resource
        return None

    @property
    def root_outputs(self) -> List[OutputConfig]:
        return [o for o in self.outputs if o.is_root]

    @property
    def provider_names(self) -> List[str]:
        names = list(self.providers)
        for resource in self.resources:
            if resource.provider not in names:
                names.append(resource.provider)
        return names


# =============================================================================
# STATE
# =============================================================================

class ResourceRecord(BaseModel):
    """Recorded identity and attributes of one managed object."""
    address: str
    type: str
    provider: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    tainted: bool = False
    schema_version: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class StateSnapshot(BaseModel):
    """
    Versioned serialization of all records at a point in time.

    Frozen against field reassignment only; the resources and outputs
    mappings stay mutable. StateStore.snapshot() hands out deep copies, so
    changing them never reaches the store.
    """
    model_config = ConfigDict(frozen=True)

    format_version: int = 1
    workspace: str
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)


class LockInfo(BaseModel):
    """Metadata written by the holder of a state lock."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workspace: str
    operation: str = "apply"
    who: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)


class WorkspaceInfo(BaseModel):
    """Information about a single workspace."""
    name: str
    is_current: bool = False
    serial: int = 0
    resource_count: int = 0


# =============================================================================
# PLANNING
# =============================================================================

class AttributeChange(BaseModel):
    """Difference of a single attribute."""
    name: str
    before: Any = None
    after: Any = None
    forces_replacement: bool = False


class PlannedChange(BaseModel):
    """Proposed operation on one resource."""
    address: str
    action: ChangeAction
    resource_type: str
    provider: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    attribute_changes: List[AttributeChange] = Field(default_factory=list)
    reason: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Ordered sequence of proposed operations."""
    workspace: str
    state_serial: int
    state_lineage: str
    destroy: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    changes: List[PlannedChange] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    @property
    def actionable(self) -> List[PlannedChange]:
        return [c for c in self.changes if c.action != ChangeAction.NOOP]

    @property
    def is_empty(self) -> bool:
        return not self.actionable

    def get_change(self, address: str) -> Optional[PlannedChange]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def summary(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts


class DriftEntry(BaseModel):
    """One discrepancy between recorded and real-world attributes."""
    address: str
    attribute: Optional[str] = None
    recorded: Any = None
    actual: Any = None

    def __str__(self) -> str:
        if self.attribute is None:
            return f"{self.address}: no longer exists"
        return (
            f"{self.address}.{self.attribute}: recorded {self.recorded!r}, "
            f"actual {self.actual!r}"
        )


# =============================================================================
# APPLY
# =============================================================================

class ApplyResult(BaseModel):
    """Result of a single apply operation."""
    address: str
    action: ChangeAction
    status: ResultStatus = ResultStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    error_message: Optional[str] = None


class ApplySummary(BaseModel):
    """Summary of an apply run."""
    workspace: str
    status: ApplyStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0

    results: List[ApplyResult] = Field(default_factory=list)
    state_serial: int = 0
    outputs: Dict[str, Any] = Field(default_factory=dict)

    @property
    def failed_results(self) -> List[ApplyResult]:
        return [r for r in self.results if r.status == ResultStatus.FAILED]


# =============================================================================
# API MODELS
# =============================================================================

class ConfigRequest(BaseModel):
    """Request carrying a configuration document."""
    config_yaml: str = Field(..., description="YAML configuration content")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Root variable values")


class PlanRequest(ConfigRequest):
    """Request to compute a plan."""
    destroy: bool = Field(default=False, description="Plan destruction of every recorded resource")
    refresh: Optional[bool] = Field(default=None, description="Check for drift before planning")


class ApplyRunRequest(PlanRequest):
    """Request to plan and apply in one locked operation."""
    parallelism: Optional[int] = Field(default=None, ge=1)


class ValidateResponse(BaseModel):
    """Response for configuration validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)


class StateMoveRequest(BaseModel):
    """Request to move a record to a new address."""
    source: str
    destination: str


class WorkspaceCreateRequest(BaseModel):
    """Request to create a workspace."""
    name: str


class WorkspaceSelectRequest(BaseModel):
    """Request to select the current workspace."""
    name: str

"""
infracore - Fake Cloud Provider

Simulates a cloud for prototyping and testing.
Stores objects in-memory; enforces the relationships a real cloud would
(a subnet needs its VPC, a VPC with subnets cannot be deleted) so that
wrong operation ordering fails the same way it would in production.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import copy
import threading
import time
import uuid
import logging

from infracore.models import OperationKind
from infracore.providers.base import (
    ApplyRequest,
    ApplyResponse,
    AttributeSchema,
    Provider,
    ProviderRegistry,
    ResourceSchema,
)

logger = logging.getLogger(__name__)


def _tags() -> AttributeSchema:
    return AttributeSchema(type="map", description="Free-form tags")


class FakeCloudProvider(Provider):
    """
    Fake cloud provider for simulation and prototyping.

    Features:
    - In-memory object storage keyed by generated ids
    - Referential checks between networks, subnets and instances
    - Optional latency and per-address failure injection
    - Out-of-band change helpers to simulate drift

    This provider allows testing the entire plan/apply flow
    without requiring a real cloud account.
    """

    PROVIDER_NAME = "fake"

    # Simulated resource types with their schemas
    RESOURCE_SCHEMAS: Dict[str, ResourceSchema] = {
        "fake_vpc": ResourceSchema(
            type_name="fake_vpc",
            attributes={
                "cidr_block": AttributeSchema(required=True, immutable=True),
                "name": AttributeSchema(),
                "enable_dns": AttributeSchema(type="bool"),
                "tags": _tags(),
                "id": AttributeSchema(computed=True),
                "arn": AttributeSchema(computed=True),
            },
        ),
        "fake_subnet": ResourceSchema(
            type_name="fake_subnet",
            attributes={
                "vpc_id": AttributeSchema(required=True, immutable=True),
                "cidr_block": AttributeSchema(required=True, immutable=True),
                "availability_zone": AttributeSchema(immutable=True),
                "tags": _tags(),
                "id": AttributeSchema(computed=True),
                "arn": AttributeSchema(computed=True),
            },
        ),
        "fake_instance": ResourceSchema(
            type_name="fake_instance",
            attributes={
                "ami": AttributeSchema(required=True, immutable=True),
                "instance_type": AttributeSchema(required=True),
                "subnet_id": AttributeSchema(immutable=True),
                "tags": _tags(),
                "id": AttributeSchema(computed=True),
                "private_ip": AttributeSchema(computed=True),
            },
        ),
        "fake_bucket": ResourceSchema(
            type_name="fake_bucket",
            attributes={
                "bucket": AttributeSchema(required=True, immutable=True),
                "versioning": AttributeSchema(type="bool"),
                "tags": _tags(),
                "id": AttributeSchema(computed=True),
                "arn": AttributeSchema(computed=True),
            },
        ),
    }

    ID_PREFIXES = {
        "fake_vpc": "vpc",
        "fake_subnet": "subnet",
        "fake_instance": "i",
        "fake_bucket": "bucket",
    }

    def __init__(
        self,
        region: str = "local-1",
        latency: float = 0.0,
        **settings: Any,
    ):
        """
        Initialize Fake Cloud Provider.

        Args:
            region: Region name embedded in ARNs
            latency: Seconds each operation sleeps (simulates API calls)
            **settings: Further provider settings
        """
        super().__init__(region=region, latency=latency, **settings)

        # In-memory storage
        self._objects: Dict[str, Dict[str, Any]] = {}
        self._types: Dict[str, str] = {}
        self._failures: Dict[str, str] = {}
        self._lock = threading.Lock()

        # Observability for tests
        self.operations: List[Tuple[str, str]] = []
        self._in_flight = 0
        self.max_in_flight = 0

        logger.info(f"FakeCloudProvider initialized: region={region}")

    @property
    def region(self) -> str:
        return str(self.settings.get("region", "local-1"))

    def schemas(self) -> Dict[str, ResourceSchema]:
        return self.RESOURCE_SCHEMAS

    # =========================================================================
    # TEST HOOKS
    # =========================================================================

    def fail_on(self, address: str, message: str = "simulated failure") -> None:
        """Make every operation on an address fail."""
        self._failures[address] = message

    def clear_failures(self) -> None:
        self._failures.clear()

    def simulate_drift(self, resource_id: str, **changes: Any) -> None:
        """Change an object out-of-band."""
        with self._lock:
            self._objects[resource_id].update(changes)
        logger.info(f"Simulated drift on {resource_id}: {sorted(changes)}")

    def simulate_delete(self, resource_id: str) -> None:
        """Delete an object out-of-band."""
        with self._lock:
            self._objects.pop(resource_id, None)
            self._types.pop(resource_id, None)
        logger.info(f"Simulated out-of-band deletion of {resource_id}")

    def objects(self, resource_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Snapshot of stored objects, optionally filtered by type."""
        with self._lock:
            return [
                copy.deepcopy(obj)
                for obj_id, obj in self._objects.items()
                if resource_type is None or self._types[obj_id] == resource_type
            ]

    # =========================================================================
    # PROVIDER INTERFACE
    # =========================================================================

    def apply(self, request: ApplyRequest) -> ApplyResponse:
        """Apply one operation against the simulated cloud."""
        started = time.monotonic()
        with self._lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)

        try:
            latency = float(self.settings.get("latency", 0.0))
            if latency > 0:
                time.sleep(latency)

            if request.address in self._failures:
                return ApplyResponse(
                    success=False,
                    error_message=self._failures[request.address],
                )

            with self._lock:
                if request.kind == OperationKind.CREATE:
                    response = self._create(request)
                elif request.kind == OperationKind.UPDATE:
                    response = self._update(request)
                else:
                    response = self._delete(request)
                if response.success:
                    self.operations.append((request.kind.value, request.address))
        finally:
            with self._lock:
                self._in_flight -= 1

        response.duration_ms = (time.monotonic() - started) * 1000
        self.logger.debug(
            f"{request.kind.value} {request.address}: "
            f"{'ok' if response.success else response.error_message}"
        )
        return response

    def read(self, resource_type: str, attributes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Read current attributes by id."""
        resource_id = attributes.get("id")
        with self._lock:
            if resource_id not in self._objects:
                return None
            return copy.deepcopy(self._objects[resource_id])

    # =========================================================================
    # OPERATIONS (called with the lock held)
    # =========================================================================

    def _create(self, request: ApplyRequest) -> ApplyResponse:
        problem = self._check_references(request.resource_type, request.desired)
        if problem:
            return ApplyResponse(success=False, error_message=problem)

        prefix = self.ID_PREFIXES.get(request.resource_type, "res")
        resource_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
        obj = {k: copy.deepcopy(v) for k, v in request.desired.items() if v is not None}
        obj["id"] = resource_id
        if request.resource_type == "fake_instance":
            obj["private_ip"] = f"10.0.{len(self._objects) % 250}.{(len(self._objects) * 7) % 250 + 2}"
        else:
            obj["arn"] = f"arn:fake:{self.region}:{request.resource_type}/{resource_id}"

        self._objects[resource_id] = obj
        self._types[resource_id] = request.resource_type
        return ApplyResponse(success=True, attributes=copy.deepcopy(obj))

    def _update(self, request: ApplyRequest) -> ApplyResponse:
        resource_id = (request.prior or {}).get("id")
        if resource_id not in self._objects:
            return ApplyResponse(success=False, error_message=f"{resource_id} not found")

        schema = self.RESOURCE_SCHEMAS[request.resource_type]
        obj = self._objects[resource_id]
        for name in schema.configurable:
            value = request.desired.get(name)
            if name in obj and obj[name] != value and schema.is_immutable(name):
                return ApplyResponse(
                    success=False,
                    error_message=f"attribute '{name}' cannot be updated in place",
                )
            if value is None:
                obj.pop(name, None)
            else:
                obj[name] = copy.deepcopy(value)
        return ApplyResponse(success=True, attributes=copy.deepcopy(obj))

    def _delete(self, request: ApplyRequest) -> ApplyResponse:
        resource_id = (request.prior or {}).get("id")
        if resource_id not in self._objects:
            # Already gone; deleting is idempotent
            return ApplyResponse(success=True)

        dependents = [
            other_id
            for other_id, obj in self._objects.items()
            if resource_id in (obj.get("vpc_id"), obj.get("subnet_id"))
        ]
        if dependents:
            return ApplyResponse(
                success=False,
                error_message=f"{resource_id} still in use by {', '.join(sorted(dependents))}",
            )

        del self._objects[resource_id]
        del self._types[resource_id]
        return ApplyResponse(success=True)

    def _check_references(self, resource_type: str, desired: Dict[str, Any]) -> Optional[str]:
        """Validate that referenced parent objects exist."""
        checks = {"vpc_id": "fake_vpc", "subnet_id": "fake_subnet"}
        for attribute, parent_type in checks.items():
            parent_id = desired.get(attribute)
            if parent_id is None:
                continue
            if self._types.get(parent_id) != parent_type:
                return f"{parent_type} '{parent_id}' does not exist"
        return None


# Register provider with registry
ProviderRegistry.register("fake", FakeCloudProvider)

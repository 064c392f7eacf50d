"""
infracore - State Store

Owns the active state of one workspace: the mapping from resource addresses
to recorded resources. Every mutation requires the exclusive workspace lock,
held through ``StateStore.lock()``; the lock is shared through the backend so
that separate store handles (threads or processes) are serialized.

Leaving ``lock()`` normally persists pending changes as a new snapshot
version; leaving it with an exception discards them, so the store always
reflects a committed snapshot.
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
import copy
import os
import socket
import threading
import time
import logging

from infracore.errors import (
    AddressConflictError,
    LockedError,
    LockTimeoutError,
    NotFoundError,
    StateError,
)
from infracore.models import (
    LockInfo,
    ResourceAddress,
    ResourceRecord,
    StateSnapshot,
    parse_module_path,
)
from infracore.storage import StateBackend, validate_workspace_name

logger = logging.getLogger(__name__)


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{threading.current_thread().name}"


class StateLock:
    """
    Exclusive lock on the state of one workspace.

    Acquisition polls the backend until the timeout expires, then fails with
    LockTimeoutError; it never waits indefinitely.
    """

    def __init__(
        self,
        backend: StateBackend,
        workspace: str,
        timeout: float = 10.0,
        poll_interval: float = 0.1,
        operation: str = "apply",
        who: Optional[str] = None,
    ):
        self.backend = backend
        self.workspace = workspace
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.operation = operation
        self.who = who or _default_holder()
        self.info: Optional[LockInfo] = None

    @property
    def held(self) -> bool:
        return self.info is not None

    def acquire(self) -> LockInfo:
        """
        Acquire the lock.

        Raises:
            LockTimeoutError: If the lock is still held by someone else
                after the timeout
        """
        info = LockInfo(workspace=self.workspace, operation=self.operation, who=self.who)
        deadline = time.monotonic() + self.timeout

        while True:
            if self.backend.try_lock(self.workspace, info):
                self.info = info
                logger.info(
                    f"Acquired state lock on workspace '{self.workspace}' "
                    f"for {self.operation} (id={info.id})"
                )
                return info

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                holder = self.backend.lock_info(self.workspace)
                raise LockTimeoutError(
                    f"Timed out after {self.timeout}s waiting for the state lock "
                    f"on workspace '{self.workspace}'",
                    holder=holder.model_dump(mode="json") if holder else None,
                )
            time.sleep(min(self.poll_interval, remaining))

    def release(self) -> None:
        """Release the lock if held."""
        if self.info is None:
            return
        self.backend.unlock(self.workspace, self.info.id)
        logger.info(f"Released state lock on workspace '{self.workspace}' (id={self.info.id})")
        self.info = None

    def __enter__(self) -> LockInfo:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class StateStore:
    """
    Lock-scoped access to the state of one workspace.

    Responsibilities:
    - Load the latest durable snapshot from the backend
    - Serve reads (get, list, snapshot) at any time
    - Apply mutations (put, remove, move, taint) only while locked
    - Persist versioned snapshots (checkpoints) to the backend
    """

    def __init__(
        self,
        backend: StateBackend,
        workspace: str = "default",
        lock_timeout: float = 10.0,
        lock_poll_interval: float = 0.1,
        create: bool = True,
    ):
        """
        Initialize store and load the latest snapshot.

        Args:
            backend: Durable snapshot storage
            workspace: Workspace identifier
            lock_timeout: Seconds to wait for the lock
            lock_poll_interval: Seconds between lock attempts
            create: Create the workspace if it does not exist yet
        """
        self.backend = backend
        self.workspace = validate_workspace_name(workspace)
        self.lock_timeout = lock_timeout
        self.lock_poll_interval = lock_poll_interval
        self.logger = logging.getLogger(__name__)

        self._data_lock = threading.RLock()
        self._held: Optional[StateLock] = None
        self._depth = 0

        self._serial = 0
        self._lineage = ""
        self._resources: Dict[str, ResourceRecord] = {}
        self._outputs: Dict[str, Any] = {}
        self._dirty = False

        if create and backend.read(self.workspace) is None:
            initial = StateSnapshot(workspace=self.workspace)
            backend.create_workspace(self.workspace, initial.model_dump(mode="json"))
        self.reload()

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def serial(self) -> int:
        return self._serial

    @property
    def lineage(self) -> str:
        return self._lineage

    @property
    def is_locked(self) -> bool:
        return self._held is not None

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def outputs(self) -> Dict[str, Any]:
        with self._data_lock:
            return copy.deepcopy(self._outputs)

    # =========================================================================
    # LOADING / PERSISTENCE
    # =========================================================================

    def reload(self) -> None:
        """
        Reread the latest durable snapshot, discarding pending changes.

        Raises:
            StateError: If the workspace has no stored state
        """
        blob = self.backend.read(self.workspace)
        if blob is None:
            raise StateError(f"Workspace '{self.workspace}' does not exist")
        snapshot = StateSnapshot(**blob)
        with self._data_lock:
            self._serial = snapshot.serial
            self._lineage = snapshot.lineage
            self._resources = {
                address: record.model_copy(deep=True)
                for address, record in snapshot.resources.items()
            }
            self._outputs = copy.deepcopy(snapshot.outputs)
            self._dirty = False
        self.logger.debug(
            f"Loaded workspace '{self.workspace}' serial {self._serial} "
            f"({len(self._resources)} resources)"
        )

    def persist(self) -> int:
        """
        Write pending changes as a new snapshot version.

        Returns:
            Serial of the durable snapshot
        """
        with self._data_lock:
            self._require_lock("persist")
            if not self._dirty:
                return self._serial
            snapshot = StateSnapshot(
                workspace=self.workspace,
                serial=self._serial + 1,
                lineage=self._lineage,
                resources=self._resources,
                outputs=self._outputs,
            )
            self.backend.write(self.workspace, snapshot.model_dump(mode="json"))
            self._serial = snapshot.serial
            self._dirty = False

        self.logger.info(
            f"Persisted workspace '{self.workspace}' serial {self._serial} "
            f"({len(self._resources)} resources)"
        )
        return self._serial

    def snapshot(self) -> StateSnapshot:
        """Deep copy of the current state, detached from the store."""
        with self._data_lock:
            return StateSnapshot(
                workspace=self.workspace,
                serial=self._serial,
                lineage=self._lineage,
                resources={a: r.model_copy(deep=True) for a, r in self._resources.items()},
                outputs=copy.deepcopy(self._outputs),
            )

    def history(self) -> List[int]:
        """Serials of every stored snapshot version."""
        return self.backend.versions(self.workspace)

    def load_version(self, serial: int) -> StateSnapshot:
        """
        Read a historical snapshot.

        Raises:
            StateError: If the version is not stored
        """
        blob = self.backend.read_version(self.workspace, serial)
        if blob is None:
            raise StateError(f"Workspace '{self.workspace}' has no snapshot with serial {serial}")
        return StateSnapshot(**blob)

    # =========================================================================
    # LOCKING
    # =========================================================================

    @contextmanager
    def lock(self, operation: str = "apply", timeout: Optional[float] = None) -> Iterator[LockInfo]:
        """
        Hold the exclusive workspace lock for the duration of the block.

        The latest durable snapshot is loaded once the lock is acquired.
        Pending changes are persisted on normal exit and discarded if the
        block raises. Re-entrant for the same store handle.

        Raises:
            LockTimeoutError: If the lock cannot be acquired in time
        """
        with self._data_lock:
            if self._held is not None:
                self._depth += 1
                nested = True
            else:
                nested = False

        if nested:
            try:
                yield self._held.info
            finally:
                with self._data_lock:
                    self._depth -= 1
            return

        state_lock = StateLock(
            self.backend,
            self.workspace,
            timeout=self.lock_timeout if timeout is None else timeout,
            poll_interval=self.lock_poll_interval,
            operation=operation,
        )
        info = state_lock.acquire()
        with self._data_lock:
            self._held = state_lock
            self._depth = 1

        try:
            self.reload()
            yield info
            self.persist()
        except BaseException:
            if self._dirty:
                self.logger.warning(
                    f"Discarding uncommitted changes to workspace '{self.workspace}'"
                )
                self.reload()
            raise
        finally:
            with self._data_lock:
                self._held = None
                self._depth = 0
            state_lock.release()

    def force_unlock(self, lock_id: str) -> None:
        """Release a lock left behind by another holder."""
        self.backend.unlock(self.workspace, lock_id)
        self.logger.warning(f"Force-unlocked workspace '{self.workspace}' (id={lock_id})")

    def _require_lock(self, operation: str) -> None:
        if self._held is None:
            holder = self.backend.lock_info(self.workspace)
            if holder is not None:
                raise LockedError(
                    f"Cannot {operation}: workspace '{self.workspace}' is locked by another holder",
                    holder=holder.model_dump(mode="json"),
                )
            raise LockedError(
                f"Cannot {operation}: the state lock for workspace '{self.workspace}' is not held"
            )

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, address: str) -> ResourceRecord:
        """
        Get a recorded resource.

        Raises:
            NotFoundError: If nothing is recorded at the address
        """
        with self._data_lock:
            record = self._resources.get(address)
            if record is None:
                raise NotFoundError(address)
            return record.model_copy(deep=True)

    def exists(self, address: str) -> bool:
        with self._data_lock:
            return address in self._resources

    def list(self, prefix: Optional[str] = None) -> List[str]:
        """
        List recorded addresses.

        Args:
            prefix: Module address (``module.net``) or resource address
                without index (``fake_subnet.app``) to filter by

        Returns:
            Addresses in recorded order
        """
        with self._data_lock:
            addresses = list(self._resources)

        if not prefix:
            return addresses

        try:
            module_path = parse_module_path(prefix)
        except ValueError:
            module_path = None

        if module_path is not None:
            return [
                a for a in addresses
                if ResourceAddress.parse(a).in_module(module_path)
            ]
        return [
            a for a in addresses
            if a == prefix or ResourceAddress.parse(a).resource_key == prefix
        ]

    def records(self) -> List[ResourceRecord]:
        with self._data_lock:
            return [r.model_copy(deep=True) for r in self._resources.values()]

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def put(self, address: str, record: ResourceRecord) -> None:
        """Record a resource at an address (insert or replace)."""
        _parse_address(address)
        with self._data_lock:
            self._require_lock("put")
            self._resources[address] = record.model_copy(
                deep=True,
                update={"address": address, "updated_at": datetime.utcnow()},
            )
            self._dirty = True
        self.logger.debug(f"Recorded {address}")

    def remove(self, address: str) -> ResourceRecord:
        """
        Remove a record without touching the real resource.

        Raises:
            NotFoundError: If nothing is recorded at the address
        """
        with self._data_lock:
            self._require_lock("remove")
            if address not in self._resources:
                raise NotFoundError(address)
            record = self._resources.pop(address)
            self._dirty = True
        self.logger.info(f"Removed {address} from state")
        return record

    def move(self, source: str, destination: str) -> List[str]:
        """
        Move a record, or every record of a module, to a new address.

        The record data is preserved; only the address changes. Recorded
        dependencies of other resources are rewritten to the new address.

        Returns:
            New addresses of the moved records

        Raises:
            NotFoundError: If nothing is recorded at the source
            AddressConflictError: If a destination address is taken
        """
        with self._data_lock:
            self._require_lock("move")
            renames = self._plan_move(source, destination)

            moving = set(renames)
            for old, new in renames.items():
                if new in self._resources and new not in moving:
                    raise AddressConflictError(new)

            # Rebuild to keep recorded order with new keys in place
            resources: Dict[str, ResourceRecord] = {}
            for address, record in self._resources.items():
                new_address = renames.get(address, address)
                dependencies = [renames.get(d, d) for d in record.dependencies]
                resources[new_address] = record.model_copy(
                    update={"address": new_address, "dependencies": dependencies}
                )
            self._resources = resources
            self._dirty = True

        for old, new in renames.items():
            self.logger.info(f"Moved {old} to {new}")
        return list(renames.values())

    def _plan_move(self, source: str, destination: str) -> Dict[str, str]:
        """Compute old -> new addresses for a move."""
        try:
            source_module = parse_module_path(source)
        except ValueError:
            source_module = None

        if source_module is not None:
            try:
                destination_module = parse_module_path(destination)
            except ValueError:
                raise StateError(f"Cannot move module {source} to non-module address {destination}")
            renames = {}
            for address in self._resources:
                parsed = ResourceAddress.parse(address)
                if parsed.in_module(source_module):
                    rest = parsed.module_path[len(source_module):]
                    renames[address] = str(parsed.with_module_path(destination_module + rest))
            if not renames:
                raise NotFoundError(source)
            return renames

        source_address = _parse_address(source)
        destination_address = _parse_address(destination)
        if source not in self._resources:
            raise NotFoundError(source)
        if source_address.type != destination_address.type:
            raise StateError(
                f"Cannot move {source} to {destination}: resource type must not change"
            )
        if destination in self._resources and destination != source:
            raise AddressConflictError(destination)
        return {source: destination}

    def taint(self, address: str) -> None:
        """Mark a resource for destroy-and-recreate on the next apply."""
        self._set_tainted(address, True)
        self.logger.info(f"Tainted {address}")

    def untaint(self, address: str) -> None:
        """Clear the taint marker."""
        self._set_tainted(address, False)
        self.logger.info(f"Untainted {address}")

    def _set_tainted(self, address: str, tainted: bool) -> None:
        with self._data_lock:
            self._require_lock("taint" if tainted else "untaint")
            if address not in self._resources:
                raise NotFoundError(address)
            record = self._resources[address]
            if record.tainted != tainted:
                self._resources[address] = record.model_copy(update={"tainted": tainted})
                self._dirty = True

    def set_outputs(self, outputs: Dict[str, Any]) -> None:
        """Replace the recorded root output values."""
        with self._data_lock:
            self._require_lock("set outputs")
            if outputs != self._outputs:
                self._outputs = copy.deepcopy(outputs)
                self._dirty = True


def _parse_address(address: str) -> ResourceAddress:
    try:
        return ResourceAddress.parse(address)
    except ValueError as e:
        raise StateError(f"Invalid resource address: {address}", errors=[str(e)])


__all__ = ["StateLock", "StateStore"]

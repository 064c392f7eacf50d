"""
infracore - Storage Layer

Durable storage of versioned state snapshots, keyed by workspace.
Provides an in-memory backend and a local JSON file backend; both implement
the same StateBackend interface including the exclusive lock primitive.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional
import copy
import json
import os
import re
import shutil
import threading
import logging

from infracore.errors import LockedError, StateConflictError, WorkspaceError
from infracore.models import LockInfo

logger = logging.getLogger(__name__)

MAX_WORKSPACE_NAME_LENGTH = 90
_WORKSPACE_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_-]*$")


def validate_workspace_name(name: str) -> str:
    """
    Validate a workspace name.

    Rules:
    - Alphanumeric, hyphens, underscores only
    - Max length: 90 characters
    - Cannot be empty or start with a hyphen

    Raises:
        WorkspaceError: If name is invalid
    """
    if not name:
        raise WorkspaceError("Workspace name cannot be empty")
    if len(name) > MAX_WORKSPACE_NAME_LENGTH:
        raise WorkspaceError(f"Workspace name too long (max {MAX_WORKSPACE_NAME_LENGTH})")
    if not _WORKSPACE_RE.match(name):
        raise WorkspaceError(
            f"Invalid workspace name '{name}': only alphanumeric, hyphens, "
            "underscores allowed"
        )
    return name


class StateBackend(ABC):
    """
    Abstract base class for state persistence.

    Snapshots are stored as JSON-compatible blobs carrying a ``serial``.
    Every write must advance the serial; older versions stay readable.
    """

    @abstractmethod
    def read(self, workspace: str) -> Optional[Dict[str, Any]]:
        """Latest snapshot blob, or None if the workspace has none."""
        pass

    @abstractmethod
    def write(self, workspace: str, blob: Dict[str, Any]) -> None:
        """
        Store a new snapshot version.

        Raises:
            StateConflictError: If the blob's serial does not advance
        """
        pass

    @abstractmethod
    def create_workspace(self, workspace: str, blob: Dict[str, Any]) -> bool:
        """Create a workspace with its initial snapshot; False if it exists."""
        pass

    @abstractmethod
    def delete_workspace(self, workspace: str) -> bool:
        """Delete a workspace and all of its versions."""
        pass

    @abstractmethod
    def workspaces(self) -> List[str]:
        """Names of all workspaces."""
        pass

    @abstractmethod
    def versions(self, workspace: str) -> List[int]:
        """Stored serials, oldest first."""
        pass

    @abstractmethod
    def read_version(self, workspace: str, serial: int) -> Optional[Dict[str, Any]]:
        """A specific stored snapshot version."""
        pass

    @abstractmethod
    def try_lock(self, workspace: str, info: LockInfo) -> bool:
        """Take the workspace lock if it is free. Never blocks."""
        pass

    @abstractmethod
    def unlock(self, workspace: str, lock_id: str) -> None:
        """
        Release the workspace lock.

        Raises:
            LockedError: If the lock is held under a different id
        """
        pass

    @abstractmethod
    def lock_info(self, workspace: str) -> Optional[LockInfo]:
        """Information about the current holder, if locked."""
        pass

    @abstractmethod
    def get_current_workspace(self, default: str = "default") -> str:
        """Selected workspace name."""
        pass

    @abstractmethod
    def set_current_workspace(self, workspace: str) -> None:
        """Record the selected workspace."""
        pass

    def exists(self, workspace: str) -> bool:
        return workspace in self.workspaces()


def _check_serial(workspace: str, current: Optional[Dict[str, Any]], blob: Dict[str, Any]) -> None:
    if current is not None and blob.get("serial", 0) <= current.get("serial", 0):
        raise StateConflictError(
            f"Snapshot serial {blob.get('serial')} for workspace '{workspace}' "
            f"does not advance stored serial {current.get('serial')}"
        )


class MemoryBackend(StateBackend):
    """
    In-memory backend.

    Shared between StateStore handles in the same process; useful for tests
    and for embedding the engine.
    """

    def __init__(self):
        self._versions: Dict[str, List[Dict[str, Any]]] = {}
        self._locks: Dict[str, LockInfo] = {}
        self._current: Optional[str] = None
        self._mutex = threading.Lock()

    def read(self, workspace: str) -> Optional[Dict[str, Any]]:
        with self._mutex:
            versions = self._versions.get(workspace)
            return copy.deepcopy(versions[-1]) if versions else None

    def write(self, workspace: str, blob: Dict[str, Any]) -> None:
        with self._mutex:
            versions = self._versions.setdefault(workspace, [])
            _check_serial(workspace, versions[-1] if versions else None, blob)
            versions.append(copy.deepcopy(blob))
        logger.debug(f"Stored serial {blob.get('serial')} for workspace: {workspace}")

    def create_workspace(self, workspace: str, blob: Dict[str, Any]) -> bool:
        with self._mutex:
            if workspace in self._versions:
                return False
            self._versions[workspace] = [copy.deepcopy(blob)]
        return True

    def delete_workspace(self, workspace: str) -> bool:
        with self._mutex:
            self._locks.pop(workspace, None)
            return self._versions.pop(workspace, None) is not None

    def workspaces(self) -> List[str]:
        with self._mutex:
            return sorted(self._versions)

    def versions(self, workspace: str) -> List[int]:
        with self._mutex:
            return [v.get("serial", 0) for v in self._versions.get(workspace, [])]

    def read_version(self, workspace: str, serial: int) -> Optional[Dict[str, Any]]:
        with self._mutex:
            for version in self._versions.get(workspace, []):
                if version.get("serial") == serial:
                    return copy.deepcopy(version)
        return None

    def try_lock(self, workspace: str, info: LockInfo) -> bool:
        with self._mutex:
            if workspace in self._locks:
                return False
            self._locks[workspace] = info
            return True

    def unlock(self, workspace: str, lock_id: str) -> None:
        with self._mutex:
            holder = self._locks.get(workspace)
            if holder is None:
                return
            if holder.id != lock_id:
                raise LockedError(
                    f"Lock on workspace '{workspace}' is held under a different id",
                    holder=holder.model_dump(mode="json"),
                )
            del self._locks[workspace]

    def lock_info(self, workspace: str) -> Optional[LockInfo]:
        with self._mutex:
            return self._locks.get(workspace)

    def get_current_workspace(self, default: str = "default") -> str:
        return self._current or default

    def set_current_workspace(self, workspace: str) -> None:
        self._current = workspace


class LocalBackend(StateBackend):
    """
    Local JSON file backend.

    Directory structure:
    <state_path>/
        .workspace                  - Selected workspace name
        <workspace>/
            state.json              - Latest snapshot
            .lock                   - Lock info while locked
            history/
                <serial>.json       - Every stored version
    """

    STATE_FILE = "state.json"
    LOCK_FILE = ".lock"
    HISTORY_DIR = "history"
    CURRENT_FILE = ".workspace"

    def __init__(self, base_path: str = "./.infracore"):
        """Initialize backend with base path."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._mutex = threading.RLock()
        logger.info(f"State storage initialized at: {self.base_path.absolute()}")

    def _workspace_path(self, workspace: str) -> Path:
        return self.base_path / validate_workspace_name(workspace)

    def _write_json(self, path: Path, content: Dict[str, Any]) -> None:
        """Write JSON atomically via a temporary file in the same directory."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(content, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def read(self, workspace: str) -> Optional[Dict[str, Any]]:
        return self._read_json(self._workspace_path(workspace) / self.STATE_FILE)

    def write(self, workspace: str, blob: Dict[str, Any]) -> None:
        workspace_path = self._workspace_path(workspace)
        with self._mutex:
            _check_serial(workspace, self.read(workspace), blob)
            serial = blob.get("serial", 0)
            self._write_json(workspace_path / self.HISTORY_DIR / f"{serial}.json", blob)
            self._write_json(workspace_path / self.STATE_FILE, blob)
        logger.debug(f"Saved serial {serial} for workspace: {workspace}")

    def versions(self, workspace: str) -> List[int]:
        history = self._workspace_path(workspace) / self.HISTORY_DIR
        if not history.exists():
            return []
        return sorted(int(p.stem) for p in history.glob("*.json") if p.stem.isdigit())

    def read_version(self, workspace: str, serial: int) -> Optional[Dict[str, Any]]:
        return self._read_json(self._workspace_path(workspace) / self.HISTORY_DIR / f"{serial}.json")

    # =========================================================================
    # WORKSPACES
    # =========================================================================

    def create_workspace(self, workspace: str, blob: Dict[str, Any]) -> bool:
        workspace_path = self._workspace_path(workspace)
        with self._mutex:
            if (workspace_path / self.STATE_FILE).exists():
                return False
            workspace_path.mkdir(parents=True, exist_ok=True)
            self.write(workspace, blob)
        logger.info(f"Created workspace: {workspace}")
        return True

    def delete_workspace(self, workspace: str) -> bool:
        workspace_path = self._workspace_path(workspace)
        if workspace_path.exists():
            shutil.rmtree(workspace_path)
            logger.info(f"Deleted workspace: {workspace}")
            return True
        return False

    def workspaces(self) -> List[str]:
        if not self.base_path.exists():
            return []
        return sorted(
            d.name for d in self.base_path.iterdir()
            if d.is_dir() and not d.name.startswith(".") and (d / self.STATE_FILE).exists()
        )

    def get_current_workspace(self, default: str = "default") -> str:
        path = self.base_path / self.CURRENT_FILE
        if not path.exists():
            return default
        name = path.read_text(encoding="utf-8").strip()
        return name or default

    def set_current_workspace(self, workspace: str) -> None:
        validate_workspace_name(workspace)
        (self.base_path / self.CURRENT_FILE).write_text(workspace, encoding="utf-8")

    # =========================================================================
    # LOCKING
    # =========================================================================

    def try_lock(self, workspace: str, info: LockInfo) -> bool:
        lock_path = self._workspace_path(workspace) / self.LOCK_FILE
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.model_dump(mode="json"), f, indent=2)
        return True

    def unlock(self, workspace: str, lock_id: str) -> None:
        lock_path = self._workspace_path(workspace) / self.LOCK_FILE
        holder = self.lock_info(workspace)
        if holder is None:
            return
        if holder.id != lock_id:
            raise LockedError(
                f"Lock on workspace '{workspace}' is held under a different id",
                holder=holder.model_dump(mode="json"),
            )
        lock_path.unlink()

    def lock_info(self, workspace: str) -> Optional[LockInfo]:
        lock_path = self._workspace_path(workspace) / self.LOCK_FILE
        try:
            data = self._read_json(lock_path)
        except (OSError, json.JSONDecodeError):
            # Lock file is being written by its holder
            return LockInfo(workspace=workspace, operation="unknown")
        return LockInfo(**data) if data else None


def create_backend(backend_type: str, state_path: str = "./.infracore") -> StateBackend:
    """
    Create a state backend.

    Args:
        backend_type: "local" or "memory"
        state_path: Directory for the local backend

    Raises:
        ValueError: If backend type is unknown
    """
    if backend_type == "local":
        return LocalBackend(state_path)
    if backend_type == "memory":
        return MemoryBackend()
    raise ValueError(f"Unknown backend type: {backend_type}. Available: ['local', 'memory']")

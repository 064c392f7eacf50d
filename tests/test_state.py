"""Unit tests for the state store and its lock."""

import threading

import pytest
from pydantic import ValidationError

from infracore.errors import (
    AddressConflictError,
    LockedError,
    LockTimeoutError,
    NotFoundError,
    StateError,
)
from infracore.models import ResourceRecord
from infracore.state import StateLock, StateStore
from infracore.storage import LocalBackend


def make_record(address, resource_type="fake_bucket", **attributes):
    return ResourceRecord(
        address=address,
        type=resource_type,
        provider="fake",
        attributes=attributes or {"id": address},
    )


@pytest.fixture
def store(backend):
    return StateStore(backend, "default", lock_timeout=0.2, lock_poll_interval=0.01)


@pytest.fixture
def populated(store):
    """Store holding a module and two root buckets."""
    with store.lock():
        store.put("module.net.fake_vpc.vpc", make_record("module.net.fake_vpc.vpc", "fake_vpc"))
        store.put(
            "module.net.fake_subnet.subnet",
            make_record("module.net.fake_subnet.subnet", "fake_subnet").model_copy(
                update={"dependencies": ["module.net.fake_vpc.vpc"]}
            ),
        )
        store.put("fake_bucket.a", make_record("fake_bucket.a"))
        store.put("fake_bucket.b[0]", make_record("fake_bucket.b[0]"))
    return store


class TestInitialization:
    """Test workspace bootstrapping."""

    def test_missing_workspace_starts_at_serial_zero(self, store, backend):
        assert store.serial == 0
        assert store.list() == []
        assert backend.read("default")["serial"] == 0

    def test_existing_workspace_is_loaded(self, populated, backend):
        other = StateStore(backend, "default")

        assert other.serial == populated.serial
        assert other.list() == populated.list()
        assert other.lineage == populated.lineage


class TestLocking:
    """Test lock discipline."""

    def test_mutation_requires_lock(self, store):
        with pytest.raises(LockedError):
            store.put("fake_bucket.a", make_record("fake_bucket.a"))

    def test_persist_requires_lock(self, store):
        with pytest.raises(LockedError):
            store.persist()

    def test_second_handle_times_out(self, store, backend):
        """A second store handle cannot acquire a held lock."""
        other = StateStore(backend, "default", lock_timeout=0.05, lock_poll_interval=0.01)

        with store.lock():
            with pytest.raises(LockTimeoutError) as exc_info:
                with other.lock():
                    pass
            assert exc_info.value.holder["operation"] == "apply"

    def test_second_handle_cannot_mutate_while_locked(self, store, backend):
        other = StateStore(backend, "default")

        with store.lock():
            with pytest.raises(LockedError, match="locked by another holder"):
                other.remove("fake_bucket.a")

    def test_lock_is_reentrant_for_same_handle(self, store):
        with store.lock():
            with store.lock():
                store.put("fake_bucket.a", make_record("fake_bucket.a"))
            assert store.is_locked
        assert not store.is_locked
        assert store.list() == ["fake_bucket.a"]

    def test_waiting_handle_gets_lock_after_release(self, backend):
        first = StateStore(backend, "default")
        second = StateStore(backend, "default", lock_timeout=2.0, lock_poll_interval=0.01)
        acquired = threading.Event()
        release = threading.Event()

        def hold():
            with first.lock():
                acquired.set()
                release.wait(1.0)

        holder = threading.Thread(target=hold)
        holder.start()
        acquired.wait(1.0)
        release.set()

        with second.lock():
            second.put("fake_bucket.a", make_record("fake_bucket.a"))
        holder.join()

        assert StateStore(backend, "default").list() == ["fake_bucket.a"]

    def test_state_lock_standalone(self, backend):
        lock = StateLock(backend, "default", timeout=0.05, poll_interval=0.01)

        with lock as info:
            assert backend.lock_info("default").id == info.id
        assert backend.lock_info("default") is None

    def test_force_unlock(self, store, backend):
        stale = StateLock(backend, "default", operation="crashed")
        info = stale.acquire()

        store.force_unlock(info.id)

        with store.lock(timeout=0.05):
            pass


class TestPersistence:
    """Test versioned checkpoints."""

    def test_lock_exit_persists_once(self, store):
        with store.lock():
            store.put("fake_bucket.a", make_record("fake_bucket.a"))
            store.put("fake_bucket.b", make_record("fake_bucket.b"))

        assert store.serial == 1
        assert store.history() == [0, 1]

    def test_explicit_persist_increments_serial(self, store):
        with store.lock():
            store.put("fake_bucket.a", make_record("fake_bucket.a"))
            assert store.persist() == 1
            assert store.persist() == 1
            store.remove("fake_bucket.a")
            assert store.persist() == 2

        assert store.load_version(1).resources["fake_bucket.a"].type == "fake_bucket"

    def test_exception_discards_uncommitted_changes(self, populated):
        serial = populated.serial

        with pytest.raises(RuntimeError):
            with populated.lock():
                populated.remove("fake_bucket.a")
                raise RuntimeError("boom")

        assert populated.exists("fake_bucket.a")
        assert populated.serial == serial

    def test_snapshot_is_a_copy(self, populated):
        snapshot = populated.snapshot()
        snapshot.resources["fake_bucket.a"].attributes["id"] = "changed"

        assert populated.get("fake_bucket.a").attributes["id"] == "fake_bucket.a"

    def test_snapshot_mappings_are_detached(self, populated):
        snapshot = populated.snapshot()
        snapshot.resources.clear()
        snapshot.outputs["injected"] = 1

        assert populated.exists("fake_bucket.a")
        assert "injected" not in populated.outputs
        with pytest.raises(ValidationError):
            snapshot.serial = 99

    def test_local_backend_history(self, tmp_path):
        store = StateStore(LocalBackend(str(tmp_path)), "default")
        for name in ("a", "b"):
            with store.lock():
                store.put(f"fake_bucket.{name}", make_record(f"fake_bucket.{name}"))

        assert store.history() == [0, 1, 2]
        assert (tmp_path / "default" / "history" / "2.json").exists()

    def test_concurrent_puts_from_threads(self, store):
        """Workers may record resources concurrently under one lock."""
        with store.lock():
            threads = [
                threading.Thread(
                    target=store.put,
                    args=(f"fake_bucket.b{i}", make_record(f"fake_bucket.b{i}")),
                )
                for i in range(20)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        assert len(store.list()) == 20


class TestQueries:
    """Test reads."""

    def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            store.get("fake_bucket.nope")

    def test_list_by_module(self, populated):
        assert populated.list("module.net") == [
            "module.net.fake_vpc.vpc",
            "module.net.fake_subnet.subnet",
        ]

    def test_list_by_resource_key(self, populated):
        assert populated.list("fake_bucket.b") == ["fake_bucket.b[0]"]


class TestMutations:
    """Test state manipulation commands."""

    def test_move_preserves_record(self, populated):
        before = populated.get("fake_bucket.a")

        with populated.lock():
            populated.move("fake_bucket.a", "fake_bucket.renamed")

        after = populated.get("fake_bucket.renamed")
        assert after.address == "fake_bucket.renamed"
        assert after.attributes == before.attributes
        assert after.dependencies == before.dependencies
        assert not populated.exists("fake_bucket.a")

    def test_move_to_existing_address_conflicts(self, populated):
        serial = populated.serial

        with pytest.raises(AddressConflictError):
            with populated.lock():
                populated.move("fake_bucket.a", "fake_bucket.b[0]")

        assert populated.exists("fake_bucket.a")
        assert populated.exists("fake_bucket.b[0]")
        assert populated.serial == serial

    def test_move_missing_source(self, populated):
        with populated.lock():
            with pytest.raises(NotFoundError):
                populated.move("fake_bucket.nope", "fake_bucket.x")

    def test_move_cannot_change_type(self, populated):
        with populated.lock():
            with pytest.raises(StateError):
                populated.move("fake_bucket.a", "fake_vpc.a")

    def test_move_module_moves_every_record(self, populated):
        with populated.lock():
            moved = populated.move("module.net", "module.network")

        assert moved == ["module.network.fake_vpc.vpc", "module.network.fake_subnet.subnet"]
        assert populated.list("module.net") == []
        subnet = populated.get("module.network.fake_subnet.subnet")
        assert subnet.dependencies == ["module.network.fake_vpc.vpc"]

    def test_remove(self, populated):
        with populated.lock():
            removed = populated.remove("fake_bucket.a")

        assert removed.address == "fake_bucket.a"
        assert not populated.exists("fake_bucket.a")

    def test_taint_and_untaint(self, populated):
        with populated.lock():
            populated.taint("fake_bucket.a")
        assert populated.get("fake_bucket.a").tainted is True

        with populated.lock():
            populated.untaint("fake_bucket.a")
        assert populated.get("fake_bucket.a").tainted is False

    def test_taint_missing(self, populated):
        with populated.lock():
            with pytest.raises(NotFoundError):
                populated.taint("fake_bucket.nope")

    def test_invalid_address(self, store):
        with store.lock():
            with pytest.raises(StateError):
                store.put("not an address", make_record("x.y"))

    def test_set_outputs(self, store):
        with store.lock():
            store.set_outputs({"vpc_id": "vpc-1"})

        assert store.outputs == {"vpc_id": "vpc-1"}
        assert store.serial == 1

"""End-to-end tests for the engine facade."""

import threading

import pytest

from infracore.errors import (
    ApplyError,
    DriftDetectedError,
    LockedError,
    LockTimeoutError,
    NotFoundError,
    StalePlanError,
    WorkspaceError,
)
from infracore.models import ApplyStatus, ChangeAction
from infracore.providers import FakeCloudProvider
from infracore.service import Engine
from infracore.state import StateLock, StateStore


@pytest.fixture
def applied(engine, network_yaml):
    """Engine with the network configuration applied."""
    engine.apply(engine.load(network_yaml))
    return engine


def bucket_id(engine, address="fake_bucket.logs"):
    return engine.store().get(address).attributes["id"]


class CancelOnReadProvider(FakeCloudProvider):
    """Cancels the running apply from inside the refresh."""

    engine = None

    def read(self, resource_type, attributes):
        if self.engine is not None:
            self.engine.cancel()
        return super().read(resource_type, attributes)


class TestApply:
    """Test plan and apply against a fresh workspace."""

    def test_apply_creates_everything(self, engine, provider, network_yaml):
        summary = engine.apply(engine.load(network_yaml))

        assert summary.status == ApplyStatus.COMPLETED
        assert summary.total == 4
        assert len(provider.objects()) == 4
        assert engine.state_list() == [
            "module.net.fake_vpc.vpc",
            "module.net.fake_subnet.subnet",
            "fake_instance.web[0]",
            "fake_instance.web[1]",
        ]

    def test_second_plan_is_empty(self, applied, network_yaml):
        plan = applied.plan(applied.load(network_yaml))

        assert plan.is_empty
        assert all(c.action == ChangeAction.NOOP for c in plan.changes)

    def test_second_apply_changes_nothing(self, applied, provider, network_yaml):
        operations = len(provider.operations)
        summary = applied.apply(applied.load(network_yaml))

        assert summary.total == 0
        assert len(provider.operations) == operations

    def test_outputs(self, applied):
        vpc_id = applied.state_show("module.net.fake_vpc.vpc").attributes["id"]

        assert applied.output() == {"vpc_id": vpc_id}
        assert applied.output("vpc_id") == vpc_id
        with pytest.raises(KeyError):
            applied.output("missing")

    def test_variable_change_updates_in_place(self, applied, network_yaml):
        config = applied.load(network_yaml, variables={"env": "prod"})
        plan = applied.plan(config)

        change = plan.get_change("module.net.fake_vpc.vpc")
        assert change.action == ChangeAction.UPDATE
        assert [(d.name, d.after) for d in change.attribute_changes] == [("name", "prod-vpc")]

        applied.apply(config)
        assert applied.state_show("module.net.fake_vpc.vpc").attributes["name"] == "prod-vpc"

    def test_scaling_down_deletes_orphans(self, applied, provider, network_yaml):
        config = applied.load(network_yaml, variables={"instance_count": 1})
        plan = applied.plan(config)

        change = plan.get_change("fake_instance.web[1]")
        assert change.action == ChangeAction.DELETE
        assert change.reason == "orphaned"

        applied.apply(config)
        assert applied.state_list("fake_instance.web") == ["fake_instance.web[0]"]
        assert len(provider.objects("fake_instance")) == 1

    def test_saved_plan_applies(self, engine, buckets_yaml):
        config = engine.load(buckets_yaml)
        plan = engine.plan(config)

        summary = engine.apply(config, plan=plan)

        assert summary.completed == 3

    def test_stale_plan_rejected(self, engine, buckets_yaml):
        config = engine.load(buckets_yaml)
        plan = engine.plan(config)
        engine.apply(config)

        with pytest.raises(StalePlanError):
            engine.apply(config, plan=plan)

    def test_failure_raises_with_summary(self, engine, provider, buckets_yaml):
        provider.fail_on("fake_bucket.logs", "access denied")

        with pytest.raises(ApplyError) as exc_info:
            engine.apply(engine.load(buckets_yaml))

        summary = exc_info.value.summary
        assert summary.status == ApplyStatus.FAILED
        assert summary.completed == 2
        assert exc_info.value.errors == ["fake_bucket.logs: access denied"]
        assert not engine.store().exists("fake_bucket.logs")

    def test_retry_after_failure(self, engine, provider, buckets_yaml):
        provider.fail_on("fake_bucket.logs")
        with pytest.raises(ApplyError):
            engine.apply(engine.load(buckets_yaml))

        provider.clear_failures()
        plan = engine.plan(engine.load(buckets_yaml))

        assert [c.address for c in plan.actionable] == ["fake_bucket.logs"]

    def test_apply_waits_for_lock(self, engine, backend, buckets_yaml):
        other = StateStore(backend, "default")
        config = engine.load(buckets_yaml)

        with other.lock(operation="manual"):
            with pytest.raises(LockTimeoutError) as exc_info:
                engine.apply(config)

        assert exc_info.value.holder["operation"] == "manual"
        assert engine.state_list() == []

    def test_providers_created_from_registry(self, settings, backend, buckets_yaml):
        engine = Engine(settings=settings, backend=backend)
        engine.load(buckets_yaml)
        provider = engine.providers["fake"]

        engine.load(buckets_yaml)

        assert isinstance(provider, FakeCloudProvider)
        assert engine.providers["fake"] is provider


class TestValidate:
    """Test configuration validation reporting."""

    def test_unknown_provider_lists_registered_ones(self, engine):
        result = engine.validate(
            "resources:\n"
            "  - {type: nocloud_thing, name: a}\n"
        )

        assert not result.valid
        assert "Unknown provider: nocloud" in result.errors[0]
        assert "fake" in result.errors[0]

    def test_valid_configuration(self, engine, network_yaml):
        result = engine.validate(network_yaml)

        assert result.valid
        assert "fake_instance.web[1]" in result.resources

    def test_schema_problems_reported(self, engine):
        result = engine.validate(
            """
resources:
  - type: fake_bucket
    name: logs
    attributes:
      versioning: "yes"
      color: blue
"""
        )

        assert not result.valid
        assert any("color" in error for error in result.errors)
        assert any("missing required attribute 'bucket'" in error for error in result.errors)

    def test_unknown_reference_reported(self, engine):
        result = engine.validate(
            """
resources:
  - type: fake_subnet
    name: app
    attributes:
      vpc_id: ${fake_vpc.missing.id}
      cidr_block: 10.0.1.0/24
"""
        )

        assert not result.valid
        assert any("fake_vpc.missing" in error for error in result.errors)


class TestDrift:
    """Test refresh and drift detection."""

    def test_drift_blocks_plan(self, engine, provider, buckets_yaml):
        config = engine.load(buckets_yaml)
        engine.apply(config)
        provider.simulate_drift(bucket_id(engine), versioning=False)

        with pytest.raises(DriftDetectedError) as exc_info:
            engine.plan(config)

        drift = exc_info.value.drifts[0]
        assert drift.address == "fake_bucket.logs"
        assert drift.attribute == "versioning"
        assert (drift.recorded, drift.actual) == (True, False)

    def test_plan_without_refresh_ignores_drift(self, engine, provider, buckets_yaml):
        config = engine.load(buckets_yaml)
        engine.apply(config)
        provider.simulate_drift(bucket_id(engine), versioning=False)

        assert engine.plan(config, refresh=False).is_empty

    def test_refresh_accepts_drift_then_plan_corrects_it(self, engine, provider, buckets_yaml):
        config = engine.load(buckets_yaml)
        engine.apply(config)
        provider.simulate_drift(bucket_id(engine), versioning=False)

        drifts = engine.refresh()
        assert len(drifts) == 1
        assert engine.state_show("fake_bucket.logs").attributes["versioning"] is False

        plan = engine.plan(config)
        assert plan.get_change("fake_bucket.logs").action == ChangeAction.UPDATE

        engine.apply(config)
        assert provider.read("fake_bucket", {"id": bucket_id(engine)})["versioning"] is True

    def test_refresh_forgets_deleted_resources(self, engine, provider, buckets_yaml):
        config = engine.load(buckets_yaml)
        engine.apply(config)
        provider.simulate_delete(bucket_id(engine))

        engine.refresh()

        assert not engine.store().exists("fake_bucket.logs")
        assert engine.plan(config).get_change("fake_bucket.logs").action == ChangeAction.CREATE


class TestDestroy:
    """Test full teardown."""

    def test_destroy_plan(self, applied):
        plan = applied.plan(destroy=True)

        assert [c.address for c in plan.changes] == [
            "fake_instance.web[1]",
            "fake_instance.web[0]",
            "module.net.fake_subnet.subnet",
            "module.net.fake_vpc.vpc",
        ]
        assert {c.reason for c in plan.changes} == {"destroy"}

    def test_destroy_removes_everything(self, applied, provider):
        summary = applied.destroy()

        assert summary.status == ApplyStatus.COMPLETED
        assert summary.completed == 4
        assert applied.state_list() == []
        assert provider.objects() == []
        assert applied.output() == {}
        ops = [address for kind, address in provider.operations if kind == "delete"]
        assert ops.index("module.net.fake_subnet.subnet") < ops.index("module.net.fake_vpc.vpc")
        assert ops.index("fake_instance.web[0]") < ops.index("module.net.fake_subnet.subnet")

    def test_destroy_empty_workspace(self, engine):
        summary = engine.destroy()

        assert summary.status == ApplyStatus.COMPLETED
        assert summary.total == 0


class TestStateCommands:
    """Test state inspection and manipulation."""

    def test_show_missing(self, engine):
        with pytest.raises(NotFoundError):
            engine.state_show("fake_bucket.nope")

    def test_rm_forgets_without_destroying(self, engine, provider, buckets_yaml):
        config = engine.load(buckets_yaml)
        engine.apply(config)

        engine.state_rm("fake_bucket.logs")

        assert len(provider.objects("fake_bucket")) == 3
        assert engine.plan(config).get_change("fake_bucket.logs").action == ChangeAction.CREATE

    def test_mv_then_plan(self, engine, buckets_yaml):
        config = engine.load(buckets_yaml)
        engine.apply(config)
        before = engine.state_show("fake_bucket.logs")

        assert engine.state_mv("fake_bucket.logs", "fake_bucket.audit") == ["fake_bucket.audit"]

        moved = engine.state_show("fake_bucket.audit")
        assert moved.attributes == before.attributes
        plan = engine.plan(config)
        assert plan.get_change("fake_bucket.logs").action == ChangeAction.CREATE
        assert plan.get_change("fake_bucket.audit").action == ChangeAction.DELETE

    def test_mv_module(self, applied, network_yaml):
        moved = applied.state_mv("module.net", "module.network")

        assert moved == [
            "module.network.fake_vpc.vpc",
            "module.network.fake_subnet.subnet",
        ]
        assert applied.state_list("module.net") == []

    def test_taint_forces_replace(self, engine, buckets_yaml):
        config = engine.load(buckets_yaml)
        engine.apply(config)

        engine.taint("fake_bucket.logs")
        plan = engine.plan(config)
        assert plan.get_change("fake_bucket.logs").action == ChangeAction.REPLACE
        assert plan.get_change("fake_bucket.logs").reason == "tainted"

        engine.untaint("fake_bucket.logs")
        assert engine.plan(config).is_empty

    def test_force_unlock(self, engine, backend, buckets_yaml):
        info = StateLock(backend, "default", operation="crashed").acquire()

        engine.force_unlock(info.id)

        engine.apply(engine.load(buckets_yaml))
        assert len(engine.state_list()) == 3


class TestWorkspaces:
    """Test workspace management."""

    def test_default_workspace_listed(self, engine):
        workspaces = engine.workspace_list()

        assert [w.name for w in workspaces] == ["default"]
        assert workspaces[0].is_current

    def test_new_workspace_is_selected_and_isolated(self, engine, buckets_yaml):
        engine.apply(engine.load(buckets_yaml))

        info = engine.workspace_new("staging")

        assert info.is_current
        assert engine.workspace == "staging"
        assert engine.state_list() == []
        assert engine.plan(engine.load(buckets_yaml)).summary()["create"] == 3

    def test_duplicate_workspace(self, engine):
        engine.workspace_new("staging")

        with pytest.raises(WorkspaceError):
            engine.workspace_new("staging")

    def test_select(self, engine):
        engine.workspace_new("staging")
        engine.workspace_select("default")

        assert engine.workspace == "default"
        with pytest.raises(WorkspaceError):
            engine.workspace_select("missing")

    def test_list_reports_counts(self, engine, buckets_yaml):
        engine.workspace_new("staging")
        engine.apply(engine.load(buckets_yaml))

        infos = {w.name: w for w in engine.workspace_list()}

        assert sorted(infos) == ["default", "staging"]
        assert infos["staging"].resource_count == 3
        assert infos["staging"].is_current
        assert not infos["default"].is_current

    def test_delete_rules(self, engine, buckets_yaml):
        engine.workspace_new("staging")
        engine.apply(engine.load(buckets_yaml))

        with pytest.raises(WorkspaceError, match="currently selected"):
            engine.workspace_delete("staging")

        engine.workspace_select("default")
        with pytest.raises(WorkspaceError, match="still records"):
            engine.workspace_delete("staging")
        with pytest.raises(WorkspaceError):
            engine.workspace_delete("missing")

        engine.workspace_delete("staging", force=True)
        assert [w.name for w in engine.workspace_list()] == ["default"]

    def test_default_cannot_be_deleted(self, engine):
        engine.workspace_new("staging")

        with pytest.raises(WorkspaceError, match="default"):
            engine.workspace_delete("default")

    def test_invalid_name(self, engine):
        with pytest.raises(WorkspaceError):
            engine.workspace_new("../escape")


class TestInit:
    """Test workspace preparation and file loading."""

    def test_init_creates_default_workspace(self, engine, backend):
        info = engine.init()

        assert info.name == "default"
        assert info.serial == 0
        assert backend.read("default") is not None

    def test_load_file_with_module_source(self, engine, tmp_path):
        (tmp_path / "modules").mkdir()
        (tmp_path / "modules" / "bucket.yaml").write_text(
            "variables:\n"
            "  name: {type: string}\n"
            "resources:\n"
            "  - type: fake_bucket\n"
            "    name: this\n"
            "    attributes: {bucket: '${var.name}'}\n"
            "outputs:\n"
            "  arn: {value: '${fake_bucket.this.arn}'}\n"
        )
        main = tmp_path / "main.yaml"
        main.write_text(
            "modules:\n"
            "  assets:\n"
            "    source: modules/bucket.yaml\n"
            "    inputs: {name: assets}\n"
            "outputs:\n"
            "  assets_arn: {value: '${module.assets.arn}'}\n"
        )

        summary = engine.apply(engine.load_file(str(main)))

        assert summary.completed == 1
        assert engine.output("assets_arn").startswith("arn:fake:")
        assert engine.state_show("module.assets.fake_bucket.this").attributes["bucket"] == "assets"


class TestConcurrentApply:
    """Test serialization of applies against one workspace."""

    def test_concurrent_applies_do_not_duplicate(self, settings, backend, buckets_yaml):
        provider = FakeCloudProvider(latency=0.05)
        engine = Engine(settings=settings, backend=backend, providers={"fake": provider})
        config = engine.load(buckets_yaml)
        outcomes = []

        def apply():
            try:
                outcomes.append(engine.apply(config).total)
            except LockedError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=apply) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        totals = sorted(o for o in outcomes if isinstance(o, int))
        assert totals in ([0, 3], [3])
        assert len(provider.objects("fake_bucket")) == 3
        assert len(engine.state_list()) == 3


class TestCancel:
    """Test cancellation requested while an apply is still planning."""

    @pytest.fixture
    def cancelling(self, settings, backend, buckets_yaml):
        provider = CancelOnReadProvider()
        engine = Engine(settings=settings, backend=backend, providers={"fake": provider})
        config = engine.load(buckets_yaml)
        engine.apply(config)
        engine.state_rm("fake_bucket.logs")
        return engine, provider, config

    def test_cancel_during_refresh_stops_apply(self, cancelling):
        engine, provider, config = cancelling
        provider.engine = engine
        operations_before = list(provider.operations)

        summary = engine.apply(config)

        assert summary.status == ApplyStatus.CANCELLED
        assert summary.cancelled == summary.total == 1
        assert summary.results[0].address == "fake_bucket.logs"
        assert provider.operations == operations_before
        assert len(provider.objects("fake_bucket")) == 3
        assert not engine.store().exists("fake_bucket.logs")

    def test_cancel_does_not_leak_into_next_apply(self, cancelling):
        engine, provider, config = cancelling
        provider.engine = engine
        assert engine.apply(config).status == ApplyStatus.CANCELLED

        provider.engine = None
        summary = engine.apply(config)

        assert summary.status == ApplyStatus.COMPLETED
        assert engine.store().exists("fake_bucket.logs")

    def test_cancel_without_running_apply_is_ignored(self, engine, buckets_yaml):
        engine.cancel()

        summary = engine.apply(engine.load(buckets_yaml))

        assert summary.status == ApplyStatus.COMPLETED
        assert summary.completed == 3

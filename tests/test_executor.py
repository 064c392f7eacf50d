"""Unit tests for the apply executor."""

import threading

import pytest

from infracore.engine.executor import ApplyExecutor
from infracore.models import ApplyStatus, ChangeAction, ResultStatus
from infracore.providers import FakeCloudProvider
from infracore.service import Engine


MANY_BUCKETS_YAML = """
resources:
  - type: fake_bucket
    name: data
    for_each: [a, b, c, d, e, f]
    attributes:
      bucket: data-${each.key}
"""


class CancellingProvider(FakeCloudProvider):
    """Requests cancellation as soon as its first operation completes."""

    def __init__(self, event, **settings):
        super().__init__(**settings)
        self.event = event

    def apply(self, request):
        response = super().apply(request)
        self.event.set()
        return response


def run(engine, config, plan, parallelism=4, cancel_event=None):
    store = engine.store()
    with store.lock():
        executor = ApplyExecutor(
            store, engine.providers, parallelism=parallelism, cancel_event=cancel_event
        )
        return executor.execute(plan, config)


def results_by_address(summary):
    return {r.address: r for r in summary.results}


class TestExecution:
    """Test ordering and recording of operations."""

    def test_dependencies_run_first(self, engine, provider, network_yaml):
        config = engine.load(network_yaml)
        summary = run(engine, config, engine.plan(config))

        assert summary.status == ApplyStatus.COMPLETED
        assert summary.completed == 4
        created = [address for kind, address in provider.operations]
        assert created.index("module.net.fake_vpc.vpc") < created.index("module.net.fake_subnet.subnet")
        assert created.index("module.net.fake_subnet.subnet") < created.index("fake_instance.web[0]")
        assert created.index("module.net.fake_subnet.subnet") < created.index("fake_instance.web[1]")

    def test_resolved_values_are_recorded(self, engine, network_yaml):
        config = engine.load(network_yaml)
        run(engine, config, engine.plan(config))

        store = engine.store()
        vpc = store.get("module.net.fake_vpc.vpc")
        subnet = store.get("module.net.fake_subnet.subnet")
        web = store.get("fake_instance.web[1]")
        assert subnet.attributes["vpc_id"] == vpc.attributes["id"]
        assert web.attributes["subnet_id"] == subnet.attributes["id"]
        assert web.attributes["tags"] == {"Name": "web-1"}
        assert subnet.dependencies == ["module.net.fake_vpc.vpc"]

    def test_state_checkpointed_per_operation(self, engine, buckets_yaml):
        config = engine.load(buckets_yaml)
        summary = run(engine, config, engine.plan(config))

        assert summary.state_serial == 3
        assert engine.store().history() == [0, 1, 2, 3]

    def test_outputs_recorded(self, engine, network_yaml):
        config = engine.load(network_yaml)
        summary = run(engine, config, engine.plan(config))

        vpc_id = engine.store().get("module.net.fake_vpc.vpc").attributes["id"]
        assert summary.outputs == {"vpc_id": vpc_id}
        assert engine.store().outputs == {"vpc_id": vpc_id}

    def test_invalid_parallelism(self, engine):
        with pytest.raises(ValueError):
            ApplyExecutor(engine.store(), engine.providers, parallelism=0)


class TestFailureIsolation:
    """Test that failures only affect dependents."""

    def test_failure_skips_dependents(self, engine, provider, network_yaml):
        provider.fail_on("module.net.fake_subnet.subnet", "quota exceeded")
        config = engine.load(network_yaml)
        summary = run(engine, config, engine.plan(config))

        results = results_by_address(summary)
        assert summary.status == ApplyStatus.FAILED
        assert results["module.net.fake_vpc.vpc"].status == ResultStatus.COMPLETED
        assert results["module.net.fake_subnet.subnet"].status == ResultStatus.FAILED
        assert results["module.net.fake_subnet.subnet"].error_message == "quota exceeded"
        assert results["fake_instance.web[0]"].status == ResultStatus.SKIPPED
        assert results["fake_instance.web[1]"].status == ResultStatus.SKIPPED
        assert engine.store().list() == ["module.net.fake_vpc.vpc"]

    def test_failure_does_not_stop_independent_work(self, engine, provider, buckets_yaml):
        provider.fail_on("fake_bucket.logs")
        config = engine.load(buckets_yaml)
        summary = run(engine, config, engine.plan(config))

        assert summary.failed == 1
        assert summary.completed == 2
        assert sorted(engine.store().list("fake_bucket.data")) == [
            'fake_bucket.data["curated"]',
            'fake_bucket.data["raw"]',
        ]

    def test_output_of_failed_resource_is_none(self, engine, provider, network_yaml):
        provider.fail_on("module.net.fake_vpc.vpc")
        config = engine.load(network_yaml)
        summary = run(engine, config, engine.plan(config))

        assert summary.outputs == {"vpc_id": None}
        assert summary.skipped == 3


class TestConcurrency:
    """Test the parallelism bound and cancellation."""

    def test_parallelism_bound(self, settings, backend):
        provider = FakeCloudProvider(latency=0.05)
        engine = Engine(settings=settings, backend=backend, providers={"fake": provider})
        config = engine.load(MANY_BUCKETS_YAML)

        summary = run(engine, config, engine.plan(config), parallelism=2)

        assert summary.completed == 6
        assert 1 <= provider.max_in_flight <= 2

    def test_serial_execution(self, settings, backend):
        provider = FakeCloudProvider(latency=0.01)
        engine = Engine(settings=settings, backend=backend, providers={"fake": provider})
        config = engine.load(MANY_BUCKETS_YAML)

        run(engine, config, engine.plan(config), parallelism=1)

        assert provider.max_in_flight == 1

    def test_cancel_before_start(self, engine, provider, buckets_yaml):
        config = engine.load(buckets_yaml)
        plan = engine.plan(config)
        store = engine.store()

        with store.lock():
            executor = ApplyExecutor(store, engine.providers)
            executor.cancel()
            summary = executor.execute(plan, config)

        assert summary.status == ApplyStatus.CANCELLED
        assert summary.cancelled == 3
        assert provider.operations == []
        assert store.list() == []

    def test_cancel_keeps_completed_operations(self, settings, backend):
        event = threading.Event()
        provider = CancellingProvider(event)
        engine = Engine(settings=settings, backend=backend, providers={"fake": provider})
        config = engine.load(MANY_BUCKETS_YAML)

        summary = run(engine, config, engine.plan(config), parallelism=1, cancel_event=event)

        assert summary.status == ApplyStatus.CANCELLED
        assert summary.completed == 1
        assert summary.cancelled == 5
        assert engine.store().list() == ['fake_bucket.data["a"]']


class TestReplacement:
    """Test destroy-and-recreate ordering."""

    def test_replace_deletes_before_create(self, engine, provider, buckets_yaml):
        engine.apply(engine.load(buckets_yaml))
        old_id = engine.store().get("fake_bucket.logs").attributes["id"]

        changed = buckets_yaml.replace("logs-bucket", "audit-bucket")
        config = engine.load(changed)
        plan = engine.plan(config)
        assert plan.get_change("fake_bucket.logs").action == ChangeAction.REPLACE

        del provider.operations[:]
        summary = run(engine, config, plan)

        assert summary.status == ApplyStatus.COMPLETED
        assert provider.operations == [
            ("delete", "fake_bucket.logs"),
            ("create", "fake_bucket.logs"),
        ]
        record = engine.store().get("fake_bucket.logs")
        assert record.attributes["bucket"] == "audit-bucket"
        assert record.attributes["id"] != old_id

    def test_replace_propagates_in_dependency_order(self, engine, provider, network_yaml):
        """Tainting the VPC replaces the whole chain without violating references."""
        config = engine.load(network_yaml)
        engine.apply(config)
        engine.taint("module.net.fake_vpc.vpc")

        plan = engine.plan(config)
        assert {c.address for c in plan.changes if c.action == ChangeAction.REPLACE} == {
            "module.net.fake_vpc.vpc",
            "module.net.fake_subnet.subnet",
            "fake_instance.web[0]",
            "fake_instance.web[1]",
        }

        del provider.operations[:]
        summary = run(engine, config, plan)

        assert summary.status == ApplyStatus.COMPLETED
        ops = provider.operations
        assert ops.index(("delete", "module.net.fake_subnet.subnet")) < ops.index(("delete", "module.net.fake_vpc.vpc"))
        assert ops.index(("delete", "fake_instance.web[0]")) < ops.index(("delete", "module.net.fake_subnet.subnet"))
        assert ops.index(("create", "module.net.fake_vpc.vpc")) < ops.index(("create", "module.net.fake_subnet.subnet"))
        assert len(provider.objects()) == 4
        assert not engine.store().get("module.net.fake_vpc.vpc").tainted

    def test_build_graph_for_replace(self, engine, buckets_yaml):
        engine.apply(engine.load(buckets_yaml))
        engine.taint("fake_bucket.logs")
        config = engine.load(buckets_yaml)
        plan = engine.plan(config)

        graph = ApplyExecutor(engine.store(), engine.providers).build_graph(plan)

        assert graph.order == ["delete:fake_bucket.logs", "create:fake_bucket.logs"]
        assert graph.dependencies_of("create:fake_bucket.logs") == ["delete:fake_bucket.logs"]

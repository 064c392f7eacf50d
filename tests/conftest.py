"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- settings: Engine settings for fast, in-memory runs
- backend: Fresh in-memory state backend
- provider: Fresh simulated cloud provider
- engine: Engine wired to the backend and provider above
- network_yaml: Module-based sample configuration
"""

import pytest

from infracore.providers import FakeCloudProvider
from infracore.service import Engine
from infracore.settings import EngineSettings
from infracore.storage import MemoryBackend


NETWORK_YAML = """
variables:
  env:
    type: string
    default: dev
  instance_count:
    type: number
    default: 2

providers:
  fake:
    region: test-1

modules:
  net:
    inputs:
      cidr: 10.0.0.0/16
      env: ${var.env}
    variables:
      cidr:
        type: string
      env:
        type: string
    resources:
      - type: fake_vpc
        name: vpc
        attributes:
          cidr_block: ${var.cidr}
          name: ${var.env}-vpc
      - type: fake_subnet
        name: subnet
        attributes:
          vpc_id: ${fake_vpc.vpc.id}
          cidr_block: 10.0.1.0/24
    outputs:
      vpc_id:
        value: ${fake_vpc.vpc.id}
      subnet_id:
        value: ${fake_subnet.subnet.id}

resources:
  - type: fake_instance
    name: web
    count: ${var.instance_count}
    attributes:
      ami: ami-123
      instance_type: small
      subnet_id: ${module.net.subnet_id}
      tags:
        Name: web-${count.index}

outputs:
  vpc_id:
    value: ${module.net.vpc_id}
"""

BUCKETS_YAML = """
resources:
  - type: fake_bucket
    name: logs
    attributes:
      bucket: logs-bucket
      versioning: true
  - type: fake_bucket
    name: data
    for_each: [raw, curated]
    attributes:
      bucket: data-${each.key}
"""


@pytest.fixture
def settings() -> EngineSettings:
    """Settings with short lock timeouts and the memory backend."""
    return EngineSettings(
        backend="memory",
        workspace="default",
        lock_timeout=0.3,
        lock_poll_interval=0.01,
        parallelism=4,
        refresh_before_plan=True,
    )


@pytest.fixture
def backend() -> MemoryBackend:
    """Return a fresh in-memory backend."""
    return MemoryBackend()


@pytest.fixture
def provider() -> FakeCloudProvider:
    """Return a fresh simulated cloud."""
    return FakeCloudProvider()


@pytest.fixture
def engine(settings, backend, provider) -> Engine:
    """Engine sharing the backend and provider fixtures."""
    return Engine(settings=settings, backend=backend, providers={"fake": provider})


@pytest.fixture
def network_yaml() -> str:
    """Return the module-based network configuration."""
    return NETWORK_YAML


@pytest.fixture
def buckets_yaml() -> str:
    """Return a configuration without dependencies."""
    return BUCKETS_YAML

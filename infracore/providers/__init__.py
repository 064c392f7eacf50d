"""
infracore - Providers Package

Provider interfaces and implementations for provisioning resources.
The provider pattern allows swapping between the simulated cloud and real
provider integrations.
"""

from infracore.providers.base import (
    ApplyRequest,
    ApplyResponse,
    AttributeSchema,
    Provider,
    ProviderRegistry,
    ResourceSchema,
)
from infracore.providers.fake import FakeCloudProvider

__all__ = [
    "ApplyRequest",
    "ApplyResponse",
    "AttributeSchema",
    "Provider",
    "ProviderRegistry",
    "ResourceSchema",
    "FakeCloudProvider",
]

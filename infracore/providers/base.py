"""
infracore - Base Provider Interface

Defines the abstract interface that all providers must implement.
A provider is the external collaborator that actually provisions resources:
it publishes a schema per resource type, applies single operations and reads
real-world attributes back for drift detection.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type
import logging

from infracore.errors import ProviderError
from infracore.models import OperationKind

logger = logging.getLogger(__name__)


# Python types accepted for each schema attribute type
ATTRIBUTE_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "number": (int, float),
    "bool": (bool,),
    "list": (list,),
    "map": (dict,),
    "any": (object,),
}


@dataclass
class AttributeSchema:
    """Schema of one resource attribute."""
    type: str = "string"
    required: bool = False
    immutable: bool = False  # changing it forces destroy-and-recreate
    computed: bool = False  # set by the provider, not configurable
    description: str = ""


@dataclass
class ResourceSchema:
    """Schema of one resource type."""
    type_name: str
    attributes: Dict[str, AttributeSchema] = field(default_factory=dict)
    version: int = 0

    @property
    def configurable(self) -> List[str]:
        return [name for name, attr in self.attributes.items() if not attr.computed]

    @property
    def computed(self) -> List[str]:
        return [name for name, attr in self.attributes.items() if attr.computed]

    def is_immutable(self, name: str) -> bool:
        attribute = self.attributes.get(name)
        return bool(attribute and attribute.immutable)

    def validate(self, attributes: Dict[str, Any]) -> List[str]:
        """
        Validate configured attributes against the schema.

        Values still containing interpolations are only checked for presence.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for name, value in attributes.items():
            attribute = self.attributes.get(name)
            if attribute is None:
                errors.append(f"unsupported attribute '{name}' for {self.type_name}")
                continue
            if attribute.computed:
                errors.append(f"attribute '{name}' of {self.type_name} is computed and cannot be set")
                continue
            if value is None or _is_deferred(value):
                continue
            expected = ATTRIBUTE_TYPES.get(attribute.type, (object,))
            mistyped = not isinstance(value, expected)
            if isinstance(value, bool) and attribute.type == "number":
                mistyped = True
            if mistyped:
                errors.append(
                    f"attribute '{name}' of {self.type_name} must be of type {attribute.type}"
                )

        for name, attribute in self.attributes.items():
            if attribute.required and attributes.get(name) is None:
                errors.append(f"missing required attribute '{name}' for {self.type_name}")

        return errors


def _is_deferred(value: Any) -> bool:
    """Whether a value still holds an interpolation."""
    return isinstance(value, str) and "${" in value


@dataclass
class ApplyRequest:
    """Single operation sent to a provider."""
    kind: OperationKind
    address: str
    resource_type: str
    desired: Dict[str, Any] = field(default_factory=dict)
    prior: Optional[Dict[str, Any]] = None


@dataclass
class ApplyResponse:
    """Provider answer to an ApplyRequest."""
    success: bool
    attributes: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    duration_ms: float = 0.0


class Provider(ABC):
    """
    Abstract base class for providers.

    All providers (simulated or real) must implement this interface.
    This ensures consistent behavior across simulation and production.
    """

    PROVIDER_NAME: str = "base"

    def __init__(self, **settings: Any):
        """
        Initialize provider.

        Args:
            **settings: Provider block settings from the configuration
        """
        self.settings: Dict[str, Any] = dict(settings)
        self.logger = logging.getLogger(f"provider.{self.PROVIDER_NAME}")

    def configure(self, settings: Dict[str, Any]) -> None:
        """Apply provider block settings before planning or applying."""
        self.settings.update(settings)

    @abstractmethod
    def schemas(self) -> Dict[str, ResourceSchema]:
        """
        Schemas of every resource type this provider manages.

        Returns:
            Mapping of resource type name to schema
        """
        pass

    def schema(self, resource_type: str) -> ResourceSchema:
        """
        Schema of one resource type.

        Raises:
            ProviderError: If the type is not managed by this provider
        """
        schemas = self.schemas()
        if resource_type not in schemas:
            raise ProviderError(
                f"Provider '{self.PROVIDER_NAME}' does not support resource type '{resource_type}'",
                errors=[f"supported: {', '.join(sorted(schemas))}"],
            )
        return schemas[resource_type]

    @abstractmethod
    def apply(self, request: ApplyRequest) -> ApplyResponse:
        """
        Apply a single create, update or delete.

        Args:
            request: Operation kind, address and attributes

        Returns:
            ApplyResponse with resulting attributes on success
        """
        pass

    @abstractmethod
    def read(self, resource_type: str, attributes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Read the real-world attributes of a recorded resource.

        Args:
            resource_type: Resource type name
            attributes: Recorded attributes (identity lookup uses ``id``)

        Returns:
            Current attributes, or None if the resource no longer exists
        """
        pass


class ProviderRegistry:
    """
    Registry for provider classes.

    Usage:
        ProviderRegistry.register("fake", FakeCloudProvider)
        provider = ProviderRegistry.create("fake", {"region": "eu-1"})
    """

    _providers: Dict[str, Type[Provider]] = {}

    @classmethod
    def register(cls, name: str, provider_class: Type[Provider]) -> None:
        """Register a provider class."""
        cls._providers[name] = provider_class
        logger.debug(f"Registered provider: {name}")

    @classmethod
    def create(cls, name: str, settings: Optional[Dict[str, Any]] = None) -> Provider:
        """
        Create a provider instance.

        Raises:
            ProviderError: If the provider name is not registered
        """
        if name not in cls._providers:
            raise ProviderError(
                f"Unknown provider: {name}. "
                f"Available: {cls.available()}"
            )
        return cls._providers[name](**(settings or {}))

    @classmethod
    def available(cls) -> List[str]:
        """Get list of registered provider names."""
        return list(cls._providers.keys())

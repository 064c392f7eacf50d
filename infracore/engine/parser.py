"""
infracore - Configuration Parser

Parses and validates YAML configuration files.
Transforms raw YAML into a flattened, validated Configuration: variables are
substituted, modules are expanded, ``count``/``for_each`` produce one resource
instance per index, and resource references are rewritten to absolute
addresses.
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import logging
import yaml
from pydantic import ValidationError

from infracore.errors import (
    ConfigurationError,
    CycleError,
    GraphError,
    UnresolvedReferenceError,
)
from infracore.engine.expressions import (
    find_expressions,
    is_single_interpolation,
    lookup_path,
    render,
)
from infracore.models import (
    Configuration,
    ModuleBlock,
    OutputConfig,
    ProviderConfig,
    ResourceAddress,
    ResourceBlock,
    ResourceConfig,
    RootModule,
    VariableDefinition,
    module_prefix,
    parse_module_path,
    split_segments,
)

logger = logging.getLogger(__name__)

# Expression heads that can never be resource types
RESERVED_NAMES = {"var", "count", "each", "module", "local", "path", "self", "data"}

# Sections a module may declare
MODULE_SECTIONS = ["variables", "resources", "modules", "outputs"]

# Sections only the root document may declare
ROOT_SECTIONS = MODULE_SECTIONS + ["providers"]

VARIABLE_TYPES = {
    "any": None,
    "string": (str,),
    "number": (int, float),
    "bool": (bool,),
    "list": (list,),
    "map": (dict,),
}


class _Scope:
    """Name resolution context of one module (and one resource instance)."""

    def __init__(
        self,
        path: Tuple[str, ...],
        variables: Dict[str, Any],
        module_outputs: Dict[str, Dict[str, Any]],
        count_index: Optional[int] = None,
        each: Optional[Tuple[str, Any]] = None,
    ):
        self.path = path
        self.variables = variables
        self.module_outputs = module_outputs
        self.count_index = count_index
        self.each = each

    @property
    def where(self) -> str:
        return module_prefix(self.path) or "root module"

    def for_count(self, index: int) -> _Scope:
        return _Scope(self.path, self.variables, self.module_outputs, count_index=index)

    def for_each(self, key: str, value: Any) -> _Scope:
        return _Scope(self.path, self.variables, self.module_outputs, each=(key, value))

    def resolve(self, expression: str) -> Any:
        """Resolve one expression; resource references become absolute."""
        segments = split_segments(expression)
        head = segments[0]

        if head == "var":
            if len(segments) < 2:
                raise ConfigurationError(f"Invalid expression '${{{expression}}}' in {self.where}")
            name = segments[1]
            if name not in self.variables:
                raise ConfigurationError(
                    f"Reference to undeclared variable 'var.{name}' in {self.where}"
                )
            return _navigate(self.variables[name], segments[2:])

        if head == "count":
            if segments != ["count", "index"] or self.count_index is None:
                raise ConfigurationError(
                    f"'${{{expression}}}' is only valid inside a resource with count ({self.where})"
                )
            return self.count_index

        if head == "each":
            if self.each is None or len(segments) < 2 or segments[1] not in ("key", "value"):
                raise ConfigurationError(
                    f"'${{{expression}}}' is only valid inside a resource with for_each ({self.where})"
                )
            if segments[1] == "key":
                return self.each[0]
            return _navigate(self.each[1], segments[2:])

        if head == "module":
            if len(segments) < 3:
                raise ConfigurationError(
                    f"Module reference '${{{expression}}}' must name an output ({self.where})"
                )
            child, output = segments[1], segments[2]
            child_address = module_prefix(self.path + (child,))
            if child not in self.module_outputs:
                raise UnresolvedReferenceError(child_address, source=self.where)
            if output not in self.module_outputs[child]:
                raise UnresolvedReferenceError(f"{child_address}.{output}", source=self.where)
            return _navigate(self.module_outputs[child][output], segments[3:])

        if head in RESERVED_NAMES:
            raise ConfigurationError(f"Unsupported expression '${{{expression}}}' in {self.where}")

        try:
            address, attributes = ResourceAddress.parse_reference(expression)
        except ValueError:
            raise ConfigurationError(f"Invalid expression '${{{expression}}}' in {self.where}")

        absolute = str(address.with_module_path(self.path))
        if attributes:
            absolute = f"{absolute}.{'.'.join(attributes)}"
        return "${" + absolute + "}"


def _navigate(value: Any, path: List[str]) -> Any:
    """Apply an attribute path to a value that may still be a reference."""
    if not path:
        return value
    if isinstance(value, str) and is_single_interpolation(value):
        inner = value.strip()[2:-1]
        return "${" + inner + "." + ".".join(path) + "}"
    return lookup_path(value, path)


class _Expansion:
    """Accumulates the flattened result of module expansion."""

    def __init__(self):
        self.resources: List[ResourceConfig] = []
        self.outputs: List[OutputConfig] = []
        self.modules: List[str] = []


class ConfigParser:
    """
    Parser for infrastructure configuration files.

    Responsibilities:
    - Parse YAML content and load module sources
    - Validate structure and required fields
    - Transform to domain model (RootModule)
    - Expand variables, modules, count and for_each
    - Report clear validation errors
    """

    def __init__(self):
        """Initialize parser."""
        self.logger = logging.getLogger(__name__)

    def parse(
        self,
        yaml_content: str,
        variables: Optional[Dict[str, Any]] = None,
        base_dir: Optional[str] = None,
        source_path: Optional[str] = None,
    ) -> Configuration:
        """
        Parse YAML content into a Configuration.

        Args:
            yaml_content: YAML configuration string
            variables: Values for root variables
            base_dir: Directory module sources are resolved against
            source_path: Path of the file the content came from

        Returns:
            Validated, flattened Configuration

        Raises:
            ConfigurationError: If parsing or validation fails
            CycleError: If modules consume each other's outputs in a cycle
            UnresolvedReferenceError: If a module or module output is missing
        """
        # Step 1: Parse YAML syntax
        raw_config = self._parse_yaml(yaml_content)

        # Step 2: Inline module sources
        directory = Path(base_dir) if base_dir else Path.cwd()
        seen = (Path(source_path).resolve(),) if source_path else ()
        self._load_sources(raw_config, directory, seen)

        # Step 3: Validate structure
        validation_errors = self._validate_structure(raw_config)
        if validation_errors:
            raise ConfigurationError(
                "Configuration validation failed",
                errors=validation_errors,
            )

        # Step 4: Transform to domain model
        try:
            root = self._transform_to_model(raw_config)
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ConfigurationError("Model validation failed", errors=errors)

        # Step 5: Expand modules and interpolate
        expansion = _Expansion()
        root_values = self._resolve_variables(root.variables, variables or {}, ())
        root_scope = _Scope((), root_values, {})
        providers = self._render_providers(root, root_scope)
        self._expand_module(root, (), root_values, expansion)

        config = Configuration(
            resources=expansion.resources,
            outputs=expansion.outputs,
            providers=providers,
            variables=root_values,
            modules=expansion.modules,
            source_path=source_path,
        )

        # Step 6: Semantic validation
        semantic_errors = self._validate_semantics(config)
        if semantic_errors:
            raise ConfigurationError(
                "Semantic validation failed",
                errors=semantic_errors,
            )

        self.logger.info(
            f"Parsed configuration: {len(config.resources)} resources, "
            f"{len(config.modules)} modules, {len(config.root_outputs)} outputs"
        )
        return config

    def _parse_yaml(self, yaml_content: str) -> Dict[str, Any]:
        """
        Parse YAML string to dictionary.

        Raises:
            ConfigurationError: If YAML syntax is invalid
        """
        try:
            config = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"YAML syntax error: {str(e)}")
        if config is None:
            raise ConfigurationError("Empty configuration")
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a YAML mapping/dictionary")
        return config

    def _load_sources(
        self,
        module: Dict[str, Any],
        base_dir: Path,
        seen: Tuple[Path, ...],
    ) -> None:
        """Replace ``source`` references of child modules with file contents."""
        modules = module.get("modules")
        if not isinstance(modules, dict):
            return

        for name, child in modules.items():
            if not isinstance(child, dict):
                continue
            child_dir = base_dir
            child_seen = seen
            source = child.get("source")
            if source is not None:
                path = (base_dir / str(source)).resolve()
                if path in seen:
                    raise ConfigurationError(f"Module '{name}' includes itself via source '{source}'")
                try:
                    content = path.read_text(encoding="utf-8")
                except OSError as e:
                    raise ConfigurationError(f"Cannot read module source for '{name}': {str(e)}")

                loaded = self._parse_yaml(content)
                if "providers" in loaded:
                    raise ConfigurationError(
                        f"Module source '{source}' may not declare providers"
                    )
                for section, value in loaded.items():
                    if section in child:
                        raise ConfigurationError(
                            f"Module '{name}' declares '{section}' both inline and in '{source}'"
                        )
                    child[section] = value
                child_dir = path.parent
                child_seen = seen + (path,)

            self._load_sources(child, child_dir, child_seen)

    def _validate_structure(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate configuration structure.

        Returns:
            List of validation errors
        """
        errors: List[str] = []

        for key in config:
            if key not in ROOT_SECTIONS:
                errors.append(f"Unknown top-level section: '{key}'")

        providers = config.get("providers")
        if providers is not None:
            if not isinstance(providers, dict):
                errors.append("providers must be a mapping")
            else:
                for name, settings in providers.items():
                    if settings is not None and not isinstance(settings, dict):
                        errors.append(f"providers.{name} must be a mapping")

        self._validate_module_structure(config, "", errors)
        return errors

    def _validate_module_structure(
        self,
        module: Dict[str, Any],
        prefix: str,
        errors: List[str],
    ) -> None:
        """Validate one module mapping and recurse into children."""
        variables = module.get("variables")
        if variables is not None:
            if not isinstance(variables, dict):
                errors.append(f"{prefix}variables must be a mapping")
            else:
                for name, definition in variables.items():
                    if definition is not None and not isinstance(definition, dict):
                        errors.append(f"{prefix}variables.{name} must be a mapping")

        resources = module.get("resources")
        if resources is not None:
            if not isinstance(resources, list):
                errors.append(f"{prefix}resources must be a list")
            else:
                for i, resource in enumerate(resources):
                    if not isinstance(resource, dict):
                        errors.append(f"{prefix}resources[{i}] must be a mapping")
                        continue
                    for field in ("type", "name"):
                        if field not in resource:
                            errors.append(f"{prefix}resources[{i}].{field} is required")
                    attributes = resource.get("attributes")
                    if attributes is not None and not isinstance(attributes, dict):
                        errors.append(f"{prefix}resources[{i}].attributes must be a mapping")

        outputs = module.get("outputs")
        if outputs is not None:
            if not isinstance(outputs, dict):
                errors.append(f"{prefix}outputs must be a mapping")
            else:
                for name, output in outputs.items():
                    if not isinstance(output, dict) or "value" not in output:
                        errors.append(f"{prefix}outputs.{name}.value is required")

        modules = module.get("modules")
        if modules is not None:
            if not isinstance(modules, dict):
                errors.append(f"{prefix}modules must be a mapping")
                return
            for name, child in modules.items():
                if not isinstance(child, dict):
                    errors.append(f"{prefix}modules.{name} must be a mapping")
                    continue
                inputs = child.get("inputs")
                if inputs is not None and not isinstance(inputs, dict):
                    errors.append(f"{prefix}modules.{name}.inputs must be a mapping")
                self._validate_module_structure(child, f"{prefix}modules.{name}.", errors)

    def _transform_to_model(self, config: Dict[str, Any]) -> RootModule:
        """
        Transform dictionary to RootModule.

        Variables without a ``default`` key are marked required before
        Pydantic validation.
        """
        self._normalize_module(config)
        providers = {
            name: settings or {}
            for name, settings in (config.get("providers") or {}).items()
        }
        return RootModule(**{**config, "providers": providers})

    def _normalize_module(self, module: Dict[str, Any]) -> None:
        """Prepare a raw module mapping for model validation."""
        for section in ("variables", "outputs", "modules", "inputs"):
            if module.get(section) is None and section in module:
                module[section] = {}
        if module.get("resources") is None and "resources" in module:
            module["resources"] = []

        variables = module.get("variables") or {}
        for name, definition in list(variables.items()):
            definition = dict(definition or {})
            definition["required"] = "default" not in definition
            variables[name] = definition

        for child in (module.get("modules") or {}).values():
            self._normalize_module(child)

    def _resolve_variables(
        self,
        definitions: Dict[str, VariableDefinition],
        supplied: Dict[str, Any],
        path: Tuple[str, ...],
    ) -> Dict[str, Any]:
        """
        Compute variable values of one module scope.

        Raises:
            ConfigurationError: On undeclared, missing or mistyped variables
        """
        where = module_prefix(path) or "root module"
        errors: List[str] = []
        values: Dict[str, Any] = {}

        for name in supplied:
            if name not in definitions:
                errors.append(f"{where} does not declare variable '{name}'")

        for name, definition in definitions.items():
            if name in supplied:
                value = supplied[name]
            elif not definition.required:
                value = definition.default
            else:
                errors.append(f"{where}: no value for required variable '{name}'")
                continue

            if (not path or name not in supplied) and find_expressions(value):
                errors.append(f"{where}: variable '{name}' value must not contain '${{...}}' expressions")
                continue

            type_error = self._check_type(name, definition, value)
            if type_error:
                errors.append(f"{where}: {type_error}")
            values[name] = value

        if errors:
            raise ConfigurationError("Variable resolution failed", errors=errors)
        return values

    def _check_type(self, name: str, definition: VariableDefinition, value: Any) -> Optional[str]:
        """Check a variable value against its declared type."""
        if definition.type not in VARIABLE_TYPES:
            return f"variable '{name}' has unknown type '{definition.type}'"
        expected = VARIABLE_TYPES[definition.type]
        if expected is None or value is None:
            return None
        if isinstance(value, str) and is_single_interpolation(value):
            # Resource attribute, only known after apply
            return None
        if isinstance(value, bool) and bool not in expected:
            return f"variable '{name}' must be of type {definition.type}"
        if not isinstance(value, expected):
            return f"variable '{name}' must be of type {definition.type}"
        return None

    def _render_providers(self, root: RootModule, scope: _Scope) -> Dict[str, ProviderConfig]:
        """Interpolate provider settings; they may only use variables."""
        providers: Dict[str, ProviderConfig] = {}
        for name, settings in root.providers.items():
            rendered = render(settings, scope.resolve)
            if find_expressions(rendered):
                raise ConfigurationError(
                    f"Provider '{name}' settings may not reference resources"
                )
            providers[name] = ProviderConfig(name=name, settings=rendered)
        return providers

    def _expand_module(
        self,
        block: ModuleBlock,
        path: Tuple[str, ...],
        values: Dict[str, Any],
        expansion: _Expansion,
    ) -> Dict[str, Any]:
        """
        Expand one module scope into the flattened result.

        Returns:
            Output values of the module (literals or absolute references)
        """
        if path:
            expansion.modules.append(module_prefix(path))

        # Child modules first, siblings in the order their outputs are consumed
        module_outputs: Dict[str, Dict[str, Any]] = {}
        for child_name in self._order_modules(block, path):
            child = block.modules[child_name]
            scope = _Scope(path, values, module_outputs)
            inputs = {key: render(value, scope.resolve) for key, value in child.inputs.items()}
            child_path = path + (child_name,)
            child_values = self._resolve_variables(child.variables, inputs, child_path)
            module_outputs[child_name] = self._expand_module(
                child, child_path, child_values, expansion
            )

        where = module_prefix(path) or "root module"
        scope = _Scope(path, values, module_outputs)
        for resource in block.resources:
            expansion.resources.extend(self._expand_resource(resource, scope))

        outputs: Dict[str, Any] = {}
        for name, definition in block.outputs.items():
            value = render(definition.value, scope.resolve)
            outputs[name] = value
            expansion.outputs.append(
                OutputConfig(
                    name=name,
                    module_path=path,
                    value=value,
                    references=self._collect_references(value, f"output '{name}' of {where}"),
                    sensitive=definition.sensitive,
                )
            )

        self.logger.debug(
            f"Expanded {module_prefix(path) or 'root module'}: "
            f"{len(block.resources)} resource blocks, {len(block.modules)} modules"
        )
        return outputs

    def _order_modules(self, block: ModuleBlock, path: Tuple[str, ...]) -> List[str]:
        """
        Order sibling modules so producers come before consumers.

        Raises:
            UnresolvedReferenceError: If an input names a missing sibling
            CycleError: If siblings consume each other's outputs in a cycle
        """
        names = list(block.modules)
        consumes: Dict[str, List[str]] = {}
        for name in names:
            consumed: List[str] = []
            for expression in find_expressions(block.modules[name].inputs):
                segments = split_segments(expression)
                if segments[0] != "module" or len(segments) < 2:
                    continue
                sibling = segments[1]
                if sibling not in block.modules:
                    raise UnresolvedReferenceError(
                        module_prefix(path + (sibling,)),
                        source=module_prefix(path + (name,)),
                    )
                if sibling not in consumed:
                    consumed.append(sibling)
            consumes[name] = consumed

        ordered: List[str] = []
        visiting: List[str] = []

        def visit(name: str) -> None:
            if name in ordered:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name):] + [name]
                raise CycleError([module_prefix(path + (n,)) for n in cycle])
            visiting.append(name)
            for sibling in consumes[name]:
                visit(sibling)
            visiting.pop()
            ordered.append(name)

        for name in names:
            visit(name)
        return ordered

    def _expand_resource(self, block: ResourceBlock, scope: _Scope) -> List[ResourceConfig]:
        """Expand one resource block into its instances."""
        where = f"{module_prefix(scope.path) + '.' if scope.path else ''}{block.type}.{block.name}"
        if block.count is not None and block.for_each is not None:
            raise ConfigurationError(f"{where}: count and for_each are mutually exclusive")

        instances: List[Tuple[Any, _Scope]] = [(None, scope)]
        if block.count is not None:
            count = render(block.count, scope.resolve)
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ConfigurationError(
                    f"{where}: count must be a non-negative integer known before apply"
                )
            instances = [(i, scope.for_count(i)) for i in range(count)]
        elif block.for_each is not None:
            each = render(block.for_each, scope.resolve)
            if isinstance(each, list):
                keys = [str(item) for item in each]
                if len(set(keys)) != len(keys):
                    raise ConfigurationError(f"{where}: for_each contains duplicate keys")
                instances = [(key, scope.for_each(key, key)) for key in keys]
            elif isinstance(each, dict):
                instances = [(str(k), scope.for_each(str(k), v)) for k, v in each.items()]
            else:
                raise ConfigurationError(
                    f"{where}: for_each must be a list or mapping known before apply"
                )

        provider = block.provider or block.type.split("_", 1)[0]
        depends_on = [self._canonical_dependency(dep, scope.path, where) for dep in block.depends_on]

        resources = []
        for index, instance_scope in instances:
            address = ResourceAddress(
                module_path=scope.path,
                type=block.type,
                name=block.name,
                index=index,
            )
            attributes = render(block.attributes, instance_scope.resolve)
            resources.append(
                ResourceConfig(
                    address=str(address),
                    type=block.type,
                    name=block.name,
                    module_path=scope.path,
                    index=index,
                    provider=provider,
                    attributes=attributes,
                    references=self._collect_references(attributes, f"resource '{address}'"),
                    depends_on=depends_on,
                )
            )
        return resources

    def _canonical_dependency(self, dependency: str, path: Tuple[str, ...], where: str) -> str:
        """Make a ``depends_on`` entry absolute."""
        try:
            if dependency.startswith("module."):
                return module_prefix(path + parse_module_path(dependency))
            return str(ResourceAddress.parse(dependency).with_module_path(path))
        except ValueError:
            raise ConfigurationError(f"{where}: invalid depends_on entry '{dependency}'")

    def _collect_references(self, value: Any, where: str) -> List[str]:
        """Resource addresses referenced by an already-rendered value."""
        references: List[str] = []
        for expression in find_expressions(value):
            try:
                address, _ = ResourceAddress.parse_reference(expression)
            except ValueError as e:
                raise ConfigurationError(f"Invalid reference '${{{expression}}}' in {where}: {e}")
            text = str(address)
            if text not in references:
                references.append(text)
        return references

    def _validate_semantics(self, config: Configuration) -> List[str]:
        """
        Validate semantic correctness of the flattened configuration.

        Returns:
            List of semantic validation errors
        """
        errors = []

        seen = set()
        for resource in config.resources:
            if resource.address in seen:
                errors.append(f"Duplicate resource address: {resource.address}")
            seen.add(resource.address)
            try:
                ResourceAddress.parse(resource.address)
            except ValueError:
                errors.append(f"Invalid resource type or name: {resource.address}")
            if resource.type in RESERVED_NAMES:
                errors.append(f"{resource.address}: '{resource.type}' is a reserved name")

        for module in config.modules:
            try:
                parse_module_path(module)
            except ValueError:
                errors.append(f"Invalid module name: {module}")

        return errors

    def parse_file(self, file_path: str, variables: Optional[Dict[str, Any]] = None) -> Configuration:
        """
        Parse configuration from file.

        Module sources are resolved relative to the file's directory.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        path = Path(file_path)
        try:
            yaml_content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read file: {str(e)}")

        return self.parse(
            yaml_content,
            variables=variables,
            base_dir=str(path.resolve().parent),
            source_path=str(path),
        )

    def validate_only(
        self,
        yaml_content: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, List[str]]:
        """
        Validate configuration without returning model.

        Returns:
            Tuple of (is_valid, error_list)
        """
        try:
            self.parse(yaml_content, variables=variables)
            return True, []
        except (ConfigurationError, GraphError) as e:
            return False, e.errors or [e.message]

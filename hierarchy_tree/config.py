"""Configuration management for the hierarchy tree engine.

Provides YAML configuration file loading with environment support. A config
file holds engine settings plus an optional in-memory schema and data set:

    version: "1.0"
    engine:
      auto_expand_concurrency: 4
      default_hierarchy_limit: 1000
    environments:
      dev:
        engine:
          main_thread_release_ms: 10
    schema:
      classes:
        - name: BisCore.Element
          properties: [{name: CodeValue, type: String}]
    hierarchy:
      custom_nodes: [{id: elements, label: Elements}]
      instances: [{class: BisCore.Element, id: "0x1", label: Wall, parent: elements}]
"""

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union
from typing_extensions import TypedDict

import yaml

from .property_grouping import DEFAULT_LOCALIZED_STRINGS
from .scheduling import DEFAULT_RELEASE_BUDGET_MS
from .tree_loader import DEFAULT_AUTO_EXPAND_CONCURRENCY

logger = logging.getLogger(__name__)


class EngineConfig(TypedDict, total=False):
    """Engine tuning options."""
    main_thread_release_ms: float
    auto_expand_concurrency: int
    class_cache_size: int
    hierarchy_cache_size: int
    default_hierarchy_limit: Union[int, str, None]
    localized_strings: Dict[str, str]


class PropertyConfig(TypedDict, total=False):
    name: str
    type: str
    koq_name: Optional[str]
    extended_type: Optional[str]


class ClassConfig(TypedDict, total=False):
    """Configuration for a single schema class."""
    name: str
    label: Optional[str]
    bases: List[str]
    properties: List[PropertyConfig]


class SchemaConfig(TypedDict, total=False):
    classes: List[ClassConfig]


class CustomNodeConfig(TypedDict, total=False):
    """Configuration for an application-defined node."""
    id: str
    label: str
    parent: Optional[str]
    source: Optional[str]
    auto_expand: bool
    hide_if_no_children: bool
    hide_in_hierarchy: bool
    supports_filtering: bool
    extended_data: Dict[str, Any]


class InstanceConfig(TypedDict, total=False):
    """Configuration for a single instance of the data set."""
    id: str
    label: Any
    parent: Optional[str]
    properties: Dict[str, Any]
    grouping: Dict[str, Any]
    merge_by_label_id: Optional[str]
    has_children: Optional[bool]
    auto_expand: bool
    hide_if_no_children: bool
    hide_in_hierarchy: bool
    supports_filtering: bool
    extended_data: Dict[str, Any]


class HierarchyConfig(TypedDict, total=False):
    custom_nodes: List[CustomNodeConfig]
    instances: List[InstanceConfig]


class EnvironmentConfig(TypedDict, total=False):
    """Environment-specific configuration."""
    engine: EngineConfig


class HierarchyTreeConfig(TypedDict, total=False):
    """Main configuration structure."""
    version: str
    engine: EngineConfig
    environments: Dict[str, EnvironmentConfig]
    schema: SchemaConfig
    hierarchy: HierarchyConfig


@dataclass
class EngineSettings:
    """Resolved engine options with defaults applied."""
    main_thread_release_ms: float = DEFAULT_RELEASE_BUDGET_MS
    auto_expand_concurrency: int = DEFAULT_AUTO_EXPAND_CONCURRENCY
    class_cache_size: int = 1000
    hierarchy_cache_size: int = 50
    default_hierarchy_limit: Union[int, str, None] = None
    localized_strings: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LOCALIZED_STRINGS))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "main_thread_release_ms": self.main_thread_release_ms,
            "auto_expand_concurrency": self.auto_expand_concurrency,
            "class_cache_size": self.class_cache_size,
            "hierarchy_cache_size": self.hierarchy_cache_size,
            "default_hierarchy_limit": self.default_hierarchy_limit,
            "localized_strings": dict(self.localized_strings),
        }


@dataclass
class ResolvedConfig:
    """Fully resolved configuration after applying environment."""
    environment: str
    engine: EngineSettings
    classes: List[ClassConfig]
    custom_nodes: List[CustomNodeConfig]
    instances: List[InstanceConfig]


ENGINE_KEYS = set(EngineConfig.__annotations__)
CLASS_KEYS = set(ClassConfig.__annotations__)
CUSTOM_NODE_KEYS = set(CustomNodeConfig.__annotations__)
INSTANCE_KEYS = set(InstanceConfig.__annotations__) | {"class"}


class ConfigLoader:
    """Load and validate hierarchy tree configuration files."""

    SUPPORTED_VERSIONS = ["1.0"]

    def __init__(self, config_path: str, warn_on_unknown: bool = True):
        """Initialize config loader.

        Args:
            config_path: Path to the YAML configuration file
            warn_on_unknown: Whether to warn on unknown config keys
        """
        self.config_path = Path(config_path)
        self.warn_on_unknown = warn_on_unknown
        self._raw_config: Optional[HierarchyTreeConfig] = None
        self._warnings: List[str] = []

    def load(self) -> HierarchyTreeConfig:
        """Load configuration from file.

        Returns:
            Raw configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        self._warnings = []

        with open(self.config_path, "r") as f:
            content = f.read()

        try:
            config = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ValueError("Configuration root must be a mapping")

        self._validate_keys(config, "root", self._get_schema_keys())
        self._validate_keys(config.get("engine"), "engine", ENGINE_KEYS)
        for name, env in (config.get("environments") or {}).items():
            if isinstance(env, dict):
                self._validate_keys(env, f"environments.{name}", {"engine"})
                self._validate_keys(env.get("engine"), f"environments.{name}.engine", ENGINE_KEYS)
        for i, class_config in enumerate((config.get("schema") or {}).get("classes") or []):
            self._validate_keys(class_config, f"schema.classes[{i}]", CLASS_KEYS)
        hierarchy = config.get("hierarchy") or {}
        for i, node in enumerate(hierarchy.get("custom_nodes") or []):
            self._validate_keys(node, f"hierarchy.custom_nodes[{i}]", CUSTOM_NODE_KEYS)
        for i, instance in enumerate(hierarchy.get("instances") or []):
            self._validate_keys(instance, f"hierarchy.instances[{i}]", INSTANCE_KEYS)

        version = str(config.get("version", "1.0"))
        if version not in self.SUPPORTED_VERSIONS:
            raise ValueError(
                f"Unsupported config version: {version}. "
                f"Supported versions: {self.SUPPORTED_VERSIONS}"
            )

        self._raw_config = config
        return config

    def _get_schema_keys(self) -> Set[str]:
        """Get valid top-level configuration keys."""
        return {"version", "engine", "environments", "schema", "hierarchy"}

    def _validate_keys(self, obj: Any, path: str, valid_keys: Set[str]) -> None:
        """Warn about unknown keys of a configuration mapping.

        Args:
            obj: Object to validate
            path: Current path in config (for error messages)
            valid_keys: Set of valid keys at this level
        """
        if not isinstance(obj, dict):
            return

        for key in obj.keys():
            if key not in valid_keys and self.warn_on_unknown:
                self._warnings.append(f"Unknown config key '{path}.{key}' - ignoring")
                logger.warning(f"[Config] Unknown key: {path}.{key}")

    def get_warnings(self) -> List[str]:
        """Get list of configuration warnings.

        Returns:
            List of warning messages
        """
        return self._warnings.copy()

    def validate(self) -> bool:
        """Validate configuration structure.

        Returns:
            True if valid

        Raises:
            RuntimeError: If config hasn't been loaded yet
            ValueError: If the configuration is invalid
        """
        if self._raw_config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")

        self._validate_engine(self._raw_config.get("engine") or {}, "engine")
        environments = self._raw_config.get("environments") or {}
        if not isinstance(environments, dict):
            raise ValueError("'environments' must be a dictionary")
        for name, env in environments.items():
            if not isinstance(env, dict):
                raise ValueError(f"Environment '{name}' must be a dictionary")
            self._validate_engine(env.get("engine") or {}, f"environments.{name}.engine")

        class_names = self._validate_classes()
        self._validate_hierarchy(class_names)
        return True

    def _validate_engine(self, engine: Any, path: str) -> None:
        if not isinstance(engine, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        for key in ("auto_expand_concurrency", "class_cache_size", "hierarchy_cache_size"):
            value = engine.get(key)
            if value is not None and (not isinstance(value, int) or value < 1):
                raise ValueError(f"'{path}.{key}' must be a positive integer")
        release_ms = engine.get("main_thread_release_ms")
        if release_ms is not None and (not isinstance(release_ms, (int, float)) or release_ms < 0):
            raise ValueError(f"'{path}.main_thread_release_ms' must be a non-negative number")
        limit = engine.get("default_hierarchy_limit")
        if limit is not None and limit != "unbounded" and (not isinstance(limit, int) or limit < 1):
            raise ValueError(f"'{path}.default_hierarchy_limit' must be a positive integer or 'unbounded'")
        strings = engine.get("localized_strings")
        if strings is not None and not isinstance(strings, dict):
            raise ValueError(f"'{path}.localized_strings' must be a dictionary")

    def _validate_classes(self) -> Set[str]:
        classes = (self._raw_config.get("schema") or {}).get("classes") or []
        if not isinstance(classes, list):
            raise ValueError("'schema.classes' must be a list")

        names: Set[str] = set()
        for i, class_config in enumerate(classes):
            if not isinstance(class_config, dict):
                raise ValueError(f"Class at index {i} must be a dictionary")
            name = class_config.get("name")
            if not name:
                raise ValueError(f"Class at index {i} missing required 'name' field")
            if name.lower() in names:
                raise ValueError(f"Duplicate class name: {name}")
            names.add(name.lower())

        for class_config in classes:
            for base in class_config.get("bases") or []:
                if base.lower() not in names:
                    raise ValueError(f"Class '{class_config['name']}' has unknown base class '{base}'")
        return names

    def _validate_hierarchy(self, class_names: Set[str]) -> None:
        hierarchy = self._raw_config.get("hierarchy") or {}
        custom_nodes = hierarchy.get("custom_nodes") or []
        instances = hierarchy.get("instances") or []
        if not isinstance(custom_nodes, list):
            raise ValueError("'hierarchy.custom_nodes' must be a list")
        if not isinstance(instances, list):
            raise ValueError("'hierarchy.instances' must be a list")

        seen_ids: Set[str] = set()
        for i, node in enumerate(custom_nodes):
            if not isinstance(node, dict) or not node.get("id"):
                raise ValueError(f"Custom node at index {i} missing required 'id' field")
            node_id = str(node["id"])
            if node_id in seen_ids:
                raise ValueError(f"Duplicate node id: {node_id}")
            seen_ids.add(node_id)

        for i, instance in enumerate(instances):
            if not isinstance(instance, dict):
                raise ValueError(f"Instance at index {i} must be a dictionary")
            class_name = instance.get("class")
            if not class_name:
                raise ValueError(f"Instance at index {i} missing required 'class' field")
            if instance.get("id") is None:
                raise ValueError(f"Instance at index {i} missing required 'id' field")
            instance_id = str(instance["id"])
            if instance_id in seen_ids:
                raise ValueError(f"Duplicate node id: {instance_id}")
            seen_ids.add(instance_id)
            if class_names and class_name.lower() not in class_names:
                raise ValueError(f"Instance '{instance_id}' has unknown class '{class_name}'")

        for node in list(custom_nodes) + list(instances):
            parent = node.get("parent")
            if parent is not None and str(parent) not in seen_ids:
                raise ValueError(f"Node '{node.get('id')}' has unknown parent '{parent}'")


class ConfigManager:
    """Resolve a loaded configuration for an environment."""

    def __init__(self, config_loader: ConfigLoader):
        """Initialize config manager.

        Args:
            config_loader: Loaded configuration
        """
        self.loader = config_loader
        self._resolved_config: Optional[ResolvedConfig] = None

    def resolve(self, environment: Optional[str] = None) -> ResolvedConfig:
        """Resolve configuration for an environment.

        Args:
            environment: Environment name (dev/staging/production), or None for defaults

        Returns:
            Resolved configuration with environment applied
        """
        if self.loader._raw_config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")

        raw = self.loader._raw_config
        env_name = environment or "default"
        env_config = (raw.get("environments") or {}).get(env_name, {})
        if environment is not None and environment not in (raw.get("environments") or {}):
            logger.warning(f"[Config] Environment '{environment}' not found, using defaults")

        # engine settings: defaults < environment
        engine = dict(raw.get("engine") or {})
        engine.update(env_config.get("engine") or {})

        settings = EngineSettings()
        for key in ENGINE_KEYS - {"localized_strings"}:
            if key in engine:
                setattr(settings, key, engine[key])
        settings.localized_strings.update(engine.get("localized_strings") or {})

        hierarchy = raw.get("hierarchy") or {}
        self._resolved_config = ResolvedConfig(
            environment=env_name,
            engine=settings,
            classes=list((raw.get("schema") or {}).get("classes") or []),
            custom_nodes=list(hierarchy.get("custom_nodes") or []),
            instances=list(hierarchy.get("instances") or []),
        )
        return self._resolved_config

    def get_resolved_config(self) -> Optional[ResolvedConfig]:
        """Get the resolved configuration.

        Returns:
            ResolvedConfig or None if not resolved yet
        """
        return self._resolved_config


def load_config(
    config_path: str,
    environment: Optional[str] = None,
    validate: bool = True,
) -> ResolvedConfig:
    """Convenience function to load and resolve configuration.

    Args:
        config_path: Path to YAML configuration file
        environment: Environment name (dev/staging/production)
        validate: Whether to validate the configuration

    Returns:
        Resolved configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    loader = ConfigLoader(config_path)
    loader.load()

    if validate:
        loader.validate()

    manager = ConfigManager(loader)
    return manager.resolve(environment)


# ============= CLI Integration =============

def add_config_args(parser) -> None:
    """Add configuration arguments to argparse parser.

    Args:
        parser: ArgumentParser or add_argument Group
    """
    parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        default=None,
        help="Environment name (dev/staging/production)"
    )

    parser.add_argument(
        "--validate", "-v",
        action="store_true",
        help="Validate configuration file without running"
    )


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Validate hierarchy tree config")
    parser.add_argument("config_file", nargs="?", help="Path to config file")
    args = parser.parse_args()

    if not args.config_file:
        print("Usage: python -m hierarchy_tree.config <config.yaml>")
        sys.exit(1)

    try:
        loader = ConfigLoader(args.config_file)
        raw = loader.load()
        loader.validate()

        print("✓ Configuration valid")
        print(f"  Version: {raw.get('version', '1.0')}")
        print(f"  Classes: {len((raw.get('schema') or {}).get('classes') or [])}")
        print(f"  Instances: {len((raw.get('hierarchy') or {}).get('instances') or [])}")

        if loader.get_warnings():
            print("\nWarnings:")
            for w in loader.get_warnings():
                print(f"  - {w}")
    except (FileNotFoundError, ValueError) as e:
        print(f"✗ Error: {e}")
        sys.exit(1)

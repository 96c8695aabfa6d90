"""In-memory data source - schema, rows and hierarchy definition from a config.

Lets the engine run end to end without a backing store. Instances and custom
nodes form a parent/child hierarchy through their ``parent`` references; each
level is defined as the custom nodes under the parent followed by one instance
query per class of the child instances.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import ClassConfig, CustomNodeConfig, EngineSettings, InstanceConfig, ResolvedConfig
from .definition import (
    CustomNodeDefinition,
    HierarchyDefinition,
    HierarchyLevelDefinition,
    InstanceNodesDefinition,
    NodeSelectColumns,
    QueryExecutor,
    create_custom_node,
)
from .errors import ClassNotFoundError, RowsLimitExceededError
from .hierarchy_node import HierarchyNode, ProcessingParams, is_custom_node
from .metadata import ClassInfo, MetadataProvider, PropertyInfo, ValueFormatter
from .node_key import InstanceKey, normalize_full_class_name
from .provider import DefinitionHierarchyProvider

logger = logging.getLogger(__name__)


def _class_key(full_class_name: str) -> str:
    return normalize_full_class_name(full_class_name).lower()


# ============= Metadata =============

class InMemoryMetadataProvider(MetadataProvider):
    """Metadata provider over a list of class configs."""

    def __init__(self, classes: Sequence[ClassConfig]):
        self._classes: Dict[str, ClassInfo] = {}
        self._bases: Dict[str, List[str]] = {}
        for class_config in classes:
            name = class_config["name"]
            properties = {}
            for prop in class_config.get("properties") or []:
                properties[prop["name"]] = PropertyInfo(
                    name=prop["name"],
                    primitive_type=prop.get("type", "String"),
                    koq_name=prop.get("koq_name"),
                    extended_type=prop.get("extended_type"),
                )
            self._classes[_class_key(name)] = ClassInfo(
                full_name=normalize_full_class_name(name),
                label=class_config.get("label"),
                properties=properties,
            )
            self._bases[_class_key(name)] = [_class_key(base) for base in class_config.get("bases") or []]

    async def get_class(self, full_class_name: str) -> ClassInfo:
        class_info = self._classes.get(_class_key(full_class_name))
        if class_info is None:
            raise ClassNotFoundError(full_class_name)
        return class_info

    async def class_derives_from(self, derived_class_name: str, base_class_name: str) -> bool:
        derived = _class_key(derived_class_name)
        if derived not in self._classes:
            raise ClassNotFoundError(derived_class_name)
        target = _class_key(base_class_name)
        queue = deque([derived])
        visited = set()
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            if current in visited:
                continue
            visited.add(current)
            queue.extend(self._bases.get(current, []))
        return False

    def __len__(self) -> int:
        return len(self._classes)


# ============= Rows =============

@dataclass
class InstanceRecord:
    """A single instance of the in-memory data set."""
    class_name: str
    id: str
    label: Any
    parent: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    grouping: Optional[Dict[str, Any]] = None
    merge_by_label_id: Optional[str] = None
    has_children: Optional[bool] = None
    auto_expand: bool = False
    hide_if_no_children: bool = False
    hide_in_hierarchy: bool = False
    supports_filtering: bool = False
    extended_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: InstanceConfig) -> "InstanceRecord":
        return cls(
            class_name=config["class"],
            id=str(config["id"]),
            label=config.get("label", str(config["id"])),
            parent=None if config.get("parent") is None else str(config["parent"]),
            properties=dict(config.get("properties") or {}),
            grouping=config.get("grouping"),
            merge_by_label_id=config.get("merge_by_label_id"),
            has_children=config.get("has_children"),
            auto_expand=bool(config.get("auto_expand", False)),
            hide_if_no_children=bool(config.get("hide_if_no_children", False)),
            hide_in_hierarchy=bool(config.get("hide_in_hierarchy", False)),
            supports_filtering=bool(config.get("supports_filtering", False)),
            extended_data=dict(config.get("extended_data") or {}),
        )

    def grouping_column(self) -> Optional[Dict[str, Any]]:
        """Grouping params with property values filled in from the instance."""
        if not self.grouping:
            return None
        grouping = dict(self.grouping)
        by_properties = grouping.get("byProperties")
        if by_properties:
            by_properties = dict(by_properties)
            groups = []
            for group in by_properties.get("propertyGroups", []):
                group = dict(group)
                group.setdefault("propertyValue", self.properties.get(group["propertyName"]))
                groups.append(group)
            by_properties["propertyGroups"] = groups
            grouping["byProperties"] = by_properties
        return grouping

    def to_row(self) -> Dict[str, Any]:
        return {
            NodeSelectColumns.FULL_CLASS_NAME: self.class_name,
            NodeSelectColumns.ECINSTANCE_ID: self.id,
            NodeSelectColumns.DISPLAY_LABEL: self.label,
            NodeSelectColumns.HAS_CHILDREN: self.has_children,
            NodeSelectColumns.HIDE_IF_NO_CHILDREN: self.hide_if_no_children,
            NodeSelectColumns.HIDE_NODE_IN_HIERARCHY: self.hide_in_hierarchy,
            NodeSelectColumns.GROUPING: self.grouping_column(),
            NodeSelectColumns.MERGE_BY_LABEL_ID: self.merge_by_label_id,
            NodeSelectColumns.EXTENDED_DATA: self.extended_data,
            NodeSelectColumns.AUTO_EXPAND: self.auto_expand,
            NodeSelectColumns.SUPPORTS_FILTERING: self.supports_filtering,
        }


@dataclass(frozen=True)
class InstancesQuery:
    """Selects instances of a class under any of the given parents."""
    class_name: str
    parents: Tuple[Optional[str], ...]


def matches_instance_filter(record: InstanceRecord, instance_filter: Any) -> bool:
    """Apply an in-memory instance filter.

    A string filter matches labels case-insensitively, a dict filter matches
    property values by equality.
    """
    if instance_filter is None:
        return True
    if isinstance(instance_filter, str):
        return instance_filter.lower() in str(record.label).lower()
    if isinstance(instance_filter, dict):
        return all(record.properties.get(name) == value for name, value in instance_filter.items())
    raise ValueError(f"Unsupported instance filter: {instance_filter!r}")


class InMemoryQueryExecutor(QueryExecutor):
    """Runs ``InstancesQuery`` objects over instance records."""

    def __init__(self, records: Sequence[InstanceRecord]):
        self._records = list(records)
        self.executed_queries = 0

    async def execute(
        self,
        query: InstancesQuery,
        limit: Optional[int] = None,
        instance_filter: Any = None,
        target_instance_keys: Optional[List[InstanceKey]] = None,
    ) -> List[Dict[str, Any]]:
        self.executed_queries += 1
        target_ids = None if target_instance_keys is None else {key.id for key in target_instance_keys}
        class_key = _class_key(query.class_name)
        rows = []
        for record in self._records:
            if record.parent not in query.parents or _class_key(record.class_name) != class_key:
                continue
            if target_ids is not None and record.id not in target_ids:
                continue
            if not matches_instance_filter(record, instance_filter):
                continue
            rows.append(record.to_row())
            if limit is not None and len(rows) > limit:
                raise RowsLimitExceededError(limit)
        return rows


# ============= Hierarchy Definition =============

class InMemoryHierarchyDefinition(HierarchyDefinition):
    """Defines levels from parent references of custom nodes and instances."""

    def __init__(self, custom_nodes: Sequence[CustomNodeConfig], records: Sequence[InstanceRecord]):
        self._custom_nodes = list(custom_nodes)
        self._records = list(records)

    @staticmethod
    def _parent_refs(parent_node: Optional[HierarchyNode]) -> Tuple[Optional[str], ...]:
        if parent_node is None:
            return (None,)
        if is_custom_node(parent_node):
            return (parent_node.key.id,)
        return tuple(key.id for key in parent_node.key.instance_keys)

    async def define_hierarchy_level(
        self,
        parent_node: Optional[HierarchyNode],
        instance_filter: Any = None,
    ) -> HierarchyLevelDefinition:
        parents = self._parent_refs(parent_node)
        definitions: HierarchyLevelDefinition = []
        for config in self._custom_nodes:
            parent = config.get("parent")
            if (None if parent is None else str(parent)) not in parents:
                continue
            definitions.append(CustomNodeDefinition(create_custom_node(
                str(config["id"]),
                config.get("label", str(config["id"])),
                source=config.get("source"),
                auto_expand=bool(config.get("auto_expand", False)),
                supports_filtering=bool(config.get("supports_filtering", False)),
                extended_data=dict(config.get("extended_data") or {}),
                processing_params=ProcessingParams(
                    hide_if_no_children=bool(config.get("hide_if_no_children", False)),
                    hide_in_hierarchy=bool(config.get("hide_in_hierarchy", False)),
                ),
            )))

        class_names: List[str] = []
        for record in self._records:
            if record.parent in parents and record.class_name not in class_names:
                class_names.append(record.class_name)
        for class_name in class_names:
            definitions.append(InstanceNodesDefinition(
                full_class_name=class_name,
                query=InstancesQuery(class_name=class_name, parents=parents),
            ))
        return definitions


# ============= Data Source =============

@dataclass
class InMemoryDataSource:
    """Metadata, query executor and hierarchy definition of one data set."""
    metadata: InMemoryMetadataProvider
    query_executor: InMemoryQueryExecutor
    definition: InMemoryHierarchyDefinition

    @classmethod
    def from_config(cls, config: ResolvedConfig) -> "InMemoryDataSource":
        records = [InstanceRecord.from_config(instance) for instance in config.instances]
        logger.info(
            f"[Provider] In-memory data set: {len(config.classes)} classes, "
            f"{len(records)} instances, {len(config.custom_nodes)} custom nodes"
        )
        return cls(
            metadata=InMemoryMetadataProvider(config.classes),
            query_executor=InMemoryQueryExecutor(records),
            definition=InMemoryHierarchyDefinition(config.custom_nodes, records),
        )

    def create_provider(
        self,
        engine: Optional[EngineSettings] = None,
        value_formatter: Optional[ValueFormatter] = None,
        imodel_key: Optional[str] = None,
    ) -> DefinitionHierarchyProvider:
        """Create a hierarchy provider over this data set using the given engine settings."""
        engine = engine or EngineSettings()
        return DefinitionHierarchyProvider(
            self.definition,
            self.query_executor,
            self.metadata,
            value_formatter=value_formatter,
            localized_strings=engine.localized_strings,
            imodel_key=imodel_key,
            default_hierarchy_level_size_limit=engine.default_hierarchy_limit,
            cache_size=engine.hierarchy_cache_size,
            class_cache_size=engine.class_cache_size,
            release_budget_ms=engine.main_thread_release_ms,
        )

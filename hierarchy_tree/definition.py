"""Hierarchy definitions - what nodes a hierarchy level consists of.

A ``HierarchyDefinition`` turns a parent node into a list of level
definitions: custom nodes that are returned as-is and instance node queries
that a ``QueryExecutor`` runs to get rows. Rows follow a fixed column contract
and are parsed into ``HierarchyNode`` objects by ``parse_row``.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .hierarchy_node import (
    AnyHierarchyNode,
    BaseClassGroupingParams,
    ClassGroupingParams,
    GroupingParams,
    HierarchyNode,
    LabelGroupingParams,
    LABEL_ACTION_MERGE,
    ProcessingParams,
    PropertiesGroupingParams,
    PropertyGroup,
    PropertyValueRange,
)
from .node_key import CustomNodeKey, InstanceKey, InstancesNodeKey

logger = logging.getLogger(__name__)


class NodeSelectColumns:
    """Column names of the row contract."""
    FULL_CLASS_NAME = "FullClassName"
    ECINSTANCE_ID = "ECInstanceId"
    DISPLAY_LABEL = "DisplayLabel"
    HAS_CHILDREN = "HasChildren"
    HIDE_IF_NO_CHILDREN = "HideIfNoChildren"
    HIDE_NODE_IN_HIERARCHY = "HideNodeInHierarchy"
    GROUPING = "Grouping"
    MERGE_BY_LABEL_ID = "MergeByLabelId"
    EXTENDED_DATA = "ExtendedData"
    AUTO_EXPAND = "AutoExpand"
    SUPPORTS_FILTERING = "SupportsFiltering"

    ALL = (
        FULL_CLASS_NAME,
        ECINSTANCE_ID,
        DISPLAY_LABEL,
        HAS_CHILDREN,
        HIDE_IF_NO_CHILDREN,
        HIDE_NODE_IN_HIERARCHY,
        GROUPING,
        MERGE_BY_LABEL_ID,
        EXTENDED_DATA,
        AUTO_EXPAND,
        SUPPORTS_FILTERING,
    )


# ============= Level Definitions =============

@dataclass
class CustomNodeDefinition:
    """A custom node returned as part of a hierarchy level."""
    node: HierarchyNode


@dataclass
class InstanceNodesDefinition:
    """An instance nodes query.

    Attributes:
        full_class_name: Class of the instances the query returns
        query: Query understood by the QueryExecutor
        target_instance_keys: When set, only rows of these instances are returned
    """
    full_class_name: str
    query: Any
    target_instance_keys: Optional[List[InstanceKey]] = None


HierarchyLevelDefinition = List[Union[CustomNodeDefinition, InstanceNodesDefinition]]


class QueryExecutor(ABC):
    """Runs instance node queries."""

    @abstractmethod
    async def execute(
        self,
        query: Any,
        limit: Optional[int] = None,
        instance_filter: Any = None,
        target_instance_keys: Optional[List[InstanceKey]] = None,
    ) -> List[Dict[str, Any]]:
        """Run a query and return rows following the ``NodeSelectColumns`` contract.

        Args:
            query: The query from an InstanceNodesDefinition
            limit: Maximum number of rows, None for no limit
            instance_filter: Opaque filter applied to the instances
            target_instance_keys: Restrict rows to these instances

        Raises:
            RowsLimitExceededError: If there are more rows than ``limit``
        """
        pass


class HierarchyDefinition(ABC):
    """Defines hierarchy levels.

    Subclasses implement ``define_hierarchy_level`` and may override the node
    hooks, which by default parse rows with ``parse_row`` and pass nodes through.
    """

    @abstractmethod
    async def define_hierarchy_level(
        self,
        parent_node: Optional[HierarchyNode],
        instance_filter: Any = None,
    ) -> HierarchyLevelDefinition:
        pass

    async def parse_node(self, row: Dict[str, Any], parent_node: Optional[HierarchyNode]) -> HierarchyNode:
        return parse_row(row)

    async def pre_process_node(self, node: HierarchyNode) -> Optional[HierarchyNode]:
        """Adjust or drop (by returning None) a node before hiding and grouping."""
        return node

    async def post_process_node(self, node: AnyHierarchyNode) -> AnyHierarchyNode:
        """Adjust a node after grouping."""
        return node


# ============= Row Parsing =============

def _json_value(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ("{", "["):
        return json.loads(value)
    return value


def _bool_value(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _handling_kwargs(source: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "hide_if_no_siblings": bool(source.get("hideIfNoSiblings", False)),
        "hide_if_one_grouped_node": bool(source.get("hideIfOneGroupedNode", False)),
        "auto_expand": source.get("autoExpand"),
    }


def _parse_ranges(ranges: Optional[List[Dict[str, Any]]]) -> Optional[List[PropertyValueRange]]:
    if ranges is None:
        return None
    return [
        PropertyValueRange(
            from_value=r["fromValue"],
            to_value=r["toValue"],
            range_label=r.get("rangeLabel"),
        )
        for r in ranges
    ]


def parse_grouping_params(source: Optional[Dict[str, Any]]) -> Optional[GroupingParams]:
    """Parse the ``Grouping`` column value.

    The value is the camelCase JSON object used by query builders, e.g.
    ``{"byClass": true, "byLabel": {"action": "merge", "groupId": "x"}}``.
    """
    if not source:
        return None
    params = GroupingParams()

    by_label = source.get("byLabel")
    if isinstance(by_label, dict):
        params.by_label = LabelGroupingParams(
            action=by_label.get("action", "group"),
            group_id=by_label.get("groupId"),
            **_handling_kwargs(by_label),
        )
    elif by_label:
        params.by_label = True

    by_class = source.get("byClass")
    if isinstance(by_class, dict):
        params.by_class = ClassGroupingParams(**_handling_kwargs(by_class))
    elif by_class:
        params.by_class = True

    by_base_classes = source.get("byBaseClasses")
    if by_base_classes:
        params.by_base_classes = BaseClassGroupingParams(
            full_class_names=list(by_base_classes.get("fullClassNames", [])),
            **_handling_kwargs(by_base_classes),
        )

    by_properties = source.get("byProperties")
    if by_properties:
        params.by_properties = PropertiesGroupingParams(
            properties_class_name=by_properties["propertiesClassName"],
            property_groups=[
                PropertyGroup(
                    property_name=group["propertyName"],
                    property_value=group.get("propertyValue"),
                    ranges=_parse_ranges(group.get("ranges")),
                )
                for group in by_properties.get("propertyGroups", [])
            ],
            create_group_for_unspecified_values=bool(by_properties.get("createGroupForUnspecifiedValues", False)),
            create_group_for_out_of_range_values=bool(by_properties.get("createGroupForOutOfRangeValues", False)),
            **_handling_kwargs(by_properties),
        )
    return params


def parse_row(row: Dict[str, Any]) -> HierarchyNode:
    """Parse a row following the ``NodeSelectColumns`` contract into a node.

    Args:
        row: Row as a column name to value mapping

    Returns:
        Instance hierarchy node with unformatted label and no parent keys

    Raises:
        ValueError: If the class name or instance id column is missing
    """
    class_name = row.get(NodeSelectColumns.FULL_CLASS_NAME)
    instance_id = row.get(NodeSelectColumns.ECINSTANCE_ID)
    if not class_name or instance_id is None:
        raise ValueError(
            f"Row is missing {NodeSelectColumns.FULL_CLASS_NAME} or {NodeSelectColumns.ECINSTANCE_ID}: {row!r}"
        )

    has_children = row.get(NodeSelectColumns.HAS_CHILDREN)
    grouping = parse_grouping_params(_json_value(row.get(NodeSelectColumns.GROUPING)))
    merge_by_label_id = row.get(NodeSelectColumns.MERGE_BY_LABEL_ID)
    if merge_by_label_id:
        grouping = grouping or GroupingParams()
        grouping.by_label = LabelGroupingParams(action=LABEL_ACTION_MERGE, group_id=str(merge_by_label_id))

    processing_params = ProcessingParams(
        hide_if_no_children=_bool_value(row.get(NodeSelectColumns.HIDE_IF_NO_CHILDREN, False)),
        hide_in_hierarchy=_bool_value(row.get(NodeSelectColumns.HIDE_NODE_IN_HIERARCHY, False)),
        grouping=grouping,
    )
    extended_data = _json_value(row.get(NodeSelectColumns.EXTENDED_DATA)) or {}

    return HierarchyNode(
        key=InstancesNodeKey(instance_keys=[InstanceKey(class_name=class_name, id=str(instance_id))]),
        label=_json_value(row.get(NodeSelectColumns.DISPLAY_LABEL, "")),
        children=None if has_children is None else _bool_value(has_children),
        auto_expand=_bool_value(row.get(NodeSelectColumns.AUTO_EXPAND, False)),
        extended_data=dict(extended_data),
        supports_filtering=_bool_value(row.get(NodeSelectColumns.SUPPORTS_FILTERING, False)),
        processing_params=processing_params,
    )


def create_custom_node(
    node_id: str,
    label: str,
    children: Optional[bool] = None,
    source: Optional[str] = None,
    **kwargs,
) -> HierarchyNode:
    """Convenience factory for custom nodes used in level definitions."""
    return HierarchyNode(
        key=CustomNodeKey(id=node_id, source=source),
        label=label,
        children=children,
        **kwargs,
    )

"""Hierarchy node models.

Nodes come in two shapes:
- ``HierarchyNode`` - a custom or instance-backed node whose children are
  loaded lazily
- ``GroupingHierarchyNode`` - a node created by the grouping engine that owns
  the nodes it groups directly
"""

import locale
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from .node_key import (
    GroupingNodeKey,
    HierarchyNodeKey,
    InstanceKey,
    common_key_prefix,
    is_class_grouping,
    is_custom,
    is_grouping,
    is_instances,
    is_label_grouping,
    is_property_grouping,
    merge_keys,
)

if TYPE_CHECKING:
    from .search import SearchPath, SearchPathOptions


AUTO_EXPAND_ALWAYS = "always"
AUTO_EXPAND_SINGLE_CHILD = "single-child"

LABEL_ACTION_GROUP = "group"
LABEL_ACTION_MERGE = "merge"


# ============= Processing Params =============

@dataclass
class GroupingHandlingParams:
    """Options shared by every grouping kind.

    Attributes:
        hide_if_no_siblings: Hide the grouping node if it's the only node in its level
        hide_if_one_grouped_node: Hide the grouping node if it groups a single node
        auto_expand: ``"always"`` or ``"single-child"``, or None
    """
    hide_if_no_siblings: bool = False
    hide_if_one_grouped_node: bool = False
    auto_expand: Optional[str] = None


@dataclass
class ClassGroupingParams(GroupingHandlingParams):
    pass


@dataclass
class LabelGroupingParams(GroupingHandlingParams):
    action: str = LABEL_ACTION_GROUP
    group_id: Optional[str] = None


@dataclass
class BaseClassGroupingParams(GroupingHandlingParams):
    full_class_names: List[str] = field(default_factory=list)


@dataclass
class PropertyValueRange:
    from_value: float
    to_value: float
    range_label: Optional[str] = None


@dataclass
class PropertyGroup:
    property_name: str
    property_value: Any = None
    ranges: Optional[List[PropertyValueRange]] = None


@dataclass
class PropertiesGroupingParams(GroupingHandlingParams):
    properties_class_name: str = ""
    property_groups: List[PropertyGroup] = field(default_factory=list)
    create_group_for_unspecified_values: bool = False
    create_group_for_out_of_range_values: bool = False


@dataclass
class GroupingParams:
    """Grouping directives attached to a node before grouping.

    ``by_label`` and ``by_class`` accept ``True`` as a shorthand for default options.
    """
    by_label: Union[bool, LabelGroupingParams, None] = None
    by_class: Union[bool, ClassGroupingParams, None] = None
    by_base_classes: Optional[BaseClassGroupingParams] = None
    by_properties: Optional[PropertiesGroupingParams] = None


@dataclass
class ProcessingParams:
    hide_if_no_children: bool = False
    hide_in_hierarchy: bool = False
    grouping: Optional[GroupingParams] = None


@dataclass
class SearchState:
    """Search metadata attached to nodes while a hierarchy level is built."""
    is_search_target: bool = False
    search_target_options: Optional["SearchPathOptions"] = None
    children_target_paths: Optional[List["SearchPath"]] = None
    has_search_target_ancestor: bool = False


# ============= Nodes =============

@dataclass
class HierarchyNode:
    """A custom or instance-backed hierarchy node.

    Attributes:
        key: Node key
        label: Display label (a list of typed segments until formatted)
        parent_keys: Keys of all ancestors, root first
        children: True/False when known, None when still to be determined
        auto_expand: Whether the node should be expanded when loaded
        extended_data: Free-form data carried along with the node
        supports_filtering: Whether the node's children can be instance-filtered
        processing_params: Directives used by hiding and grouping
        search: Search metadata
    """
    key: HierarchyNodeKey
    label: Any
    parent_keys: List[HierarchyNodeKey] = field(default_factory=list)
    children: Optional[bool] = None
    auto_expand: bool = False
    extended_data: Dict[str, Any] = field(default_factory=dict)
    supports_filtering: bool = False
    processing_params: Optional[ProcessingParams] = None
    search: Optional[SearchState] = None

    def has_children(self) -> bool:
        return bool(self.children)

    def class_name(self) -> Optional[str]:
        """Class name of the first backing instance, if any."""
        if is_instances(self.key) and self.key.instance_keys:
            return self.key.instance_keys[0].class_name
        return None

    def __repr__(self) -> str:
        return f"HierarchyNode(label={self.label!r}, key={self.key!r})"


@dataclass
class GroupingHierarchyNode:
    """A node created by the grouping engine.

    Attributes:
        key: Grouping key
        label: Display label
        parent_keys: Keys of all ancestors, root first
        grouped_instance_keys: Instance keys of every grouped node
        children: The grouped nodes, already re-parented under this node
        non_grouping_ancestor: Nearest custom or instance ancestor, None at root
        auto_expand: Whether the node should be expanded when loaded
    """
    key: GroupingNodeKey
    label: str
    parent_keys: List[HierarchyNodeKey] = field(default_factory=list)
    grouped_instance_keys: List[InstanceKey] = field(default_factory=list)
    children: List[HierarchyNode] = field(default_factory=list)
    non_grouping_ancestor: Optional[HierarchyNode] = None
    auto_expand: bool = False
    extended_data: Dict[str, Any] = field(default_factory=dict)
    supports_filtering: bool = False

    def has_children(self) -> bool:
        return len(self.children) > 0

    def __repr__(self) -> str:
        return (
            f"GroupingHierarchyNode(label={self.label!r}, key={self.key!r}, "
            f"children={len(self.children)})"
        )


AnyHierarchyNode = Union[HierarchyNode, GroupingHierarchyNode]


def is_grouping_node(node: Optional[AnyHierarchyNode]) -> bool:
    return node is not None and is_grouping(node.key)


def is_instances_node(node: Optional[AnyHierarchyNode]) -> bool:
    return node is not None and is_instances(node.key)


def is_custom_node(node: Optional[AnyHierarchyNode]) -> bool:
    return node is not None and is_custom(node.key)


def is_class_grouping_node(node: Optional[AnyHierarchyNode]) -> bool:
    return node is not None and is_class_grouping(node.key)


def is_label_grouping_node(node: Optional[AnyHierarchyNode]) -> bool:
    return node is not None and is_label_grouping(node.key)


def is_property_grouping_node(node: Optional[AnyHierarchyNode]) -> bool:
    return node is not None and is_property_grouping(node.key)


def create_parent_keys(parent_node: Optional[AnyHierarchyNode]) -> List[HierarchyNodeKey]:
    """Parent key chain for children of the given node."""
    if parent_node is None:
        return []
    return list(parent_node.parent_keys) + [parent_node.key]


def get_non_grouping_ancestor(parent_node: Optional[AnyHierarchyNode]) -> Optional[HierarchyNode]:
    """Nearest non-grouping node for children of the given parent."""
    if parent_node is None:
        return None
    if isinstance(parent_node, GroupingHierarchyNode):
        return parent_node.non_grouping_ancestor
    return parent_node


def with_parent_key(node: HierarchyNode, key: HierarchyNodeKey) -> HierarchyNode:
    """Copy of the node re-parented under a node with the given key."""
    return replace(node, parent_keys=list(node.parent_keys) + [key])


# ============= Labels =============

_NUMBER_SPLIT = re.compile(r"(\d+)")


def natural_sort_key(label: Any) -> List[tuple]:
    """Sort key that orders ``Item 2`` before ``Item 10``.

    Text chunks compare case-insensitively using the current locale's collation.
    """
    result = []
    for token in _NUMBER_SPLIT.split(str(label)):
        if not token:
            continue
        if token.isdecimal():
            result.append((0, int(token), ""))
        else:
            result.append((1, 0, locale.strxfrm(token.casefold())))
    return result


def sort_nodes_by_label(nodes: List[Any]) -> List[Any]:
    return sorted(nodes, key=lambda n: natural_sort_key(n.label))


# ============= Merging =============

def _get_by_label(params: Optional[ProcessingParams]) -> Union[bool, LabelGroupingParams, None]:
    if params is None or params.grouping is None:
        return None
    return params.grouping.by_label


def merge_processing_params(
    lhs: Optional[ProcessingParams],
    rhs: Optional[ProcessingParams],
) -> Optional[ProcessingParams]:
    if lhs is None and rhs is None:
        return None
    result = ProcessingParams(
        hide_if_no_children=bool(
            (lhs and lhs.hide_if_no_children) or (rhs and rhs.hide_if_no_children)
        ),
        hide_in_hierarchy=bool(
            (lhs and lhs.hide_in_hierarchy) or (rhs and rhs.hide_in_hierarchy)
        ),
    )
    lhs_by_label = _get_by_label(lhs)
    rhs_by_label = _get_by_label(rhs)
    if (
        isinstance(lhs_by_label, LabelGroupingParams)
        and isinstance(rhs_by_label, LabelGroupingParams)
        and lhs_by_label.action == LABEL_ACTION_MERGE
        and rhs_by_label.action == LABEL_ACTION_MERGE
        and lhs_by_label.group_id == rhs_by_label.group_id
    ):
        result.grouping = GroupingParams(by_label=lhs_by_label)
    return result


def _merge_children_flags(lhs: Optional[bool], rhs: Optional[bool]) -> Optional[bool]:
    if lhs is True or rhs is True:
        return True
    if lhs is False and rhs is False:
        return False
    return None


def _merge_search_states(lhs: Optional[SearchState], rhs: Optional[SearchState]) -> Optional[SearchState]:
    if lhs is None or rhs is None:
        return lhs if lhs is not None else rhs
    from .search import merge_search_path_options

    if lhs.children_target_paths is None and rhs.children_target_paths is None:
        children_target_paths = None
    else:
        children_target_paths = list(lhs.children_target_paths or []) + list(rhs.children_target_paths or [])
    return SearchState(
        is_search_target=lhs.is_search_target or rhs.is_search_target,
        search_target_options=merge_search_path_options(lhs.search_target_options, rhs.search_target_options),
        children_target_paths=children_target_paths,
        has_search_target_ancestor=lhs.has_search_target_ancestor or rhs.has_search_target_ancestor,
    )


def merge_nodes(lhs: HierarchyNode, rhs: HierarchyNode) -> HierarchyNode:
    """Merge two non-grouping nodes into one.

    The merged key concatenates instance keys (or joins custom ids), the parent
    keys become the common prefix of both chains and the label comes from
    ``lhs``.

    Args:
        lhs: First node
        rhs: Second node

    Returns:
        A new merged node
    """
    return HierarchyNode(
        key=merge_keys(lhs.key, rhs.key),
        label=lhs.label,
        parent_keys=common_key_prefix(lhs.parent_keys, rhs.parent_keys),
        children=_merge_children_flags(lhs.children, rhs.children),
        auto_expand=lhs.auto_expand or rhs.auto_expand,
        extended_data={**lhs.extended_data, **rhs.extended_data},
        supports_filtering=lhs.supports_filtering and rhs.supports_filtering,
        processing_params=merge_processing_params(lhs.processing_params, rhs.processing_params),
        search=_merge_search_states(lhs.search, rhs.search),
    )

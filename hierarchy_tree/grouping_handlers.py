"""Grouping handlers - class, base class and label grouping plus post-processing.

A grouping handler takes the nodes that are still ungrouped (and the grouping
nodes created by earlier handlers) and splits them into new grouping nodes and
nodes it left alone.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .hierarchy_node import (
    AUTO_EXPAND_ALWAYS,
    AUTO_EXPAND_SINGLE_CHILD,
    LABEL_ACTION_MERGE,
    GroupingHandlingParams,
    GroupingHierarchyNode,
    HierarchyNode,
    LabelGroupingParams,
    AnyHierarchyNode,
    is_class_grouping_node,
    merge_nodes,
    sort_nodes_by_label,
    with_parent_key,
)
from .metadata import BaseClassChecker, ClassInfo, MetadataProvider
from .node_key import (
    ClassGroupingNodeKey,
    LabelGroupingNodeKey,
    compare_full_class_names,
    normalize_full_class_name,
)
from .scheduling import MainThreadReleaser

logger = logging.getLogger(__name__)

GROUPING_TYPE_BASE_CLASS = "base-class"
GROUPING_TYPE_CLASS = "class"
GROUPING_TYPE_PROPERTY = "property"
GROUPING_TYPE_LABEL = "label"


@dataclass
class GroupingHandlerResult:
    """Output of a single grouping handler.

    Attributes:
        grouped: New grouping nodes, sorted by label
        ungrouped: Nodes the handler didn't group
        grouping_type: Kind of grouping that produced the result
    """
    grouped: List[GroupingHierarchyNode] = field(default_factory=list)
    ungrouped: List[HierarchyNode] = field(default_factory=list)
    grouping_type: str = GROUPING_TYPE_CLASS


GroupingHandler = Callable[
    [List[HierarchyNode], List[GroupingHierarchyNode]],
    Awaitable[GroupingHandlerResult],
]


def _grouping_params(node: HierarchyNode):
    params = node.processing_params
    if params is None:
        return None
    return params.grouping


def create_grouping_node(
    key,
    label: str,
    grouped_nodes: List[HierarchyNode],
) -> GroupingHierarchyNode:
    """Wrap nodes into a grouping node and re-parent them under it."""
    parent_keys = list(grouped_nodes[0].parent_keys)
    grouped_instance_keys = []
    for node in grouped_nodes:
        grouped_instance_keys.extend(node.key.instance_keys)
    return GroupingHierarchyNode(
        key=key,
        label=label,
        parent_keys=parent_keys,
        grouped_instance_keys=grouped_instance_keys,
        children=[with_parent_key(node, key) for node in grouped_nodes],
    )


# ============= Class Grouping =============

async def create_class_groups(
    metadata: MetadataProvider,
    parent_node: Optional[AnyHierarchyNode],
    nodes: List[HierarchyNode],
    release: Optional[MainThreadReleaser] = None,
) -> GroupingHandlerResult:
    """Group nodes that opted in with ``by_class`` by their class.

    Nodes of the parent class grouping node's class are left ungrouped, so a
    class group never directly contains another group of the same class.

    Args:
        metadata: Schema access used to get class labels
        parent_node: Parent of the hierarchy level being grouped
        nodes: Nodes to group
        release: Optional main thread releaser

    Returns:
        GroupingHandlerResult with one grouping node per class
    """
    release = release or MainThreadReleaser()
    buckets: Dict[str, Tuple[str, List[HierarchyNode]]] = {}
    ungrouped: List[HierarchyNode] = []
    parent_class_name = parent_node.key.class_name if is_class_grouping_node(parent_node) else None

    for node in nodes:
        await release()
        grouping = _grouping_params(node)
        if grouping is None or not grouping.by_class:
            ungrouped.append(node)
            continue
        full_class_name = node.class_name()
        if parent_class_name is not None and compare_full_class_names(parent_class_name, full_class_name) == 0:
            ungrouped.append(node)
            continue
        bucket_key = normalize_full_class_name(full_class_name).lower()
        if bucket_key not in buckets:
            buckets[bucket_key] = (full_class_name, [])
        buckets[bucket_key][1].append(node)

    grouped: List[GroupingHierarchyNode] = []
    for full_class_name, grouped_nodes in buckets.values():
        class_info = await metadata.get_class(full_class_name)
        key = ClassGroupingNodeKey(class_name=class_info.full_name)
        grouped.append(create_grouping_node(key, class_info.label or class_info.name, grouped_nodes))

    return GroupingHandlerResult(
        grouped=sort_nodes_by_label(grouped),
        ungrouped=ungrouped,
        grouping_type=GROUPING_TYPE_CLASS,
    )


# ============= Base Class Grouping =============

async def sort_by_base_class(classes: List[ClassInfo], checker: BaseClassChecker) -> List[ClassInfo]:
    """Order classes so that base classes come before the classes deriving from them."""
    if not classes:
        return classes
    output = [classes[0]]
    for candidate in classes[1:]:
        inserted = False
        for index in range(len(output) - 1, -1, -1):
            if await checker.derives_from(candidate.full_name, output[index].full_name):
                output.insert(index + 1, candidate)
                inserted = True
                break
        if not inserted:
            output.insert(0, candidate)
    return output


async def get_base_class_grouping_classes(
    metadata: MetadataProvider,
    checker: BaseClassChecker,
    parent_node: Optional[AnyHierarchyNode],
    nodes: List[HierarchyNode],
    release: Optional[MainThreadReleaser] = None,
) -> List[ClassInfo]:
    """Collect the base classes nodes want to be grouped by.

    Under a class grouping node only base classes that come after the parent's
    class are returned, since the parent already groups by the earlier ones.
    """
    release = release or MainThreadReleaser()
    names: List[str] = []
    seen = set()
    for node in nodes:
        await release()
        grouping = _grouping_params(node)
        if grouping is None or grouping.by_base_classes is None:
            continue
        for class_name in grouping.by_base_classes.full_class_names:
            normalized = normalize_full_class_name(class_name).lower()
            if normalized not in seen:
                seen.add(normalized)
                names.append(class_name)
    if not names:
        return []

    classes = []
    for name in names:
        await release()
        classes.append(await metadata.get_class(name))
    sorted_classes = await sort_by_base_class(classes, checker)

    if is_class_grouping_node(parent_node):
        for index, class_info in enumerate(sorted_classes):
            if compare_full_class_names(class_info.full_name, parent_node.key.class_name) == 0:
                return sorted_classes[index + 1:]
        return []
    return sorted_classes


async def create_base_class_groups(
    nodes: List[HierarchyNode],
    base_class: ClassInfo,
    checker: BaseClassChecker,
    release: Optional[MainThreadReleaser] = None,
) -> GroupingHandlerResult:
    """Group nodes whose class derives from ``base_class`` into a single grouping node."""
    release = release or MainThreadReleaser()
    grouped_nodes: List[HierarchyNode] = []
    ungrouped: List[HierarchyNode] = []
    for node in nodes:
        await release()
        grouping = _grouping_params(node)
        if (
            grouping is None
            or grouping.by_base_classes is None
            or not any(
                compare_full_class_names(name, base_class.full_name) == 0
                for name in grouping.by_base_classes.full_class_names
            )
        ):
            ungrouped.append(node)
            continue
        if await checker.derives_from(node.class_name(), base_class.full_name):
            grouped_nodes.append(node)
        else:
            ungrouped.append(node)

    result = GroupingHandlerResult(ungrouped=ungrouped, grouping_type=GROUPING_TYPE_BASE_CLASS)
    if grouped_nodes:
        key = ClassGroupingNodeKey(class_name=base_class.full_name)
        result.grouped.append(create_grouping_node(key, base_class.label or base_class.name, grouped_nodes))
    return result


async def create_base_class_grouping_handlers(
    metadata: MetadataProvider,
    checker: BaseClassChecker,
    parent_node: Optional[AnyHierarchyNode],
    nodes: List[HierarchyNode],
    release_budget_ms: Optional[float] = None,
) -> List[GroupingHandler]:
    """Create one grouping handler per base class, base classes first."""
    def make_releaser() -> MainThreadReleaser:
        return MainThreadReleaser() if release_budget_ms is None else MainThreadReleaser(release_budget_ms)

    base_classes = await get_base_class_grouping_classes(metadata, checker, parent_node, nodes, make_releaser())

    def make_handler(base_class: ClassInfo) -> GroupingHandler:
        async def handler(all_nodes, already_grouped):
            return await create_base_class_groups(all_nodes, base_class, checker, make_releaser())
        return handler

    return [make_handler(base_class) for base_class in base_classes]


# ============= Label Grouping =============

def _label_params(by_label: Union[bool, LabelGroupingParams, None]) -> Optional[LabelGroupingParams]:
    if not by_label:
        return None
    if isinstance(by_label, LabelGroupingParams):
        return by_label
    return LabelGroupingParams()


async def create_label_groups(
    nodes: List[HierarchyNode],
    release: Optional[MainThreadReleaser] = None,
) -> GroupingHandlerResult:
    """Group or merge nodes by label.

    Nodes with the ``merge`` action and the same label and group id are merged
    into a single node. Every other node that opted in is wrapped into a label
    grouping node. Different group ids never end up together.
    """
    release = release or MainThreadReleaser()
    ungrouped: List[HierarchyNode] = []
    merged_positions: Dict[Tuple[str, Optional[str]], int] = {}
    groups: Dict[Tuple[str, Optional[str]], List[HierarchyNode]] = {}

    for node in nodes:
        await release()
        grouping = _grouping_params(node)
        params = _label_params(grouping.by_label if grouping else None)
        if params is None:
            ungrouped.append(node)
            continue
        map_key = (str(node.label), params.group_id)
        if params.action == LABEL_ACTION_MERGE:
            position = merged_positions.get(map_key)
            if position is None:
                merged_positions[map_key] = len(ungrouped)
                ungrouped.append(node)
            else:
                ungrouped[position] = merge_nodes(ungrouped[position], node)
            continue
        groups.setdefault(map_key, []).append(node)

    grouped = [
        create_grouping_node(
            LabelGroupingNodeKey(label=label, group_id=group_id),
            label,
            grouped_nodes,
        )
        for (label, group_id), grouped_nodes in groups.items()
    ]
    if merged_positions:
        logger.debug(f"[Grouping] Merged nodes into {len(merged_positions)} nodes by label")
    return GroupingHandlerResult(
        grouped=sort_nodes_by_label(grouped),
        ungrouped=ungrouped,
        grouping_type=GROUPING_TYPE_LABEL,
    )


# ============= Post-processing =============

def _handling_params(node: HierarchyNode, grouping_type: str) -> Optional[GroupingHandlingParams]:
    grouping = _grouping_params(node)
    if grouping is None:
        return None
    if grouping_type == GROUPING_TYPE_BASE_CLASS:
        return grouping.by_base_classes
    if grouping_type == GROUPING_TYPE_CLASS:
        return grouping.by_class if isinstance(grouping.by_class, GroupingHandlingParams) else None
    if grouping_type == GROUPING_TYPE_PROPERTY:
        return grouping.by_properties
    if grouping_type == GROUPING_TYPE_LABEL:
        return grouping.by_label if isinstance(grouping.by_label, GroupingHandlingParams) else None
    return None


def get_hiding_params(grouping_node: GroupingHierarchyNode, grouping_type: str) -> Tuple[bool, bool]:
    """Get ``(hide_if_no_siblings, hide_if_one_grouped_node)`` for a grouping node.

    A flag is on when any grouped node asks for it.
    """
    hide_if_no_siblings = False
    hide_if_one_grouped_node = False
    for child in grouping_node.children:
        params = _handling_params(child, grouping_type)
        if params is None:
            continue
        hide_if_no_siblings = hide_if_no_siblings or params.hide_if_no_siblings
        hide_if_one_grouped_node = hide_if_one_grouped_node or params.hide_if_one_grouped_node
        if hide_if_no_siblings and hide_if_one_grouped_node:
            break
    return hide_if_no_siblings, hide_if_one_grouped_node


def _unwrap_children(grouping_node: GroupingHierarchyNode) -> List[HierarchyNode]:
    return [replace(child, parent_keys=list(child.parent_keys[:-1])) for child in grouping_node.children]


def apply_group_hiding_params(result: GroupingHandlerResult, extra_siblings: int) -> GroupingHandlerResult:
    """Remove grouping nodes whose hiding params say so.

    Children of removed grouping nodes are returned as ungrouped nodes.

    Args:
        result: Result of a grouping handler
        extra_siblings: Number of other nodes in the hierarchy level

    Returns:
        New GroupingHandlerResult
    """
    grouped: List[GroupingHierarchyNode] = []
    ungrouped: List[HierarchyNode] = list(result.ungrouped)
    for grouping_node in result.grouped:
        hide_if_no_siblings, hide_if_one_grouped_node = get_hiding_params(grouping_node, result.grouping_type)
        if hide_if_one_grouped_node and len(grouping_node.children) == 1:
            ungrouped.extend(_unwrap_children(grouping_node))
            continue
        if (
            hide_if_no_siblings
            and len(result.grouped) == 1
            and len(result.ungrouped) == 0
            and extra_siblings == 0
        ):
            ungrouped.extend(_unwrap_children(grouping_node))
            continue
        grouped.append(grouping_node)
    return GroupingHandlerResult(grouped=grouped, ungrouped=ungrouped, grouping_type=result.grouping_type)


def assign_auto_expand(result: GroupingHandlerResult) -> GroupingHandlerResult:
    """Set ``auto_expand`` on grouping nodes based on their children's policies."""
    for grouping_node in result.grouped:
        for child in grouping_node.children:
            params = _handling_params(child, result.grouping_type)
            if params is None or not params.auto_expand:
                continue
            if params.auto_expand == AUTO_EXPAND_ALWAYS:
                grouping_node.auto_expand = True
                break
            if params.auto_expand == AUTO_EXPAND_SINGLE_CHILD and len(grouping_node.children) == 1:
                grouping_node.auto_expand = True
                break
    return result

"""Node hiding - drop childless nodes and replace hidden nodes with their children."""

import logging
from typing import Awaitable, Callable, Dict, List

from .hierarchy_node import AnyHierarchyNode, HierarchyNode, is_custom_node, is_instances_node, merge_nodes
from .node_key import is_custom

logger = logging.getLogger(__name__)

HasNodesCallback = Callable[[HierarchyNode], Awaitable[bool]]
GetNodesCallback = Callable[[HierarchyNode], Awaitable[List[AnyHierarchyNode]]]


def _has_flag(node: AnyHierarchyNode, flag: str) -> bool:
    params = getattr(node, "processing_params", None)
    return params is not None and bool(getattr(params, flag))


async def hide_if_no_children(nodes: List[AnyHierarchyNode], has_nodes: HasNodesCallback) -> List[AnyHierarchyNode]:
    """Drop nodes flagged ``hide_if_no_children`` that have no children.

    Nodes whose children flag is unknown get it determined with ``has_nodes``.

    Args:
        nodes: Nodes of a hierarchy level
        has_nodes: Tells whether a node has any child nodes

    Returns:
        Nodes that stay in the level
    """
    result = []
    for node in nodes:
        if not _has_flag(node, "hide_if_no_children"):
            result.append(node)
            continue
        if node.children is None:
            node.children = await has_nodes(node)
        if node.children:
            result.append(node)
        else:
            logger.debug(f"[Provider] Hiding {node.label!r} since it has no children")
    return result


def _merge_map_key(node: HierarchyNode) -> str:
    if is_custom(node.key):
        return f"{node.key.source}:{node.key.id}" if node.key.source else node.key.id
    return node.key.instance_keys[0].class_name


async def hide_nodes_in_hierarchy(nodes: List[AnyHierarchyNode], get_nodes: GetNodesCallback) -> List[AnyHierarchyNode]:
    """Replace nodes flagged ``hide_in_hierarchy`` with their children.

    Hidden instance nodes of the same class are merged first so their children
    are loaded in one go. Hidden custom nodes are never merged.

    Args:
        nodes: Nodes of a hierarchy level
        get_nodes: Loads processed child nodes of a node

    Returns:
        Visible nodes followed by the children of hidden nodes
    """
    visible: List[AnyHierarchyNode] = []
    hidden: Dict[str, HierarchyNode] = {}
    for node in nodes:
        if not ((is_custom_node(node) or is_instances_node(node)) and _has_flag(node, "hide_in_hierarchy")):
            visible.append(node)
            continue
        if node.children is False:
            continue
        map_key = _merge_map_key(node)
        merged = hidden.get(map_key)
        if merged is None:
            hidden[map_key] = node
        elif is_instances_node(merged):
            hidden[map_key] = merge_nodes(merged, node)

    for hidden_node in hidden.values():
        children = await get_nodes(hidden_node)
        logger.debug(f"[Provider] Replaced hidden node {hidden_node.label!r} with {len(children)} children")
        visible.extend(children)
    return visible

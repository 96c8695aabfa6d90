"""TreeModel - Client-side tree state over loaded hierarchy levels.

The model is an arena of string node ids: ``id_to_node`` holds every loaded
node, ``parent_child_map`` holds ordered child ids per parent id (``None`` is
the root). A parent missing from ``parent_child_map`` has not been loaded, an
empty list means it was loaded and has no children.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .hierarchy_node import AnyHierarchyNode, GroupingHierarchyNode
from .node_key import create_node_id

RESULT_SET_TOO_LARGE = "ResultSetTooLarge"
UNKNOWN = "Unknown"

LOADING_PLACEHOLDER_SUFFIX = "-loading"


class SelectionChangeType(Enum):
    """How ``select_nodes`` changes the current selection."""
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"


class ExpandAction(Enum):
    """What has to happen after a node is expanded."""
    NONE = "none"
    LOAD_CHILDREN = "loadChildren"
    RELOAD_CHILDREN = "reloadChildren"


# ============= Model Nodes =============

@dataclass
class TreeModelRootNode:
    """Sentinel parent of the root level, carrying the root level options."""
    id: None = None
    node_data: None = None
    hierarchy_limit: Union[int, str, None] = None
    instance_filter: Any = None
    is_loading: bool = False


@dataclass
class TreeModelHierarchyNode:
    """A loaded hierarchy node with its client-side state.

    Attributes:
        id: Node id derived from the node's parent key chain and key
        node_data: The node produced by the hierarchy provider
        label: Display label
        children: Whether the node has children
        is_expanded: True/False once the user (or auto-expand) decided, None before
        is_loading: Whether children are being loaded
        is_selected: Selection flag
        hierarchy_limit: Size limit for this node's child level
        instance_filter: Instance filter for this node's child level
    """
    id: str
    node_data: AnyHierarchyNode
    label: str
    children: bool
    is_expanded: Optional[bool] = None
    is_loading: bool = False
    is_selected: bool = False
    hierarchy_limit: Union[int, str, None] = None
    instance_filter: Any = None


@dataclass
class TreeModelInfoNode:
    """Stands in for a hierarchy level that couldn't be loaded."""
    id: str
    parent_id: Optional[str]
    type: str
    message: str


TreeModelNode = Union[TreeModelHierarchyNode, TreeModelInfoNode]


def is_hierarchy_node(node: Any) -> bool:
    return isinstance(node, TreeModelHierarchyNode)


def is_info_node(node: Any) -> bool:
    return isinstance(node, TreeModelInfoNode)


def get_node_id(node: AnyHierarchyNode) -> str:
    return create_node_id(node.parent_keys, node.key)


def create_info_node(parent_id: Optional[str], info_type: str, message: str) -> TreeModelInfoNode:
    return TreeModelInfoNode(
        id=f"{parent_id or ''}-{message}",
        parent_id=parent_id,
        type=info_type,
        message=message,
    )


def get_non_grouped_parent_id(node: Union[TreeModelRootNode, TreeModelHierarchyNode]) -> Optional[str]:
    """Id of the model node whose level options apply to the given node's children.

    Grouping nodes take options of their nearest non-grouping ancestor.
    """
    if not isinstance(node.node_data, GroupingHierarchyNode):
        return node.id
    ancestor = node.node_data.non_grouping_ancestor
    if ancestor is None:
        return None
    return get_node_id(ancestor)


# ============= Tree Projection =============

@dataclass
class TreeViewNode:
    """Denormalized node returned by ``TreeModel.get_tree``."""
    id: str
    label: str
    children: List["TreeViewNode"] = field(default_factory=list)
    is_expanded: bool = False
    is_loading: bool = False
    is_selected: bool = False
    info_type: Optional[str] = None
    is_placeholder: bool = False


# ============= Model =============

class TreeModel:
    """Client tree model with incremental, subtree-replacing updates.

    Usage:
        model = TreeModel()
        action = model.expand_node(node_id, True)
        model.add_hierarchy_part(node_id, loaded_part)
        forest = model.get_tree()
    """

    def __init__(self, root_node: Optional[TreeModelRootNode] = None):
        self.id_to_node: Dict[str, TreeModelNode] = {}
        self.parent_child_map: Dict[Optional[str], List[str]] = {}
        self.root_node = root_node or TreeModelRootNode()
        self._lock = RLock()

    # ============= Reading =============

    def get_node(self, node_id: Optional[str]) -> Union[TreeModelNode, TreeModelRootNode, None]:
        """Get a node by id, the root sentinel for None."""
        if node_id is None:
            return self.root_node
        with self._lock:
            return self.id_to_node.get(node_id)

    def get_children(self, parent_id: Optional[str]) -> Optional[List[TreeModelNode]]:
        """Child nodes of a parent, or None if the parent's children aren't loaded."""
        with self._lock:
            child_ids = self.parent_child_map.get(parent_id)
            if child_ids is None:
                return None
            return [self.id_to_node[child_id] for child_id in child_ids]

    def is_node_selected(self, node_id: str) -> bool:
        node = self.id_to_node.get(node_id)
        return is_hierarchy_node(node) and node.is_selected

    def collect_nodes(
        self,
        parent_id: Optional[str],
        predicate: Callable[[TreeModelHierarchyNode], bool],
    ) -> List[TreeModelHierarchyNode]:
        """Collect descendants matching the predicate, descending only through matching nodes.

        Args:
            parent_id: Where to start, None for the whole tree
            predicate: Node filter, also deciding whether to descend

        Returns:
            Matching nodes, parents before their children
        """
        with self._lock:
            result: List[TreeModelHierarchyNode] = []
            for child_id in self.parent_child_map.get(parent_id, []):
                node = self.id_to_node.get(child_id)
                if not is_hierarchy_node(node) or not predicate(node):
                    continue
                result.append(node)
                result.extend(self.collect_nodes(child_id, predicate))
            return result

    def get_tree(self) -> List[TreeViewNode]:
        """Project the model into an ordered forest.

        A node with unloaded children gets a single loading placeholder child.
        """
        with self._lock:
            return self._project_level(None)

    def _project_level(self, parent_id: Optional[str]) -> List[TreeViewNode]:
        result = []
        for child_id in self.parent_child_map.get(parent_id, []):
            node = self.id_to_node[child_id]
            if is_info_node(node):
                result.append(TreeViewNode(id=node.id, label=node.message, info_type=node.type))
                continue
            view = TreeViewNode(
                id=node.id,
                label=node.label,
                is_expanded=bool(node.is_expanded),
                is_loading=node.is_loading,
                is_selected=node.is_selected,
            )
            if node.id in self.parent_child_map:
                view.children = self._project_level(node.id)
            elif node.children:
                view.children = [TreeViewNode(
                    id=f"{node.id}{LOADING_PLACEHOLDER_SUFFIX}",
                    label="",
                    is_loading=True,
                    is_placeholder=True,
                )]
            result.append(view)
        return result

    # ============= Updates =============

    def expand_node(self, node_id: str, is_expanded: bool) -> ExpandAction:
        """Expand or collapse a node.

        Collapsing never discards loaded children.

        Returns:
            LOAD_CHILDREN when children are unknown, RELOAD_CHILDREN when the only
            child is an info node (retry), NONE otherwise
        """
        with self._lock:
            node = self.id_to_node.get(node_id)
            if not is_hierarchy_node(node):
                return ExpandAction.NONE

            node.is_expanded = is_expanded
            if not is_expanded or not node.children:
                return ExpandAction.NONE

            child_ids = self.parent_child_map.get(node_id)
            if child_ids is None:
                node.is_loading = True
                return ExpandAction.LOAD_CHILDREN

            if len(child_ids) != 1 or not is_info_node(self.id_to_node.get(child_ids[0])):
                return ExpandAction.NONE

            self.remove_subtree(node_id)
            node.is_loading = True
            return ExpandAction.RELOAD_CHILDREN

    def add_nodes(self, parent_id: Optional[str], nodes: Iterable[TreeModelNode]) -> None:
        """Add one loaded hierarchy level, marking the parent expanded."""
        nodes = list(nodes)
        with self._lock:
            self.parent_child_map[parent_id] = [node.id for node in nodes]
            for node in nodes:
                self.id_to_node[node.id] = node
            parent = self.id_to_node.get(parent_id) if parent_id is not None else None
            if is_hierarchy_node(parent):
                parent.is_expanded = True

    def add_hierarchy_part(self, root_id: Optional[str], part: "TreeModel") -> None:
        """Replace the subtree under ``root_id`` with a loaded hierarchy part."""
        with self._lock:
            self.remove_subtree(root_id)
            self.parent_child_map.update(part.parent_child_map)
            self.id_to_node.update(part.id_to_node)
            parent = self.id_to_node.get(root_id) if root_id is not None else None
            if is_hierarchy_node(parent):
                parent.is_loading = False

    def remove_subtree(self, parent_id: Optional[str]) -> None:
        """Recursively drop the loaded children of a node."""
        with self._lock:
            child_ids = self.parent_child_map.pop(parent_id, None)
            if child_ids is None:
                return
            for child_id in child_ids:
                if is_hierarchy_node(self.id_to_node.get(child_id)):
                    self.remove_subtree(child_id)
                self.id_to_node.pop(child_id, None)

    def set_hierarchy_limit(self, node_id: Optional[str], limit: Union[int, str, None]) -> bool:
        """Set the child level size limit of a node and drop its children.

        Returns:
            Whether the node's children have to be reloaded
        """
        with self._lock:
            self.remove_subtree(node_id)
            if node_id is None:
                self.root_node.hierarchy_limit = limit
                return True
            node = self.id_to_node.get(node_id)
            if not is_hierarchy_node(node):
                return False
            node.hierarchy_limit = limit
            if node.is_expanded:
                node.is_loading = True
                return True
            return False

    def set_instance_filter(self, node_id: Optional[str], instance_filter: Any) -> bool:
        """Set the child level instance filter of a node and drop its children.

        Returns:
            Whether the node's children have to be reloaded
        """
        with self._lock:
            if node_id is None:
                self.root_node.instance_filter = instance_filter
                self.remove_subtree(None)
                return True
            node = self.id_to_node.get(node_id)
            if not is_hierarchy_node(node):
                return False
            self.remove_subtree(node_id)
            node.instance_filter = instance_filter
            if node.is_expanded:
                node.is_loading = True
                return True
            return False

    def select_nodes(self, node_ids: Iterable[str], change_type: SelectionChangeType) -> None:
        node_ids = list(node_ids)
        with self._lock:
            if change_type == SelectionChangeType.REPLACE:
                for node in self.id_to_node.values():
                    if is_hierarchy_node(node):
                        node.is_selected = False
            for node_id in node_ids:
                node = self.id_to_node.get(node_id)
                if is_hierarchy_node(node):
                    node.is_selected = change_type != SelectionChangeType.REMOVE

    def get_selected_ids(self) -> List[str]:
        with self._lock:
            return [
                node.id for node in self.id_to_node.values()
                if is_hierarchy_node(node) and node.is_selected
            ]

    def copy(self) -> "TreeModel":
        """Snapshot of the model; nodes are copied, node data is shared."""
        with self._lock:
            snapshot = TreeModel(replace(self.root_node))
            snapshot.parent_child_map = {key: list(ids) for key, ids in self.parent_child_map.items()}
            snapshot.id_to_node = {key: replace(node) for key, node in self.id_to_node.items()}
            return snapshot

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.id_to_node

    def __len__(self) -> int:
        return len(self.id_to_node)

    def __repr__(self) -> str:
        return f"TreeModel(nodes={len(self.id_to_node)}, loaded_levels={len(self.parent_child_map)})"

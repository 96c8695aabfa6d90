"""TreeActions - User-facing operations on a tree model.

Every operation updates the model synchronously, then loads whatever has to be
(re)loaded and merges it in one step once the load completes. Loads started
for the same node cancel each other (the last request wins) and a full reload
cancels everything in flight.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from .provider import HierarchyProvider
from .tree_loader import (
    DEFAULT_AUTO_EXPAND_CONCURRENCY,
    CancellationToken,
    HierarchyLevelOptions,
    ParentNode,
    TreeLoader,
)
from .tree_model import (
    ExpandAction,
    SelectionChangeType,
    TreeModel,
    TreeModelHierarchyNode,
    TreeModelNode,
    TreeModelRootNode,
    TreeViewNode,
    get_non_grouped_parent_id,
    is_hierarchy_node,
    is_info_node,
)

logger = logging.getLogger(__name__)


def create_hierarchy_level_options(model: TreeModel, node_id: Optional[str]) -> HierarchyLevelOptions:
    """Level options stored in the model for the given node id."""
    if node_id is None:
        return HierarchyLevelOptions(
            instance_filter=model.root_node.instance_filter,
            hierarchy_level_size_limit=model.root_node.hierarchy_limit,
        )
    node = model.get_node(node_id)
    if not is_hierarchy_node(node):
        return HierarchyLevelOptions()
    return HierarchyLevelOptions(
        instance_filter=node.instance_filter,
        hierarchy_level_size_limit=node.hierarchy_limit,
    )


def copy_node_state(node: TreeModelHierarchyNode, old_model: TreeModel) -> TreeModelHierarchyNode:
    """Carry limit, filter and selection over from the same node in an older model."""
    old_node = old_model.get_node(node.id)
    if is_hierarchy_node(old_node):
        node.hierarchy_limit = old_node.hierarchy_limit
        node.instance_filter = old_node.instance_filter
        node.is_selected = old_node.is_selected
    return node


class TreeActions:
    """Operations on a client tree model backed by a hierarchy provider.

    Usage:
        actions = TreeActions(provider, on_model_changed=render)
        await actions.reload_tree()
        await actions.expand_node(node_id, True)
        await actions.set_hierarchy_limit(node_id, "unbounded")
        forest = actions.get_tree()
    """

    def __init__(
        self,
        provider: Optional[HierarchyProvider] = None,
        on_model_changed: Optional[Callable[[TreeModel], None]] = None,
        seed: Optional[TreeModel] = None,
        concurrency: int = DEFAULT_AUTO_EXPAND_CONCURRENCY,
    ):
        """Initialize tree actions.

        Args:
            provider: Source of hierarchy levels, may be set later
            on_model_changed: Called after every model change
            seed: Initial model
            concurrency: Maximum number of hierarchy levels loaded at once
        """
        self._model = seed or TreeModel()
        self._on_model_changed = on_model_changed
        self._concurrency = concurrency
        self._loader: Optional[TreeLoader] = None
        self._epoch = CancellationToken()
        self._requests: Dict[Optional[str], CancellationToken] = {}
        if provider is not None:
            self.set_hierarchy_provider(provider)

    @property
    def model(self) -> TreeModel:
        return self._model

    def set_hierarchy_provider(self, provider: Optional[HierarchyProvider]) -> None:
        self._loader = TreeLoader(provider, concurrency=self._concurrency) if provider is not None else None

    def _notify(self) -> None:
        if self._on_model_changed is not None:
            self._on_model_changed(self._model)

    # ============= Requests =============

    def _start_request(self, node_id: Optional[str]) -> CancellationToken:
        previous = self._requests.get(node_id)
        if previous is not None:
            previous.cancel()
        token = CancellationToken(parent=self._epoch)
        self._requests[node_id] = token
        return token

    def _finish_request(self, node_id: Optional[str], token: CancellationToken) -> None:
        if self._requests.get(node_id) is token:
            del self._requests[node_id]

    def _cancel_all(self) -> None:
        self._epoch.cancel()
        self._epoch = CancellationToken()
        self._requests.clear()

    def _cancel_subtree_requests(self, parent_id: Optional[str], model: TreeModel) -> None:
        """Cancel in-flight loads for a node and everything loaded below it."""
        node_ids = {node.id for node in model.collect_nodes(parent_id, lambda node: True)}
        node_ids.add(parent_id)
        for node_id in [n for n in self._requests if n in node_ids]:
            self._requests.pop(node_id).cancel()

    def _merge(self, parent_id: Optional[str], part: Optional[TreeModel]) -> None:
        if part is None:
            return
        if parent_id is not None and parent_id not in self._model:
            logger.debug(f"[TreeActions] Dropping children of removed node {parent_id!r}")
            return
        self._model.add_hierarchy_part(parent_id, part)
        if parent_id is None:
            self._model.root_node = part.root_node
            self._model.root_node.is_loading = False
        self._notify()

    # ============= Loading =============

    async def _load_nodes(self, parent_id: str, ignore_cache: bool = False) -> None:
        parent = self._model.get_node(parent_id)
        if not is_hierarchy_node(parent) or self._loader is None:
            return
        token = self._start_request(parent_id)
        try:
            part = await self._loader.collect_tree(
                parent,
                lambda node: create_hierarchy_level_options(self._model, get_non_grouped_parent_id(node)),
                lambda node: bool(node.node_data.auto_expand),
                ignore_cache=ignore_cache,
                token=token,
            )
            self._merge(parent_id, part)
        finally:
            self._finish_request(parent_id, token)

    async def _reload_subtree(self, parent_id: Optional[str], old_model: TreeModel, discard_state: bool = False) -> None:
        if self._loader is None:
            return
        current_model = self._model
        # nodes whose expansion was decided by the user or by auto-expand
        toggled = [] if discard_state else old_model.collect_nodes(parent_id, lambda n: n.is_expanded is not None)
        expanded_ids: Set[str] = {node.id for node in toggled if node.is_expanded}
        collapsed_ids: Set[str] = {node.id for node in toggled if node.is_expanded is False}

        def get_options(node: ParentNode) -> HierarchyLevelOptions:
            if discard_state:
                return HierarchyLevelOptions()
            options_node_id = get_non_grouped_parent_id(node)
            return create_hierarchy_level_options(
                current_model if options_node_id == parent_id else old_model,
                options_node_id,
            )

        def should_load_children(node: TreeModelHierarchyNode) -> bool:
            if node.id in expanded_ids:
                return True
            if node.id in collapsed_ids:
                return False
            return bool(node.node_data.auto_expand)

        def build_node(node: TreeModelHierarchyNode) -> TreeModelHierarchyNode:
            if discard_state or node.id == parent_id:
                return node
            return copy_node_state(node, old_model)

        parent = current_model.root_node if parent_id is None else current_model.get_node(parent_id)
        if parent is None or is_info_node(parent):
            return

        if parent_id is None:
            self._cancel_all()
            root_node = TreeModelRootNode() if discard_state else TreeModelRootNode(
                hierarchy_limit=current_model.root_node.hierarchy_limit,
                instance_filter=current_model.root_node.instance_filter,
            )
        else:
            root_node = None

        token = self._start_request(parent_id)
        try:
            part = await self._loader.collect_tree(
                parent,
                get_options,
                should_load_children,
                build_node=build_node,
                token=token,
                root_node=root_node,
            )
            self._merge(parent_id, part)
        finally:
            self._finish_request(parent_id, token)

    # ============= Actions =============

    def get_node(self, node_id: Optional[str]) -> Union[TreeModelNode, TreeModelRootNode, None]:
        return self._model.get_node(node_id)

    def get_tree(self) -> List[TreeViewNode]:
        return self._model.get_tree()

    def select_nodes(self, node_ids: Iterable[str], change_type: SelectionChangeType) -> None:
        self._model.select_nodes(node_ids, change_type)
        self._notify()

    async def expand_node(self, node_id: str, is_expanded: bool) -> None:
        """Expand or collapse a node, loading children when needed.

        Expanding a node whose only child is an info node retries the load.
        """
        action = self._model.expand_node(node_id, is_expanded)
        self._notify()
        if action == ExpandAction.NONE:
            return
        logger.debug(f"[TreeActions] {action.value} for {node_id!r}")
        await self._load_nodes(node_id, ignore_cache=action == ExpandAction.RELOAD_CHILDREN)

    async def set_hierarchy_limit(self, node_id: Optional[str], limit: Union[int, str, None]) -> None:
        """Set the child level size limit of a node (None for the root) and reload its subtree."""
        old_model = self._model.copy()
        reload_children = self._model.set_hierarchy_limit(node_id, limit)
        self._cancel_subtree_requests(node_id, old_model)
        self._notify()
        if not reload_children:
            return
        logger.info(f"[TreeActions] Hierarchy limit of {node_id!r} set to {limit!r}")
        await self._reload_subtree(node_id, old_model)

    async def set_instance_filter(self, node_id: Optional[str], instance_filter: Any) -> None:
        """Set the child level instance filter of a node (None for the root) and reload its subtree."""
        old_model = self._model.copy()
        reload_children = self._model.set_instance_filter(node_id, instance_filter)
        self._cancel_subtree_requests(node_id, old_model)
        self._notify()
        if not reload_children:
            return
        logger.info(f"[TreeActions] Instance filter of {node_id!r} set to {instance_filter!r}")
        await self._reload_subtree(node_id, old_model)

    async def reload_tree(self, discard_state: bool = False) -> None:
        """Reload the whole tree, keeping expanded/collapsed nodes, limits, filters and selection.

        Args:
            discard_state: Start over with a fresh tree instead
        """
        old_model = self._model.copy()
        self._model.root_node.is_loading = True
        self._notify()
        logger.info(f"[TreeActions] Reloading tree (discard_state={discard_state})")
        await self._reload_subtree(None, old_model, discard_state=discard_state)

    def dispose(self) -> None:
        """Cancel every in-flight load."""
        self._cancel_all()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"nodes": len(self._model), "pending_requests": len(self._requests)}
        if self._loader is not None:
            stats["loader"] = self._loader.get_stats()
        return stats

    def __repr__(self) -> str:
        return f"TreeActions(model={self._model!r})"

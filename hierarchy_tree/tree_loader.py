"""TreeLoader - Async, cancellable loading of hierarchy parts.

A load starts at one parent and walks breadth-first through every loaded node
the caller wants expanded, so a single load may produce many hierarchy parts.
Child loads run concurrently, bounded by a semaphore. Errors of a level are
turned into info nodes of that level; cancellation discards the whole load.

Key Features:
- Cancellation tokens chained to a tree-wide epoch token
- Bounded concurrency for auto-expanded descendants
- Collect-then-swap: parts are collected into a detached TreeModel
- Functional API for simple usage patterns
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import LoadCancelledError, RowsLimitExceededError
from .provider import HierarchyProvider
from .tree_model import (
    RESULT_SET_TOO_LARGE,
    UNKNOWN,
    TreeModel,
    TreeModelHierarchyNode,
    TreeModelNode,
    TreeModelRootNode,
    create_info_node,
    get_node_id,
    is_hierarchy_node,
)

logger = logging.getLogger(__name__)

DEFAULT_AUTO_EXPAND_CONCURRENCY = 4

UNKNOWN_ERROR_MESSAGE = "Failed to create hierarchy level"

ParentNode = Union[TreeModelRootNode, TreeModelHierarchyNode]


class CancellationToken:
    """Cancellation flag passed down every async load.

    A token is cancelled when it or any of its parents is cancelled.

    Usage:
        epoch = CancellationToken()
        token = CancellationToken(parent=epoch)
        epoch.cancel()
        assert token.is_cancelled
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._parent = parent
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled or (self._parent is not None and self._parent.is_cancelled)

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise LoadCancelledError()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"


@dataclass
class HierarchyLevelOptions:
    """Request options of a hierarchy level."""
    instance_filter: Any = None
    hierarchy_level_size_limit: Union[int, str, None] = None


@dataclass
class LoadedHierarchyPart:
    """One loaded hierarchy level.

    Attributes:
        parent_id: Id of the parent node, None for the root level
        loaded_nodes: Hierarchy and info nodes of the level
    """
    parent_id: Optional[str]
    loaded_nodes: List[TreeModelNode] = field(default_factory=list)


def create_tree_model_node(
    node: Any,
    build_node: Optional[Callable[[TreeModelHierarchyNode], TreeModelHierarchyNode]] = None,
) -> TreeModelHierarchyNode:
    """Wrap a provider node into a model node."""
    model_node = TreeModelHierarchyNode(
        id=get_node_id(node),
        node_data=node,
        label=str(node.label),
        children=node.has_children(),
    )
    return build_node(model_node) if build_node else model_node


class TreeLoader:
    """Loads hierarchy parts from a hierarchy provider.

    Usage:
        loader = TreeLoader(provider)
        part = await loader.collect_tree(
            parent=model.root_node,
            get_hierarchy_level_options=lambda node: HierarchyLevelOptions(),
            should_load_children=lambda node: node.node_data.auto_expand,
        )
        model.add_hierarchy_part(None, part)
    """

    def __init__(self, provider: HierarchyProvider, concurrency: int = DEFAULT_AUTO_EXPAND_CONCURRENCY):
        """Initialize the loader.

        Args:
            provider: Source of hierarchy levels
            concurrency: Maximum number of hierarchy levels loaded at once
        """
        self.provider = provider
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._stats: Dict[str, Any] = {
            "levels_loaded": 0,
            "info_nodes_created": 0,
            "loads_cancelled": 0,
            "total_load_time_ms": 0.0,
        }

    # ============= Async Load Methods =============

    async def load_children(
        self,
        parent: ParentNode,
        get_hierarchy_level_options: Callable[[ParentNode], HierarchyLevelOptions],
        build_node: Optional[Callable[[TreeModelHierarchyNode], TreeModelHierarchyNode]] = None,
        ignore_cache: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> LoadedHierarchyPart:
        """Load a single hierarchy level.

        Row limit errors become a single ``ResultSetTooLarge`` info node, any
        other error a single ``Unknown`` info node.

        Raises:
            LoadCancelledError: If the token got cancelled while loading
        """
        token = token or CancellationToken()
        token.raise_if_cancelled()
        options = get_hierarchy_level_options(parent)
        start = time.perf_counter()
        async with self._semaphore:
            token.raise_if_cancelled()
            try:
                nodes = await self.provider.get_nodes(
                    parent.node_data,
                    hierarchy_level_size_limit=options.hierarchy_level_size_limit,
                    instance_filter=options.instance_filter,
                    ignore_cache=ignore_cache,
                )
                loaded_nodes: List[TreeModelNode] = [create_tree_model_node(node, build_node) for node in nodes]
            except RowsLimitExceededError as e:
                logger.info(f"[TreeLoader] Level under {parent.id!r} exceeds limit {e.limit}")
                loaded_nodes = [create_info_node(parent.id, RESULT_SET_TOO_LARGE, str(e))]
                self._stats["info_nodes_created"] += 1
            except Exception:
                logger.exception(f"[TreeLoader] Failed to load level under {parent.id!r}")
                loaded_nodes = [create_info_node(parent.id, UNKNOWN, UNKNOWN_ERROR_MESSAGE)]
                self._stats["info_nodes_created"] += 1
        token.raise_if_cancelled()

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._stats["levels_loaded"] += 1
        self._stats["total_load_time_ms"] += elapsed_ms
        logger.debug(f"[TreeLoader] Loaded {len(loaded_nodes)} nodes under {parent.id!r} in {elapsed_ms:.1f}ms")
        return LoadedHierarchyPart(parent_id=parent.id, loaded_nodes=loaded_nodes)

    async def load_nodes(
        self,
        parent: ParentNode,
        get_hierarchy_level_options: Callable[[ParentNode], HierarchyLevelOptions],
        should_load_children: Callable[[TreeModelHierarchyNode], bool],
        build_node: Optional[Callable[[TreeModelHierarchyNode], TreeModelHierarchyNode]] = None,
        ignore_cache: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> List[LoadedHierarchyPart]:
        """Load a parent's children and, breadth-first, children of nodes to expand.

        Args:
            parent: Node to load children for
            get_hierarchy_level_options: Level options for a parent node
            should_load_children: Whether a loaded node should get expanded too
            build_node: Adjusts every created model node
            ignore_cache: Bypass the provider's level cache
            token: Cancellation token

        Returns:
            Loaded parts, parents before their children

        Raises:
            LoadCancelledError: If the token got cancelled
        """
        parts: List[LoadedHierarchyPart] = []
        wave: List[ParentNode] = [parent]
        while wave:
            loaded = await asyncio.gather(*[
                self.load_children(node, get_hierarchy_level_options, build_node, ignore_cache, token)
                for node in wave
            ])
            parts.extend(loaded)
            wave = [
                node
                for part in loaded
                for node in part.loaded_nodes
                if is_hierarchy_node(node) and node.children and should_load_children(node)
            ]
        return parts

    async def collect_tree(
        self,
        parent: ParentNode,
        get_hierarchy_level_options: Callable[[ParentNode], HierarchyLevelOptions],
        should_load_children: Callable[[TreeModelHierarchyNode], bool],
        build_node: Optional[Callable[[TreeModelHierarchyNode], TreeModelHierarchyNode]] = None,
        ignore_cache: bool = False,
        token: Optional[CancellationToken] = None,
        root_node: Optional[TreeModelRootNode] = None,
    ) -> Optional[TreeModel]:
        """Load nodes and collect every part into a detached model.

        Returns:
            The collected model, or None if the load got cancelled
        """
        try:
            parts = await self.load_nodes(
                parent, get_hierarchy_level_options, should_load_children, build_node, ignore_cache, token,
            )
        except LoadCancelledError:
            self._stats["loads_cancelled"] += 1
            logger.debug(f"[TreeLoader] Load under {parent.id!r} cancelled")
            return None

        collected = TreeModel(root_node)
        for part in parts:
            collected.add_nodes(part.parent_id, part.loaded_nodes)
        return collected

    # ============= Statistics Methods =============

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats, concurrency=self.concurrency)

    def __repr__(self) -> str:
        return f"TreeLoader(concurrency={self.concurrency}, levels_loaded={self._stats['levels_loaded']})"


# ============= Functional API =============

async def load_tree(
    provider: HierarchyProvider,
    should_load_children: Optional[Callable[[TreeModelHierarchyNode], bool]] = None,
    concurrency: int = DEFAULT_AUTO_EXPAND_CONCURRENCY,
) -> TreeModel:
    """Load a tree model from the root, expanding auto-expanded nodes.

    Args:
        provider: Source of hierarchy levels
        should_load_children: Overrides which nodes get expanded
        concurrency: Maximum number of hierarchy levels loaded at once

    Returns:
        The loaded TreeModel
    """
    loader = TreeLoader(provider, concurrency=concurrency)
    model = TreeModel()
    part = await loader.collect_tree(
        model.root_node,
        lambda node: HierarchyLevelOptions(node.instance_filter, node.hierarchy_limit),
        should_load_children or (lambda node: bool(node.node_data.auto_expand)),
    )
    model.add_hierarchy_part(None, part)
    return model

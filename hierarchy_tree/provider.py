"""Hierarchy providers - produce processed, grouped and sorted hierarchy levels.

``DefinitionHierarchyProvider`` runs the full level pipeline:

1. define the level and read rows for instance definitions
2. parse rows, set parent keys and format labels
3. pre-process nodes, hide childless and hidden nodes
4. group nodes
5. determine children flags, post-process and sort by label

Pre-processed levels are kept in an LRU cache, so expanding a grouping node or
checking whether a node has children doesn't query the data source again.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from threading import RLock
from typing import Any, Dict, Hashable, List, Optional, Tuple, Union

from cachetools import LRUCache

from .definition import CustomNodeDefinition, HierarchyDefinition, InstanceNodesDefinition, QueryExecutor
from .errors import RowsLimitExceededError
from .grouping import GroupingEngine
from .hide_nodes import hide_if_no_children, hide_nodes_in_hierarchy
from .hierarchy_node import (
    AnyHierarchyNode,
    GroupingHierarchyNode,
    HierarchyNode,
    create_parent_keys,
    sort_nodes_by_label,
)
from .metadata import BaseClassChecker, DefaultValueFormatter, MetadataProvider, ValueFormatter, format_concatenated_value
from .node_key import InstanceKey, compare_full_class_names, create_node_id
from .scheduling import DEFAULT_RELEASE_BUDGET_MS, release_on_items_count
from .search import SearchHierarchyDefinition, SearchPathSource

logger = logging.getLogger(__name__)

UNBOUNDED = "unbounded"

HierarchyLevelSizeLimit = Union[int, str, None]


class HierarchyProvider(ABC):
    """Abstract base class for hierarchy providers.

    Provides the interface the tree loader uses to get hierarchy levels.
    """

    @abstractmethod
    async def get_nodes(
        self,
        parent_node: Optional[AnyHierarchyNode],
        hierarchy_level_size_limit: HierarchyLevelSizeLimit = None,
        instance_filter: Any = None,
        ignore_cache: bool = False,
    ) -> List[AnyHierarchyNode]:
        """Get child nodes of the given parent.

        Args:
            parent_node: Parent node, None for the root level
            hierarchy_level_size_limit: Maximum number of rows, ``"unbounded"`` or None for the default
            instance_filter: Opaque filter for instance nodes
            ignore_cache: Re-read the level even if it's cached

        Returns:
            Nodes of the hierarchy level

        Raises:
            RowsLimitExceededError: If the level has more rows than allowed
        """
        pass

    def notify_data_source_changed(self) -> None:
        """Drop any state derived from the data source."""
        pass


# ============= Level Cache =============

class HierarchyLevelCache:
    """Thread-safe LRU cache for pre-processed hierarchy levels.

    Uses cachetools.LRUCache internally with threading.RLock for thread safety.
    """

    def __init__(self, max_size: int = 50):
        """Initialize the level cache.

        Args:
            max_size: Maximum number of cached levels.
        """
        self._cache: LRUCache[Hashable, List[HierarchyNode]] = LRUCache(maxsize=max_size)
        self._lock = RLock()

    def cache_level(self, key: Hashable, nodes: List[HierarchyNode]) -> None:
        with self._lock:
            self._cache[key] = nodes

    def get_cached_level(self, key: Hashable) -> Optional[List[HierarchyNode]]:
        """Retrieve a cached level, marking it most recently used.

        Returns:
            The cached nodes, or None if not found.
        """
        with self._lock:
            if key not in self._cache:
                return None
            return self._cache[key]

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_max_size(self) -> int:
        return self._cache.maxsize

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        return self.size()

    def __repr__(self) -> str:
        return f"HierarchyLevelCache(size={self.size()}, max_size={self.get_max_size()})"


# ============= Definition Based Provider =============

def _limit_value(limit: HierarchyLevelSizeLimit) -> Optional[int]:
    if limit is None or limit == UNBOUNDED:
        return None
    return int(limit)


def _filter_target_keys(
    definition_keys: Optional[List[InstanceKey]],
    parent_keys: Optional[List[InstanceKey]],
) -> Optional[List[InstanceKey]]:
    if definition_keys is None or parent_keys is None:
        return definition_keys if definition_keys is not None else parent_keys
    parent_ids = {key.id for key in parent_keys}
    return [key for key in definition_keys if key.id in parent_ids]


class DefinitionHierarchyProvider(HierarchyProvider):
    """Hierarchy provider driven by a ``HierarchyDefinition``.

    Usage:
        provider = DefinitionHierarchyProvider(definition, executor, metadata)
        roots = await provider.get_nodes(None)
        children = await provider.get_nodes(roots[0])

        provider.set_search_paths([[InstanceKey("Schema.Class", "0x1")]])
    """

    def __init__(
        self,
        definition: HierarchyDefinition,
        query_executor: QueryExecutor,
        metadata: MetadataProvider,
        value_formatter: Optional[ValueFormatter] = None,
        localized_strings: Optional[Dict[str, str]] = None,
        search_paths: Optional[List[SearchPathSource]] = None,
        imodel_key: Optional[str] = None,
        default_hierarchy_level_size_limit: HierarchyLevelSizeLimit = None,
        cache_size: int = 50,
        class_cache_size: int = 1000,
        release_budget_ms: float = DEFAULT_RELEASE_BUDGET_MS,
    ):
        """Initialize the provider.

        Args:
            definition: Defines hierarchy levels
            query_executor: Reads rows for instance node definitions
            metadata: Schema access for grouping and search
            value_formatter: Formats labels and property values
            localized_strings: ``other`` and ``unspecified`` property group labels
            search_paths: Optional search paths restricting the hierarchy
            imodel_key: Key of the data source, used to match search identifiers
            default_hierarchy_level_size_limit: Limit used when a request doesn't give one
            cache_size: Maximum number of cached hierarchy levels
            class_cache_size: Maximum number of cached "is-a" checks
            release_budget_ms: Time budget between event loop yields while grouping
        """
        self._source_definition = definition
        self._query_executor = query_executor
        self._metadata = metadata
        self._value_formatter = value_formatter or DefaultValueFormatter()
        self._imodel_key = imodel_key
        self._default_limit = default_hierarchy_level_size_limit
        self._class_checker = BaseClassChecker(metadata, max_size=class_cache_size)
        self._grouping = GroupingEngine(
            metadata,
            value_formatter=self._value_formatter,
            class_checker=self._class_checker,
            localized_strings=localized_strings,
            release_budget_ms=release_budget_ms,
        )
        self._cache = HierarchyLevelCache(max_size=cache_size)
        self._definition: HierarchyDefinition = definition
        self._search_paths: Optional[List[SearchPathSource]] = None
        self._stats: Dict[str, Any] = {
            "levels_requested": 0,
            "levels_read": 0,
            "cache_hits": 0,
            "total_load_time_ms": 0.0,
        }
        self.set_search_paths(search_paths)

    # ============= Configuration =============

    @property
    def class_checker(self) -> BaseClassChecker:
        return self._class_checker

    @property
    def search_paths(self) -> Optional[List[SearchPathSource]]:
        return self._search_paths

    def set_search_paths(self, search_paths: Optional[List[SearchPathSource]]) -> None:
        """Restrict the hierarchy to the given search paths, or lift the restriction with None."""
        self._search_paths = search_paths
        if search_paths is None:
            self._definition = self._source_definition
        else:
            self._definition = SearchHierarchyDefinition(
                self._source_definition,
                self._class_checker,
                search_paths,
                imodel_key=self._imodel_key,
            )
        self._cache.clear()
        logger.debug(f"[Provider] Search paths set: {0 if search_paths is None else len(search_paths)}")

    def notify_data_source_changed(self) -> None:
        self._cache.clear()
        self._class_checker.clear()
        logger.info("[Provider] Data source changed, cleared hierarchy level cache")

    # ============= Nodes =============

    async def get_nodes(
        self,
        parent_node: Optional[AnyHierarchyNode],
        hierarchy_level_size_limit: HierarchyLevelSizeLimit = None,
        instance_filter: Any = None,
        ignore_cache: bool = False,
    ) -> List[AnyHierarchyNode]:
        start = time.perf_counter()
        self._stats["levels_requested"] += 1
        limit = hierarchy_level_size_limit if hierarchy_level_size_limit is not None else self._default_limit

        nodes = await self._get_processed_nodes(parent_node, limit, instance_filter, ignore_cache)
        finalized = []
        for node in nodes:
            if isinstance(node, HierarchyNode) and node.children is None:
                node.children = await self._has_nodes(node)
            finalized.append(await self._definition.post_process_node(node))
        finalized = sort_nodes_by_label(finalized)

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._stats["total_load_time_ms"] += elapsed_ms
        logger.debug(
            f"[Provider] Loaded {len(finalized)} nodes for "
            f"{'root' if parent_node is None else repr(parent_node.label)} in {elapsed_ms:.1f}ms"
        )
        return finalized

    async def _get_processed_nodes(
        self,
        parent_node: Optional[AnyHierarchyNode],
        limit: HierarchyLevelSizeLimit,
        instance_filter: Any,
        ignore_cache: bool = False,
    ) -> List[AnyHierarchyNode]:
        if isinstance(parent_node, GroupingHierarchyNode):
            if parent_node.children:
                nodes = list(parent_node.children)
            else:
                source_nodes = await self._get_preprocessed_nodes(
                    parent_node.non_grouping_ancestor,
                    limit,
                    instance_filter,
                    ignore_cache,
                    target_instance_keys=list(parent_node.grouped_instance_keys),
                )
                parent_keys = create_parent_keys(parent_node)
                nodes = [replace(node, parent_keys=list(parent_keys)) for node in source_nodes]
        else:
            nodes = await self._get_preprocessed_nodes(parent_node, limit, instance_filter, ignore_cache)
        return await self._grouping.group_nodes(parent_node, nodes)

    def _cache_key(self, parent_node: Optional[HierarchyNode], limit: HierarchyLevelSizeLimit, instance_filter: Any) -> Tuple:
        parent_id = None if parent_node is None else create_node_id(parent_node.parent_keys, parent_node.key)
        return (parent_id, str(limit), repr(instance_filter))

    async def _get_preprocessed_nodes(
        self,
        parent_node: Optional[HierarchyNode],
        limit: HierarchyLevelSizeLimit,
        instance_filter: Any,
        ignore_cache: bool = False,
        target_instance_keys: Optional[List[InstanceKey]] = None,
    ) -> List[AnyHierarchyNode]:
        cache_key = self._cache_key(parent_node, limit, instance_filter)
        if target_instance_keys is None and not ignore_cache:
            cached = self._cache.get_cached_level(cache_key)
            if cached is not None:
                self._stats["cache_hits"] += 1
                return list(cached)

        nodes = await self._read_nodes(parent_node, limit, instance_filter, target_instance_keys)
        parent_keys = create_parent_keys(parent_node)
        processed: List[AnyHierarchyNode] = []
        for node in nodes:
            node.parent_keys = list(parent_keys)
            node.label = await format_concatenated_value(node.label, self._value_formatter)
            node = await self._definition.pre_process_node(node)
            if node is not None:
                processed.append(node)

        processed = await hide_if_no_children(processed, self._has_nodes)

        async def get_hidden_node_children(hidden_node: HierarchyNode) -> List[AnyHierarchyNode]:
            return await self._get_processed_nodes(hidden_node, limit, instance_filter, ignore_cache)

        processed = await hide_nodes_in_hierarchy(processed, get_hidden_node_children)

        if target_instance_keys is None:
            self._cache.cache_level(cache_key, processed)
        return list(processed)

    async def _read_nodes(
        self,
        parent_node: Optional[HierarchyNode],
        limit: HierarchyLevelSizeLimit,
        instance_filter: Any,
        target_instance_keys: Optional[List[InstanceKey]],
    ) -> List[HierarchyNode]:
        self._stats["levels_read"] += 1
        row_limit = _limit_value(limit)
        definitions = await self._definition.define_hierarchy_level(parent_node, instance_filter)
        nodes: List[HierarchyNode] = []
        for definition in definitions:
            if isinstance(definition, CustomNodeDefinition):
                if target_instance_keys is None:
                    nodes.append(replace(definition.node))
                continue
            if not isinstance(definition, InstanceNodesDefinition):
                raise TypeError(f"Unsupported hierarchy level definition: {definition!r}")
            if target_instance_keys is not None and not await self._targets_class(
                target_instance_keys, definition.full_class_name
            ):
                continue
            rows = await self._query_executor.execute(
                definition.query,
                limit=row_limit,
                instance_filter=instance_filter,
                target_instance_keys=_filter_target_keys(definition.target_instance_keys, target_instance_keys),
            )
            for index, row in enumerate(rows):
                await release_on_items_count(index)
                node = await self._definition.parse_node(row, parent_node)
                if self._imodel_key is not None:
                    node.key = replace(node.key, instance_keys=[
                        replace(key, imodel_key=self._imodel_key) for key in node.key.instance_keys
                    ])
                nodes.append(node)
            if row_limit is not None and len(nodes) > row_limit:
                raise RowsLimitExceededError(row_limit)
        return nodes

    async def _targets_class(self, keys: List[InstanceKey], full_class_name: str) -> bool:
        for key in keys:
            if compare_full_class_names(key.class_name, full_class_name) == 0:
                return True
            if await self._class_checker.related(key.class_name, full_class_name):
                return True
        return False

    async def _has_nodes(self, node: HierarchyNode) -> bool:
        try:
            return len(await self._get_preprocessed_nodes(node, None, None)) > 0
        except RowsLimitExceededError:
            return True

    # ============= Stats =============

    def get_stats(self) -> Dict[str, Any]:
        return dict(
            self._stats,
            cached_levels=self._cache.size(),
            grouping=self._grouping.get_stats(),
            class_checker=self._class_checker.get_stats(),
        )

    def __repr__(self) -> str:
        return f"DefinitionHierarchyProvider(cache={self._cache!r}, searching={self._search_paths is not None})"

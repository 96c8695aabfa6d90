"""Search paths - restrict hierarchy levels to the nodes on given paths.

A search path is a list of node identifiers from the root to a target node.
While a hierarchy level is built, every node matching the first identifier of a
path receives the rest of the path as its ``children_target_paths``, so the next
level can be restricted in turn. A node where a path ends is a search target.
Below a target levels are no longer restricted.

Reveal options on paths decide which nodes on the way get auto-expanded:

- ``True`` expands every ancestor of the target
- ``RevealDepthInPath(n)`` reveals the path node at index ``n``, counting only
  non-grouping nodes
- ``RevealDepthInHierarchy(n)`` expands nodes that have fewer than ``n``
  ancestors, grouping nodes included
"""

import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .definition import (
    CustomNodeDefinition,
    HierarchyDefinition,
    HierarchyLevelDefinition,
    InstanceNodesDefinition,
)
from .hierarchy_node import (
    AnyHierarchyNode,
    GroupingHierarchyNode,
    HierarchyNode,
    SearchState,
    create_parent_keys,
)
from .metadata import BaseClassChecker
from .node_key import (
    CustomNodeKey,
    HierarchyNodeKey,
    InstanceKey,
    compare_full_class_names,
    is_grouping,
    is_instances,
)

logger = logging.getLogger(__name__)


# ============= Paths & Options =============

@dataclass(frozen=True)
class CustomNodeIdentifier:
    """Identifies a custom node in a search path.

    Attributes:
        key: Custom node key id
        source: Optional data source the node belongs to
    """
    key: str
    source: Optional[str] = None


NodeIdentifier = Union[InstanceKey, CustomNodeIdentifier]


@dataclass(frozen=True)
class RevealDepthInPath:
    """Reveal the path node at index ``depth``, not counting grouping nodes."""
    depth: int


@dataclass(frozen=True)
class RevealDepthInHierarchy:
    """Expand nodes with fewer than ``depth`` ancestors, counting grouping nodes."""
    depth: int


RevealOption = Union[bool, None, RevealDepthInPath, RevealDepthInHierarchy]


@dataclass
class SearchPathOptions:
    reveal: RevealOption = None


@dataclass
class SearchPath:
    """A path of node identifiers with options."""
    path: List[NodeIdentifier]
    options: Optional[SearchPathOptions] = None


SearchPathSource = Union[SearchPath, Sequence[NodeIdentifier]]


def normalize_search_path(source: SearchPathSource) -> SearchPath:
    """Turn a bare identifier list into a ``SearchPath``."""
    if isinstance(source, SearchPath):
        return source
    return SearchPath(path=list(source))


def _reveal_depth(reveal: Union[RevealDepthInPath, RevealDepthInHierarchy]) -> int:
    return reveal.depth


def merge_reveal_options(lhs: RevealOption, rhs: RevealOption) -> RevealOption:
    """Merge two reveal options so that the deeper reveal wins.

    ``True`` wins over everything. When only one side is set it's returned.
    A path based depth wins over a hierarchy based one, otherwise the larger
    depth wins. The result doesn't depend on argument order.
    """
    if lhs is True or rhs is True:
        return True
    if not lhs or not rhs:
        return rhs if rhs else lhs
    lhs_in_path = isinstance(lhs, RevealDepthInPath)
    rhs_in_path = isinstance(rhs, RevealDepthInPath)
    if lhs_in_path != rhs_in_path:
        return lhs if lhs_in_path else rhs
    return lhs if _reveal_depth(lhs) > _reveal_depth(rhs) else rhs


def merge_search_path_options(
    lhs: Optional[SearchPathOptions],
    rhs: Optional[SearchPathOptions],
) -> Optional[SearchPathOptions]:
    if lhs is None or rhs is None:
        return lhs if lhs is not None else rhs
    return SearchPathOptions(reveal=merge_reveal_options(lhs.reveal, rhs.reveal))


def reveal_applies(reveal: RevealOption, parent_keys: Sequence[HierarchyNodeKey], is_grouping_node: bool) -> bool:
    """Check whether a reveal option auto-expands a node at the given position.

    Args:
        reveal: Reveal option of a path passing through (or ending under) the node
        parent_keys: Keys of the node's ancestors
        is_grouping_node: Whether the node is a grouping node

    Returns:
        True if the node should be auto-expanded
    """
    if not reveal:
        return False
    if reveal is True:
        return True
    if isinstance(reveal, RevealDepthInHierarchy):
        return len(parent_keys) < reveal.depth
    # grouping nodes between the revealed node and its parent share the parent's depth
    non_grouping_depth = len([key for key in parent_keys if not is_grouping(key)])
    if is_grouping_node:
        return non_grouping_depth <= reveal.depth
    return non_grouping_depth < reveal.depth


def _identifier_key(identifier: NodeIdentifier) -> Tuple:
    if isinstance(identifier, CustomNodeIdentifier):
        return ("generic", identifier.source or "", identifier.key)
    return ("instance", identifier.imodel_key or "", identifier.class_name.lower(), identifier.id)


def _path_key(path: Sequence[NodeIdentifier]) -> Tuple:
    return tuple(_identifier_key(identifier) for identifier in path)


# ============= Matching =============

class MatchingSearchPathsReducer:
    """Accumulates the search paths matching a single node.

    Usage:
        reducer = MatchingSearchPathsReducer(has_search_target_ancestor=False)
        for path in matching_paths:
            reducer.accept(path)
        auto_expand, search = reducer.get_node_props(parent_node)
    """

    def __init__(self, has_search_target_ancestor: bool = False):
        self._has_search_target_ancestor = has_search_target_ancestor
        self._children_target_paths: List[SearchPath] = []
        self._path_positions: Dict[Tuple, int] = {}
        self._is_search_target = False
        self._search_target_options: Optional[SearchPathOptions] = None
        self._reveal: RevealOption = None

    def accept(self, path: SearchPath) -> None:
        if len(path.path) == 1:
            self._is_search_target = True
            self._search_target_options = merge_search_path_options(self._search_target_options, path.options)
            return
        if len(path.path) < 2:
            return
        suffix = SearchPath(path=list(path.path[1:]), options=path.options)
        path_key = _path_key(suffix.path)
        position = self._path_positions.get(path_key)
        if position is None:
            self._path_positions[path_key] = len(self._children_target_paths)
            self._children_target_paths.append(suffix)
        else:
            existing = self._children_target_paths[position]
            self._children_target_paths[position] = SearchPath(
                path=existing.path,
                options=merge_search_path_options(existing.options, suffix.options),
            )
        if path.options is not None:
            self._reveal = merge_reveal_options(path.options.reveal, self._reveal)

    def get_node_props(self, parent_node: Optional[AnyHierarchyNode]) -> Tuple[bool, Optional[SearchState]]:
        """Get ``(auto_expand, search_state)`` for the node.

        ``search_state`` is None when the node isn't on any path and has no
        target ancestor.
        """
        auto_expand = reveal_applies(self._reveal, create_parent_keys(parent_node), is_grouping_node=False)
        if not (self._has_search_target_ancestor or self._is_search_target or self._children_target_paths):
            return auto_expand, None
        return auto_expand, SearchState(
            is_search_target=self._is_search_target,
            search_target_options=self._search_target_options if self._is_search_target else None,
            children_target_paths=list(self._children_target_paths) if self._children_target_paths else None,
            has_search_target_ancestor=self._has_search_target_ancestor,
        )


PathMatcher = Callable[[NodeIdentifier], Union[bool, Awaitable[bool]]]


class HierarchySearchHelper:
    """Search utilities for a single hierarchy level.

    Args:
        root_paths: Search paths of the whole hierarchy, None or empty when not searching
        parent_node: Parent of the level, None for the root level
    """

    def __init__(self, root_paths: Optional[List[SearchPathSource]], parent_node: Optional[HierarchyNode]):
        self.parent_node = parent_node
        self.search_paths: Optional[List[SearchPath]] = None
        self.has_search_target_ancestor = False
        if parent_node is None:
            # no paths at all means no restriction
            if root_paths:
                self.search_paths = [normalize_search_path(p) for p in root_paths]
        elif parent_node.search is not None and parent_node.search.children_target_paths:
            self.search_paths = list(parent_node.search.children_target_paths)
            self.has_search_target_ancestor = (
                parent_node.search.has_search_target_ancestor or parent_node.search.is_search_target
            )

    @property
    def has_search(self) -> bool:
        return self.search_paths is not None

    def get_child_node_search_identifiers(self) -> Optional[List[NodeIdentifier]]:
        """First identifiers of all paths, or None if the level isn't searched."""
        if self.search_paths is None:
            return None
        return [p.path[0] for p in self.search_paths if p.path]

    async def create_child_node_props(self, matcher: PathMatcher) -> Optional[Tuple[bool, Optional[SearchState]]]:
        """Compute search props for a child node.

        Args:
            matcher: Tells whether a path identifier refers to the child node, may be async

        Returns:
            ``(auto_expand, search_state)`` or None if the level isn't searched
        """
        if self.search_paths is None:
            return None
        reducer = MatchingSearchPathsReducer(self.has_search_target_ancestor)
        for search_path in self.search_paths:
            if not search_path.path:
                continue
            matches = matcher(search_path.path[0])
            if inspect.isawaitable(matches):
                matches = await matches
            if matches:
                reducer.accept(search_path)
        return reducer.get_node_props(self.parent_node)


def custom_node_matcher(key: CustomNodeKey, default_source: Optional[str] = None) -> PathMatcher:
    """Matcher for a custom node: equal key and, when the identifier names one, equal source."""
    def matcher(identifier: NodeIdentifier) -> bool:
        return (
            isinstance(identifier, CustomNodeIdentifier)
            and identifier.key == key.id
            and (not identifier.source or identifier.source == (key.source or default_source))
        )
    return matcher


def instance_node_matcher(
    instance_key: InstanceKey,
    checker: BaseClassChecker,
    imodel_key: Optional[str] = None,
) -> PathMatcher:
    """Matcher for an instance row: same id, same source and related classes."""
    async def matcher(identifier: NodeIdentifier) -> bool:
        if not isinstance(identifier, InstanceKey) or identifier.id != instance_key.id:
            return False
        if identifier.imodel_key and identifier.imodel_key != imodel_key:
            return False
        if compare_full_class_names(identifier.class_name, instance_key.class_name) == 0:
            return True
        return await checker.related(identifier.class_name, instance_key.class_name)
    return matcher


def should_expand_grouping_node(node: GroupingHierarchyNode) -> bool:
    """Check whether search metadata of grouped nodes requires the grouping node to be expanded.

    Nested grouping nodes are checked recursively.
    """
    for child in node.children:
        if isinstance(child, GroupingHierarchyNode):
            if should_expand_grouping_node(child):
                return True
            continue
        if child.search is None:
            continue
        if child.search.is_search_target:
            options = child.search.search_target_options
            if options is not None and reveal_applies(options.reveal, node.parent_keys, is_grouping_node=True):
                return True
        for path in child.search.children_target_paths or []:
            if path.options is not None and reveal_applies(path.options.reveal, node.parent_keys, is_grouping_node=True):
                return True
    return False


# ============= Hierarchy Definition =============

class SearchHierarchyDefinition(HierarchyDefinition):
    """Wraps a hierarchy definition to restrict it to the given search paths.

    Args:
        source: The wrapped hierarchy definition
        class_checker: "Is-a" checks used to match instance identifiers
        target_paths: Search paths
        imodel_key: Key of the data source, matched against identifier sources
    """

    def __init__(
        self,
        source: HierarchyDefinition,
        class_checker: BaseClassChecker,
        target_paths: List[SearchPathSource],
        imodel_key: Optional[str] = None,
    ):
        self._source = source
        self._checker = class_checker
        self._target_paths = [normalize_search_path(p) for p in target_paths]
        self._imodel_key = imodel_key

    @property
    def target_paths(self) -> List[SearchPath]:
        return list(self._target_paths)

    async def define_hierarchy_level(
        self,
        parent_node: Optional[HierarchyNode],
        instance_filter: Any = None,
    ) -> HierarchyLevelDefinition:
        definitions = await self._source.define_hierarchy_level(parent_node, instance_filter)
        helper = HierarchySearchHelper(self._target_paths, parent_node)
        identifiers = helper.get_child_node_search_identifiers()
        if identifiers is None:
            return definitions

        result = []
        for definition in definitions:
            if isinstance(definition, CustomNodeDefinition):
                restricted = await self._restrict_custom_definition(definition, helper, identifiers)
            elif isinstance(definition, InstanceNodesDefinition):
                restricted = await self._restrict_instances_definition(definition, helper, identifiers)
            else:
                restricted = definition
            if restricted is not None:
                result.append(restricted)
        logger.debug(
            f"[Search] Restricted hierarchy level from {len(definitions)} to {len(result)} definitions"
        )
        return result

    async def _restrict_custom_definition(
        self,
        definition: CustomNodeDefinition,
        helper: HierarchySearchHelper,
        identifiers: List[NodeIdentifier],
    ) -> Optional[CustomNodeDefinition]:
        matcher = custom_node_matcher(definition.node.key, self._imodel_key)
        if not (helper.has_search_target_ancestor or any(matcher(identifier) for identifier in identifiers)):
            return None
        props = await helper.create_child_node_props(matcher)
        node = definition.node
        if props is not None:
            auto_expand, search = props
            node = replace(node, auto_expand=node.auto_expand or auto_expand, search=search)
        return replace(definition, node=node)

    async def _restrict_instances_definition(
        self,
        definition: InstanceNodesDefinition,
        helper: HierarchySearchHelper,
        identifiers: List[NodeIdentifier],
    ) -> Optional[InstanceNodesDefinition]:
        if helper.has_search_target_ancestor:
            return definition

        matches: Dict[str, List[InstanceKey]] = {}
        for identifier in identifiers:
            if not isinstance(identifier, InstanceKey):
                continue
            if identifier.imodel_key and identifier.imodel_key != self._imodel_key:
                continue
            if (
                compare_full_class_names(identifier.class_name, definition.full_class_name) != 0
                and not await self._checker.related(identifier.class_name, definition.full_class_name)
            ):
                continue
            entries = matches.setdefault(identifier.id, [])
            # the same instance listed under related classes is a single target
            duplicate = False
            for entry in entries:
                if compare_full_class_names(entry.class_name, identifier.class_name) == 0 or await self._checker.related(
                    entry.class_name, identifier.class_name
                ):
                    duplicate = True
                    break
            if not duplicate:
                entries.append(identifier)

        target_keys = [key for entries in matches.values() for key in entries]
        if not target_keys:
            return None
        return replace(definition, target_instance_keys=target_keys)

    async def parse_node(self, row: Dict[str, Any], parent_node: Optional[HierarchyNode]) -> HierarchyNode:
        """Parse a row with the wrapped definition and attach search metadata."""
        node = await self._source.parse_node(row, parent_node)
        helper = HierarchySearchHelper(self._target_paths, parent_node)
        if not helper.has_search or not is_instances(node.key):
            return node
        instance_key = node.key.instance_keys[0]
        props = await helper.create_child_node_props(
            instance_node_matcher(instance_key, self._checker, self._imodel_key)
        )
        if props is None:
            return node
        auto_expand, search = props
        if auto_expand:
            node.auto_expand = True
        if search is not None:
            node.search = search
        return node

    async def pre_process_node(self, node: HierarchyNode) -> Optional[HierarchyNode]:
        processed = await self._source.pre_process_node(node)
        if processed is None:
            return None
        if (
            processed.processing_params is not None
            and processed.processing_params.hide_in_hierarchy
            and processed.search is not None
            and processed.search.is_search_target
            and not processed.search.has_search_target_ancestor
        ):
            return None
        return processed

    async def post_process_node(self, node: AnyHierarchyNode) -> AnyHierarchyNode:
        processed = await self._source.post_process_node(node)
        if isinstance(node, GroupingHierarchyNode) and should_expand_grouping_node(node):
            processed.auto_expand = True
        return processed


def create_search_paths(paths: List[SearchPathSource], reveal: RevealOption = None) -> List[SearchPath]:
    """Normalize paths, applying ``reveal`` to paths that have no options."""
    result = []
    for source in paths:
        search_path = normalize_search_path(source)
        if search_path.options is None and reveal is not None:
            search_path = SearchPath(path=list(search_path.path), options=SearchPathOptions(reveal=reveal))
        result.append(search_path)
    return result


"""Grouping engine - runs grouping handlers over a hierarchy level.

Handlers run one after another. Each gets the nodes left ungrouped by the
previous handlers, so a node ends up in at most one grouping node per level.
Which handlers run depends on the parent node: a class grouping parent may still
group its children by property and label, a label grouping parent groups no
further.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .grouping_handlers import (
    GROUPING_TYPE_PROPERTY,
    GroupingHandler,
    GroupingHandlerResult,
    apply_group_hiding_params,
    assign_auto_expand,
    create_base_class_grouping_handlers,
    create_class_groups,
    create_label_groups,
)
from .hierarchy_node import (
    AnyHierarchyNode,
    GroupingHierarchyNode,
    HierarchyNode,
    get_non_grouping_ancestor,
    is_grouping_node,
    is_instances_node,
)
from .metadata import BaseClassChecker, DefaultValueFormatter, MetadataProvider, ValueFormatter
from .node_key import is_class_grouping, is_label_grouping, is_property_grouping, is_property_other_values_grouping
from .property_grouping import (
    DEFAULT_LOCALIZED_STRINGS,
    create_properties_grouping_handlers,
    merge_other_values_nodes,
)
from .scheduling import DEFAULT_RELEASE_BUDGET_MS, MainThreadReleaser

logger = logging.getLogger(__name__)

# levels with at least this many nodes yield to the event loop before grouping
LARGE_LEVEL_SIZE = 1000


class ParentKind(Enum):
    """Kind of the parent node of a hierarchy level being grouped."""
    ROOT = "root"
    CLASS_GROUP = "class-group"
    PROPERTY_GROUP = "property-group"
    LABEL_GROUP = "label-group"


class HandlerKind(Enum):
    BASE_CLASS = "base-class"
    CLASS = "class"
    PROPERTY = "property"
    LABEL = "label"


# Handler kinds run under each parent kind, in order. Base class and property
# kinds expand into one handler per requested base class / property group.
GROUPING_HANDLERS_BY_PARENT: Dict[ParentKind, Tuple[HandlerKind, ...]] = {
    ParentKind.ROOT: (HandlerKind.BASE_CLASS, HandlerKind.CLASS, HandlerKind.PROPERTY, HandlerKind.LABEL),
    ParentKind.CLASS_GROUP: (HandlerKind.BASE_CLASS, HandlerKind.CLASS, HandlerKind.PROPERTY, HandlerKind.LABEL),
    ParentKind.PROPERTY_GROUP: (HandlerKind.PROPERTY, HandlerKind.LABEL),
    ParentKind.LABEL_GROUP: (),
}


def get_parent_kind(parent_node: Optional[AnyHierarchyNode]) -> ParentKind:
    """Classify the parent of a hierarchy level.

    Custom and instance parents group like the root.
    """
    if parent_node is None or not is_grouping_node(parent_node):
        return ParentKind.ROOT
    if is_class_grouping(parent_node.key):
        return ParentKind.CLASS_GROUP
    if is_property_grouping(parent_node.key):
        return ParentKind.PROPERTY_GROUP
    if is_label_grouping(parent_node.key):
        return ParentKind.LABEL_GROUP
    return ParentKind.ROOT


@dataclass
class GroupingOutput:
    """Result of grouping a hierarchy level.

    Attributes:
        grouped: Grouping nodes, in handler order
        ungrouped: Nodes left ungrouped, followed by non-instance nodes
    """
    grouped: List[GroupingHierarchyNode] = field(default_factory=list)
    ungrouped: List[HierarchyNode] = field(default_factory=list)

    def all_nodes(self) -> List[AnyHierarchyNode]:
        return list(self.grouped) + list(self.ungrouped)


class GroupingEngine:
    """Groups hierarchy levels using class, base class, property and label handlers.

    Usage:
        engine = GroupingEngine(metadata)
        output = await engine.group(parent_node, nodes)
        nodes = output.all_nodes()
    """

    def __init__(
        self,
        metadata: MetadataProvider,
        value_formatter: Optional[ValueFormatter] = None,
        class_checker: Optional[BaseClassChecker] = None,
        localized_strings: Optional[Dict[str, str]] = None,
        release_budget_ms: float = DEFAULT_RELEASE_BUDGET_MS,
    ):
        """Initialize the engine.

        Args:
            metadata: Schema access used by class and property grouping
            value_formatter: Formats property values, defaults to DefaultValueFormatter
            class_checker: Shared "is-a" cache, created if not given
            localized_strings: ``other`` and ``unspecified`` labels for property groups
            release_budget_ms: Time budget between yields to the event loop
        """
        self.metadata = metadata
        self.value_formatter = value_formatter or DefaultValueFormatter()
        self.class_checker = class_checker or BaseClassChecker(metadata)
        self.localized_strings = dict(DEFAULT_LOCALIZED_STRINGS, **(localized_strings or {}))
        self.release_budget_ms = release_budget_ms
        self._stats: Dict[str, int] = {"levels_grouped": 0, "grouping_nodes_created": 0}

    def _releaser(self) -> MainThreadReleaser:
        return MainThreadReleaser(self.release_budget_ms)

    async def create_grouping_handlers(
        self,
        parent_node: Optional[AnyHierarchyNode],
        nodes: List[HierarchyNode],
    ) -> List[Tuple[HandlerKind, GroupingHandler]]:
        """Create the ordered ``(kind, handler)`` list for a hierarchy level."""
        handlers: List[Tuple[HandlerKind, GroupingHandler]] = []
        for kind in GROUPING_HANDLERS_BY_PARENT[get_parent_kind(parent_node)]:
            if kind == HandlerKind.BASE_CLASS:
                handlers.extend((kind, handler) for handler in await create_base_class_grouping_handlers(
                    self.metadata, self.class_checker, parent_node, nodes, self.release_budget_ms,
                ))
            elif kind == HandlerKind.CLASS:
                handlers.append((kind, self._class_handler(parent_node)))
            elif kind == HandlerKind.PROPERTY:
                handlers.extend((kind, handler) for handler in await create_properties_grouping_handlers(
                    self.metadata,
                    parent_node,
                    nodes,
                    self.value_formatter,
                    self.class_checker,
                    self.localized_strings,
                    self.release_budget_ms,
                ))
            elif kind == HandlerKind.LABEL:
                handlers.append((kind, self._label_handler()))
        return handlers

    def _class_handler(self, parent_node: Optional[AnyHierarchyNode]) -> GroupingHandler:
        async def handler(nodes, already_grouped):
            return await create_class_groups(self.metadata, parent_node, nodes, self._releaser())
        return handler

    def _label_handler(self) -> GroupingHandler:
        async def handler(nodes, already_grouped):
            return await create_label_groups(nodes, self._releaser())
        return handler

    def _add_other_values_node(
        self,
        other_values: List[GroupingHierarchyNode],
        grouped: List[GroupingHierarchyNode],
        ungrouped: List[HierarchyNode],
        rest_nodes: List[AnyHierarchyNode],
    ) -> Tuple[List[GroupingHierarchyNode], List[HierarchyNode]]:
        result = GroupingHandlerResult(
            grouped=[merge_other_values_nodes(other_values)],
            ungrouped=list(ungrouped),
            grouping_type=GROUPING_TYPE_PROPERTY,
        )
        result = assign_auto_expand(apply_group_hiding_params(result, len(rest_nodes) + len(grouped)))
        return grouped + result.grouped, result.ungrouped

    async def group(
        self,
        parent_node: Optional[AnyHierarchyNode],
        nodes: List[AnyHierarchyNode],
    ) -> GroupingOutput:
        """Group a hierarchy level.

        Only instance nodes are grouped. Custom nodes (and grouping nodes, if
        any) are passed through after the ungrouped instance nodes.

        Args:
            parent_node: Parent of the level, None for the root level
            nodes: Nodes of the level

        Returns:
            GroupingOutput with grouping nodes and ungrouped nodes
        """
        start = time.perf_counter()
        instance_nodes: List[HierarchyNode] = []
        rest_nodes: List[AnyHierarchyNode] = []
        for node in nodes:
            if is_instances_node(node) and isinstance(node, HierarchyNode):
                instance_nodes.append(node)
            else:
                rest_nodes.append(node)

        if len(nodes) >= LARGE_LEVEL_SIZE:
            await asyncio.sleep(0)

        grouped: List[GroupingHierarchyNode] = []
        ungrouped: List[HierarchyNode] = instance_nodes
        # "other values" nodes of property handlers, combined once the last property handler ran
        other_values: List[GroupingHierarchyNode] = []
        if instance_nodes:
            handlers = await self.create_grouping_handlers(parent_node, instance_nodes)
            for kind, handler in handlers:
                if kind != HandlerKind.PROPERTY and other_values:
                    grouped, ungrouped = self._add_other_values_node(other_values, grouped, ungrouped, rest_nodes)
                    other_values = []
                result: GroupingHandlerResult = await handler(ungrouped, grouped)
                if kind == HandlerKind.PROPERTY:
                    other_values.extend(n for n in result.grouped if is_property_other_values_grouping(n.key))
                    result = replace(
                        result,
                        grouped=[n for n in result.grouped if not is_property_other_values_grouping(n.key)],
                    )
                if result.grouped:
                    siblings = len(rest_nodes) + len(grouped) + (1 if other_values else 0)
                    result = apply_group_hiding_params(result, siblings)
                    result = assign_auto_expand(result)
                    grouped = grouped + result.grouped
                ungrouped = result.ungrouped
                await asyncio.sleep(0)
            if other_values:
                grouped, ungrouped = self._add_other_values_node(other_values, grouped, ungrouped, rest_nodes)

        ancestor = get_non_grouping_ancestor(parent_node)
        for grouping_node in grouped:
            grouping_node.non_grouping_ancestor = ancestor

        self._stats["levels_grouped"] += 1
        self._stats["grouping_nodes_created"] += len(grouped)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"[Grouping] Grouped {len(nodes)} nodes into {len(grouped)} groups "
            f"and {len(ungrouped) + len(rest_nodes)} other nodes in {elapsed_ms:.1f}ms"
        )
        return GroupingOutput(grouped=grouped, ungrouped=list(ungrouped) + rest_nodes)

    async def group_nodes(
        self,
        parent_node: Optional[AnyHierarchyNode],
        nodes: List[AnyHierarchyNode],
    ) -> List[AnyHierarchyNode]:
        """Group a hierarchy level and return the resulting flat node list."""
        return (await self.group(parent_node, nodes)).all_nodes()

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats, class_checks=self.class_checker.size())

    def __repr__(self) -> str:
        return f"GroupingEngine(levels_grouped={self._stats['levels_grouped']})"

"""Property grouping - groups instance nodes by property values and value ranges.

Nodes opt in with ``PropertiesGroupingParams`` that list one or more property
groups. Each property group turns into a separate grouping handler, and the
handlers run in chain order: the second property of a chain groups inside the
groups created for the first one.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from .grouping_handlers import (
    GROUPING_TYPE_PROPERTY,
    GroupingHandler,
    GroupingHandlerResult,
    create_grouping_node,
)
from .hierarchy_node import (
    AnyHierarchyNode,
    GroupingHierarchyNode,
    HierarchyNode,
    PropertiesGroupingParams,
    PropertyValueRange,
    is_property_grouping_node,
    sort_nodes_by_label,
)
from .metadata import (
    NON_GROUPABLE_TYPES,
    BaseClassChecker,
    ClassInfo,
    MetadataProvider,
    TypedPrimitiveValue,
    ValueFormatter,
)
from .node_key import (
    PropertyIdentifier,
    PropertyOtherValuesGroupingNodeKey,
    PropertyValueGroupingNodeKey,
    PropertyValueRangeGroupingNodeKey,
    compare_full_class_names,
    is_property_grouping,
    is_property_other_values_grouping,
    is_property_value_range_grouping,
)
from .scheduling import MainThreadReleaser

logger = logging.getLogger(__name__)

DEFAULT_LOCALIZED_STRINGS = {
    "other": "Other",
    "unspecified": "Not specified",
}


@dataclass
class PreviousPropertyInfo:
    properties_class_name: str
    property_name: str
    is_range: bool = False


@dataclass
class PropertyGroupInfo:
    """What a single property grouping handler groups by.

    Attributes:
        class_info: Class that owns the grouping property
        property_name: Name of the grouping property
        ranges: Value ranges, or None to group by distinct values
        previous_properties: Properties grouped by earlier in the chain
    """
    class_info: ClassInfo
    property_name: str
    ranges: Optional[List[PropertyValueRange]] = None
    previous_properties: List[PreviousPropertyInfo] = field(default_factory=list)


# ============= Matching =============

def _range_equal(lhs: PropertyValueRange, rhs: PropertyValueRange) -> bool:
    return (
        lhs.from_value == rhs.from_value
        and lhs.to_value == rhs.to_value
        and lhs.range_label == rhs.range_label
    )


def do_ranges_match(
    lhs: Optional[List[PropertyValueRange]],
    rhs: Optional[List[PropertyValueRange]],
) -> bool:
    """Check whether two range lists hold the same ranges, in any order."""
    if lhs is None or rhs is None:
        return lhs is None and rhs is None
    if len(lhs) != len(rhs):
        return False
    return (
        all(any(_range_equal(a, b) for b in rhs) for a in lhs)
        and all(any(_range_equal(a, b) for b in lhs) for a in rhs)
    )


def do_previous_properties_match(
    previous_properties: List[PreviousPropertyInfo],
    params: PropertiesGroupingParams,
) -> bool:
    if len(previous_properties) > len(params.property_groups):
        return False
    for index, info in enumerate(previous_properties):
        group = params.property_groups[index]
        if (
            info.properties_class_name != params.properties_class_name
            or info.property_name != group.property_name
            or info.is_range != (group.ranges is not None)
        ):
            return False
    return True


async def should_create_property_group(
    group_info: PropertyGroupInfo,
    params: PropertiesGroupingParams,
    node_class_name: str,
    checker: BaseClassChecker,
) -> bool:
    """Check whether a node belongs to the given property grouping handler."""
    depth = len(group_info.previous_properties)
    if (
        compare_full_class_names(params.properties_class_name, group_info.class_info.full_name) != 0
        or len(params.property_groups) < depth + 1
    ):
        return False
    current = params.property_groups[depth]
    if current.property_name != group_info.property_name or not do_ranges_match(current.ranges, group_info.ranges):
        return False
    if not do_previous_properties_match(group_info.previous_properties, params):
        return False
    return await checker.derives_from(node_class_name, group_info.class_info.full_name)


def _create_parent_path_matchers(parent_node: AnyHierarchyNode) -> List[Callable[[PreviousPropertyInfo], bool]]:
    """Build matchers for the chain of property grouping keys ending at ``parent_node``."""
    if not is_property_grouping_node(parent_node):
        return []

    keys = list(parent_node.parent_keys) + [parent_node.key]
    property_keys = []
    for key in reversed(keys):
        if not is_property_grouping(key):
            break
        property_keys.append(key)
    property_keys.reverse()

    def make_matcher(key) -> Callable[[PreviousPropertyInfo], bool]:
        if is_property_other_values_grouping(key):
            return lambda x: x.is_range and any(
                p.class_name == x.properties_class_name and p.property_name == x.property_name
                for p in key.properties
            )
        if is_property_value_range_grouping(key):
            return lambda x: (
                x.is_range
                and key.property_class_name == x.properties_class_name
                and key.property_name == x.property_name
            )
        return lambda x: (
            not x.is_range
            and key.property_class_name == x.properties_class_name
            and key.property_name == x.property_name
        )

    return [make_matcher(key) for key in property_keys]


def _ranges_as_string(ranges: Optional[List[PropertyValueRange]]) -> str:
    if ranges is None:
        return ""
    return ";".join(sorted(f"{r.from_value}-{r.to_value}({r.range_label or ''})" for r in ranges))


async def get_unique_properties_group_info(
    metadata: MetadataProvider,
    parent_node: Optional[AnyHierarchyNode],
    nodes: List[HierarchyNode],
) -> List[PropertyGroupInfo]:
    """Collect distinct property grouping handlers requested by nodes.

    Properties already grouped by the parent property grouping node chain are
    skipped. The result is ordered by chain position.
    """
    parent_path = _create_parent_path_matchers(parent_node) if parent_node is not None else []
    unique: Dict[str, PropertyGroupInfo] = {}
    for node in nodes:
        grouping = node.processing_params.grouping if node.processing_params else None
        params = grouping.by_properties if grouping else None
        if params is None:
            continue

        previous: List[Tuple[Any, str]] = []
        for index, property_group in enumerate(params.property_groups):
            last_key = previous[-1][1] if previous else ""
            property_group_key = f"{last_key}:{property_group.property_name}({_ranges_as_string(property_group.ranges)})"
            map_key = f"{params.properties_class_name}:{property_group_key}"

            already_grouped = False
            if index < len(parent_path):
                already_grouped = parent_path[index](PreviousPropertyInfo(
                    properties_class_name=params.properties_class_name,
                    property_name=property_group.property_name,
                    is_range=property_group.ranges is not None,
                ))
            if not already_grouped and map_key not in unique:
                unique[map_key] = PropertyGroupInfo(
                    class_info=await metadata.get_class(params.properties_class_name),
                    property_name=property_group.property_name,
                    ranges=property_group.ranges,
                    previous_properties=[
                        PreviousPropertyInfo(
                            properties_class_name=params.properties_class_name,
                            property_name=group.property_name,
                            is_range=group.ranges is not None,
                        )
                        for group, _ in previous
                    ],
                )
            previous.append((property_group, property_group_key))

    return sorted(unique.values(), key=lambda info: len(info.previous_properties))


# ============= Grouping =============

def _is_unspecified(value: Any) -> bool:
    return value is None or value == ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number_type(value: float) -> str:
    return "Integer" if float(value).is_integer() else "Double"


async def create_property_groups(
    nodes: List[HierarchyNode],
    group_info: PropertyGroupInfo,
    formatter: ValueFormatter,
    checker: BaseClassChecker,
    localized_strings: Optional[Dict[str, str]] = None,
    release: Optional[MainThreadReleaser] = None,
) -> GroupingHandlerResult:
    """Group nodes by a single property.

    Args:
        nodes: Nodes still ungrouped
        group_info: Property to group by
        formatter: Formats values and range bounds for labels
        checker: "Is-a" checks for the property class
        localized_strings: ``other`` and ``unspecified`` labels
        release: Optional main thread releaser

    Returns:
        GroupingHandlerResult with property grouping nodes sorted by label
    """
    strings = dict(DEFAULT_LOCALIZED_STRINGS, **(localized_strings or {}))
    release = release or MainThreadReleaser()
    groups: Dict[str, Tuple[str, Any, List[HierarchyNode]]] = {}
    ungrouped: List[HierarchyNode] = []
    other_nodes: List[HierarchyNode] = []
    other_properties: List[PropertyIdentifier] = []
    depth = len(group_info.previous_properties)

    def add_to_group(map_key: str, label: str, key, node: HierarchyNode) -> None:
        if map_key not in groups:
            groups[map_key] = (label, key, [])
        groups[map_key][2].append(node)

    for node in nodes:
        await release()
        grouping = node.processing_params.grouping if node.processing_params else None
        params = grouping.by_properties if grouping else None
        if params is None or not await should_create_property_group(group_info, params, node.class_name(), checker):
            ungrouped.append(node)
            continue

        current = params.property_groups[depth]
        class_name = params.properties_class_name
        prop = group_info.class_info.get_property(current.property_name)
        if prop is None or prop.primitive_type in NON_GROUPABLE_TYPES:
            ungrouped.append(node)
            continue

        if _is_unspecified(current.property_value):
            if params.create_group_for_unspecified_values:
                add_to_group(
                    f"{current.property_name}:Unspecified",
                    strings["unspecified"],
                    PropertyValueGroupingNodeKey(
                        property_class_name=class_name,
                        property_name=current.property_name,
                        formatted_property_value="",
                    ),
                    node,
                )
            else:
                ungrouped.append(node)
            continue

        if current.ranges is not None:
            matching_range = None
            if _is_number(current.property_value):
                matching_range = next(
                    (r for r in current.ranges if r.from_value <= current.property_value <= r.to_value),
                    None,
                )
            if matching_range is not None:
                label = matching_range.range_label
                if label is None:
                    from_label = await formatter.format(TypedPrimitiveValue(
                        type=_number_type(matching_range.from_value),
                        value=matching_range.from_value,
                        koq_name=prop.koq_name,
                        extended_type=prop.extended_type,
                    ))
                    to_label = await formatter.format(TypedPrimitiveValue(
                        type=_number_type(matching_range.to_value),
                        value=matching_range.to_value,
                        koq_name=prop.koq_name,
                        extended_type=prop.extended_type,
                    ))
                    label = f"{from_label} - {to_label}"
                add_to_group(
                    f"{current.property_name}:[{matching_range.from_value}-{matching_range.to_value}]"
                    f"({matching_range.range_label or ''})",
                    label,
                    PropertyValueRangeGroupingNodeKey(
                        property_class_name=class_name,
                        property_name=current.property_name,
                        from_value=matching_range.from_value,
                        to_value=matching_range.to_value,
                    ),
                    node,
                )
                continue
            if params.create_group_for_out_of_range_values:
                identifier = PropertyIdentifier(class_name=class_name, property_name=current.property_name)
                if identifier not in other_properties:
                    other_properties.append(identifier)
                other_nodes.append(node)
            else:
                ungrouped.append(node)
            continue

        formatted_value = await formatter.format(TypedPrimitiveValue.create(
            current.property_value,
            prop.primitive_type,
            prop.koq_name,
            prop.extended_type,
        ))
        add_to_group(
            f"{current.property_name}:{formatted_value}",
            formatted_value,
            PropertyValueGroupingNodeKey(
                property_class_name=class_name,
                property_name=current.property_name,
                formatted_property_value=formatted_value,
            ),
            node,
        )

    grouped = [create_grouping_node(key, label, grouped_nodes) for label, key, grouped_nodes in groups.values()]
    if other_nodes:
        other_key = PropertyOtherValuesGroupingNodeKey(properties=other_properties)
        grouped.append(create_grouping_node(other_key, strings["other"], other_nodes))

    return GroupingHandlerResult(
        grouped=sort_nodes_by_label(grouped),
        ungrouped=ungrouped,
        grouping_type=GROUPING_TYPE_PROPERTY,
    )


def merge_other_values_nodes(other_nodes: List[GroupingHierarchyNode]) -> GroupingHierarchyNode:
    """Combine the "other values" nodes of several property handlers into one.

    The merged node is built from scratch, so hiding and auto-expand rules see
    its final children.
    """
    if len(other_nodes) == 1:
        return other_nodes[0]
    properties: List[PropertyIdentifier] = []
    children: List[HierarchyNode] = []
    for other_node in other_nodes:
        for identifier in other_node.key.properties:
            if identifier not in properties:
                properties.append(identifier)
        children.extend(replace(child, parent_keys=list(child.parent_keys[:-1])) for child in other_node.children)
    key = PropertyOtherValuesGroupingNodeKey(properties=properties)
    return create_grouping_node(key, other_nodes[0].label, children)



async def create_properties_grouping_handlers(
    metadata: MetadataProvider,
    parent_node: Optional[AnyHierarchyNode],
    nodes: List[HierarchyNode],
    formatter: ValueFormatter,
    checker: BaseClassChecker,
    localized_strings: Optional[Dict[str, str]] = None,
    release_budget_ms: Optional[float] = None,
) -> List[GroupingHandler]:
    """Create one grouping handler per distinct property group."""
    infos = await get_unique_properties_group_info(metadata, parent_node, nodes)

    def make_handler(group_info: PropertyGroupInfo) -> GroupingHandler:
        async def handler(all_nodes, already_grouped):
            release = MainThreadReleaser() if release_budget_ms is None else MainThreadReleaser(release_budget_ms)
            return await create_property_groups(
                all_nodes, group_info, formatter, checker, localized_strings, release,
            )
        return handler

    if infos:
        logger.debug(f"[Grouping] Created {len(infos)} property grouping handlers")
    return [make_handler(info) for info in infos]

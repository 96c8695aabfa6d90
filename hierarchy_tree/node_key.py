"""Hierarchy node keys - identity, ordering and node ids.

Every node in a hierarchy level is identified by a key. Keys are plain frozen
dataclasses so they can be hashed, compared and serialized without touching the
nodes that own them.
"""

from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, ClassVar, Iterable, List, Optional, Sequence, Tuple, Union


GENERIC = "generic"
INSTANCES = "instances"
CLASS_GROUPING = "class-grouping"
LABEL_GROUPING = "label-grouping"
PROPERTY_VALUE_GROUPING = "property-grouping:value"
PROPERTY_RANGE_GROUPING = "property-grouping:range"
PROPERTY_OTHER_GROUPING = "property-grouping:other"

GROUPING_KEY_TYPES = frozenset([
    CLASS_GROUPING,
    LABEL_GROUPING,
    PROPERTY_VALUE_GROUPING,
    PROPERTY_RANGE_GROUPING,
    PROPERTY_OTHER_GROUPING,
])


@dataclass(frozen=True)
class InstanceKey:
    """Identifies a single record in the backing store.

    Attributes:
        class_name: Full class name, e.g. ``BisCore.Element``
        id: Instance id
        imodel_key: Optional key of the data source the record comes from
    """
    class_name: str
    id: str
    imodel_key: Optional[str] = None


@dataclass(frozen=True)
class CustomNodeKey:
    """Key of an application-defined (custom) node."""
    type: ClassVar[str] = GENERIC
    id: str
    source: Optional[str] = None


@dataclass(frozen=True)
class InstancesNodeKey:
    """Key of a node backed by one or more instances (more than one once merged)."""
    type: ClassVar[str] = INSTANCES
    instance_keys: Tuple[InstanceKey, ...]

    def __post_init__(self):
        object.__setattr__(self, "instance_keys", tuple(self.instance_keys))


@dataclass(frozen=True)
class ClassGroupingNodeKey:
    type: ClassVar[str] = CLASS_GROUPING
    class_name: str


@dataclass(frozen=True)
class LabelGroupingNodeKey:
    type: ClassVar[str] = LABEL_GROUPING
    label: str
    group_id: Optional[str] = None


@dataclass(frozen=True)
class PropertyValueGroupingNodeKey:
    type: ClassVar[str] = PROPERTY_VALUE_GROUPING
    property_class_name: str
    property_name: str
    formatted_property_value: str


@dataclass(frozen=True)
class PropertyValueRangeGroupingNodeKey:
    type: ClassVar[str] = PROPERTY_RANGE_GROUPING
    property_class_name: str
    property_name: str
    from_value: float
    to_value: float


@dataclass(frozen=True)
class PropertyIdentifier:
    class_name: str
    property_name: str


@dataclass(frozen=True)
class PropertyOtherValuesGroupingNodeKey:
    """Groups values of one or more properties that did not fit any range."""
    type: ClassVar[str] = PROPERTY_OTHER_GROUPING
    properties: Tuple[PropertyIdentifier, ...]

    def __post_init__(self):
        object.__setattr__(self, "properties", tuple(self.properties))


GroupingNodeKey = Union[
    ClassGroupingNodeKey,
    LabelGroupingNodeKey,
    PropertyValueGroupingNodeKey,
    PropertyValueRangeGroupingNodeKey,
    PropertyOtherValuesGroupingNodeKey,
]

HierarchyNodeKey = Union[CustomNodeKey, InstancesNodeKey, GroupingNodeKey]


# ============= Type Checks =============

def is_custom(key: HierarchyNodeKey) -> bool:
    return key.type == GENERIC


def is_instances(key: HierarchyNodeKey) -> bool:
    return key.type == INSTANCES


def is_grouping(key: HierarchyNodeKey) -> bool:
    return key.type in GROUPING_KEY_TYPES


def is_class_grouping(key: HierarchyNodeKey) -> bool:
    return key.type == CLASS_GROUPING


def is_label_grouping(key: HierarchyNodeKey) -> bool:
    return key.type == LABEL_GROUPING


def is_property_grouping(key: HierarchyNodeKey) -> bool:
    return key.type in (PROPERTY_VALUE_GROUPING, PROPERTY_RANGE_GROUPING, PROPERTY_OTHER_GROUPING)


def is_property_other_values_grouping(key: HierarchyNodeKey) -> bool:
    return key.type == PROPERTY_OTHER_GROUPING


def is_property_value_range_grouping(key: HierarchyNodeKey) -> bool:
    return key.type == PROPERTY_RANGE_GROUPING


def is_property_value_grouping(key: HierarchyNodeKey) -> bool:
    return key.type == PROPERTY_VALUE_GROUPING


# ============= Comparison =============

def normalize_full_class_name(full_class_name: str) -> str:
    """Normalize ``Schema:Class`` and ``Schema.Class`` forms to the dotted one."""
    return full_class_name.replace(":", ".")


def compare_full_class_names(lhs: str, rhs: str) -> int:
    return _compare(
        normalize_full_class_name(lhs).lower(),
        normalize_full_class_name(rhs).lower(),
    )


def _compare(lhs: Any, rhs: Any) -> int:
    return (lhs > rhs) - (lhs < rhs)


def _compare_optional(lhs: Optional[str], rhs: Optional[str]) -> int:
    # undefined sorts first
    if lhs is None and rhs is None:
        return 0
    if lhs is None:
        return -1
    if rhs is None:
        return 1
    return _compare(lhs, rhs)


def compare_instance_keys(lhs: InstanceKey, rhs: InstanceKey) -> int:
    result = compare_full_class_names(lhs.class_name, rhs.class_name)
    if result != 0:
        return result
    result = _compare(lhs.id, rhs.id)
    if result != 0:
        return result
    return _compare_optional(lhs.imodel_key, rhs.imodel_key)


def compare_keys(lhs: HierarchyNodeKey, rhs: HierarchyNodeKey) -> int:
    """Compare two node keys.

    The key type decides first, then the type-specific fields. The result is a
    strict total order usable for sorting.

    Args:
        lhs: Left key
        rhs: Right key

    Returns:
        Negative, zero or positive number like a classic ``cmp``
    """
    result = _compare(lhs.type, rhs.type)
    if result != 0:
        return result

    if lhs.type == GENERIC:
        result = _compare(lhs.id, rhs.id)
        if result != 0:
            return result
        return _compare_optional(lhs.source, rhs.source)

    if lhs.type == INSTANCES:
        if len(lhs.instance_keys) != len(rhs.instance_keys):
            return 1 if len(lhs.instance_keys) > len(rhs.instance_keys) else -1
        for lhs_key, rhs_key in zip(lhs.instance_keys, rhs.instance_keys):
            result = compare_instance_keys(lhs_key, rhs_key)
            if result != 0:
                return result
        return 0

    if lhs.type == CLASS_GROUPING:
        return compare_full_class_names(lhs.class_name, rhs.class_name)

    if lhs.type == LABEL_GROUPING:
        result = _compare(lhs.label, rhs.label)
        if result != 0:
            return result
        return _compare_optional(lhs.group_id, rhs.group_id)

    if lhs.type == PROPERTY_OTHER_GROUPING:
        if len(lhs.properties) != len(rhs.properties):
            return _compare(len(lhs.properties), len(rhs.properties))
        for lhs_prop, rhs_prop in zip(lhs.properties, rhs.properties):
            result = compare_full_class_names(lhs_prop.class_name, rhs_prop.class_name)
            if result != 0:
                return result
            result = _compare(lhs_prop.property_name.lower(), rhs_prop.property_name.lower())
            if result != 0:
                return result
        return 0

    result = compare_full_class_names(lhs.property_class_name, rhs.property_class_name)
    if result != 0:
        return result
    result = _compare(lhs.property_name.lower(), rhs.property_name.lower())
    if result != 0:
        return result

    if lhs.type == PROPERTY_VALUE_GROUPING:
        return _compare(lhs.formatted_property_value, rhs.formatted_property_value)

    # property-grouping:range
    result = _compare(float(lhs.from_value), float(rhs.from_value))
    if result != 0:
        return result
    return _compare(float(lhs.to_value), float(rhs.to_value))


def keys_equal(lhs: HierarchyNodeKey, rhs: HierarchyNodeKey) -> bool:
    return compare_keys(lhs, rhs) == 0


key_sort_key = cmp_to_key(compare_keys)


def key_chains_equal(lhs: Sequence[HierarchyNodeKey], rhs: Sequence[HierarchyNodeKey]) -> bool:
    """Check that two parent key chains are equal key by key."""
    if len(lhs) != len(rhs):
        return False
    # the closest keys differ most often, so compare from the end
    for i in range(len(lhs) - 1, -1, -1):
        if not keys_equal(lhs[i], rhs[i]):
            return False
    return True


# ============= Serialization & Node IDs =============

_ESCAPED_CHARS = ("\\", "|", ":", ";")


def _escape(value: Any) -> str:
    """Escape separator characters so key parts can't run into each other."""
    text = str(value)
    for char in _ESCAPED_CHARS:
        text = text.replace(char, "\\" + char)
    return text


def _class_part(full_class_name: str) -> str:
    return _escape(normalize_full_class_name(full_class_name).lower())


def serialize_key(key: HierarchyNodeKey) -> str:
    """Serialize a key into a stable string.

    Two keys that compare equal always serialize to the same string. Separators
    inside ids, labels and values are escaped, so different key chains never
    produce the same node id.
    """
    if key.type == GENERIC:
        return f"{GENERIC}:{_escape(key.source or '')}:{_escape(key.id)}"
    if key.type == INSTANCES:
        parts = [
            f"{_escape(ik.imodel_key or '')}:{_class_part(ik.class_name)}:{_escape(ik.id)}"
            for ik in key.instance_keys
        ]
        return f"{INSTANCES}:" + ";".join(parts)
    if key.type == CLASS_GROUPING:
        return f"{CLASS_GROUPING}:{_class_part(key.class_name)}"
    if key.type == LABEL_GROUPING:
        return f"{LABEL_GROUPING}:{_escape(key.label)}:{_escape(key.group_id or '')}"
    if key.type == PROPERTY_OTHER_GROUPING:
        parts = [
            f"{_class_part(p.class_name)}:{_escape(p.property_name.lower())}"
            for p in key.properties
        ]
        return f"{PROPERTY_OTHER_GROUPING}:" + ";".join(parts)

    prefix = f"{key.type}:{_class_part(key.property_class_name)}:{_escape(key.property_name.lower())}"
    if key.type == PROPERTY_VALUE_GROUPING:
        return f"{prefix}:{_escape(key.formatted_property_value)}"
    return f"{prefix}:{float(key.from_value)!r}-{float(key.to_value)!r}"


def create_node_id(parent_keys: Iterable[HierarchyNodeKey], key: HierarchyNodeKey) -> str:
    """Create a node id from the node's parent key chain and own key.

    The same entity reachable through the same path always gets the same id,
    which lets state survive hierarchy reloads.

    Args:
        parent_keys: Keys of all ancestors, root first
        key: The node's own key

    Returns:
        Node id string
    """
    return "|".join([serialize_key(k) for k in parent_keys] + [serialize_key(key)])


def merge_instances_keys(lhs: InstancesNodeKey, rhs: InstancesNodeKey) -> InstancesNodeKey:
    return InstancesNodeKey(instance_keys=lhs.instance_keys + rhs.instance_keys)


def merge_keys(lhs: HierarchyNodeKey, rhs: HierarchyNodeKey) -> HierarchyNodeKey:
    """Merge two keys of nodes that are merged into a single node.

    Raises:
        ValueError: If the keys are of different or non-mergeable types
    """
    if lhs.type != rhs.type:
        raise ValueError(f"Can't merge keys of different types: {lhs.type} and {rhs.type}")
    if lhs.type == INSTANCES:
        return merge_instances_keys(lhs, rhs)
    if lhs.type == GENERIC:
        if keys_equal(lhs, rhs):
            return lhs
        return CustomNodeKey(id=f"{lhs.id}+{rhs.id}", source=lhs.source)
    raise ValueError(f"Can't merge grouping node keys of type {lhs.type}")


def common_key_prefix(lhs: Sequence[HierarchyNodeKey], rhs: Sequence[HierarchyNodeKey]) -> List[HierarchyNodeKey]:
    """Get the longest common prefix of two key chains."""
    result: List[HierarchyNodeKey] = []
    for lhs_key, rhs_key in zip(lhs, rhs):
        if not keys_equal(lhs_key, rhs_key):
            break
        result.append(lhs_key)
    return result

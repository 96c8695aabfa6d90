"""Schema metadata and value formatting interfaces.

The engine never inspects a schema itself. It talks to a ``MetadataProvider``
for class information and "is-a" checks and to a ``ValueFormatter`` for display
strings. ``BaseClassChecker`` keeps derivation results in an LRU cache since the
same class pairs are checked over and over while grouping and searching.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from cachetools import LRUCache

from .node_key import normalize_full_class_name

logger = logging.getLogger(__name__)

PRIMITIVE_TYPES = (
    "Boolean",
    "Integer",
    "Long",
    "Double",
    "Id",
    "String",
    "DateTime",
    "Point2d",
    "Point3d",
)

# primitive types that can't be used for property grouping
NON_GROUPABLE_TYPES = ("Binary", "IGeometry")


@dataclass
class PropertyInfo:
    """Primitive property metadata."""
    name: str
    primitive_type: str = "String"
    koq_name: Optional[str] = None
    extended_type: Optional[str] = None


@dataclass
class ClassInfo:
    """Class metadata.

    Attributes:
        full_name: Full class name, e.g. ``BisCore.Element``
        label: Display label, falls back to ``name``
        properties: Primitive properties by name
    """
    full_name: str
    label: Optional[str] = None
    properties: Dict[str, PropertyInfo] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return normalize_full_class_name(self.full_name).split(".")[-1]

    def get_property(self, property_name: str) -> Optional[PropertyInfo]:
        prop = self.properties.get(property_name)
        if prop is not None:
            return prop
        lowered = property_name.lower()
        for name, candidate in self.properties.items():
            if name.lower() == lowered:
                return candidate
        return None


class MetadataProvider(ABC):
    """Schema access used by grouping and search."""

    @abstractmethod
    async def get_class(self, full_class_name: str) -> ClassInfo:
        """Get class metadata.

        Raises:
            ClassNotFoundError: If the class doesn't exist
        """
        pass

    @abstractmethod
    async def class_derives_from(self, derived_class_name: str, base_class_name: str) -> bool:
        """Check whether a class is or derives from another class."""
        pass


class BaseClassChecker:
    """LRU-cached "is-a" checks on top of a ``MetadataProvider``.

    Uses cachetools.LRUCache internally with threading.RLock for thread safety.
    """

    def __init__(self, metadata: MetadataProvider, max_size: int = 1000):
        """Initialize the checker.

        Args:
            metadata: Provider answering the uncached checks
            max_size: Maximum number of cached class pairs
        """
        self._metadata = metadata
        self._cache: LRUCache[Tuple[str, str], bool] = LRUCache(maxsize=max_size)
        self._lock = RLock()
        self._stats: Dict[str, int] = {"hits": 0, "misses": 0}

    @staticmethod
    def _cache_key(derived_class_name: str, base_class_name: str) -> Tuple[str, str]:
        return (
            normalize_full_class_name(derived_class_name).lower(),
            normalize_full_class_name(base_class_name).lower(),
        )

    async def derives_from(self, derived_class_name: str, base_class_name: str) -> bool:
        """Check whether ``derived_class_name`` is or derives from ``base_class_name``.

        Args:
            derived_class_name: Full name of the class to check
            base_class_name: Full name of the potential base class

        Returns:
            True if the class is the base class or derives from it
        """
        cache_key = self._cache_key(derived_class_name, base_class_name)
        if cache_key[0] == cache_key[1]:
            return True

        with self._lock:
            if cache_key in self._cache:
                self._stats["hits"] += 1
                return self._cache[cache_key]
            self._stats["misses"] += 1

        result = await self._metadata.class_derives_from(derived_class_name, base_class_name)
        with self._lock:
            self._cache[cache_key] = result
        return result

    async def related(self, lhs_class_name: str, rhs_class_name: str) -> bool:
        """Check whether either class derives from the other."""
        return (
            await self.derives_from(lhs_class_name, rhs_class_name)
            or await self.derives_from(rhs_class_name, lhs_class_name)
        )

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats, size=len(self._cache), max_size=self._cache.maxsize)

    def __len__(self) -> int:
        return self.size()

    def __repr__(self) -> str:
        return f"BaseClassChecker(size={self.size()}, max_size={self._cache.maxsize})"


# ============= Value Formatting =============

@dataclass
class TypedPrimitiveValue:
    """A primitive value tagged with its type for formatting."""
    type: str
    value: Any
    koq_name: Optional[str] = None
    extended_type: Optional[str] = None

    @classmethod
    def create(
        cls,
        value: Any,
        primitive_type: str,
        koq_name: Optional[str] = None,
        extended_type: Optional[str] = None,
    ) -> "TypedPrimitiveValue":
        if primitive_type not in PRIMITIVE_TYPES:
            raise ValueError(f"Unsupported primitive type: {primitive_type}")
        return cls(type=primitive_type, value=value, koq_name=koq_name, extended_type=extended_type)


class ValueFormatter(ABC):
    """Formats typed primitive values into display strings."""

    @abstractmethod
    async def format(self, value: TypedPrimitiveValue) -> str:
        pass


def _format_double(value: Any) -> str:
    return f"{float(value):.2f}"


def _format_point(value: Any, axes: List[str]) -> str:
    if isinstance(value, dict):
        coords = [value.get(axis, 0) for axis in axes]
    else:
        coords = list(value)
    return "(" + ", ".join(_format_double(c) for c in coords) + ")"


class DefaultValueFormatter(ValueFormatter):
    """Locale-agnostic formatter used when no other formatter is given."""

    async def format(self, value: TypedPrimitiveValue) -> str:
        v = value.value
        if value.type == "Boolean":
            return "true" if v else "false"
        if value.type in ("Integer", "Long"):
            return str(int(v))
        if value.type == "Double":
            return _format_double(v)
        if value.type == "DateTime":
            if isinstance(v, (datetime, date)):
                return v.isoformat()
            return str(v)
        if value.type == "Point2d":
            return _format_point(v, ["x", "y"])
        if value.type == "Point3d":
            return _format_point(v, ["x", "y", "z"])
        return str(v)


async def format_concatenated_value(label: Any, formatter: ValueFormatter) -> str:
    """Format a label that may be a list of typed segments.

    Segments are plain strings, ``TypedPrimitiveValue`` instances or dicts with
    ``type``/``value`` keys (the shape found in JSON label columns).
    """
    if isinstance(label, str):
        return label
    if isinstance(label, TypedPrimitiveValue):
        return await formatter.format(label)
    if isinstance(label, dict):
        if "type" in label and "value" in label:
            return await formatter.format(TypedPrimitiveValue(
                type=label["type"],
                value=label["value"],
                koq_name=label.get("koqName"),
                extended_type=label.get("extendedType"),
            ))
        return str(label.get("value", ""))
    if isinstance(label, (list, tuple)):
        parts = []
        for segment in label:
            parts.append(await format_concatenated_value(segment, formatter))
        return "".join(parts)
    if label is None:
        return ""
    return str(label)

"""Errors raised by the hierarchy engine."""

from typing import Union


class HierarchyError(Exception):
    """Base class for hierarchy engine errors."""
    pass


class RowsLimitExceededError(HierarchyError):
    """Raised when a hierarchy level has more rows than the allowed limit.

    Attributes:
        limit: The limit that was exceeded
    """

    def __init__(self, limit: Union[int, str]):
        self.limit = limit
        super().__init__(f"Query rows limit of {limit} exceeded")


class ClassNotFoundError(HierarchyError):
    """Raised when schema metadata for a class can't be found."""

    def __init__(self, class_name: str):
        self.class_name = class_name
        super().__init__(f"Class '{class_name}' not found")


class LoadCancelledError(HierarchyError):
    """Raised inside a load when its cancellation token has been cancelled.

    Never surfaced to callers - cancelled loads simply produce no results.
    """
    pass

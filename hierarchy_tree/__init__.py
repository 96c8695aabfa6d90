"""Hierarchy Tree - hierarchy construction and client-side tree synchronization engine"""

from .errors import ClassNotFoundError, HierarchyError, RowsLimitExceededError
from .node_key import CustomNodeKey, InstanceKey, InstancesNodeKey, create_node_id
from .hierarchy_node import GroupingHierarchyNode, HierarchyNode
from .definition import HierarchyDefinition, QueryExecutor
from .grouping import GroupingEngine
from .search import CustomNodeIdentifier, RevealDepthInHierarchy, RevealDepthInPath, SearchPath
from .provider import DefinitionHierarchyProvider, HierarchyProvider
from .tree_model import SelectionChangeType, TreeModel
from .tree_loader import TreeLoader
from .tree_actions import TreeActions

__all__ = [
    "ClassNotFoundError",
    "HierarchyError",
    "RowsLimitExceededError",
    "CustomNodeKey",
    "InstanceKey",
    "InstancesNodeKey",
    "create_node_id",
    "GroupingHierarchyNode",
    "HierarchyNode",
    "HierarchyDefinition",
    "QueryExecutor",
    "GroupingEngine",
    "CustomNodeIdentifier",
    "RevealDepthInHierarchy",
    "RevealDepthInPath",
    "SearchPath",
    "DefinitionHierarchyProvider",
    "HierarchyProvider",
    "TreeModel",
    "SelectionChangeType",
    "TreeLoader",
    "TreeActions",
]

"""Pytest configuration and shared fixtures."""

import pytest
import sys
import os

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from hierarchy_tree.config import EngineSettings, ResolvedConfig
from hierarchy_tree.hierarchy_node import GroupingParams, HierarchyNode, ProcessingParams
from hierarchy_tree.in_memory import InMemoryDataSource, InMemoryMetadataProvider
from hierarchy_tree.metadata import BaseClassChecker
from hierarchy_tree.node_key import CustomNodeKey, InstanceKey, InstancesNodeKey


SAMPLE_CLASSES = [
    {
        "name": "BisCore.Element",
        "label": "Element",
        "properties": [
            {"name": "CodeValue", "type": "String"},
            {"name": "Height", "type": "Double"},
            {"name": "Floor", "type": "Integer"},
        ],
    },
    {"name": "BisCore.PhysicalElement", "label": "Physical Element", "bases": ["BisCore.Element"]},
    {"name": "BisCore.Wall", "label": "Wall", "bases": ["BisCore.PhysicalElement"]},
    {"name": "BisCore.Door", "label": "Door", "bases": ["BisCore.PhysicalElement"]},
    {"name": "BisCore.Category", "label": "Category"},
]


@pytest.fixture
def sample_classes():
    """Schema classes used across tests."""
    return [dict(c) for c in SAMPLE_CLASSES]


@pytest.fixture
def metadata(sample_classes):
    """In-memory metadata provider over the sample schema."""
    return InMemoryMetadataProvider(sample_classes)


@pytest.fixture
def class_checker(metadata):
    """Base class checker over the sample schema."""
    return BaseClassChecker(metadata)


@pytest.fixture
def make_instance_node():
    """Factory for instance nodes."""
    def factory(class_name, instance_id, label=None, grouping=None, parent_keys=None, **kwargs):
        processing_params = kwargs.pop("processing_params", None)
        if grouping is not None:
            processing_params = ProcessingParams(grouping=grouping)
        return HierarchyNode(
            key=InstancesNodeKey(instance_keys=[InstanceKey(class_name=class_name, id=instance_id)]),
            label=label if label is not None else instance_id,
            parent_keys=list(parent_keys or []),
            processing_params=processing_params,
            **kwargs,
        )
    return factory


@pytest.fixture
def make_custom_node():
    """Factory for custom nodes."""
    def factory(node_id, label=None, parent_keys=None, **kwargs):
        return HierarchyNode(
            key=CustomNodeKey(id=node_id),
            label=label if label is not None else node_id,
            parent_keys=list(parent_keys or []),
            **kwargs,
        )
    return factory


@pytest.fixture
def by_class():
    """Grouping params requesting class grouping."""
    return GroupingParams(by_class=True)


@pytest.fixture
def make_data_source(sample_classes):
    """Factory for in-memory data sources."""
    def factory(instances=None, custom_nodes=None, classes=None):
        config = ResolvedConfig(
            environment="default",
            engine=EngineSettings(),
            classes=classes if classes is not None else sample_classes,
            custom_nodes=list(custom_nodes or []),
            instances=list(instances or []),
        )
        return InMemoryDataSource.from_config(config)
    return factory


@pytest.fixture
def building_instances():
    """A small building: two floors with walls and doors."""
    return [
        {"class": "BisCore.Category", "id": "0x1", "label": "Floor 1"},
        {"class": "BisCore.Category", "id": "0x2", "label": "Floor 2"},
        {"class": "BisCore.Wall", "id": "0x11", "label": "Wall A", "parent": "0x1"},
        {"class": "BisCore.Wall", "id": "0x12", "label": "Wall B", "parent": "0x1"},
        {"class": "BisCore.Door", "id": "0x13", "label": "Door A", "parent": "0x1"},
        {"class": "BisCore.Wall", "id": "0x21", "label": "Wall C", "parent": "0x2"},
    ]


@pytest.fixture
def building_source(make_data_source, building_instances):
    """In-memory data source over the building instances."""
    return make_data_source(instances=building_instances)

"""Tests for hiding childless and hidden nodes."""

import pytest
from unittest.mock import AsyncMock

from hierarchy_tree.hide_nodes import hide_if_no_children, hide_nodes_in_hierarchy
from hierarchy_tree.hierarchy_node import ProcessingParams


def hidden(**kwargs):
    return ProcessingParams(hide_in_hierarchy=True, **kwargs)


class TestHideIfNoChildren:
    """Tests for hide_if_no_children."""

    @pytest.mark.asyncio
    async def test_drops_childless_nodes(self, make_instance_node):
        """Test that flagged nodes without children are dropped."""
        params = ProcessingParams(hide_if_no_children=True)
        keep = make_instance_node("BisCore.Wall", "0x1", children=True, processing_params=params)
        drop = make_instance_node("BisCore.Wall", "0x2", children=False, processing_params=params)
        unflagged = make_instance_node("BisCore.Wall", "0x3", children=False)
        has_nodes = AsyncMock(return_value=False)

        result = await hide_if_no_children([keep, drop, unflagged], has_nodes)

        assert result == [keep, unflagged]
        has_nodes.assert_not_called()

    @pytest.mark.asyncio
    async def test_determines_unknown_children(self, make_instance_node):
        """Test that unknown children flags are determined with the callback."""
        params = ProcessingParams(hide_if_no_children=True)
        node = make_instance_node("BisCore.Wall", "0x1", processing_params=params)
        has_nodes = AsyncMock(return_value=True)

        result = await hide_if_no_children([node], has_nodes)

        assert result == [node]
        assert node.children is True
        has_nodes.assert_awaited_once_with(node)


class TestHideNodesInHierarchy:
    """Tests for hide_nodes_in_hierarchy."""

    @pytest.mark.asyncio
    async def test_replaces_hidden_node_with_children(self, make_instance_node, make_custom_node):
        """Test that a hidden node is replaced by its children, after visible nodes."""
        visible = make_custom_node("visible")
        hidden_node = make_custom_node("hidden", processing_params=hidden())
        child = make_instance_node("BisCore.Wall", "0x1")
        get_nodes = AsyncMock(return_value=[child])

        result = await hide_nodes_in_hierarchy([hidden_node, visible], get_nodes)

        assert result == [visible, child]
        get_nodes.assert_awaited_once_with(hidden_node)

    @pytest.mark.asyncio
    async def test_merges_hidden_instances_of_same_class(self, make_instance_node):
        """Test that hidden instance nodes of one class load their children in one go."""
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", processing_params=hidden()),
            make_instance_node("BisCore.Wall", "0x2", processing_params=hidden()),
            make_instance_node("BisCore.Door", "0x3", processing_params=hidden()),
        ]
        get_nodes = AsyncMock(return_value=[])

        await hide_nodes_in_hierarchy(nodes, get_nodes)

        assert get_nodes.await_count == 2
        merged = get_nodes.await_args_list[0].args[0]
        assert [k.id for k in merged.key.instance_keys] == ["0x1", "0x2"]

    @pytest.mark.asyncio
    async def test_skips_hidden_nodes_without_children(self, make_instance_node):
        """Test that hidden nodes known to have no children are dropped without loading."""
        node = make_instance_node("BisCore.Wall", "0x1", children=False, processing_params=hidden())
        get_nodes = AsyncMock(return_value=[])

        result = await hide_nodes_in_hierarchy([node], get_nodes)

        assert result == []
        get_nodes.assert_not_called()

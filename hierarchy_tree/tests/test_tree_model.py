"""Tests for the TreeModel module."""

import pytest

from hierarchy_tree.hierarchy_node import GroupingHierarchyNode, HierarchyNode
from hierarchy_tree.node_key import ClassGroupingNodeKey, CustomNodeKey
from hierarchy_tree.tree_model import (
    LOADING_PLACEHOLDER_SUFFIX,
    RESULT_SET_TOO_LARGE,
    ExpandAction,
    SelectionChangeType,
    TreeModel,
    TreeModelHierarchyNode,
    create_info_node,
    get_node_id,
    get_non_grouped_parent_id,
)


def model_node(node_id, children=False, **kwargs):
    data = HierarchyNode(key=CustomNodeKey(id=node_id), label=node_id.upper())
    return TreeModelHierarchyNode(id=node_id, node_data=data, label=data.label, children=children, **kwargs)


@pytest.fixture
def model():
    """Model with two roots; ``a`` has children ``a1`` and ``a2``, ``b`` isn't loaded."""
    model = TreeModel()
    model.add_nodes(None, [model_node("a", children=True), model_node("b", children=True)])
    model.add_nodes("a", [model_node("a1"), model_node("a2", children=True)])
    return model


class TestTreeModelReading:
    """Tests for reading the model."""

    def test_get_node(self, model):
        """Test getting nodes and the root sentinel."""
        assert model.get_node("a1").label == "A1"
        assert model.get_node(None) is model.root_node
        assert model.get_node("missing") is None

    def test_get_children(self, model):
        """Test that unloaded children are distinct from no children."""
        assert [n.id for n in model.get_children("a")] == ["a1", "a2"]
        assert model.get_children("b") is None

        model.add_nodes("b", [])
        assert model.get_children("b") == []

    def test_add_nodes_marks_parent_expanded(self, model):
        """Test that adding a loaded level expands its parent."""
        assert model.get_node("a").is_expanded is True
        assert model.get_node("b").is_expanded is None

    def test_get_tree(self, model):
        """Test the projected forest, with a placeholder under unloaded nodes."""
        forest = model.get_tree()

        assert [n.id for n in forest] == ["a", "b"]
        assert [n.id for n in forest[0].children] == ["a1", "a2"]
        placeholder = forest[1].children[0]
        assert placeholder.is_placeholder
        assert placeholder.id == "b" + LOADING_PLACEHOLDER_SUFFIX
        assert forest[0].children[0].children == []

    def test_info_nodes_in_tree(self, model):
        """Test that info nodes are projected with their type."""
        model.add_nodes("b", [create_info_node("b", RESULT_SET_TOO_LARGE, "Too many")])

        info = model.get_tree()[1].children[0]

        assert info.info_type == RESULT_SET_TOO_LARGE
        assert info.label == "Too many"
        assert info.id == "b-Too many"

    def test_collect_nodes(self, model):
        """Test collecting nodes while descending through matching nodes only."""
        model.get_node("a").is_expanded = False

        assert [n.id for n in model.collect_nodes(None, lambda n: True)] == ["a", "a1", "a2", "b"]
        assert model.collect_nodes(None, lambda n: n.is_expanded is True) == []

    def test_len_contains_repr(self, model):
        """Test container helpers."""
        assert len(model) == 4
        assert "a2" in model
        assert "loaded_levels=2" in repr(model)


class TestTreeModelExpand:
    """Tests for expanding and collapsing."""

    def test_expand_unloaded_node(self, model):
        """Test that expanding an unloaded node requests loading."""
        assert model.expand_node("b", True) == ExpandAction.LOAD_CHILDREN
        assert model.get_node("b").is_loading is True

    def test_expand_loaded_node(self, model):
        """Test that expanding a loaded node needs no load."""
        model.expand_node("a", False)
        assert model.expand_node("a", True) == ExpandAction.NONE

    def test_expand_leaf(self, model):
        """Test that leaves don't load anything."""
        assert model.expand_node("a1", True) == ExpandAction.NONE

    def test_collapse_keeps_children(self, model):
        """Test that collapsing never discards loaded children."""
        assert model.expand_node("a", False) == ExpandAction.NONE
        assert model.get_node("a").is_expanded is False
        assert "a1" in model

    def test_expand_node_with_info_child_reloads(self, model):
        """Test that expanding a node whose only child is an info node retries."""
        model.add_nodes("b", [create_info_node("b", RESULT_SET_TOO_LARGE, "Too many")])
        model.expand_node("b", False)

        assert model.expand_node("b", True) == ExpandAction.RELOAD_CHILDREN
        assert model.get_children("b") is None

    def test_expand_unknown_node(self, model):
        """Test that unknown ids are ignored."""
        assert model.expand_node("missing", True) == ExpandAction.NONE


class TestTreeModelUpdates:
    """Tests for subtree replacement, options and selection."""

    def test_add_hierarchy_part_replaces_subtree(self, model):
        """Test that loading a part drops stale descendants."""
        model.add_nodes("a2", [model_node("stale")])
        part = TreeModel()
        part.add_nodes("a", [model_node("a3")])

        model.add_hierarchy_part("a", part)

        assert [n.id for n in model.get_children("a")] == ["a3"]
        assert "a1" not in model
        assert "stale" not in model
        assert "a2" not in model.parent_child_map

    def test_add_hierarchy_part_clears_loading(self, model):
        """Test that the parent stops loading once its part is added."""
        model.expand_node("b", True)
        part = TreeModel()
        part.add_nodes("b", [model_node("b1")])

        model.add_hierarchy_part("b", part)

        assert model.get_node("b").is_loading is False
        assert [n.id for n in model.get_children("b")] == ["b1"]

    def test_remove_subtree(self, model):
        """Test recursive subtree removal."""
        model.add_nodes("a2", [model_node("deep")])

        model.remove_subtree("a")

        assert model.get_children("a") is None
        assert "deep" not in model
        assert "a" in model

    def test_set_hierarchy_limit(self, model):
        """Test that setting a limit drops children and asks for a reload of expanded nodes."""
        assert model.set_hierarchy_limit("a", 10) is True
        assert model.get_node("a").hierarchy_limit == 10
        assert model.get_node("a").is_loading is True
        assert model.get_children("a") is None

        assert model.set_hierarchy_limit("b", 5) is False
        assert model.set_hierarchy_limit("missing", 5) is False

    def test_set_root_options(self, model):
        """Test that root options live on the root sentinel."""
        assert model.set_hierarchy_limit(None, "unbounded") is True
        assert model.root_node.hierarchy_limit == "unbounded"
        assert len(model) == 0

        assert model.set_instance_filter(None, "x") is True
        assert model.root_node.instance_filter == "x"

    def test_set_instance_filter(self, model):
        """Test that setting a filter drops children of the node."""
        assert model.set_instance_filter("a", "text") is True
        assert model.get_node("a").instance_filter == "text"
        assert "a1" not in model

    def test_selection(self, model):
        """Test add, replace and remove selection changes."""
        model.select_nodes(["a1"], SelectionChangeType.ADD)
        model.select_nodes(["a2"], SelectionChangeType.ADD)
        assert sorted(model.get_selected_ids()) == ["a1", "a2"]

        model.select_nodes(["b"], SelectionChangeType.REPLACE)
        assert model.get_selected_ids() == ["b"]

        model.select_nodes(["b"], SelectionChangeType.REMOVE)
        assert model.get_selected_ids() == []
        assert model.is_node_selected("b") is False

    def test_copy_is_independent(self, model):
        """Test that copies don't share node state or child lists."""
        snapshot = model.copy()

        model.get_node("a").is_expanded = False
        model.remove_subtree("a")

        assert snapshot.get_node("a").is_expanded is True
        assert [n.id for n in snapshot.get_children("a")] == ["a1", "a2"]


class TestNodeIds:
    """Tests for model node id helpers."""

    def test_non_grouped_parent_id(self):
        """Test that grouping nodes take level options from their non-grouping ancestor."""
        ancestor = HierarchyNode(key=CustomNodeKey(id="parent"), label="Parent")
        group = GroupingHierarchyNode(
            key=ClassGroupingNodeKey(class_name="BisCore.Wall"),
            label="Wall",
            parent_keys=[ancestor.key],
            non_grouping_ancestor=ancestor,
        )
        group_node = TreeModelHierarchyNode(id=get_node_id(group), node_data=group, label="Wall", children=True)
        plain_node = TreeModelHierarchyNode(id="x", node_data=ancestor, label="Parent", children=True)

        assert get_non_grouped_parent_id(group_node) == get_node_id(ancestor)
        assert get_non_grouped_parent_id(plain_node) == "x"
        assert get_non_grouped_parent_id(TreeModel().root_node) is None

    def test_root_grouping_node_uses_root_options(self):
        """Test that grouping nodes at the root take the root level options."""
        group = GroupingHierarchyNode(key=ClassGroupingNodeKey(class_name="BisCore.Wall"), label="Wall")
        group_node = TreeModelHierarchyNode(id=get_node_id(group), node_data=group, label="Wall", children=True)

        assert get_non_grouped_parent_id(group_node) is None

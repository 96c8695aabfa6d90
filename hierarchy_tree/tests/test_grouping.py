"""Tests for the grouping engine and its class, base class and label handlers."""

import pytest

from hierarchy_tree.grouping import (
    GROUPING_HANDLERS_BY_PARENT,
    GroupingEngine,
    HandlerKind,
    ParentKind,
    get_parent_kind,
)
from hierarchy_tree.hierarchy_node import (
    BaseClassGroupingParams,
    ClassGroupingParams,
    GroupingHierarchyNode,
    GroupingParams,
    LabelGroupingParams,
)
from hierarchy_tree.node_key import (
    ClassGroupingNodeKey,
    CustomNodeKey,
    LabelGroupingNodeKey,
    PropertyValueGroupingNodeKey,
    is_class_grouping,
    is_instances,
)


@pytest.fixture
def engine(metadata, class_checker):
    """Grouping engine over the sample schema."""
    return GroupingEngine(metadata, class_checker=class_checker)


class TestParentKind:
    """Tests for the handler dispatch table."""

    def test_root_and_non_grouping_parents(self, make_custom_node):
        """Test that root, custom and instance parents group like the root."""
        assert get_parent_kind(None) == ParentKind.ROOT
        assert get_parent_kind(make_custom_node("a")) == ParentKind.ROOT

    def test_grouping_parents(self):
        """Test classification of grouping parents."""
        class_group = GroupingHierarchyNode(key=ClassGroupingNodeKey("BisCore.Wall"), label="Wall")
        label_group = GroupingHierarchyNode(key=LabelGroupingNodeKey("A"), label="A")
        property_group = GroupingHierarchyNode(
            key=PropertyValueGroupingNodeKey("BisCore.Element", "Floor", "1"), label="1"
        )
        assert get_parent_kind(class_group) == ParentKind.CLASS_GROUP
        assert get_parent_kind(label_group) == ParentKind.LABEL_GROUP
        assert get_parent_kind(property_group) == ParentKind.PROPERTY_GROUP

    def test_handler_order(self):
        """Test which handlers run under each parent kind."""
        assert GROUPING_HANDLERS_BY_PARENT[ParentKind.ROOT] == (
            HandlerKind.BASE_CLASS, HandlerKind.CLASS, HandlerKind.PROPERTY, HandlerKind.LABEL,
        )
        assert GROUPING_HANDLERS_BY_PARENT[ParentKind.PROPERTY_GROUP] == (HandlerKind.PROPERTY, HandlerKind.LABEL)
        assert GROUPING_HANDLERS_BY_PARENT[ParentKind.LABEL_GROUP] == ()


class TestClassGrouping:
    """Tests for class grouping."""

    @pytest.mark.asyncio
    async def test_groups_by_class(self, engine, make_instance_node, by_class):
        """Test that nodes are grouped into one node per class, sorted by label."""
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", "Wall A", grouping=by_class),
            make_instance_node("BisCore.Door", "0x2", "Door A", grouping=by_class),
            make_instance_node("BisCore.Wall", "0x3", "Wall B", grouping=by_class),
        ]

        output = await engine.group(None, nodes)

        assert [n.label for n in output.grouped] == ["Door", "Wall"]
        assert output.ungrouped == []
        wall_group = output.grouped[1]
        assert [k.id for k in wall_group.grouped_instance_keys] == ["0x1", "0x3"]
        assert [c.label for c in wall_group.children] == ["Wall A", "Wall B"]

    @pytest.mark.asyncio
    async def test_children_are_reparented(self, engine, make_instance_node, by_class):
        """Test that grouped nodes get the grouping key appended to their parent keys."""
        root_key = CustomNodeKey(id="root")
        nodes = [make_instance_node("BisCore.Wall", "0x1", grouping=by_class, parent_keys=[root_key])]

        output = await engine.group(None, nodes)

        group = output.grouped[0]
        assert group.parent_keys == [root_key]
        assert group.children[0].parent_keys == [root_key, group.key]

    @pytest.mark.asyncio
    async def test_nodes_without_params_stay_ungrouped(self, engine, make_instance_node, by_class):
        """Test that nodes that didn't opt in are left alone."""
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=by_class),
            make_instance_node("BisCore.Wall", "0x2"),
        ]

        output = await engine.group(None, nodes)

        assert len(output.grouped) == 1
        assert [n.key.instance_keys[0].id for n in output.ungrouped] == ["0x2"]

    @pytest.mark.asyncio
    async def test_no_nested_group_of_same_class(self, engine, make_instance_node, by_class):
        """Test that a class group never directly contains a group of its own class."""
        parent = GroupingHierarchyNode(key=ClassGroupingNodeKey("BisCore.Wall"), label="Wall")
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=by_class, parent_keys=[parent.key]),
            make_instance_node("BisCore.Wall", "0x2", grouping=by_class, parent_keys=[parent.key]),
        ]

        output = await engine.group(parent, nodes)

        assert output.grouped == []
        assert len(output.ungrouped) == 2

    @pytest.mark.asyncio
    async def test_custom_nodes_pass_through(self, engine, make_instance_node, make_custom_node, by_class):
        """Test that custom nodes are never grouped and come after ungrouped nodes."""
        custom = make_custom_node("folder")
        nodes = [custom, make_instance_node("BisCore.Wall", "0x1", grouping=by_class)]

        output = await engine.group(None, nodes)

        assert len(output.grouped) == 1
        assert output.ungrouped == [custom]
        assert output.all_nodes()[-1] is custom

    @pytest.mark.asyncio
    async def test_non_grouping_ancestor_is_set(self, engine, make_instance_node, by_class):
        """Test that grouping nodes remember the instance parent of their level."""
        parent = make_instance_node("BisCore.Category", "0x9")
        nodes = [make_instance_node("BisCore.Wall", "0x1", grouping=by_class, parent_keys=[parent.key])]

        output = await engine.group(parent, nodes)

        assert output.grouped[0].non_grouping_ancestor is parent


class TestGroupHiding:
    """Tests for grouping node hiding params."""

    @pytest.mark.asyncio
    async def test_hide_if_one_grouped_node(self, engine, make_instance_node):
        """Test that a grouping node with a single child is replaced by the child."""
        params = GroupingParams(by_class=ClassGroupingParams(hide_if_one_grouped_node=True))
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=params),
            make_instance_node("BisCore.Wall", "0x2", grouping=params),
            make_instance_node("BisCore.Door", "0x3", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert [n.label for n in output.grouped] == ["Wall"]
        assert len(output.ungrouped) == 1
        door = output.ungrouped[0]
        assert is_instances(door.key)
        assert door.parent_keys == []

    @pytest.mark.asyncio
    async def test_hide_if_no_siblings(self, engine, make_instance_node):
        """Test that the only node of a level isn't a grouping node."""
        params = GroupingParams(by_class=ClassGroupingParams(hide_if_no_siblings=True))
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=params),
            make_instance_node("BisCore.Wall", "0x2", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert output.grouped == []
        assert len(output.ungrouped) == 2

    @pytest.mark.asyncio
    async def test_hide_if_no_siblings_keeps_group_with_siblings(self, engine, make_instance_node, make_custom_node):
        """Test that a custom node sibling keeps the grouping node."""
        params = GroupingParams(by_class=ClassGroupingParams(hide_if_no_siblings=True))
        nodes = [
            make_custom_node("folder"),
            make_instance_node("BisCore.Wall", "0x1", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert len(output.grouped) == 1


class TestAutoExpand:
    """Tests for grouping node auto-expand."""

    @pytest.mark.asyncio
    async def test_single_child_auto_expand(self, engine, make_instance_node):
        """Test that single-child auto-expand applies only to groups with one child."""
        params = GroupingParams(by_class=ClassGroupingParams(auto_expand="single-child"))
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=params),
            make_instance_node("BisCore.Wall", "0x2", grouping=params),
            make_instance_node("BisCore.Door", "0x3", grouping=params),
        ]

        output = await engine.group(None, nodes)

        by_label = {n.label: n for n in output.grouped}
        assert by_label["Door"].auto_expand is True
        assert by_label["Wall"].auto_expand is False

    @pytest.mark.asyncio
    async def test_always_auto_expand(self, engine, make_instance_node):
        """Test that always auto-expand applies to any group."""
        params = GroupingParams(by_class=ClassGroupingParams(auto_expand="always"))
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=params),
            make_instance_node("BisCore.Wall", "0x2", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert output.grouped[0].auto_expand is True


class TestBaseClassGrouping:
    """Tests for base class grouping."""

    @pytest.mark.asyncio
    async def test_groups_by_base_class(self, engine, make_instance_node):
        """Test that nodes deriving from the base class share one grouping node."""
        params = GroupingParams(by_base_classes=BaseClassGroupingParams(full_class_names=["BisCore.PhysicalElement"]))
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=params),
            make_instance_node("BisCore.Door", "0x2", grouping=params),
            make_instance_node("BisCore.Category", "0x3", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert len(output.grouped) == 1
        group = output.grouped[0]
        assert group.label == "Physical Element"
        assert is_class_grouping(group.key)
        assert len(group.children) == 2
        assert [n.key.instance_keys[0].id for n in output.ungrouped] == ["0x3"]

    @pytest.mark.asyncio
    async def test_base_classes_nest(self, engine, make_instance_node):
        """Test that deeper base classes group under the grouping node of their base."""
        params = GroupingParams(by_base_classes=BaseClassGroupingParams(
            full_class_names=["BisCore.PhysicalElement", "BisCore.Element"],
        ))
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", grouping=params),
            make_instance_node("BisCore.Door", "0x2", grouping=params),
        ]

        root_output = await engine.group(None, nodes)

        assert [n.label for n in root_output.grouped] == ["Element"]
        element_group = root_output.grouped[0]

        nested_output = await engine.group(element_group, element_group.children)

        assert [n.label for n in nested_output.grouped] == ["Physical Element"]
        assert len(nested_output.grouped[0].children) == 2


class TestLabelGrouping:
    """Tests for label grouping and merging."""

    @pytest.mark.asyncio
    async def test_groups_by_label(self, engine, make_instance_node):
        """Test that nodes with the same label are grouped together."""
        params = GroupingParams(by_label=True)
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", "A", grouping=params),
            make_instance_node("BisCore.Door", "0x2", "B", grouping=params),
            make_instance_node("BisCore.Wall", "0x3", "A", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert [n.label for n in output.grouped] == ["A", "B"]
        assert len(output.grouped[0].children) == 2

    @pytest.mark.asyncio
    async def test_merge_by_label(self, engine, make_instance_node):
        """Test that merge action merges nodes into one node in place of the first."""
        params = GroupingParams(by_label=LabelGroupingParams(action="merge", group_id="g"))
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", "Same", grouping=params),
            make_instance_node("BisCore.Door", "0x2", "Other", grouping=params),
            make_instance_node("BisCore.Wall", "0x3", "Same", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert output.grouped == []
        assert [n.label for n in output.ungrouped] == ["Same", "Other"]
        merged = output.ungrouped[0]
        assert [k.id for k in merged.key.instance_keys] == ["0x1", "0x3"]

    @pytest.mark.asyncio
    async def test_different_group_ids_never_merge(self, engine, make_instance_node):
        """Test that merging respects group ids."""
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", "Same", grouping=GroupingParams(
                by_label=LabelGroupingParams(action="merge", group_id="g1"))),
            make_instance_node("BisCore.Wall", "0x2", "Same", grouping=GroupingParams(
                by_label=LabelGroupingParams(action="merge", group_id="g2"))),
        ]

        output = await engine.group(None, nodes)

        assert len(output.ungrouped) == 2

    @pytest.mark.asyncio
    async def test_no_grouping_under_label_group(self, engine, make_instance_node):
        """Test that label grouping parents don't group their children further."""
        parent = GroupingHierarchyNode(key=LabelGroupingNodeKey("A"), label="A")
        params = GroupingParams(by_label=True, by_class=True)
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", "A", grouping=params, parent_keys=[parent.key]),
            make_instance_node("BisCore.Wall", "0x2", "A", grouping=params, parent_keys=[parent.key]),
        ]

        output = await engine.group(parent, nodes)

        assert output.grouped == []
        assert len(output.ungrouped) == 2

    @pytest.mark.asyncio
    async def test_class_grouping_runs_before_label_grouping(self, engine, make_instance_node):
        """Test that a node ends up in at most one grouping node per level."""
        params = GroupingParams(by_label=True, by_class=True)
        nodes = [
            make_instance_node("BisCore.Wall", "0x1", "A", grouping=params),
            make_instance_node("BisCore.Wall", "0x2", "A", grouping=params),
        ]

        output = await engine.group(None, nodes)

        assert len(output.grouped) == 1
        assert is_class_grouping(output.grouped[0].key)


class TestEngineStats:
    """Tests for engine statistics."""

    @pytest.mark.asyncio
    async def test_stats(self, engine, make_instance_node, by_class):
        """Test that stats count grouped levels and created grouping nodes."""
        await engine.group(None, [make_instance_node("BisCore.Wall", "0x1", grouping=by_class)])
        await engine.group(None, [])

        stats = engine.get_stats()
        assert stats["levels_grouped"] == 2
        assert stats["grouping_nodes_created"] == 1
        assert "GroupingEngine" in repr(engine)

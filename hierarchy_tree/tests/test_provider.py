"""Tests for the definition based hierarchy provider and the in-memory data source."""

import pytest

from hierarchy_tree.config import EngineSettings
from hierarchy_tree.errors import ClassNotFoundError, RowsLimitExceededError
from hierarchy_tree.hierarchy_node import GroupingHierarchyNode
from hierarchy_tree.in_memory import InstanceRecord, matches_instance_filter
from hierarchy_tree.node_key import ClassGroupingNodeKey, InstanceKey
from hierarchy_tree.provider import UNBOUNDED, HierarchyLevelCache


def labels(nodes):
    return [n.label for n in nodes]


@pytest.fixture
def provider(building_source):
    """Provider over the building data set."""
    return building_source.create_provider()


class TestHierarchyLevelCache:
    """Tests for the LRU level cache."""

    def test_cache_and_get(self):
        """Test storing and retrieving a level."""
        cache = HierarchyLevelCache(max_size=2)
        cache.cache_level("a", [])
        assert cache.get_cached_level("a") == []
        assert cache.get_cached_level("missing") is None
        assert "a" in cache

    def test_lru_eviction(self):
        """Test that the least recently used level is evicted."""
        cache = HierarchyLevelCache(max_size=2)
        cache.cache_level("a", [])
        cache.cache_level("b", [])
        cache.get_cached_level("a")
        cache.cache_level("c", [])

        assert "a" in cache
        assert "b" not in cache
        assert len(cache) == 2

    def test_clear(self):
        """Test clearing the cache."""
        cache = HierarchyLevelCache(max_size=2)
        cache.cache_level("a", [])
        cache.clear()
        assert cache.size() == 0
        assert cache.get_max_size() == 2
        assert "size=0" in repr(cache)


class TestGetNodes:
    """Tests for loading hierarchy levels."""

    @pytest.mark.asyncio
    async def test_root_level(self, provider):
        """Test that root nodes are sorted and know whether they have children."""
        roots = await provider.get_nodes(None)

        assert labels(roots) == ["Floor 1", "Floor 2"]
        assert all(n.parent_keys == [] for n in roots)
        assert all(n.children is True for n in roots)

    @pytest.mark.asyncio
    async def test_child_level(self, provider):
        """Test that children get the parent key chain and leaf nodes have no children."""
        floor = (await provider.get_nodes(None))[0]

        children = await provider.get_nodes(floor)

        assert labels(children) == ["Door A", "Wall A", "Wall B"]
        assert all(n.parent_keys == [floor.key] for n in children)
        assert all(n.children is False for n in children)

    @pytest.mark.asyncio
    async def test_custom_nodes_sort_with_instances(self, make_data_source, building_instances):
        """Test that custom and instance nodes share one sorted level."""
        source = make_data_source(instances=building_instances, custom_nodes=[{"id": "notes", "label": "Annotations"}])

        roots = await source.create_provider().get_nodes(None)

        assert labels(roots) == ["Annotations", "Floor 1", "Floor 2"]
        assert roots[0].children is False

    @pytest.mark.asyncio
    async def test_concatenated_labels_are_formatted(self, make_data_source):
        """Test that typed label segments are formatted."""
        source = make_data_source(instances=[
            {"class": "BisCore.Wall", "id": "0x1", "label": [{"type": "Double", "value": 2.5}, " m"]},
        ])

        roots = await source.create_provider().get_nodes(None)

        assert labels(roots) == ["2.50 m"]

    @pytest.mark.asyncio
    async def test_imodel_key_is_stamped(self, building_source):
        """Test that instance keys carry the data source key."""
        provider = building_source.create_provider(imodel_key="model-1")

        roots = await provider.get_nodes(None)

        assert roots[0].key.instance_keys[0].imodel_key == "model-1"

    @pytest.mark.asyncio
    async def test_unknown_class_propagates(self, make_data_source):
        """Test that schema errors while grouping reach the caller."""
        source = make_data_source(instances=[
            {"class": "BisCore.Unknown", "id": "0x1", "label": "X", "grouping": {"byClass": True}},
        ])

        with pytest.raises(ClassNotFoundError):
            await source.create_provider().get_nodes(None)


class TestHiding:
    """Tests for hidden and childless nodes."""

    @pytest.mark.asyncio
    async def test_hide_if_no_children(self, make_data_source, building_instances):
        """Test that flagged childless nodes are dropped."""
        instances = building_instances + [
            {"class": "BisCore.Category", "id": "0x3", "label": "Empty", "hide_if_no_children": True},
        ]

        roots = await make_data_source(instances=instances).create_provider().get_nodes(None)

        assert labels(roots) == ["Floor 1", "Floor 2"]

    @pytest.mark.asyncio
    async def test_hidden_node_is_replaced_by_children(self, make_data_source, building_instances):
        """Test that a hidden custom node is replaced by its children."""
        source = make_data_source(
            instances=building_instances + [
                {"class": "BisCore.Wall", "id": "0x31", "label": "Wall X", "parent": "hidden"},
            ],
            custom_nodes=[{"id": "hidden", "label": "Hidden", "hide_in_hierarchy": True}],
        )

        roots = await source.create_provider().get_nodes(None)

        assert labels(roots) == ["Floor 1", "Floor 2", "Wall X"]

    @pytest.mark.asyncio
    async def test_merge_by_label(self, make_data_source):
        """Test that rows with the same label and merge id become one node."""
        source = make_data_source(instances=[
            {"class": "BisCore.Wall", "id": "0x1", "label": "Shared", "merge_by_label_id": "m"},
            {"class": "BisCore.Door", "id": "0x2", "label": "Shared", "merge_by_label_id": "m"},
            {"class": "BisCore.Door", "id": "0x3", "label": "Single"},
        ])

        roots = await source.create_provider().get_nodes(None)

        assert labels(roots) == ["Shared", "Single"]
        assert {k.id for k in roots[0].key.instance_keys} == {"0x1", "0x2"}


class TestGroupingParents:
    """Tests for levels under grouping nodes."""

    @pytest.mark.asyncio
    async def test_grouping_node_children(self, make_data_source):
        """Test that a class grouping node returns the grouped nodes."""
        source = make_data_source(instances=[
            {"class": "BisCore.Wall", "id": "0x1", "label": "Wall A", "grouping": {"byClass": True}},
            {"class": "BisCore.Wall", "id": "0x2", "label": "Wall B", "grouping": {"byClass": True}},
        ])
        provider = source.create_provider()

        [group] = await provider.get_nodes(None)
        walls = await provider.get_nodes(group)

        assert isinstance(group, GroupingHierarchyNode)
        assert group.children
        assert labels(walls) == ["Wall A", "Wall B"]
        assert all(n.parent_keys == [group.key] for n in walls)

    @pytest.mark.asyncio
    async def test_grouping_node_without_children_reads_ancestor_level(self, provider):
        """Test that a bare grouping node reads only its grouped instances."""
        floor = (await provider.get_nodes(None))[0]
        group = GroupingHierarchyNode(
            key=ClassGroupingNodeKey(class_name="BisCore.Wall"),
            label="Wall",
            parent_keys=[floor.key],
            grouped_instance_keys=[InstanceKey(class_name="BisCore.Wall", id="0x11")],
            non_grouping_ancestor=floor,
        )

        nodes = await provider.get_nodes(group)

        assert labels(nodes) == ["Wall A"]
        assert nodes[0].parent_keys == [floor.key, group.key]


class TestCaching:
    """Tests for the level cache of the provider."""

    @pytest.mark.asyncio
    async def test_levels_are_cached(self, provider, building_source):
        """Test that a loaded level isn't read from the data source again."""
        executor = building_source.query_executor
        floor = (await provider.get_nodes(None))[0]
        queries = executor.executed_queries

        await provider.get_nodes(floor)
        await provider.get_nodes(floor)

        assert executor.executed_queries == queries
        assert provider.get_stats()["cache_hits"] >= 2

    @pytest.mark.asyncio
    async def test_ignore_cache(self, provider, building_source):
        """Test that ignore_cache re-reads the level."""
        executor = building_source.query_executor
        floor = (await provider.get_nodes(None))[0]
        queries = executor.executed_queries

        await provider.get_nodes(floor, ignore_cache=True)

        assert executor.executed_queries == queries + 2

    @pytest.mark.asyncio
    async def test_data_source_changed_clears_cache(self, provider, building_source):
        """Test that notify_data_source_changed drops cached levels."""
        executor = building_source.query_executor
        floor = (await provider.get_nodes(None))[0]
        queries = executor.executed_queries

        provider.notify_data_source_changed()
        await provider.get_nodes(floor)

        assert executor.executed_queries == queries + 2
        assert provider.get_stats()["cached_levels"] >= 1


class TestLimitsAndFilters:
    """Tests for hierarchy level size limits and instance filters."""

    @pytest.mark.asyncio
    async def test_query_limit_exceeded(self, provider):
        """Test that a single query over the limit fails the level."""
        floor = (await provider.get_nodes(None))[0]

        with pytest.raises(RowsLimitExceededError) as exc_info:
            await provider.get_nodes(floor, hierarchy_level_size_limit=1)

        assert exc_info.value.limit == 1
        assert str(exc_info.value) == "Query rows limit of 1 exceeded"

    @pytest.mark.asyncio
    async def test_level_limit_counts_all_queries(self, provider):
        """Test that the limit applies to the whole level, not each query."""
        floor = (await provider.get_nodes(None))[0]

        with pytest.raises(RowsLimitExceededError):
            await provider.get_nodes(floor, hierarchy_level_size_limit=2)

        assert len(await provider.get_nodes(floor, hierarchy_level_size_limit=3)) == 3
        assert len(await provider.get_nodes(floor, hierarchy_level_size_limit=UNBOUNDED)) == 3

    @pytest.mark.asyncio
    async def test_default_limit(self, building_source):
        """Test that the provider's default limit applies when a request gives none."""
        provider = building_source.create_provider(EngineSettings(default_hierarchy_limit=2))
        floor = (await provider.get_nodes(None))[0]

        with pytest.raises(RowsLimitExceededError):
            await provider.get_nodes(floor)

    @pytest.mark.asyncio
    async def test_instance_filter(self, provider):
        """Test that instance filters restrict the level."""
        floor = (await provider.get_nodes(None))[0]

        walls = await provider.get_nodes(floor, instance_filter="wall")

        assert labels(walls) == ["Wall A", "Wall B"]

    def test_matches_instance_filter(self):
        """Test label and property filters of the in-memory data set."""
        record = InstanceRecord(class_name="BisCore.Wall", id="0x1", label="Wall A", properties={"Floor": 1})

        assert matches_instance_filter(record, None)
        assert matches_instance_filter(record, "wall a")
        assert not matches_instance_filter(record, "door")
        assert matches_instance_filter(record, {"Floor": 1})
        assert not matches_instance_filter(record, {"Floor": 2})
        with pytest.raises(ValueError):
            matches_instance_filter(record, 42)


class TestStats:
    """Tests for provider statistics."""

    @pytest.mark.asyncio
    async def test_stats(self, provider):
        """Test that requested levels are counted."""
        await provider.get_nodes(None)

        stats = provider.get_stats()
        assert stats["levels_requested"] == 1
        assert stats["levels_read"] >= 1
        assert "grouping" in stats
        assert "class_checker" in stats
        assert "DefinitionHierarchyProvider" in repr(provider)

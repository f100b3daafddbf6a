"""Tests for worker and graph persistence."""

import asyncio

import pytest

from app.db import graph_store
from app.errors import ValidationError
from app.models import (
    BlockState,
    LoopConfig,
    ParallelConfig,
    Position,
    SubBlockState,
    WorkerCreate,
    WorkerEdge,
    WorkerGraph,
    WorkerUpdate,
)
from tests.conftest import USER_ID, simple_graph


def graph_with_subflows() -> WorkerGraph:
    graph = simple_graph()
    graph.blocks["loop-1"] = BlockState(
        id="loop-1",
        type="loop",
        name="Loop",
        position=Position(x=600, y=0),
        data={"width": 500, "height": 300, "type": "subflowNode"},
    )
    graph.blocks["inner"] = BlockState(
        id="inner",
        type="function",
        name="Inner",
        position=Position(x=0.1, y=1e-7),
        sub_blocks={"code": SubBlockState(id="code", type="code", value="return 1")},
        data={"parentId": "loop-1", "extent": "parent"},
    )
    graph.edges.append(
        WorkerEdge(id="e2", source="agent-1", target="loop-1", source_handle="source")
    )
    graph.loops["loop-1"] = LoopConfig(
        id="loop-1", nodes=["inner"], iterations=3, loop_type="forEach", for_each_items=[1, 2]
    )
    graph.parallels["par-1"] = ParallelConfig(id="par-1", nodes=[], count=4)
    return graph


class TestWorkers:
    """Tests for worker metadata."""

    @pytest.mark.asyncio
    async def test_create_and_get(self):
        created = await graph_store.create_worker(
            USER_ID, WorkerCreate(name="Writer", description="Writes things")
        )

        fetched = await graph_store.get_worker(created.id)

        assert fetched is not None
        assert fetched.name == "Writer"
        assert fetched.user_id == USER_ID
        assert fetched.is_deployed is False
        assert fetched.run_count == 0

    @pytest.mark.asyncio
    async def test_list_only_returns_own_workers(self):
        await graph_store.create_worker(USER_ID, WorkerCreate(name="Mine"))
        await graph_store.create_worker("someone-else", WorkerCreate(name="Theirs"))

        workers = await graph_store.list_workers(USER_ID)

        assert [w.name for w in workers] == ["Mine"]

    @pytest.mark.asyncio
    async def test_update(self, worker):
        updated = await graph_store.update_worker(worker.id, WorkerUpdate(name="Renamed"))

        assert updated.name == "Renamed"
        assert updated.description == worker.description

    @pytest.mark.asyncio
    async def test_delete_cascades_graph(self, worker):
        assert await graph_store.delete_worker(worker.id) is True

        assert await graph_store.get_worker(worker.id) is None
        assert await graph_store.load_graph(worker.id) is None

    @pytest.mark.asyncio
    async def test_increment_run_count(self, worker):
        await graph_store.increment_run_count(worker.id)
        await graph_store.increment_run_count(worker.id)

        fetched = await graph_store.get_worker(worker.id)
        assert fetched.run_count == 2
        assert fetched.last_run_at is not None


class TestSaveGraph:
    """Tests for replacing a worker graph."""

    @pytest.mark.asyncio
    async def test_round_trip(self, worker):
        graph = graph_with_subflows()

        result = await graph_store.save_graph(worker.id, graph)
        loaded = await graph_store.load_graph(worker.id)

        assert result.success
        assert loaded == graph

    @pytest.mark.asyncio
    async def test_positions_keep_full_precision(self, worker):
        await graph_store.save_graph(worker.id, graph_with_subflows())

        loaded = await graph_store.load_graph(worker.id)

        assert loaded.blocks["agent-1"].position == Position(x=300.5, y=120.25)
        assert loaded.blocks["inner"].position.y == 1e-7

    @pytest.mark.asyncio
    async def test_container_membership_lifted_from_data(self, worker):
        await graph_store.save_graph(worker.id, graph_with_subflows())

        inner = (await graph_store.load_graph(worker.id)).blocks["inner"]

        assert inner.parent_id == "loop-1"
        assert inner.extent == "parent"
        assert inner.data == {"parentId": "loop-1", "extent": "parent"}

    @pytest.mark.asyncio
    async def test_top_level_membership_leaves_data_untouched(self, worker):
        graph = simple_graph()
        graph.blocks["inner"] = BlockState(
            id="inner", type="function", parent_id="agent-1", extent="parent"
        )

        await graph_store.save_graph(worker.id, graph)
        loaded = await graph_store.load_graph(worker.id)

        assert loaded.blocks["inner"].data == {}
        assert loaded.blocks["inner"].parent_id == "agent-1"
        assert loaded == graph

    @pytest.mark.asyncio
    async def test_save_is_idempotent(self, worker):
        graph = graph_with_subflows()

        await graph_store.save_graph(worker.id, graph)
        first = await graph_store.load_graph(worker.id)
        await graph_store.save_graph(worker.id, graph)
        second = await graph_store.load_graph(worker.id)

        assert first == second

    @pytest.mark.asyncio
    async def test_save_replaces_previous_graph(self, worker):
        await graph_store.save_graph(worker.id, graph_with_subflows())
        await graph_store.save_graph(worker.id, simple_graph("Shorter"))

        loaded = await graph_store.load_graph(worker.id)

        assert set(loaded.blocks) == {"starter", "agent-1"}
        assert loaded.loops == {}
        assert loaded.parallels == {}
        assert loaded.blocks["agent-1"].sub_blocks["prompt"].value == "Shorter"

    @pytest.mark.asyncio
    async def test_result_carries_json_blob(self, worker):
        result = await graph_store.save_graph(worker.id, simple_graph())

        assert set(result.json_blob) >= {"blocks", "edges", "loops", "parallels", "lastSaved"}
        assert "subBlocks" in result.json_blob["blocks"]["agent-1"]

        fetched = await graph_store.get_worker(worker.id)
        assert fetched.last_synced == result.json_blob["lastSaved"]

    @pytest.mark.asyncio
    async def test_rejects_edge_to_unknown_block(self, worker):
        graph = simple_graph()
        graph.edges.append(WorkerEdge(id="dangling", source="agent-1", target="ghost"))

        with pytest.raises(ValidationError):
            await graph_store.save_graph(worker.id, graph)

        # Previous graph untouched
        loaded = await graph_store.load_graph(worker.id)
        assert [e.id for e in loaded.edges] == ["e1"]

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(self, worker):
        graph = graph_with_subflows()
        # Duplicate edge IDs violate the primary key halfway through the write
        graph.edges.append(WorkerEdge(id="e1", source="agent-1", target="loop-1"))

        result = await graph_store.save_graph(worker.id, graph)

        assert result.success is False
        assert result.error
        loaded = await graph_store.load_graph(worker.id)
        assert loaded == simple_graph()

    @pytest.mark.asyncio
    async def test_empty_graph_reads_as_missing(self, worker):
        await graph_store.save_graph(worker.id, WorkerGraph())

        assert await graph_store.graph_exists(worker.id) is False
        assert await graph_store.load_graph(worker.id) is None


class TestConcurrentAccess:
    """Tests for readers running alongside saves."""

    @pytest.mark.asyncio
    async def test_load_never_sees_partial_save(self, worker):
        graph = simple_graph()
        observed: list[tuple[int, int] | None] = []

        async def writer():
            for _ in range(25):
                await graph_store.save_graph(worker.id, graph)

        async def reader():
            for _ in range(100):
                loaded = await graph_store.load_graph(worker.id)
                observed.append(None if loaded is None else (len(loaded.blocks), len(loaded.edges)))

        await asyncio.gather(writer(), reader(), reader())

        assert set(observed) == {(2, 1)}

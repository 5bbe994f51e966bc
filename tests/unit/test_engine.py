"""End-to-end tests for the bookmark engine."""

import json
from pathlib import Path

import pytest

from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.core.importer.records import flatten_tree
from bookmark_engine.core.tree.proposal import apply_edit_script
from bookmark_engine.engine import BookmarkEngine
from bookmark_engine.hosts.bookmarks_file import BookmarksFileHost
from bookmark_engine.hosts.memory import InMemoryTreeHost
from bookmark_engine.models.node import BookmarkNode
from tests.unit.fakes import FakeTreeHost, shape


async def assert_store_matches_host(engine: BookmarkEngine) -> None:
    assert shape(await engine.original_tree()) == shape(await engine.host.get_tree())


@pytest.mark.asyncio
async def test_start_mirrors_host(engine: BookmarkEngine) -> None:
    assert await engine.store.count() == 12
    await assert_store_matches_host(engine)


@pytest.mark.asyncio
async def test_external_changes_are_mirrored(engine: BookmarkEngine, host: FakeTreeHost) -> None:
    await host.update("22", title="Lobste.rs")
    await host.move("30", parent_id="40", index=0)
    await engine.mirror.drain()

    record = await engine.store.get_by_id("30")
    assert record is not None
    assert record.path_string == "Other bookmarks / Recipes"
    assert engine.mirror.stats.external == 2
    assert engine.mirror.stats.self_caused == 0
    await assert_store_matches_host(engine)


@pytest.mark.asyncio
async def test_apply_proposal_updates_host_and_store(engine: BookmarkEngine, host: FakeTreeHost) -> None:
    proposal = await engine.new_proposal()
    refs = apply_edit_script(
        proposal,
        [
            {"action": "add", "parent_id": "2", "title": "Frontend", "ref": "fe"},
            {"action": "move", "node_id": "10", "target_id": "fe"},
            {"action": "add", "parent_id": "fe", "title": "Vue", "url": "https://vuejs.org/"},
            {"action": "edit", "node_id": "21", "title": "HN"},
            {"action": "move", "node_id": "22", "target_id": "30", "position": "after"},
            {"action": "delete", "node_id": "20"},
        ],
    )
    progress: list[int] = []

    result = await engine.apply_proposal(proposal, on_progress=lambda current, *_: progress.append(current))

    assert result.success, result.errors
    assert refs["fe"] in result.id_map
    assert progress == list(range(1, result.applied + 1))
    assert shape(await host.get_tree()) != shape(proposal.original)
    assert [node.title for node in (await host.get_tree())[0].children[0].children] == ["Python docs", "Lobsters"]
    await assert_store_matches_host(engine)

    frontend = await engine.store.get_by_id(result.id_map[refs["fe"]])
    assert frontend is not None
    assert frontend.path_string == "Other bookmarks"
    dev = await engine.store.get_by_id("10")
    assert dev is not None
    assert dev.id_path.startswith(frontend.id_path)
    assert engine.mirror.stats.self_caused > 0
    assert engine.mirror.stats.external == 0


@pytest.mark.asyncio
async def test_search_sees_applied_changes(engine: BookmarkEngine) -> None:
    proposal = await engine.new_proposal()
    proposal.edit("13", title="Preact Signals")

    await engine.apply_proposal(proposal)

    results = await engine.search("signals")
    assert [r.record.id for r in results] == ["13"]


@pytest.mark.asyncio
async def test_apply_proposal_without_changes(engine: BookmarkEngine, host: FakeTreeHost) -> None:
    proposal = await engine.new_proposal()

    result = await engine.apply_proposal(proposal)

    assert result.success
    assert result.applied == 0
    assert host.calls == []


@pytest.mark.asyncio
async def test_partial_failure_leaves_store_in_sync(engine: BookmarkEngine, host: FakeTreeHost) -> None:
    host.fail_on = {"12"}
    proposal = await engine.new_proposal()
    proposal.edit("11", title="RR")
    proposal.edit("12", title="RN")

    result = await engine.apply_proposal(proposal)

    assert not result.success
    assert [error.node_id for error in result.errors] == ["12"]
    record = await engine.store.get_by_id("12")
    assert record is not None
    assert record.title == "React Native"
    await assert_store_matches_host(engine)


@pytest.mark.asyncio
async def test_diff_against_current_tree(engine: BookmarkEngine) -> None:
    proposal = await engine.new_proposal()
    proposal.delete("40")

    result = engine.diff(await engine.original_tree(), proposal.roots)

    assert [op.kind for op in result.operations] == ["delete"]


@pytest.mark.asyncio
async def test_context_manager_for_directory(tmp_path: Path, sample_roots: list[BookmarkNode]) -> None:
    host = InMemoryTreeHost(sample_roots)

    async with BookmarkEngine.for_directory(tmp_path / "data", host, settle_delay=0, clear_delay=0) as engine:
        children = await engine.get_children(None)
        assert [record.id for record in children] == ["0"]

    assert (tmp_path / "data" / "bookmarks.db").exists()
    assert not engine.store.is_initialized


@pytest.mark.asyncio
async def test_reload_after_mirror_failure(engine: BookmarkEngine, sample_roots: list[BookmarkNode]) -> None:
    await engine.store.delete("22")
    await engine.host.update("22", title="Lobste.rs")
    await engine.mirror.drain()
    assert engine.mirror.needs_reload

    stats = await engine.reload()

    assert stats.records_loaded == len(flatten_tree(sample_roots))
    assert not engine.mirror.needs_reload
    await assert_store_matches_host(engine)


@pytest.mark.asyncio
async def test_unknown_move_target_keeps_file_host_writable(store: BookmarkStore, bookmarks_file: Path) -> None:
    engine = BookmarkEngine(store, BookmarksFileHost(bookmarks_file), settle_delay=0, clear_delay=0)
    await engine.start()
    try:
        proposal = await engine.new_proposal()
        apply_edit_script(
            proposal,
            [
                {"action": "move", "node_id": "7", "target_id": "does-not-exist"},
                {"action": "edit", "node_id": "5", "title": "Python.org"},
            ],
        )

        result = await engine.apply_proposal(proposal)

        assert result.success, result.errors
        saved = json.loads(bookmarks_file.read_text(encoding="utf-8"))
        bar = saved["roots"]["bookmark_bar"]["children"]
        assert [child["id"] for child in bar] == ["7", "5", "6"]
        assert bar[1]["name"] == "Python.org"
        record = await engine.store.get_by_id("7")
        assert record is not None
        assert record.parent_id == "1"
        await assert_store_matches_host(engine)
    finally:
        await engine.close()

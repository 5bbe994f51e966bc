"""Tests for the in-memory and Chromium file tree hosts."""

import json
from pathlib import Path

import pytest

from bookmark_engine.errors import InvalidInputError, OperationExecutionError
from bookmark_engine.hosts.bookmarks_file import (
    BookmarksFileHost,
    chrome_time_to_ms,
    ms_to_chrome_time,
    parse_bookmarks,
)
from bookmark_engine.hosts.memory import InMemoryTreeHost
from bookmark_engine.models.events import ChangeEvent, NodeChanged, NodeCreated, NodeMoved, NodeRemoved
from bookmark_engine.models.node import BookmarkNode
from tests.unit.fakes import folder, make_bookmarks_file_data, shape


@pytest.fixture
def memory_host(sample_roots: list[BookmarkNode]) -> InMemoryTreeHost:
    return InMemoryTreeHost(sample_roots)


@pytest.fixture
def events(memory_host: InMemoryTreeHost) -> list[ChangeEvent]:
    received: list[ChangeEvent] = []
    memory_host.add_listener(received.append)
    return received


@pytest.mark.asyncio
async def test_get_tree_returns_loaded_roots(
    memory_host: InMemoryTreeHost, sample_roots: list[BookmarkNode]
) -> None:
    assert shape(await memory_host.get_tree()) == shape(sample_roots)
    assert len(memory_host) == 12


@pytest.mark.asyncio
async def test_create_assigns_fresh_ids(memory_host: InMemoryTreeHost, events: list[ChangeEvent]) -> None:
    first = await memory_host.create("40", "Soup", "https://soup.example/")
    await memory_host.remove(first.id)
    second = await memory_host.create("40", "Stew", index=99)

    assert (first.id, second.id) == ("41", "42")
    assert second.is_folder
    assert second.index == 0
    assert isinstance(events[0], NodeCreated)
    assert events[0].node.parent_id == "40"
    assert isinstance(events[1], NodeRemoved)


@pytest.mark.asyncio
async def test_create_inserts_at_index(memory_host: InMemoryTreeHost) -> None:
    node = await memory_host.create("10", "Vue", "https://vuejs.org/", index=1)
    assert [child.id for child in memory_host.snapshot("10").children] == ["11", node.id, "12", "13"]


@pytest.mark.asyncio
@pytest.mark.parametrize("parent_id", ["missing", "11"])
async def test_create_requires_existing_folder(memory_host: InMemoryTreeHost, parent_id: str) -> None:
    with pytest.raises(OperationExecutionError):
        await memory_host.create(parent_id, "x", "https://x.example/")


@pytest.mark.asyncio
async def test_update_emits_change(memory_host: InMemoryTreeHost, events: list[ChangeEvent]) -> None:
    node = await memory_host.update("30", title="Python 3")

    assert node.title == "Python 3"
    assert node.date_modified is not None
    assert events == [NodeChanged(node_id="30", title="Python 3", url="https://docs.python.org/3/")]


@pytest.mark.asyncio
async def test_update_rejects_url_on_folder(memory_host: InMemoryTreeHost) -> None:
    with pytest.raises(OperationExecutionError, match="folder"):
        await memory_host.update("10", url="https://example.com/")


@pytest.mark.asyncio
async def test_permanent_nodes_cannot_change(memory_host: InMemoryTreeHost) -> None:
    with pytest.raises(OperationExecutionError, match="root"):
        await memory_host.update("0", title="Root")
    with pytest.raises(OperationExecutionError, match="root"):
        await memory_host.remove_subtree("0")


@pytest.mark.asyncio
async def test_move_reports_old_position(memory_host: InMemoryTreeHost, events: list[ChangeEvent]) -> None:
    moved = await memory_host.move("12", parent_id="40", index=5)

    assert (moved.parent_id, moved.index) == ("40", 0)
    assert events == [NodeMoved(node_id="12", parent_id="40", index=0, old_parent_id="10", old_index=1)]


@pytest.mark.asyncio
async def test_move_into_own_subtree_fails(memory_host: InMemoryTreeHost) -> None:
    with pytest.raises(OperationExecutionError, match="descendant"):
        await memory_host.move("1", parent_id="10", index=0)
    assert memory_host.snapshot("10").parent_id == "1"


@pytest.mark.asyncio
async def test_remove_requires_empty_folder(memory_host: InMemoryTreeHost, events: list[ChangeEvent]) -> None:
    with pytest.raises(OperationExecutionError, match="non-empty"):
        await memory_host.remove("20")

    await memory_host.remove_subtree("20")

    assert "20" not in memory_host
    assert "21" not in memory_host
    assert events == [NodeRemoved(node_id="20", parent_id="1", index=1)]


def test_chrome_time_conversion() -> None:
    assert chrome_time_to_ms("13300000000000000") == 1_655_526_400_000
    assert chrome_time_to_ms(None) == 0
    assert chrome_time_to_ms("0") == 0
    assert ms_to_chrome_time(1_655_526_400_000) == "13300000000000000"
    assert ms_to_chrome_time(None) == "0"


def test_parse_bookmarks() -> None:
    root = parse_bookmarks(make_bookmarks_file_data())

    assert root.id == "0"
    assert [folder.title for folder in root.children] == ["Bookmarks bar", "Other bookmarks", "Mobile bookmarks"]
    python, tools = root.children[0].children
    assert python.url == "https://www.python.org/"
    assert python.date_added == 1_655_526_400_000
    assert tools.is_folder
    assert tools.date_modified == 1_655_526_401_000
    assert tools.children[0].parent_id == "6"
    assert root.children[0].date_modified is None


def test_parse_rejects_other_json() -> None:
    with pytest.raises(InvalidInputError, match="roots"):
        parse_bookmarks({"version": 1})


def test_file_host_loads_tree(bookmarks_file: Path) -> None:
    host = BookmarksFileHost(bookmarks_file)

    assert len(host) == 7
    assert host.permanent_ids == {"0", "1", "2", "3"}


@pytest.mark.asyncio
async def test_file_host_saves_every_change(bookmarks_file: Path) -> None:
    host = BookmarksFileHost(bookmarks_file)

    created = await host.create("6", "pip docs", "https://pip.pypa.io/")
    await host.move("5", parent_id="2", index=0)

    data = json.loads(bookmarks_file.read_text(encoding="utf-8"))
    assert "checksum" not in data
    assert data["version"] == 1
    tools = data["roots"]["bookmark_bar"]["children"][0]
    assert tools["guid"] == "guid-6"
    assert [child["id"] for child in tools["children"]] == ["7", created.id]
    assert tools["children"][1]["guid"]
    assert data["roots"]["other"]["children"][0]["url"] == "https://www.python.org/"
    assert data["roots"]["other"]["children"][0]["date_added"] == "13300000000000000"

    reopened = BookmarksFileHost(bookmarks_file)
    assert shape(await reopened.get_tree()) == shape(await host.get_tree())


@pytest.mark.asyncio
async def test_file_host_keeps_permanent_folders(bookmarks_file: Path) -> None:
    host = BookmarksFileHost(bookmarks_file)
    with pytest.raises(OperationExecutionError):
        await host.remove_subtree("2")


@pytest.mark.asyncio
async def test_file_host_rejects_children_of_hidden_root(bookmarks_file: Path) -> None:
    host = BookmarksFileHost(bookmarks_file)
    before = bookmarks_file.read_text(encoding="utf-8")

    with pytest.raises(OperationExecutionError, match="root"):
        await host.create("0", "Loose", "https://loose.example/")
    with pytest.raises(OperationExecutionError, match="root"):
        await host.move("7", parent_id="0", index=0)

    assert [child.id for child in host.snapshot("0").children] == ["1", "2", "3"]
    assert host.snapshot("7").parent_id == "6"
    assert bookmarks_file.read_text(encoding="utf-8") == before


@pytest.mark.asyncio
async def test_top_level_nodes_cannot_move() -> None:
    host = InMemoryTreeHost([folder("a", "A"), folder("b", "B")])
    host.permanent_ids.clear()

    with pytest.raises(OperationExecutionError, match="top-level"):
        await host.move("a", parent_id="b", index=0)
    assert host.snapshot("a").parent_id is None

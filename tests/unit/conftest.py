"""Shared test fixtures."""

import json
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from bookmark_engine.core.database.store import BookmarkStore
from bookmark_engine.core.importer.records import flatten_tree
from bookmark_engine.engine import BookmarkEngine
from bookmark_engine.models.node import BookmarkNode
from tests.unit.fakes import FakeTreeHost, folder, link, make_bookmarks_file_data

DAY_MS = 24 * 60 * 60 * 1000


def make_sample_roots() -> list[BookmarkNode]:
    """A Chromium-shaped tree: hidden root "0" with two permanent folders."""
    return [
        folder(
            "0",
            "",
            folder(
                "1",
                "Bookmarks bar",
                folder(
                    "10",
                    "Dev",
                    link("11", "React Router", "https://reactrouter.com/en/main", date_added=3 * DAY_MS),
                    link("12", "React Native", "https://reactnative.dev/", date_added=2 * DAY_MS),
                    link("13", "Preact", "https://preactjs.com/", date_added=4 * DAY_MS),
                ),
                folder(
                    "20",
                    "News",
                    link("21", "Hacker News", "https://news.ycombinator.com/", date_added=DAY_MS),
                    link("22", "Lobsters", "https://lobste.rs/", date_added=5 * DAY_MS),
                ),
                link("30", "Python docs", "https://docs.python.org/3/", date_added=6 * DAY_MS),
            ),
            folder(
                "2",
                "Other bookmarks",
                folder("40", "Recipes"),
            ),
        )
    ]


@pytest.fixture
def sample_roots() -> list[BookmarkNode]:
    return make_sample_roots()


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[BookmarkStore]:
    """Initialized, empty store in a temporary directory."""
    store = BookmarkStore(tmp_path / "bookmarks.db", retry_delay=0)
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def populated_store(
    store: BookmarkStore, sample_roots: list[BookmarkNode]
) -> AsyncIterator[BookmarkStore]:
    """Store holding the sample tree."""
    await store.insert_batch(flatten_tree(sample_roots))
    yield store


@pytest.fixture
def host(sample_roots: list[BookmarkNode]) -> FakeTreeHost:
    return FakeTreeHost(sample_roots)


@pytest_asyncio.fixture
async def engine(store: BookmarkStore, host: FakeTreeHost) -> AsyncIterator[BookmarkEngine]:
    """Started engine mirroring the sample host, with no settle delays."""
    engine = BookmarkEngine(store, host, settle_delay=0, clear_delay=0)
    await engine.start()
    yield engine
    await engine.close()


@pytest.fixture
def bookmarks_file(tmp_path: Path) -> Path:
    path = tmp_path / "Bookmarks"
    path.write_text(json.dumps(make_bookmarks_file_data()), encoding="utf-8")
    return path

"""Tree host backed by a Chromium ``Bookmarks`` JSON file."""

import json
import os
import uuid
from pathlib import Path
from typing import Any

from loguru import logger

from bookmark_engine.errors import InvalidInputError
from bookmark_engine.hosts.memory import InMemoryTreeHost
from bookmark_engine.models.node import BookmarkNode

ROOT_ID = "0"

# Keys of the permanent folders below "roots", in display order.
ROOT_FOLDERS = ("bookmark_bar", "other", "synced")

# Chromium stores microseconds since 1601-01-01.
_WINDOWS_EPOCH_OFFSET_MS = 11_644_473_600_000


def chrome_time_to_ms(value: str | int | None) -> int:
    if not value:
        return 0
    return max(0, int(value) // 1000 - _WINDOWS_EPOCH_OFFSET_MS)


def ms_to_chrome_time(value: int | None) -> str:
    if not value:
        return "0"
    return str((value + _WINDOWS_EPOCH_OFFSET_MS) * 1000)


def _parse_node(data: dict[str, Any], parent_id: str, index: int) -> BookmarkNode:
    node_id = str(data["id"])
    modified = chrome_time_to_ms(data.get("date_modified"))
    is_url = data.get("type") == "url"
    return BookmarkNode(
        id=node_id,
        title=data.get("name", ""),
        parent_id=parent_id,
        index=index,
        url=data.get("url", "") if is_url else None,
        date_added=chrome_time_to_ms(data.get("date_added")),
        date_modified=modified or None,
        children=()
        if is_url
        else tuple(_parse_node(child, node_id, i) for i, child in enumerate(data.get("children", []))),
    )


def parse_bookmarks(data: dict[str, Any]) -> BookmarkNode:
    """Convert a decoded ``Bookmarks`` file into a tree under a root with id "0"."""
    roots = data.get("roots")
    if not isinstance(roots, dict):
        msg = "Not a Chromium bookmarks file: 'roots' is missing"
        raise InvalidInputError(msg)
    folders = [roots[key] for key in ROOT_FOLDERS if isinstance(roots.get(key), dict)]
    return BookmarkNode(
        id=ROOT_ID,
        title="",
        children=tuple(_parse_node(folder, ROOT_ID, i) for i, folder in enumerate(folders)),
    )


def _serialize_node(node: BookmarkNode, guids: dict[str, str]) -> dict[str, Any]:
    data: dict[str, Any] = {
        "date_added": ms_to_chrome_time(node.date_added),
        "guid": guids.setdefault(node.id, str(uuid.uuid4())),
        "id": node.id,
        "name": node.title,
    }
    if node.is_folder:
        data["children"] = [_serialize_node(child, guids) for child in node.children]
        data["date_modified"] = ms_to_chrome_time(node.date_modified)
        data["type"] = "folder"
    else:
        data["type"] = "url"
        data["url"] = node.url
    return data


def _collect_guids(data: Any, guids: dict[str, str]) -> None:
    if isinstance(data, dict):
        if "id" in data and "guid" in data:
            guids[str(data["id"])] = data["guid"]
        for child in data.get("children", []):
            _collect_guids(child, guids)


class BookmarksFileHost(InMemoryTreeHost):
    """Chromium profile bookmarks, written back to disk after every change.

    The file's checksum is dropped on save; Chromium accepts files without one.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        with open(self.path, encoding="utf-8") as f:
            self._raw = json.load(f)
        root = parse_bookmarks(self._raw)
        self._root_keys = [key for key in ROOT_FOLDERS if isinstance(self._raw["roots"].get(key), dict)]
        self._guids: dict[str, str] = {}
        for key in self._root_keys:
            _collect_guids(self._raw["roots"][key], self._guids)
        super().__init__([root])
        self.permanent_ids.update(folder.id for folder in root.children)
        self.add_listener(lambda _event: self.save())
        logger.debug("Loaded {} bookmark nodes from {}", len(self), self.path)

    def save(self) -> None:
        """Write the current tree to the file, replacing it atomically."""
        root = self.snapshot(ROOT_ID)
        data = dict(self._raw)
        data.pop("checksum", None)
        data["roots"] = dict(self._raw["roots"])
        for key, folder in zip(self._root_keys, root.children, strict=True):
            data["roots"][key] = _serialize_node(folder, self._guids)

        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=3, ensure_ascii=False)
        os.replace(tmp_path, self.path)

"""Tests for operation models."""

import pytest

from bookmark_engine.models.node import BookmarkNode
from bookmark_engine.models.operation import (
    CreateOperation,
    DeleteOperation,
    FieldChange,
    MoveOperation,
    Operation,
    Position,
    UpdateOperation,
)

FOLDER = BookmarkNode(id="10", title="Dev")
LINK = BookmarkNode(id="11", title="React Router", url="https://reactrouter.com/")


@pytest.mark.parametrize(
    ("operation", "expected"),
    [
        (CreateOperation(node=FOLDER, parent_id="1", index=0), "Create folder 'Dev' in 1 at 0"),
        (CreateOperation(node=LINK, parent_id="10", index=2), "Create bookmark 'React Router' in 10 at 2"),
        (
            DeleteOperation(node=FOLDER, parent_id="1", index=0, descendant_count=3),
            "Delete folder 'Dev' (3 descendants)",
        ),
        (DeleteOperation(node=LINK, parent_id="10", index=0), "Delete bookmark 'React Router'"),
        (
            UpdateOperation(
                node_id="11",
                changes=(FieldChange("title", "a", "b"), FieldChange("url", None, "https://b/")),
            ),
            "Update title, url of 11",
        ),
        (
            MoveOperation(node_id="11", source=Position("10", 0), target=Position("20", 1)),
            "Move 11 to 20 at 1",
        ),
    ],
)
def test_describe(operation: Operation, expected: str) -> None:
    assert operation.describe() == expected


def test_node_id_and_kind() -> None:
    create = CreateOperation(node=LINK, parent_id="10", index=0)
    assert (create.kind, create.node_id) == ("create", "11")
    delete = DeleteOperation(node=FOLDER, parent_id="1", index=0)
    assert (delete.kind, delete.node_id) == ("delete", "10")


def test_update_new_values() -> None:
    update = UpdateOperation(node_id="11", changes=(FieldChange("url", "https://a/", "https://b/"),))
    assert update.new_values() == {"url": "https://b/"}


def test_operations_are_timestamped() -> None:
    move = MoveOperation(node_id="11", source=Position("10", 0), target=Position("10", 1))
    assert move.timestamp > 0

"""Tests for record flattening and derived search fields."""

import pytest

from bookmark_engine.core.importer.records import (
    compute_meta_boost,
    extract_domain,
    extract_keywords,
    flatten_tree,
    normalize_meta_text,
    tokenize_meta_keywords,
)
from bookmark_engine.models.node import BookmarkNode
from tests.unit.conftest import DAY_MS
from tests.unit.fakes import folder, link


def test_flatten_tree_is_breadth_first_with_positions(sample_roots: list[BookmarkNode]) -> None:
    records = flatten_tree(sample_roots)
    assert [r.id for r in records[:3]] == ["0", "1", "2"]
    assert len(records) == 12

    by_id = {r.id: r for r in records}
    router = by_id["11"]
    assert router.parent_id == "10"
    assert router.index == 0
    assert router.depth == 3
    assert router.id_path == "/0/1/10/11"
    assert router.path == ("", "Bookmarks bar", "Dev")
    assert router.path_string == "Bookmarks bar / Dev"
    assert router.domain == "reactrouter.com"
    assert router.title_lower == "react router"
    assert not router.is_folder


def test_flatten_tree_counts_children_of_folders(sample_roots: list[BookmarkNode]) -> None:
    by_id = {r.id: r for r in flatten_tree(sample_roots)}
    assert by_id["10"].is_folder
    assert by_id["10"].children_count == 3
    assert by_id["40"].children_count == 0
    assert by_id["1"].children_count == 3


def test_flatten_tree_below_parent_record(sample_roots: list[BookmarkNode]) -> None:
    by_id = {r.id: r for r in flatten_tree(sample_roots)}
    new = folder("50", "Games", link("51", "Chess", "https://lichess.org/"))

    records = flatten_tree([new], parent=by_id["40"], start_index=2)

    assert records[0].parent_id == "40"
    assert records[0].index == 2
    assert records[0].id_path == "/0/2/40/50"
    assert records[1].path_string == "Other bookmarks / Recipes / Games"
    assert records[1].depth == 4


def test_flatten_tree_rejects_duplicate_ids() -> None:
    tree = folder("1", "Root", link("2", "a", "https://a.example/"), link("2", "b", "https://b.example/"))
    with pytest.raises(ValueError, match="Duplicate"):
        flatten_tree([tree])


def test_extract_domain_handles_missing_and_invalid_urls() -> None:
    assert extract_domain("https://News.YCombinator.com/item?id=1") == "news.ycombinator.com"
    assert extract_domain(None) == ""
    assert extract_domain("") == ""
    assert extract_domain("javascript:void(0)") == ""


def test_extract_keywords_unique_in_order() -> None:
    keywords = extract_keywords("React React Router", "https://reactrouter.com/en/main")
    assert keywords[:2] == ("react", "router")
    assert keywords.count("react") == 1
    assert "reactrouter" in keywords


def test_meta_text_normalization() -> None:
    assert normalize_meta_text("  Ｈｅｌｌｏ,   World! ") == "hello world"
    assert normalize_meta_text(None) == ""
    assert tokenize_meta_keywords("python, asyncio; sqlite|a") == ("python", "asyncio", "sqlite")
    assert tokenize_meta_keywords(["Web", "web dev"]) == ("web", "dev")


@pytest.mark.parametrize(
    ("age_days", "status", "expected"),
    [
        (10, "success", 1.0),
        (120, "success", 0.8),
        (365, "success", 0.6),
        (10, "failed", 0.5),
        (365, "failed", 0.3),
    ],
)
def test_compute_meta_boost(age_days: int, status: str, expected: float) -> None:
    now = 1000 * DAY_MS
    boost = compute_meta_boost(now - age_days * DAY_MS, status, now_ms=now)
    assert boost == pytest.approx(expected)

"""Flatten bookmark trees into store records and derive their search fields."""

import re
import time
import unicodedata
from collections import deque
from collections.abc import Iterable, Sequence
from urllib.parse import urlparse

from bookmark_engine.config import MAX_KEYWORDS
from bookmark_engine.models.node import BookmarkNode, Record

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_META_KEYWORD_SPLIT = re.compile(r"[\s,;|、，；]+")
_PUNCTUATION = re.compile(r"[^\w\s]+")
_WHITESPACE = re.compile(r"\s+")

_DAY_MS = 24 * 60 * 60 * 1000


def extract_domain(url: str | None) -> str:
    """Return the lowercase host of ``url``, or '' if there is none."""
    if not url:
        return ""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def extract_keywords(title: str, url: str | None) -> tuple[str, ...]:
    """Unique alphanumeric tokens of title and url, in order of appearance."""
    text = f"{title} {url or ''}".lower()
    seen: dict[str, None] = {}
    for token in _TOKEN_SPLIT.split(text):
        if token:
            seen.setdefault(token, None)
        if len(seen) >= MAX_KEYWORDS:
            break
    return tuple(seen)


def normalize_meta_text(text: str | None) -> str:
    if not text:
        return ""
    normalized = unicodedata.normalize("NFKC", text).lower()
    normalized = _PUNCTUATION.sub(" ", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def tokenize_meta_keywords(keywords: str | Iterable[str]) -> tuple[str, ...]:
    """Split crawled keywords on whitespace and common separators."""
    raw = keywords if isinstance(keywords, str) else " ".join(keywords)
    text = unicodedata.normalize("NFKC", raw).lower()
    seen: dict[str, None] = {}
    for token in _META_KEYWORD_SPLIT.split(text):
        if len(token) > 1:
            seen.setdefault(token, None)
    return tuple(seen)


def compute_meta_boost(crawled_at: int, status: str, *, now_ms: int | None = None) -> float:
    """Freshness multiplier for crawled metadata.

    1.0 under 90 days, 0.8 under 180 days, 0.6 beyond; halved when the crawl failed.
    """
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    age_days = (now - crawled_at) / _DAY_MS
    if age_days > 180:
        boost = 0.6
    elif age_days > 90:
        boost = 0.8
    else:
        boost = 1.0
    if status == "failed":
        boost *= 0.5
    return boost


def format_path(path: tuple[str, ...]) -> str:
    return " / ".join(part for part in path if part)


def build_record(
    node: BookmarkNode,
    *,
    parent_id: str | None,
    index: int,
    path: tuple[str, ...],
    parent_id_path: str,
    depth: int,
) -> Record:
    """Project a node into a record at the given tree position."""
    return Record(
        id=node.id,
        parent_id=parent_id,
        index=index,
        title=node.title,
        url=node.url,
        date_added=node.date_added,
        date_modified=node.date_modified,
        title_lower=node.title.lower(),
        url_lower=(node.url or "").lower(),
        domain=extract_domain(node.url),
        keywords=extract_keywords(node.title, node.url),
        path=path,
        path_string=format_path(path),
        id_path=f"{parent_id_path}/{node.id}",
        depth=depth,
        is_folder=node.is_folder,
        children_count=len(node.children),
    )


def flatten_tree(
    roots: Sequence[BookmarkNode],
    *,
    parent: Record | None = None,
    start_index: int = 0,
) -> list[Record]:
    """Flatten trees into records, breadth first.

    ``index`` comes from the position in the parent's children, not from the
    node's own ``index`` attribute. With ``parent`` set, ``roots`` are placed
    below that record starting at ``start_index``.

    Raises:
        ValueError: If an id occurs twice.
    """
    base_path = (*parent.path, parent.title) if parent else ()
    base_id_path = parent.id_path if parent else ""
    base_depth = parent.depth + 1 if parent else 0
    parent_id = parent.id if parent else None

    result: list[Record] = []
    seen: set[str] = set()
    todo: deque[tuple[BookmarkNode, str | None, int, tuple[str, ...], str, int]] = deque(
        (node, parent_id, start_index + i, base_path, base_id_path, base_depth)
        for i, node in enumerate(roots)
    )
    while todo:
        node, node_parent, index, path, id_path, depth = todo.popleft()
        if node.id in seen:
            msg = f"Duplicate bookmark id {node.id!r}"
            raise ValueError(msg)
        seen.add(node.id)

        record = build_record(
            node,
            parent_id=node_parent,
            index=index,
            path=path,
            parent_id_path=id_path,
            depth=depth,
        )
        result.append(record)

        child_path = (*path, node.title)
        for i, child in enumerate(node.children):
            todo.append((child, node.id, i, child_path, record.id_path, depth + 1))

    return result

"""Domain models for the bookmark engine."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class BookmarkNode:
    """A bookmark (has a url) or a folder (has children) in a bookmark tree.

    Timestamps are milliseconds since the epoch.
    """

    id: str
    title: str
    parent_id: str | None = None
    index: int = 0
    url: str | None = None
    date_added: int = 0
    date_modified: int | None = None
    children: tuple["BookmarkNode", ...] = ()

    @property
    def is_folder(self) -> bool:
        return self.url is None


@dataclass(frozen=True)
class Record:
    """Persisted, denormalized projection of a BookmarkNode."""

    id: str
    parent_id: str | None
    index: int
    title: str
    url: str | None
    date_added: int
    date_modified: int | None
    title_lower: str
    url_lower: str
    domain: str
    keywords: tuple[str, ...]
    path: tuple[str, ...]
    path_string: str
    id_path: str
    depth: int
    is_folder: bool
    children_count: int = 0
    tags: tuple[str, ...] = ()
    meta_title_lower: str = ""
    meta_description_lower: str = ""
    meta_keywords_tokens: tuple[str, ...] = ()
    meta_boost: float | None = None
    metadata_updated_at: int | None = None


@dataclass(frozen=True)
class CrawlMetadata:
    """Page metadata fetched for a bookmark by the crawler."""

    bookmark_id: str
    url: str
    final_url: str | None = None
    title: str = ""
    description: str = ""
    keywords: tuple[str, ...] = ()
    status: str = "success"
    http_status: int | None = None
    crawled_at: int = 0


@dataclass(frozen=True)
class HighlightSpan:
    """A matched substring inside a field's searchable text."""

    start: int
    end: int
    text: str


@dataclass(frozen=True)
class SearchResult:
    """A scored search hit."""

    record: Record
    score: float
    matched_fields: tuple[str, ...] = ()
    highlights: dict[str, tuple[HighlightSpan, ...]] = field(default_factory=dict)

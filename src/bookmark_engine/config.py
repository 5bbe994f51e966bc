"""Configuration constants for bookmark-engine."""

import os
from pathlib import Path

# Directory with data. First directory which is found is used.
DATA_DIRECTORIES: list[Path] = [
    Path("~/.local/share/bookmark-engine").expanduser(),
    Path("~/.bookmark-engine").expanduser(),
]

DATABASE_FILENAME: str = "bookmarks.db"

# Chromium bookmark files used as the default tree host. First file found is used.
BOOKMARKS_FILES: list[Path] = [
    Path("~/.config/google-chrome/Default/Bookmarks").expanduser(),
    Path("~/.config/chromium/Default/Bookmarks").expanduser(),
    Path("~/Library/Application Support/Google/Chrome/Default/Bookmarks").expanduser(),
]

# Store lifecycle.
INIT_TIMEOUT_SECONDS: float = 10.0
BUSY_TIMEOUT_SECONDS: float = 5.0

# Batched writes: base batch size depends on available memory.
LARGE_MEMORY_THRESHOLD_BYTES: int = 8 * 1024**3
LARGE_MEMORY_BATCH_SIZE: int = 5000
DEFAULT_BATCH_SIZE: int = 2000
SMALL_INPUT_THRESHOLD: int = 1000
HUGE_INPUT_THRESHOLD: int = 100_000
HUGE_INPUT_BATCH_SIZE: int = 1000
WRITE_RETRIES: int = 2
WRITE_RETRY_DELAY_SECONDS: float = 0.05
CRAWL_METADATA_RETRY_DELAY_SECONDS: float = 0.03

# Search.
QUERY_CACHE_SIZE: int = 100
MIN_CANDIDATES: int = 200
CANDIDATE_MULTIPLIER: int = 3
MAX_KEYWORDS: int = 32

# Reconciliation.
TEMP_ID_PREFIX: str = "temp-"
EXECUTOR_BATCH_SIZE: int = 50
SETTLE_DELAY_SECONDS: float = 1.0
SELF_CHANGE_CLEAR_DELAY_SECONDS: float = 2.0


def resolve_data_directory() -> Path:
    """Return the data directory: $BOOKMARK_ENGINE_DIR, else the first existing default."""
    env = os.environ.get("BOOKMARK_ENGINE_DIR")
    if env:
        return Path(env).expanduser()
    for candidate in DATA_DIRECTORIES:
        if candidate.is_dir():
            return candidate
    return DATA_DIRECTORIES[0]


def resolve_bookmarks_file() -> Path | None:
    """Return the first existing Chromium bookmarks file, if any."""
    for candidate in BOOKMARKS_FILES:
        if candidate.is_file():
            return candidate
    return None

"""Configuration for Vault Search."""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Default snapshot store location
DEFAULT_INDEX_PATH = Path.home() / ".vault-search" / "index.db"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid %s value %r, using %d", name, value, default)
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid %s value %r, using %s", name, value, default)
        return default


def _env_list(name: str) -> list[str]:
    value = os.environ.get(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def get_vault_root() -> Path:
    """
    Get the vault (note collection) root directory.

    Set VAULT_SEARCH_ROOT to point at your notes.
    Defaults to the current working directory.

    Returns:
        Path to the vault root.
    """
    env_path = os.environ.get("VAULT_SEARCH_ROOT")
    if env_path:
        return Path(env_path).expanduser()
    return Path.cwd()


def get_index_path() -> Path:
    """
    Get the snapshot store database path.

    Set VAULT_SEARCH_INDEX_PATH to customize the location.
    Defaults to ~/.vault-search/index.db

    Returns:
        Path to the snapshot database file.
    """
    env_path = os.environ.get("VAULT_SEARCH_INDEX_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_INDEX_PATH


def get_max_results() -> int:
    """
    Get the default number of search results.

    Set VAULT_SEARCH_MAX_RESULTS to customize. Defaults to 20.
    """
    return _env_int("VAULT_SEARCH_MAX_RESULTS", 20)


def get_excerpt_length() -> int:
    """
    Get the excerpt length (characters) used in search results.

    Set VAULT_SEARCH_EXCERPT_LENGTH to customize. Defaults to 150.
    """
    return _env_int("VAULT_SEARCH_EXCERPT_LENGTH", 150)


def get_fuzzy_enabled() -> bool:
    """
    Check whether fuzzy matching is enabled.

    Set VAULT_SEARCH_FUZZY=false to require exact term matches.
    """
    return os.environ.get("VAULT_SEARCH_FUZZY", "true").lower() in _TRUE_VALUES


def get_excluded_folders() -> list[str]:
    """
    Get folders to exclude from indexing.

    Set VAULT_SEARCH_EXCLUDED_FOLDERS to a comma-separated list
    (e.g. "templates, archive"). Defaults to none.
    """
    return [f.strip("/") for f in _env_list("VAULT_SEARCH_EXCLUDED_FOLDERS")]


def get_excluded_tags() -> list[str]:
    """
    Get tags that exclude a note from indexing.

    Set VAULT_SEARCH_EXCLUDED_TAGS to a comma-separated list.
    A leading '#' is ignored. Defaults to none.
    """
    return [t.lstrip("#") for t in _env_list("VAULT_SEARCH_EXCLUDED_TAGS")]


def get_debounce_ms() -> int:
    """
    Get the file-change debounce window in milliseconds.

    Rapid edits within this window are coalesced into one re-index.
    Set VAULT_SEARCH_DEBOUNCE_MS to customize. Defaults to 2000.
    """
    return _env_int("VAULT_SEARCH_DEBOUNCE_MS", 2000)


def get_persist_debounce_ms() -> int:
    """
    Get the snapshot persistence debounce window in milliseconds.

    Many small index mutations are coalesced into one serialize-and-write.
    Set VAULT_SEARCH_PERSIST_DEBOUNCE_MS to customize. Defaults to 30000.
    """
    return _env_int("VAULT_SEARCH_PERSIST_DEBOUNCE_MS", 30_000)


def get_staleness_fraction() -> float:
    """
    Get the staleness fraction for persisted snapshots.

    A snapshot whose document count is below this fraction of the live
    file count is discarded and the index is rebuilt.
    Set VAULT_SEARCH_STALENESS_FRACTION to customize. Defaults to 0.8.
    """
    return _env_float("VAULT_SEARCH_STALENESS_FRACTION", 0.8)


def get_low_memory_mode() -> bool:
    """
    Check whether resource-constrained mode is enabled.

    In low-memory mode the index is never serialized to disk.
    Set VAULT_SEARCH_LOW_MEMORY=true to enable.
    """
    return os.environ.get("VAULT_SEARCH_LOW_MEMORY", "").lower() in _TRUE_VALUES

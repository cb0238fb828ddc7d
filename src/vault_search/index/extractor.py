"""Reading markdown notes from a vault directory into indexable documents.

Vault layout:
    <vault root>/
    ├── .obsidian/            ← ignored (hidden directories are skipped)
    ├── inbox.md
    └── work/
        ├── notes.md
        └── projects/
            └── roadmap.md

Note format:
    ---                       ← Optional YAML frontmatter
    tags: [project, q1]
    status: active
    ---
    # Heading                 ← ATX headings are collected
    Body text with #inline-tags.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path, PurePosixPath

import yaml

from ..text import strip_markdown

logger = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"

# Skip pathological files rather than exhausting memory (10 MB)
MAX_NOTE_SIZE = 10 * 1024 * 1024

# Files processed between cooperative yields during a full scan
YIELD_EVERY = 50

# Frontmatter keys that are structural, not searchable properties
STRUCTURAL_KEYS = {"position", "tags", "tag"}

_FRONTMATTER_BLOCK = re.compile(
    r"\A---[ \t]*\r?\n(.*?)\r?\n?---[ \t]*(?:\r?\n|\Z)", re.DOTALL
)
_FENCE = re.compile(r"^\s*(```|~~~)")
_ATX_HEADING = re.compile(r"^(#{1,6})\s+(.+?)(?:\s+#+)?\s*$")
_INLINE_TAG = re.compile(r"(?<![\w#&/])#([\w\-/]*[^\W\d][\w\-/]*)")
_INLINE_CODE = re.compile(r"`[^`\n]+`")


@dataclass
class IndexableDocument:
    """A note reduced to the fields the index stores."""

    path: str
    title: str
    body: str
    tags: list[str] = field(default_factory=list)
    folder: str = ""
    headings: list[str] = field(default_factory=list)
    created_at: int = 0  # epoch millis
    modified_at: int = 0  # epoch millis
    frontmatter: str = ""  # newline-joined key:value pairs


def parse_frontmatter(content: str, path: str = "") -> tuple[dict, str]:
    """
    Split YAML frontmatter from the rest of a note.

    Invalid or non-mapping frontmatter is ignored (the note is then
    treated as having none).

    Returns:
        Tuple of (frontmatter dict, content without the frontmatter)
    """
    match = _FRONTMATTER_BLOCK.match(content)
    if not match:
        return {}, content

    body = content[match.end() :]
    try:
        raw = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.debug("Invalid YAML frontmatter in %s: %s", path, e)
        return {}, body

    if not isinstance(raw, dict):
        return {}, body
    return raw, body


def _normalize_tag(tag: str) -> str:
    return tag.strip().lstrip("#").strip()


def extract_frontmatter_tags(frontmatter: dict) -> list[str]:
    """Tags from the ``tags``/``tag`` keys (list or comma/space string)."""
    tags: list[str] = []
    for key in ("tags", "tag"):
        value = frontmatter.get(key)
        if isinstance(value, list):
            items = [str(v) for v in value if v is not None]
        elif isinstance(value, str):
            items = re.split(r"[,\s]+", value)
        else:
            continue
        tags.extend(t for t in (_normalize_tag(i) for i in items) if t)
    return tags


def _iter_prose_lines(body: str) -> Iterator[str]:
    """Yield body lines that are outside fenced code blocks."""
    in_fence = False
    for line in body.splitlines():
        if _FENCE.match(line):
            in_fence = not in_fence
            continue
        if not in_fence:
            yield line


def extract_inline_tags(body: str) -> list[str]:
    """
    Extract ``#tags`` written in the note body.

    Tags inside code, headings markers (``# Title``) and purely numeric
    tags (``#123``) are not tags.
    """
    tags: list[str] = []
    for line in _iter_prose_lines(body):
        line = _INLINE_CODE.sub("", line)
        for match in _INLINE_TAG.finditer(line):
            tags.append(match.group(1).rstrip("/"))
    return tags


def extract_headings(body: str) -> list[str]:
    """Extract ATX heading texts, ignoring fenced code."""
    headings: list[str] = []
    for line in _iter_prose_lines(body):
        match = _ATX_HEADING.match(line)
        if match:
            headings.append(match.group(2))
    return headings


def _format_value(value: object) -> str | None:
    """Render a scalar frontmatter value, or None if it is not scalar."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return None


def flatten_frontmatter(frontmatter: dict) -> str:
    """
    Flatten frontmatter into newline-joined ``key:value`` pairs.

    Structural keys and non-scalar values (lists, mappings) are skipped.
    """
    pairs: list[str] = []
    for key, value in frontmatter.items():
        if str(key) in STRUCTURAL_KEYS:
            continue
        rendered = _format_value(value)
        if rendered is not None:
            pairs.append(f"{key}:{rendered}")
    return "\n".join(pairs)


def _birth_time(stat_result) -> float:
    """File creation time where the platform records it, else ctime."""
    return getattr(stat_result, "st_birthtime", stat_result.st_ctime)


class DocumentExtractor:
    """
    Converts vault files into IndexableDocuments.

    Usage:
        extractor = DocumentExtractor(vault_root, excluded_folders=["templates"])
        for path in extractor.iter_indexable_files():
            doc = extractor.index_file(path)
    """

    def __init__(
        self,
        vault_root: Path,
        excluded_folders: Iterable[str] = (),
        excluded_tags: Iterable[str] = (),
    ):
        """
        Initialize the extractor.

        Args:
            vault_root: Vault root directory
            excluded_folders: Vault-relative folders to skip entirely
            excluded_tags: Notes carrying any of these tags are skipped
        """
        self.vault_root = vault_root
        self._excluded_folders: list[str] = []
        self._excluded_tags: set[str] = set()
        self.update_exclusions(excluded_folders, excluded_tags)

    def update_exclusions(
        self,
        folders: Iterable[str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> None:
        """Replace the excluded folder and/or tag lists."""
        if folders is not None:
            self._excluded_folders = [f.strip("/") for f in folders if f.strip("/")]
        if tags is not None:
            self._excluded_tags = {
                _normalize_tag(t).lower() for t in tags if _normalize_tag(t)
            }

    def _is_excluded_path(self, path: str) -> bool:
        return any(
            path == folder or path.startswith(folder + "/")
            for folder in self._excluded_folders
        )

    def is_trackable(self, path: str) -> bool:
        """Check whether a vault-relative path is an indexable note."""
        posix = PurePosixPath(path)
        if posix.suffix.lower() != NOTE_SUFFIX:
            return False
        if any(part.startswith(".") for part in posix.parts):
            return False
        return not self._is_excluded_path(path)

    def iter_indexable_files(self) -> Iterator[str]:
        """
        Find all indexable notes in the vault.

        Yields:
            Vault-relative POSIX paths, sorted
        """
        if not self.vault_root.is_dir():
            logger.warning("Vault root not found: %s", self.vault_root)
            return

        paths = []
        for note_path in self.vault_root.rglob(f"*{NOTE_SUFFIX}"):
            if not note_path.is_file():
                continue
            relative = note_path.relative_to(self.vault_root).as_posix()
            if self.is_trackable(relative):
                paths.append(relative)
        yield from sorted(paths)

    def get_file_count(self) -> int:
        """Number of indexable notes currently in the vault."""
        return sum(1 for _ in self.iter_indexable_files())

    def index_file(self, path: str) -> IndexableDocument | None:
        """
        Read and convert a single note.

        Args:
            path: Vault-relative POSIX path

        Returns:
            IndexableDocument, or None if the note is excluded or too large

        Raises:
            OSError: If the file cannot be read (e.g. deleted meanwhile)
        """
        if not self.is_trackable(path):
            return None

        file_path = self.vault_root / path
        stat_result = file_path.stat()
        if stat_result.st_size > MAX_NOTE_SIZE:
            logger.warning("Skipping oversized note %s", path)
            return None

        content = file_path.read_text(encoding="utf-8", errors="replace")
        frontmatter, body = parse_frontmatter(content, path)

        tags = list(
            dict.fromkeys(
                extract_frontmatter_tags(frontmatter) + extract_inline_tags(body)
            )
        )
        if self._excluded_tags and any(
            t.lower() in self._excluded_tags for t in tags
        ):
            return None

        posix = PurePosixPath(path)
        folder = posix.parent.as_posix()
        return IndexableDocument(
            path=path,
            title=posix.stem,
            body=strip_markdown(body),
            tags=tags,
            folder="" if folder == "." else folder,
            headings=extract_headings(body),
            created_at=int(_birth_time(stat_result) * 1000),
            modified_at=int(stat_result.st_mtime * 1000),
            frontmatter=flatten_frontmatter(frontmatter),
        )

    def index_all_streaming(
        self,
        on_document: Callable[[IndexableDocument], None],
        on_progress: Callable[[int, int], None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> int:
        """
        Extract every note, handing each document off immediately.

        Documents are never accumulated, so peak memory stays at one note.
        Unreadable notes are skipped. The scan yields the GIL every
        YIELD_EVERY files and checks ``should_cancel`` between files.

        Args:
            on_document: Called with each extracted document
            on_progress: Optional callback(current, total)
            should_cancel: Optional cancellation flag check

        Returns:
            Number of documents handed to on_document
        """
        files = list(self.iter_indexable_files())
        total = len(files)
        doc_count = 0

        for i, path in enumerate(files, 1):
            if should_cancel is not None and should_cancel():
                logger.info("Scan cancelled after %d of %d files", i - 1, total)
                break

            try:
                doc = self.index_file(path)
            except (OSError, ValueError) as e:
                logger.warning("Failed to read %s: %s", path, e)
                doc = None

            if doc is not None:
                on_document(doc)
                doc_count += 1

            if on_progress:
                on_progress(i, total)

            if i % YIELD_EVERY == 0:
                time.sleep(0)

        return doc_count

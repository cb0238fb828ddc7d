"""Shared pytest fixtures for vault-search tests."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from vault_search.index.extractor import DocumentExtractor, IndexableDocument
from vault_search.index.search import SearchCoordinator


def utc_ms(year: int, month: int, day: int, *time_parts: int) -> int:
    """Epoch millis for a UTC date (optional hour, minute, second, ms)."""
    hour, minute, second, millis = (list(time_parts) + [0, 0, 0, 0])[:4]
    dt = datetime(year, month, day, hour, minute, second, tzinfo=UTC)
    return int(dt.timestamp() * 1000) + millis


def make_doc(path: str, body: str = "", **overrides) -> IndexableDocument:
    """Build an IndexableDocument with sensible defaults derived from path."""
    posix = Path(path)
    folder = posix.parent.as_posix()
    fields = {
        "path": path,
        "title": posix.stem,
        "body": body,
        "tags": [],
        "folder": "" if folder == "." else folder,
        "headings": [],
        "created_at": utc_ms(2024, 1, 1),
        "modified_at": utc_ms(2024, 1, 1),
        "frontmatter": "",
    }
    fields.update(overrides)
    return IndexableDocument(**fields)


class ManualTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    def __init__(self, interval: float, fn):
        self.interval = interval
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if self.started and not self.cancelled and not self.fired:
            self.fired = True
            self.fn()


class ManualClock:
    """Timer factory recording every timer it creates."""

    def __init__(self):
        self.timers: list[ManualTimer] = []

    def __call__(self, interval: float, fn) -> ManualTimer:
        timer = ManualTimer(interval, fn)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> list[ManualTimer]:
        return [
            t for t in self.timers if t.started and not t.cancelled and not t.fired
        ]

    def fire_all(self) -> None:
        """Fire every timer that is currently scheduled."""
        for timer in self.active:
            timer.fire()


@pytest.fixture
def clock() -> ManualClock:
    """Manual timer factory for debounce tests."""
    return ManualClock()


@pytest.fixture
def scenario_docs() -> list[IndexableDocument]:
    """Three notes across work, personal and an archived work folder."""
    return [
        make_doc(
            "work/planning.md",
            "quarterly planning meeting",
            tags=["project"],
            created_at=utc_ms(2024, 1, 5),
            modified_at=utc_ms(2024, 1, 5),
        ),
        make_doc(
            "personal/dentist.md",
            "meeting with the dentist",
            created_at=utc_ms(2024, 2, 1),
            modified_at=utc_ms(2024, 2, 1),
        ),
        make_doc(
            "work/archive/old-planning.md",
            "old planning notes",
            tags=["project", "old"],
            created_at=utc_ms(2023, 6, 1),
            modified_at=utc_ms(2023, 6, 1),
        ),
    ]


@pytest.fixture
def coordinator():
    """An empty, ready SearchCoordinator."""
    coord = SearchCoordinator()
    coord.reset()
    yield coord
    coord.close()


@pytest.fixture
def scenario_coordinator(coordinator, scenario_docs):
    """Coordinator holding the three scenario notes."""
    for doc in scenario_docs:
        coordinator.upsert(doc)
    return coordinator


def write_note(root: Path, path: str, content: str) -> Path:
    """Write a note below root, creating folders as needed."""
    note = root / path
    note.parent.mkdir(parents=True, exist_ok=True)
    note.write_text(content, encoding="utf-8")
    return note


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    """A small vault on disk."""
    root = tmp_path / "vault"
    root.mkdir()
    write_note(
        root,
        "inbox.md",
        "# Inbox\n\nRemember to book the dentist.\n",
    )
    write_note(
        root,
        "work/planning.md",
        "---\ntags: [project]\nstatus: active\n---\n"
        "# Q1 Planning\n\nQuarterly planning meeting notes.\n",
    )
    write_note(
        root,
        "work/archive/old.md",
        "Old planning notes #project #old\n",
    )
    write_note(root, ".obsidian/workspace.md", "not a note")
    return root


@pytest.fixture
def extractor(vault: Path) -> DocumentExtractor:
    return DocumentExtractor(vault)

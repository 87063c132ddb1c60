"""Shared pytest fixtures for lifelogd tests."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Sequence

import pytest

from lifelogd.core.paths import WorkspacePaths
from lifelogd.ingest.models import Lifelog, parse_timestamp
from lifelogd.storage import LifelogStore

LifelogFactory = Callable[..., Lifelog]


@pytest.fixture(autouse=True)
def reset_root_logging() -> Iterator[None]:
    """Drop handlers installed by ``configure_logging`` between tests."""

    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "LIFELOGD_WORKSPACE",
        "LIFELOGD_LOG_LEVEL",
        "LIMITLESS_API_KEY",
        "OLLAMA_BASE_URL",
        "OPENAI_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workspace_paths(tmp_path: Path) -> WorkspacePaths:
    """Provide a fully created workspace layout under ``tmp_path``."""

    paths = WorkspacePaths.for_root(tmp_path / "workspace")
    paths.ensure()
    return paths


@pytest.fixture
def lifelog_store(workspace_paths: WorkspacePaths) -> LifelogStore:
    return LifelogStore(
        lifelogs_dir=workspace_paths.lifelogs_dir,
        embeddings_dir=workspace_paths.embeddings_dir,
    )


@pytest.fixture
def make_lifelog() -> LifelogFactory:
    """Return a factory building :class:`Lifelog` records for tests."""

    def _make(
        lifelog_id: str,
        created_at: str | datetime,
        *,
        title: str | None = None,
        content: str | None = None,
        minutes: int = 30,
        headings: Sequence[str] = (),
    ) -> Lifelog:
        start = parse_timestamp(created_at, field_name="created_at")
        return Lifelog(
            id=lifelog_id,
            title=title or f"Conversation {lifelog_id}",
            content=content or f"Notes recorded for {lifelog_id}.",
            created_at=start,
            end_time=start + timedelta(minutes=minutes),
            headings=tuple(headings),
        )

    return _make


"""Canonical lifelog record and conversion from remote API payloads."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping

__all__ = [
    "Lifelog",
    "parse_timestamp",
    "format_timestamp",
]

_HEADING_RE = re.compile(r"^#{1,3}\s+(.+)$", re.MULTILINE)
_UNTITLED = "Untitled"


def parse_timestamp(value: Any, *, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 value into an aware UTC datetime.

    Example:
        >>> parse_timestamp("2024-01-15T10:00:00Z").isoformat()
        '2024-01-15T10:00:00+00:00'
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(
                f"{field_name} must be an ISO-8601 timestamp: {value!r}"
            ) from exc
    else:
        raise ValueError(f"{field_name} is required")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as a UTC ISO-8601 string with a ``Z`` suffix."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")


def _iter_nodes(nodes: Iterable[Any]) -> Iterable[Mapping[str, Any]]:
    for node in nodes:
        if not isinstance(node, Mapping):
            continue
        yield node
        children = node.get("children")
        if isinstance(children, list):
            yield from _iter_nodes(children)


def _flatten_contents(nodes: Iterable[Any]) -> tuple[str, tuple[str, ...]]:
    lines: list[str] = []
    headings: list[str] = []
    for node in _iter_nodes(nodes):
        text = str(node.get("content") or "").strip()
        if not text:
            continue
        node_type = str(node.get("type") or "")
        if node_type.startswith("heading"):
            headings.append(text)
            level = node_type.removeprefix("heading") or "1"
            prefix = "#" * max(1, min(3, int(level) if level.isdigit() else 1))
            lines.append(f"{prefix} {text}")
            continue
        speaker = node.get("speakerName")
        lines.append(f"{speaker}: {text}" if speaker else text)
    return "\n".join(lines), tuple(headings)


@dataclass(frozen=True, slots=True)
class Lifelog:
    """One recorded event mirrored from the remote API.

    Records are immutable once downloaded; ``id`` is globally unique and is
    the key for idempotent writes.
    """

    id: str
    title: str
    content: str
    created_at: datetime
    end_time: datetime
    headings: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError("lifelog id cannot be empty")
        if self.created_at.tzinfo is None:
            raise ValueError("created_at must be timezone-aware")
        if self.end_time < self.created_at:
            object.__setattr__(self, "end_time", self.created_at)
        object.__setattr__(self, "headings", tuple(self.headings))

    @property
    def duration_seconds(self) -> int:
        return int((self.end_time - self.created_at).total_seconds())

    @property
    def day(self) -> date:
        """UTC calendar day used for storage partitioning."""

        return self.created_at.astimezone(timezone.utc).date()

    @property
    def document_text(self) -> str:
        """Text submitted for embedding."""

        return f"{self.title}\n\n{self.content}"

    def index_metadata(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "date": format_timestamp(self.created_at),
            "duration": self.duration_seconds,
            "headings": list(self.headings),
        }

    # ------------------------------------------------------------------#
    # Serialization
    # ------------------------------------------------------------------#
    def to_mapping(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "created_at": format_timestamp(self.created_at),
            "end_time": format_timestamp(self.end_time),
            "duration_seconds": self.duration_seconds,
            "headings": list(self.headings),
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Lifelog":
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or _UNTITLED),
            content=str(payload.get("content") or ""),
            created_at=parse_timestamp(
                payload.get("created_at"), field_name="created_at"
            ),
            end_time=parse_timestamp(
                payload.get("end_time") or payload.get("created_at"),
                field_name="end_time",
            ),
            headings=tuple(str(item) for item in payload.get("headings", ())),
        )

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "Lifelog":
        """Build a record from a remote API lifelog object.

        Example:
            >>> log = Lifelog.from_api({
            ...     "id": "a1",
            ...     "title": "Standup",
            ...     "markdown": "# Standup\\nShip it",
            ...     "startTime": "2024-01-15T10:00:00Z",
            ...     "endTime": "2024-01-15T10:15:00Z",
            ... })
            >>> log.headings, log.duration_seconds
            (('Standup',), 900)
        """

        identifier = payload.get("id")
        if not identifier:
            raise ValueError("lifelog payload is missing an id")

        markdown = payload.get("markdown")
        if isinstance(markdown, str) and markdown.strip():
            content = markdown
            headings = tuple(
                match.strip() for match in _HEADING_RE.findall(markdown)
            )
        else:
            contents = payload.get("contents")
            content, headings = _flatten_contents(
                contents if isinstance(contents, list) else ()
            )

        start = parse_timestamp(payload.get("startTime"), field_name="startTime")
        end_raw = payload.get("endTime")
        end = (
            parse_timestamp(end_raw, field_name="endTime") if end_raw else start
        )

        return cls(
            id=str(identifier),
            title=str(payload.get("title") or _UNTITLED),
            content=content,
            created_at=start,
            end_time=end,
            headings=headings,
        )

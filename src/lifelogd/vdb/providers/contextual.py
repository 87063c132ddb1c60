"""Context-enriching decorator around any embedding provider.

Documents are prefixed with a short preamble derived from their metadata
(date, time of day, recency, duration, detected people and places, title)
before being embedded. Queries get a matching preamble so that relative
phrases like "yesterday" land near the right documents.
"""

from __future__ import annotations

import json
import re
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from lifelogd.core.logging import Logger, get_logger
from lifelogd.ingest.models import parse_timestamp
from lifelogd.vdb.errors import VdbProviderConfigurationError

from . import (
    EmbeddingMatrix,
    EmbeddingProvider,
    EmbeddingVector,
    MetadataSeq,
)

__all__ = [
    "ContextRule",
    "ContextualEmbeddingProvider",
    "EntityConfig",
    "EntityDefinition",
    "build_document_context",
    "build_query_context",
    "load_entity_config",
]

DEFAULT_MAX_CONTEXT_LENGTH = 1000

_ROLE_WORDS = {
    "kids": "Children",
    "kid": "Child",
    "children": "Children",
    "child": "Child",
    "son": "Son",
    "daughter": "Daughter",
    "mom": "Mother",
    "mother": "Mother",
    "dad": "Father",
    "father": "Father",
    "grandma": "Grandmother",
    "grandmother": "Grandmother",
    "grandpa": "Grandfather",
    "grandfather": "Grandfather",
    "brother": "Brother",
    "sister": "Sister",
    "aunt": "Aunt",
    "uncle": "Uncle",
    "cousin": "Cousin",
    "friend": "Friend",
    "boss": "Boss",
    "coworker": "Coworker",
    "colleague": "Colleague",
}
_PLACE_WORDS = (
    "house",
    "home",
    "office",
    "school",
    "store",
    "restaurant",
    "park",
    "gym",
    "kitchen",
    "garage",
    "airport",
    "hospital",
)
_ROLE_RE = re.compile(r"\b(" + "|".join(_ROLE_WORDS) + r")\b", re.IGNORECASE)
_PLACE_RE = re.compile(r"\b(" + "|".join(_PLACE_WORDS) + r")\b", re.IGNORECASE)
_POSSESSIVE_PLACE_RE = re.compile(
    r"\b(\w+)'s\s+(house|home|place)\b", re.IGNORECASE
)
_MOVEMENT_RE = re.compile(r"\b(go|went|going|goes|gone)\b")


# ----------------------------------------------------------------------#
# Entity configuration
# ----------------------------------------------------------------------#
class EntityDefinition(BaseModel):
    """A configured person or place."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: Literal["person", "place"] = "person"
    aliases: tuple[str, ...] = ()
    relationships: dict[str, str] = Field(default_factory=dict)
    context: str | None = None


class ContextRule(BaseModel):
    """Regex rule; when ``pattern`` matches, ``implies`` is added verbatim."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    pattern: str
    implies: str


class EntityBook(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    people: dict[str, EntityDefinition] = Field(default_factory=dict)
    places: dict[str, EntityDefinition] = Field(default_factory=dict)


class EntityConfig(BaseModel):
    """Named entities, groups and rules used to enrich document text.

    Accepts both ``group_mappings``/``context_rules`` and the camelCase
    ``groupMappings``/``contextRules`` keys.

    Example:
        >>> config = EntityConfig.model_validate(
        ...     {"entities": {"people": {"Ana": {"aliases": ["annie"]}}}}
        ... )
        >>> config.alias_index()["annie"]
        'Ana'
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    entities: EntityBook = Field(default_factory=EntityBook)
    group_mappings: dict[str, tuple[str, ...]] = Field(
        default_factory=dict, alias="groupMappings"
    )
    context_rules: tuple[ContextRule, ...] = Field(default=(), alias="contextRules")

    def lookup(self, name: str) -> EntityDefinition | None:
        return self.entities.people.get(name) or self.entities.places.get(name)

    def alias_index(self) -> dict[str, str]:
        """Map lowercase names and aliases to canonical entity names."""

        index: dict[str, str] = {}
        for book in (self.entities.people, self.entities.places):
            for name, entity in book.items():
                index[name.lower()] = name
                for alias in entity.aliases:
                    index[alias.lower()] = name
        return index


def load_entity_config(path: Path) -> EntityConfig:
    """Load an :class:`EntityConfig` from a JSON or TOML file."""

    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise VdbProviderConfigurationError(
            f"Cannot read entity config {path}: {exc}",
            provider="contextual",
            model="*",
        ) from exc
    try:
        if path.suffix.lower() == ".toml":
            payload = tomllib.loads(raw.decode("utf-8"))
        else:
            payload = json.loads(raw)
        return EntityConfig.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        raise VdbProviderConfigurationError(
            f"Invalid entity config {path}: {exc}",
            provider="contextual",
            model="*",
        ) from exc


# ----------------------------------------------------------------------#
# Context builders
# ----------------------------------------------------------------------#
def _long_date(moment: datetime) -> str:
    return f"{moment:%A}, {moment:%B} {moment.day}, {moment.year}"


def _time_period(hour: int) -> str:
    if 5 <= hour < 12:
        return "Morning"
    if 12 <= hour < 17:
        return "Afternoon"
    if 17 <= hour < 21:
        return "Evening"
    return "Night"


def _relative_day(moment: datetime, now: datetime) -> str | None:
    days_ago = (now.date() - moment.date()).days
    if days_ago <= 0:
        return "Today"
    if days_ago == 1:
        return "Yesterday"
    if days_ago < 7:
        return f"{days_ago} days ago"
    if days_ago < 30:
        return f"{days_ago // 7} weeks ago"
    return None


def _duration_band(seconds: float) -> str:
    minutes = round(seconds / 60)
    if minutes < 5:
        return "Brief check-in"
    if minutes < 30:
        return f"{minutes} minute short discussion"
    if minutes < 60:
        return f"{minutes} minute meeting"
    return f"{round(minutes / 60)} hour long meeting"


def _unique(values: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _extract_entities(
    text: str, config: EntityConfig | None
) -> tuple[list[str], list[str], list[str]]:
    lowered = text.lower()
    people: list[str] = []
    places: list[str] = []
    groups: list[str] = []

    if config is None:
        people.extend(_ROLE_WORDS[match.lower()] for match in _ROLE_RE.findall(text))
        places.extend(
            match.group(0) for match in _POSSESSIVE_PLACE_RE.finditer(text)
        )
        places.extend(match.lower() for match in _PLACE_RE.findall(text))
        return _unique(people), _unique(places), groups

    for alias, name in config.alias_index().items():
        if not re.search(rf"\b{re.escape(alias)}\b", lowered):
            continue
        if name in config.entities.places:
            places.append(name)
        else:
            people.append(name)
    for group, members in config.group_mappings.items():
        if group.lower() in lowered:
            groups.append(group)
            people.extend(members)
    return _unique(people), _unique(places), _unique(groups)


def _relationship_contexts(
    text: str, people: Sequence[str], places: Sequence[str], config: EntityConfig
) -> list[str]:
    lowered = text.lower()
    contexts: list[str] = []
    for name in people:
        entity = config.entities.people.get(name)
        if entity is None:
            continue
        for related, kind in entity.relationships.items():
            if related in people or related.lower() in lowered:
                contexts.append(f"Relationship: {name}-{kind}-{related}")
        if entity.context:
            contexts.append(f"Context: {entity.context}")
    if places and _MOVEMENT_RE.search(lowered):
        contexts.append(f"Movement: Going to {' or '.join(places)}")
    for rule in config.context_rules:
        if re.search(rule.pattern, lowered, re.IGNORECASE):
            contexts.append(rule.implies)
    return _unique(contexts)


def build_document_context(
    text: str,
    metadata: Mapping[str, Any] | None,
    *,
    now: datetime,
    entity_config: EntityConfig | None = None,
    max_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
) -> str:
    """Return ``text`` prefixed with its contextual preamble.

    Example:
        >>> text = build_document_context(
        ...     "Lunch plans",
        ...     {"date": "2024-03-04T13:00:00Z", "duration": 120, "title": "Lunch"},
        ...     now=datetime(2024, 3, 5, 9, tzinfo=timezone.utc),
        ... )
        >>> text.split(". ")[:3]
        ['Date: Monday, March 4, 2024', 'Time Period: Afternoon', 'Time: Yesterday']
        >>> text.endswith("Topic: Lunch\\n\\nLunch plans")
        True
    """

    metadata = metadata or {}
    contexts: list[str] = []

    raw_date = metadata.get("date")
    if raw_date:
        try:
            moment = parse_timestamp(raw_date, field_name="date")
        except ValueError:
            moment = None
        if moment is not None:
            contexts.append(f"Date: {_long_date(moment)}")
            contexts.append(f"Time Period: {_time_period(moment.hour)}")
            relative = _relative_day(moment, now)
            if relative:
                contexts.append(f"Time: {relative}")

    duration = metadata.get("duration")
    if isinstance(duration, (int, float)) and duration > 0:
        contexts.append(f"Duration: {_duration_band(float(duration))}")

    people, places, groups = _extract_entities(text, entity_config)
    if people:
        contexts.append(f"People: {', '.join(people)}")
    if places:
        contexts.append(f"Places: {', '.join(places)}")
    if groups:
        contexts.append(f"Groups: {', '.join(groups)}")
    if entity_config is not None:
        contexts.extend(_relationship_contexts(text, people, places, entity_config))

    title = metadata.get("title")
    if title:
        contexts.append(f"Topic: {str(title)[:100]}")

    preamble = ". ".join(contexts) + "\n\n" if contexts else ""
    return (preamble + text)[:max_length]


def build_query_context(query: str, *, now: datetime) -> str:
    """Return ``query`` with temporal and meeting hints prepended.

    Example:
        >>> text = build_query_context(
        ...     "meeting yesterday", now=datetime(2024, 3, 5, tzinfo=timezone.utc)
        ... )
        >>> text.splitlines()[-1]
        'Search query: meeting yesterday'
        >>> "Type: Meeting or discussion" in text
        True
    """

    enrichments = [f"Current date: {_long_date(now)}"]
    lowered = query.lower()
    if "today" in lowered:
        enrichments.append("Time: Today")
    elif "yesterday" in lowered:
        enrichments.append("Time: Yesterday")
    elif "this week" in lowered:
        enrichments.append("Time: Within 7 days")
    elif "last week" in lowered:
        enrichments.append("Time: 7-14 days ago")
    if "meeting" in lowered or "discussion" in lowered:
        enrichments.append("Type: Meeting or discussion")
    return ". ".join(enrichments) + "\n\nSearch query: " + query


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------#
# Provider
# ----------------------------------------------------------------------#
class ContextualEmbeddingProvider(EmbeddingProvider):
    """Decorate ``inner`` so every document and query carries context."""

    def __init__(
        self,
        inner: EmbeddingProvider,
        *,
        entity_config: EntityConfig | None = None,
        entity_config_path: Path | None = None,
        max_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
        clock: Callable[[], datetime] = _utcnow,
        logger: Logger | None = None,
    ) -> None:
        if max_length < 1:
            raise ValueError("max_length must be >= 1")
        self.inner = inner
        self.entity_config = entity_config
        self.entity_config_path = entity_config_path
        self.max_length = max_length
        self._clock = clock
        self.logger = logger or get_logger(__name__, provider="contextual")

    @property
    def dimension(self) -> int:
        return self.inner.dimension

    @property
    def model_name(self) -> str:
        return f"{self.inner.model_name}-contextual"

    def initialize(self) -> None:
        self.inner.initialize()
        if self.entity_config is None and self.entity_config_path is not None:
            self.entity_config = load_entity_config(self.entity_config_path)
            self.logger.info(
                "entity-config-loaded",
                path=str(self.entity_config_path),
                people=len(self.entity_config.entities.people),
                places=len(self.entity_config.entities.places),
                groups=len(self.entity_config.group_mappings),
                rules=len(self.entity_config.context_rules),
            )

    def close(self) -> None:
        self.inner.close()

    def enrich(self, text: str, metadata: Mapping[str, Any] | None) -> str:
        return build_document_context(
            text,
            metadata,
            now=self._clock(),
            entity_config=self.entity_config,
            max_length=self.max_length,
        )

    def enrich_query(self, query: str) -> str:
        return build_query_context(query, now=self._clock())

    def embed(
        self,
        texts: Sequence[str],
        *,
        metadata: MetadataSeq | None = None,
    ) -> EmbeddingMatrix:
        enriched = [
            self.enrich(text, metadata[index] if metadata else None)
            for index, text in enumerate(texts)
        ]
        return self.inner.embed(enriched, metadata=metadata)

    def embed_single(
        self,
        text: str,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> EmbeddingVector:
        return self.inner.embed_single(self.enrich(text, metadata), metadata=metadata)

    def embed_query(self, query: str) -> EmbeddingVector:
        return self.inner.embed_single(self.enrich_query(query))

"""Actor placeholder codec.

Generated story text never contains actor names. Children and characters are
referenced by ``$$<entityId>$$`` tokens so the canonical text survives renames
and can be re-resolved for display at any time:

    "$$fido$$ wagged its tail"  →  "Fido wagged its tail"

Decoding fails soft: a token whose id cannot be resolved is left in place
rather than raising, because this text goes straight in front of a child.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from typing import NamedTuple, Protocol

from storyguide.models import Choice

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"\$\$([A-Za-z0-9_-]+)\$\$")


class ResolvedEntity(NamedTuple):
    display_name: str
    avatar_url: str | None = None


class EntityResolver(Protocol):
    def lookup(self, ids: Iterable[str]) -> Mapping[str, ResolvedEntity]: ...


class MappingResolver:
    """Resolver over a fixed id → entity mapping."""

    def __init__(self, entities: Mapping[str, ResolvedEntity]) -> None:
        self._entities = dict(entities)

    def lookup(self, ids: Iterable[str]) -> Mapping[str, ResolvedEntity]:
        return {i: self._entities[i] for i in ids if i in self._entities}


class StorageResolver:
    """Looks ids up as characters first, then as children."""

    def __init__(self, storage) -> None:
        self._storage = storage

    def lookup(self, ids: Iterable[str]) -> Mapping[str, ResolvedEntity]:
        found: dict[str, ResolvedEntity] = {}
        for entity_id in dict.fromkeys(ids):
            try:
                character = self._storage.get_character(entity_id)
                if character is not None:
                    found[entity_id] = ResolvedEntity(character.display_name, character.avatar_url)
                    continue
                child = self._storage.get_child(entity_id)
                if child is not None:
                    found[entity_id] = ResolvedEntity(child.display_name, child.avatar_url)
            except (OSError, ValueError) as e:
                logger.warning("Could not resolve entity %s: %s", entity_id, e)
        return found


# ---------------------------------------------------------------------------
# Encoding side
# ---------------------------------------------------------------------------

def extract_actor_ids(*texts: str | None) -> list[str]:
    """Return the distinct entity ids referenced across texts, in first-seen order."""
    ids: dict[str, None] = {}
    for text in texts:
        if not text:
            continue
        for match in TOKEN_RE.finditer(text):
            ids.setdefault(match.group(1), None)
    return list(ids)


def choice_texts(choices: Iterable[Choice]) -> list[str]:
    return [c.text for c in choices]


# ---------------------------------------------------------------------------
# Decoding side
# ---------------------------------------------------------------------------

def _substitute(text: str, entities: Mapping[str, ResolvedEntity]) -> str:
    def _replace(match: re.Match) -> str:
        entity = entities.get(match.group(1))
        if entity is None or not entity.display_name:
            return match.group(0)
        return entity.display_name

    return TOKEN_RE.sub(_replace, text)


def resolve_text(text: str | None, resolver: EntityResolver) -> str:
    """Replace every resolvable token in text with its display name."""
    if not text:
        return ""
    ids = extract_actor_ids(text)
    if not ids:
        return text
    return _substitute(text, resolver.lookup(ids))


def resolve_choices(choices: list[Choice], resolver: EntityResolver) -> list[Choice]:
    """Return copies of choices with each option's text resolved."""
    ids = extract_actor_ids(*choice_texts(choices))
    entities = resolver.lookup(ids) if ids else {}
    return [c.model_copy(update={"text": _substitute(c.text, entities)}) for c in choices]


# ---------------------------------------------------------------------------
# Name → placeholder (for free text typed by the child)
# ---------------------------------------------------------------------------

class ActorName(NamedTuple):
    id: str
    display_name: str


def _name_pattern(name: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(name)}\b", re.IGNORECASE)


def replace_names_with_placeholders(text: str, actors: Iterable[ActorName]) -> str:
    """Swap actor display names in text for their ``$$id$$`` tokens.

    Longest names go first so "Captain Whiskers" wins over "Captain".
    Matching is whole-word and case-insensitive.
    """
    if not text:
        return text
    ordered = sorted(actors, key=lambda a: len(a.display_name), reverse=True)
    for actor in ordered:
        if not actor.id or not actor.display_name:
            continue
        text = _name_pattern(actor.display_name).sub(f"$${actor.id}$$", text)
    return text


"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM: reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      sessions/
        {id}.json             ← StorySession document
        {id}/
          messages.json       ← append-only ChatMessage log
          events.json         ← diagnostic session events
      characters/{id}.json    ← Character documents
      children/{id}.json      ← ChildProfile documents
      story-types.json        ← list of StoryType
      generators.json         ← list of StoryGenerator (built-ins when absent)
      output-types.json       ← list of StoryOutputType

Multi-document writes go through a Batch. A batch stages and validates every
touched document before any file is written, then swaps them all in, so a
reader never sees a message whose actors are missing from the session.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import BaseModel

from storyguide.models import (
    Character,
    ChatMessage,
    ChildProfile,
    GeneratorCapabilities,
    GeneratorMode,
    StoryGenerator,
    StoryOutputType,
    StorySession,
    StoryType,
    utcnow,
)

logger = logging.getLogger(__name__)


DEFAULT_GENERATORS = [
    StoryGenerator(
        id="beat",
        name="Story Beats",
        mode=GeneratorMode.BEAT,
        api_endpoint="/api/storyBeat",
        capabilities=GeneratorCapabilities(
            requires_story_type=True,
            supports_character_introduction=True,
            asks_character_traits=True,
        ),
    ),
    StoryGenerator(
        id="gemini3",
        name="Gemini 3",
        mode=GeneratorMode.GEMINI3,
        api_endpoint="/api/gemini3",
        capabilities=GeneratorCapabilities(
            supports_character_introduction=True,
            supports_more_options=True,
        ),
    ),
    StoryGenerator(
        id="gemini4",
        name="Gemini 4",
        mode=GeneratorMode.GEMINI4,
        api_endpoint="/api/gemini4",
        capabilities=GeneratorCapabilities(
            supports_character_introduction=True,
            supports_more_options=True,
        ),
    ),
]


def new_id() -> str:
    return uuid.uuid4().hex


class SessionNotFoundError(LookupError):
    """Raised when a session id has no document."""


class Snapshot(NamedTuple):
    """A consistent read of one session and its message log."""

    session: StorySession
    messages: list[ChatMessage]


# ---------------------------------------------------------------------------
# Field transforms for Batch.update_session / update_character
# ---------------------------------------------------------------------------

class ArrayUnion(NamedTuple):
    """Append values that are not already present."""

    values: list


class Increment(NamedTuple):
    amount: int | float = 1


class _Delete:
    def __repr__(self) -> str:
        return "DELETE"


DELETE = _Delete()


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def apply_fields(doc: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """Apply dotted-path field updates to a document dict in place."""
    for path, value in fields.items():
        *parents, leaf = path.split(".")
        target = doc
        for key in parents:
            if not isinstance(target.get(key), dict):
                target[key] = {}
            target = target[key]

        if value is DELETE:
            target.pop(leaf, None)
        elif isinstance(value, ArrayUnion):
            current = list(target.get(leaf) or [])
            for item in _plain(value.values):
                if item not in current:
                    current.append(item)
            target[leaf] = current
        elif isinstance(value, Increment):
            target[leaf] = (target.get(leaf) or 0) + value.amount
        else:
            target[leaf] = _plain(value)
    return doc


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

class Batch:
    """Atomic multi-document write. Nothing is written until commit()."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._session_updates: dict[str, list[dict[str, Any]]] = {}
        self._appends: dict[str, list[ChatMessage]] = {}
        self._replacements: dict[str, list[ChatMessage]] = {}
        self._characters: dict[str, Character] = {}
        self._character_updates: dict[str, list[dict[str, Any]]] = {}
        self._committed = False

    def update_session(self, session_id: str, fields: dict[str, Any]) -> Batch:
        if fields:
            self._session_updates.setdefault(session_id, []).append(dict(fields))
        return self

    def append_message(self, session_id: str, message: ChatMessage) -> Batch:
        self._appends.setdefault(session_id, []).append(message)
        return self

    def replace_message(self, session_id: str, message: ChatMessage) -> Batch:
        """Replace an existing message (matched by id) keeping its position."""
        self._replacements.setdefault(session_id, []).append(message)
        return self

    def set_character(self, character: Character) -> Batch:
        self._characters[character.id] = character
        return self

    def update_character(self, character_id: str, fields: dict[str, Any]) -> Batch:
        self._character_updates.setdefault(character_id, []).append(dict(fields))
        return self

    @property
    def is_empty(self) -> bool:
        return not (
            self._session_updates or self._appends or self._replacements
            or self._characters or self._character_updates
        )

    def commit(self) -> list[ChatMessage]:
        """Validate and write every staged document.

        Returns the appended and replaced messages as stored.
        """
        if self._committed:
            raise RuntimeError("Batch already committed")
        storage = self._storage
        staged: dict[Path, str] = {}
        written: list[ChatMessage] = []
        now = utcnow()

        for session_id, updates in self._session_updates.items():
            path = storage._session_file(session_id)
            if not path.is_file():
                raise SessionNotFoundError(session_id)
            doc = storage._read_json(path)
            for fields in updates:
                apply_fields(doc, fields)
            doc["updated_at"] = now.isoformat()
            session = StorySession.model_validate(doc)
            staged[path] = session.model_dump_json(indent=2)

        for session_id in {**self._replacements, **self._appends}:
            if not storage._session_file(session_id).is_file():
                raise SessionNotFoundError(session_id)
            messages = storage.get_messages(session_id)
            for replacement in self._replacements.get(session_id, []):
                for i, existing in enumerate(messages):
                    if existing.id == replacement.id:
                        messages[i] = replacement.model_copy(update={"seq": existing.seq})
                        written.append(messages[i])
                        break
                else:
                    raise ValueError(f"Message {replacement.id} not found in session {session_id}")
            seq = max((m.seq for m in messages), default=0)
            for message in self._appends.get(session_id, []):
                seq += 1
                stored = message.model_copy(update={"seq": seq})
                messages.append(stored)
                written.append(stored)
            staged[storage._messages_file(session_id)] = json.dumps(
                [m.model_dump(mode="json") for m in messages], indent=2
            )

        characters = dict(self._characters)
        for character_id, updates in self._character_updates.items():
            current = characters.get(character_id) or storage.get_character(character_id)
            if current is None:
                raise LookupError(f"Character {character_id} not found")
            doc = current.model_dump(mode="json")
            for fields in updates:
                apply_fields(doc, fields)
            characters[character_id] = Character.model_validate(doc)
        for character_id, character in characters.items():
            staged[storage._character_file(character_id)] = character.model_dump_json(indent=2)

        storage._write_many(staged)
        self._committed = True
        return written


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._sessions_root = self._base / "sessions"
        self._characters_root = self._base / "characters"
        self._children_root = self._base / "children"
        for root in (self._sessions_root, self._characters_root, self._children_root):
            root.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _session_file(self, session_id: str) -> Path:
        return self._sessions_root / f"{session_id}.json"

    def _session_dir(self, session_id: str) -> Path:
        return self._sessions_root / session_id

    def _messages_file(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "messages.json"

    def _character_file(self, character_id: str) -> Path:
        return self._characters_root / f"{character_id}.json"

    def _child_file(self, child_id: str) -> Path:
        return self._children_root / f"{child_id}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _write_many(self, staged: dict[Path, str]) -> None:
        """Write every file to a temp sibling first, then swap them all in."""
        temps: list[tuple[Path, Path]] = []
        for path, text in staged.items():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(text)
            temps.append((tmp, path))
        for tmp, path in temps:
            os.replace(tmp, path)

    def batch(self) -> Batch:
        return Batch(self)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: StorySession) -> StorySession:
        path = self._session_file(session.id)
        if path.exists():
            raise FileExistsError(f"Session {session.id} already exists")
        self._session_dir(session.id).mkdir(exist_ok=True)
        path.write_text(session.model_dump_json(indent=2))
        return session

    def get_session(self, session_id: str) -> StorySession | None:
        path = self._session_file(session_id)
        if not path.is_file():
            return None
        return StorySession.model_validate_json(path.read_text())

    def require_session(self, session_id: str) -> StorySession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self, child_id: str | None = None) -> list[StorySession]:
        sessions = [
            StorySession.model_validate_json(p.read_text())
            for p in sorted(self._sessions_root.glob("*.json"))
        ]
        if child_id is not None:
            sessions = [s for s in sessions if s.child_id == child_id]
        return sessions

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def get_messages(self, session_id: str) -> list[ChatMessage]:
        path = self._messages_file(session_id)
        if not path.exists():
            return []
        messages = [ChatMessage.model_validate(m) for m in self._read_json(path)]
        return sorted(messages, key=lambda m: m.seq)

    def append_messages(self, session_id: str, messages: list[ChatMessage]) -> list[ChatMessage]:
        batch = self.batch()
        for message in messages:
            batch.append_message(session_id, message)
        return batch.commit()

    def snapshot(self, session_id: str) -> Snapshot:
        session = self.require_session(session_id)
        return Snapshot(session=session, messages=self.get_messages(session_id))

    # ------------------------------------------------------------------
    # Characters and children
    # ------------------------------------------------------------------

    def save_character(self, character: Character) -> None:
        self._character_file(character.id).write_text(character.model_dump_json(indent=2))

    def get_character(self, character_id: str) -> Character | None:
        path = self._character_file(character_id)
        if not path.is_file():
            return None
        return Character.model_validate_json(path.read_text())

    def save_child(self, child: ChildProfile) -> None:
        self._child_file(child.id).write_text(child.model_dump_json(indent=2))

    def get_child(self, child_id: str) -> ChildProfile | None:
        path = self._child_file(child_id)
        if not path.is_file():
            return None
        return ChildProfile.model_validate_json(path.read_text())

    def list_children(self, parent_uid: str | None = None) -> list[ChildProfile]:
        children = [
            ChildProfile.model_validate_json(p.read_text())
            for p in sorted(self._children_root.glob("*.json"))
        ]
        if parent_uid is not None:
            children = [c for c in children if c.parent_uid == parent_uid]
        return children

    # ------------------------------------------------------------------
    # Catalog: story types, generators, output types
    # ------------------------------------------------------------------

    def get_story_types(self) -> list[StoryType]:
        path = self._base / "story-types.json"
        if not path.exists():
            return []
        return [StoryType.model_validate(t) for t in self._read_json(path)]

    def get_story_type(self, story_type_id: str | None) -> StoryType | None:
        if not story_type_id:
            return None
        for story_type in self.get_story_types():
            if story_type.id == story_type_id:
                return story_type
        return None

    def save_story_type(self, story_type: StoryType) -> None:
        """Upsert a story type by id."""
        types = self.get_story_types()
        for i, t in enumerate(types):
            if t.id == story_type.id:
                types[i] = story_type
                break
        else:
            types.append(story_type)
        self._write_json(self._base / "story-types.json", [t.model_dump(mode="json") for t in types])

    def get_generators(self) -> list[StoryGenerator]:
        path = self._base / "generators.json"
        if not path.exists():
            return [g.model_copy(deep=True) for g in DEFAULT_GENERATORS]
        return [StoryGenerator.model_validate(g) for g in self._read_json(path)]

    def get_generator(self, generator_id: str) -> StoryGenerator | None:
        for generator in self.get_generators():
            if generator.id == generator_id:
                return generator
        return None

    def save_generators(self, generators: list[StoryGenerator]) -> None:
        self._write_json(self._base / "generators.json", [g.model_dump(mode="json") for g in generators])

    def get_output_types(self) -> list[StoryOutputType]:
        path = self._base / "output-types.json"
        if not path.exists():
            return []
        return [StoryOutputType.model_validate(t) for t in self._read_json(path)]

    def save_output_types(self, output_types: list[StoryOutputType]) -> None:
        self._write_json(self._base / "output-types.json", [t.model_dump(mode="json") for t in output_types])

    # ------------------------------------------------------------------
    # Session events (diagnostics)
    # ------------------------------------------------------------------

    def log_event(
        self,
        session_id: str,
        event: str,
        status: str = "info",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """Append a diagnostic event. Never raises."""
        path = self._session_dir(session_id) / "events.json"
        try:
            events = self._read_json(path) if path.exists() else []
            events.append({
                "event": event,
                "status": status,
                "source": "server",
                "attributes": _plain(attributes or {}),
                "created_at": utcnow().isoformat(),
            })
            path.parent.mkdir(parents=True, exist_ok=True)
            self._write_json(path, events)
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to log session event %s for %s: %s", event, session_id, e)

    def get_events(self, session_id: str) -> list[dict[str, Any]]:
        path = self._session_dir(session_id) / "events.json"
        if not path.exists():
            return []
        return self._read_json(path)

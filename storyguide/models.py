"""Core domain models.

All pipeline stages and storage functions operate on these types.
Pydantic is used for validation and serialisation at every data boundary.

Canonical vs. display text: every text field that can carry ``$$id$$`` actor
placeholders is stored in its canonical form (``text``, ``options``) next to a
display-only resolved form (``text_resolved``, ``options_resolved``). Only the
canonical form is ever sent back to generation or compilation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    """Top-level session stage. Only ever moves forward."""

    WARMUP = "warmup"
    STORY = "story"
    ENDING = "ending"

    @property
    def order(self) -> int:
        return _PHASE_ORDER[self]


_PHASE_ORDER = {Phase.WARMUP: 0, Phase.STORY: 1, Phase.ENDING: 2}


class Sender(str, Enum):
    CHILD = "child"
    ASSISTANT = "assistant"


class GeneratorMode(str, Enum):
    """Which message shapes a story generator produces."""

    BEAT = "beat"
    GEMINI3 = "gemini3"
    GEMINI4 = "gemini4"


class MessageKind(str, Enum):
    CHILD_MESSAGE = "child_message"
    WARMUP_REPLY = "warmup_reply"
    BEAT_CONTINUATION = "beat_continuation"
    BEAT_OPTIONS = "beat_options"
    BEAT_FINAL_STORY = "beat_final_story"
    CHILD_CHOICE = "child_choice"
    CHARACTER_TRAITS_QUESTION = "character_traits_question"
    CHARACTER_TRAITS_ANSWER = "character_traits_answer"
    ENDING_OPTIONS = "ending_options"
    CHILD_ENDING_CHOICE = "child_ending_choice"
    GEMINI3_QUESTION = "gemini3_question"
    GEMINI4_QUESTION = "gemini4_question"
    GEMINI3_FINAL_STORY = "gemini3_final_story"
    GEMINI4_FINAL_STORY = "gemini4_final_story"

    @property
    def has_options(self) -> bool:
        """True for the assistant messages that offer the child choices."""
        return self in _OPTION_KINDS

    @property
    def is_final_story(self) -> bool:
        return self in _FINAL_STORY_KINDS

    @property
    def is_story_options(self) -> bool:
        """Options that advance the story (not the ending picker)."""
        return self in _OPTION_KINDS and self is not MessageKind.ENDING_OPTIONS


_OPTION_KINDS = frozenset({
    MessageKind.BEAT_OPTIONS,
    MessageKind.ENDING_OPTIONS,
    MessageKind.GEMINI3_QUESTION,
    MessageKind.GEMINI4_QUESTION,
})

_FINAL_STORY_KINDS = frozenset({
    MessageKind.BEAT_FINAL_STORY,
    MessageKind.GEMINI3_FINAL_STORY,
    MessageKind.GEMINI4_FINAL_STORY,
})

_QUESTION_KINDS = {
    GeneratorMode.BEAT: MessageKind.BEAT_OPTIONS,
    GeneratorMode.GEMINI3: MessageKind.GEMINI3_QUESTION,
    GeneratorMode.GEMINI4: MessageKind.GEMINI4_QUESTION,
}

_FINAL_KINDS = {
    GeneratorMode.BEAT: MessageKind.BEAT_FINAL_STORY,
    GeneratorMode.GEMINI3: MessageKind.GEMINI3_FINAL_STORY,
    GeneratorMode.GEMINI4: MessageKind.GEMINI4_FINAL_STORY,
}


def question_kind(mode: GeneratorMode) -> MessageKind:
    return _QUESTION_KINDS[mode]


def final_story_kind(mode: GeneratorMode) -> MessageKind:
    return _FINAL_KINDS[mode]


CharacterType = Literal["Family", "Friend", "Pet", "Toy", "Other"]


# ---------------------------------------------------------------------------
# Choices and story templates
# ---------------------------------------------------------------------------

class Choice(BaseModel):
    """One option offered to the child.

    Accepts the camelCase keys the generation endpoints send.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    text: str
    introduces_character: bool = False
    # populated only when introduces_character is set
    new_character_name: str | None = None
    new_character_label: str | None = None
    new_character_type: CharacterType | None = None
    existing_character_id: str | None = None
    is_more_option: bool = False

    @field_validator(
        "new_character_name", "new_character_label", "new_character_type",
        "existing_character_id", mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value):
        # generators fill unused fields with ""
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ArcStep(BaseModel):
    id: str
    label: str
    guidance: str | None = None  # fed to generation, never shown to the child
    suggests_new_character: bool = False


class ArcTemplate(BaseModel):
    steps: list[ArcStep] = Field(default_factory=list)


class StoryType(BaseModel):
    id: str
    name: str
    short_description: str = ""
    status: Literal["live", "draft"] = "live"
    age_range: str = ""
    tags: list[str] = Field(default_factory=list)
    arc_template: ArcTemplate = Field(default_factory=ArcTemplate)


class GeneratorCapabilities(BaseModel):
    requires_story_type: bool = False
    supports_character_introduction: bool = False
    supports_more_options: bool = False
    asks_character_traits: bool = False


class StoryGenerator(BaseModel):
    id: str
    name: str
    mode: GeneratorMode
    api_endpoint: str
    capabilities: GeneratorCapabilities = Field(default_factory=GeneratorCapabilities)


class StoryOutputType(BaseModel):
    id: str
    name: str
    status: Literal["live", "draft"] = "live"


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class PendingCharacterTraits(BaseModel):
    """Open traits question. While present, child free text answers it."""

    character_id: str
    character_label: str
    question_text: str
    asked_at: datetime = Field(default_factory=utcnow)


class PendingIntroduction(BaseModel):
    """A character introduction waiting for the child to continue."""

    character_id: str
    character_name: str
    character_label: str
    character_type: CharacterType = "Friend"
    pending_option: Choice


class Progress(BaseModel):
    """Write-once milestone timestamps. Diagnostic only."""

    warmup_completed_at: datetime | None = None
    story_type_chosen_at: datetime | None = None
    story_arc_completed_at: datetime | None = None
    ending_chosen_at: datetime | None = None
    compile_completed_at: datetime | None = None


class SessionDebug(BaseModel):
    """Scratch fields overwritten by every generation call."""

    last_flow: str | None = None
    last_prompt: str | None = None
    last_flow_debug: dict | None = None


class StorySession(BaseModel):
    id: str
    child_id: str
    parent_uid: str
    generator_id: str = "beat"
    story_type_id: str | None = None  # None until a story type is chosen
    story_type_name: str | None = None
    story_title: str | None = None
    current_phase: Phase = Phase.WARMUP
    arc_step_index: int | None = None
    selected_ending_id: str | None = None
    selected_ending_text: str | None = None
    pending_character_traits: PendingCharacterTraits | None = None
    pending_introduction: PendingIntroduction | None = None
    supporting_character_ids: list[str] = Field(default_factory=list)
    actors: list[str] = Field(default_factory=list)  # grows by union only
    progress: Progress = Field(default_factory=Progress)
    debug: SessionDebug = Field(default_factory=SessionDebug)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ChatMessage(BaseModel):
    """A single entry in a session's append-only message log."""

    id: str
    seq: int = 0  # assigned by storage on append
    sender: Sender
    kind: MessageKind
    text: str
    text_resolved: str | None = None
    header_text: str | None = None  # continuation shown above a combined question
    header_text_resolved: str | None = None
    options: list[Choice] = Field(default_factory=list)
    options_resolved: list[Choice] = Field(default_factory=list)
    selected_option_id: str | None = None
    reached_arc_end: bool | None = None  # set on child_choice messages
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def display_text(self) -> str:
        return self.text_resolved or self.text

    @property
    def display_options(self) -> list[Choice]:
        return self.options_resolved or self.options


# ---------------------------------------------------------------------------
# Entities referenced by actor placeholders
# ---------------------------------------------------------------------------

class Character(BaseModel):
    id: str
    display_name: str
    label: str = ""
    character_type: CharacterType = "Friend"
    owner_child_id: str | None = None
    parent_uid: str | None = None
    session_id: str | None = None
    traits: list[str] = Field(default_factory=list)
    avatar_url: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ChildProfile(BaseModel):
    id: str
    display_name: str
    parent_uid: str
    avatar_url: str | None = None


# ---------------------------------------------------------------------------
# User-visible notices
# ---------------------------------------------------------------------------

class Notice(BaseModel):
    """A non-fatal toast shown to the user."""

    level: Literal["info", "warning", "error"] = "info"
    title: str
    description: str = ""

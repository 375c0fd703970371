"""Session phase state machine.

Phases only move forward: warmup → story → ending. Two implicit states sit
beside them: "awaiting story type" (story_type_id is None) and the
traits-question side channel (pending_character_traits is set), which
captures the child's next free text regardless of phase.

Every transition here is a pure function of the current session. It checks
the precondition and returns the field updates for a Batch; callers commit
them together with whatever messages the transition produced. Nothing in this
module writes to storage.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from storyguide import arc
from storyguide.models import (
    PendingCharacterTraits,
    Phase,
    StorySession,
    StoryType,
    utcnow,
)

logger = logging.getLogger(__name__)


class SessionStateError(ValueError):
    """The session is not in a state that allows the requested action."""


class PhaseError(SessionStateError):
    """An action belongs to a phase the session is not in."""


class EndingAlreadyChosenError(SessionStateError):
    """selected_ending_id is write-once."""


class InputRoute(str, Enum):
    TRAITS_ANSWER = "traits_answer"
    WARMUP_CHAT = "warmup_chat"
    STORY_MESSAGE = "story_message"


def _milestone(session: StorySession, name: str) -> dict[str, Any]:
    """Write-once progress timestamp; empty when already recorded."""
    if getattr(session.progress, name) is not None:
        return {}
    return {f"progress.{name}": utcnow()}


def _require_phase(session: StorySession, *allowed: Phase) -> None:
    if session.current_phase not in allowed:
        names = "/".join(p.value for p in allowed)
        raise PhaseError(
            f"Session {session.id} is in the {session.current_phase.value} phase, expected {names}"
        )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def begin_story(
    session: StorySession,
    story_type: StoryType,
    child_name: str | None = None,
) -> dict[str, Any]:
    """Story type selection: warmup ends and the story starts at arc step 0."""
    if session.story_type_id is not None:
        raise SessionStateError(f"Session {session.id} already has story type {session.story_type_id}")
    _require_phase(session, Phase.WARMUP, Phase.STORY)
    title = session.story_title or (f"{child_name} {story_type.name}" if child_name else story_type.name)
    return {
        "story_type_id": story_type.id,
        "story_type_name": story_type.name,
        "story_title": title,
        "current_phase": Phase.STORY,
        "arc_step_index": 0,
        **_milestone(session, "warmup_completed_at"),
        **_milestone(session, "story_type_chosen_at"),
    }


def normalize_for_beat(session: StorySession) -> dict[str, Any]:
    """Preconditions for producing a beat: story phase and an arc cursor."""
    _require_phase(session, Phase.WARMUP, Phase.STORY)
    updates: dict[str, Any] = {}
    if session.current_phase is Phase.WARMUP:
        updates["current_phase"] = Phase.STORY
        updates.update(_milestone(session, "warmup_completed_at"))
    if session.arc_step_index is None:
        updates["arc_step_index"] = 0
    return updates


def advance_arc(session: StorySession, total_steps: int) -> tuple[dict[str, Any], arc.ArcAdvance]:
    """Record one fully processed choice on the arc cursor."""
    _require_phase(session, Phase.STORY)
    result = arc.advance(session.arc_step_index or 0, total_steps)
    updates: dict[str, Any] = {"arc_step_index": result.next_index}
    if result.reached_end:
        updates.update(_milestone(session, "story_arc_completed_at"))
    return updates, result


def arc_completed(session: StorySession) -> bool:
    """True once the arc has been walked and the ending is due."""
    return session.current_phase is Phase.ENDING or session.progress.story_arc_completed_at is not None


def enter_ending(session: StorySession) -> dict[str, Any]:
    if session.selected_ending_id is not None:
        raise EndingAlreadyChosenError(f"Session {session.id} already has an ending")
    _require_phase(session, Phase.STORY, Phase.ENDING)
    return {"current_phase": Phase.ENDING, **_milestone(session, "story_arc_completed_at")}


def select_ending(session: StorySession, ending_id: str, ending_text: str) -> dict[str, Any]:
    if session.selected_ending_id is not None:
        raise EndingAlreadyChosenError(f"Session {session.id} already has an ending")
    _require_phase(session, Phase.ENDING)
    return {
        "selected_ending_id": ending_id,
        "selected_ending_text": ending_text,
        **_milestone(session, "ending_chosen_at"),
    }


def open_traits_question(
    session: StorySession,
    character_id: str,
    character_label: str,
    question_text: str,
) -> dict[str, Any]:
    if session.pending_character_traits is not None:
        raise SessionStateError(f"Session {session.id} already has an open traits question")
    slot = PendingCharacterTraits(
        character_id=character_id,
        character_label=character_label,
        question_text=question_text,
    )
    return {"pending_character_traits": slot}


def close_traits_question(session: StorySession) -> dict[str, Any]:
    if session.pending_character_traits is None:
        raise SessionStateError(f"Session {session.id} has no open traits question")
    return {"pending_character_traits": None}


def route_child_input(session: StorySession) -> InputRoute:
    """Decide what a piece of child free text means right now.

    An open traits question captures the text before any phase is looked at.
    """
    if session.pending_character_traits is not None:
        return InputRoute.TRAITS_ANSWER
    if session.current_phase is Phase.WARMUP:
        return InputRoute.WARMUP_CHAT
    if session.current_phase is Phase.STORY:
        return InputRoute.STORY_MESSAGE
    raise PhaseError(f"Session {session.id} is choosing an ending and does not take free text")


def require_option_choice(session: StorySession) -> None:
    """Story options can only be taken in the story phase with no pause open."""
    _require_phase(session, Phase.STORY)
    if session.pending_introduction is not None:
        raise SessionStateError(f"Session {session.id} is waiting for a character introduction")
    if session.pending_character_traits is not None:
        raise SessionStateError(f"Session {session.id} is waiting for a traits answer")

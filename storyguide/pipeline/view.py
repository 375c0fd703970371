"""Session view — what the child should be looking at right now.

derive_view folds the message log on top of the session document. It is
pure: the same snapshot always yields the same view, so a client can
re-render from any snapshot it receives without remembering what it did
before.

Precedence, first match wins:

    complete         a final story exists, or compilation has finished
    ending_chosen    selected_ending_id is set
    traits_question  pending_character_traits is set
    character_intro  pending_introduction is set
    warmup           phase is warmup
    choosing_ending  phase is ending and the latest message offers endings
    awaiting_ending  phase is ending, or the arc is complete, without endings
    choosing_option  latest message offers story options
    awaiting_beat    anything else in the story phase
"""

from __future__ import annotations

from enum import Enum
from functools import reduce
from typing import NamedTuple

from storyguide.models import ChatMessage, Choice, MessageKind, Phase, Sender, StorySession
from storyguide.pipeline.phases import arc_completed


class ViewState(str, Enum):
    WARMUP = "warmup"
    TRAITS_QUESTION = "traits_question"
    CHARACTER_INTRO = "character_intro"
    CHOOSING_OPTION = "choosing_option"
    AWAITING_BEAT = "awaiting_beat"
    AWAITING_ENDING = "awaiting_ending"
    CHOOSING_ENDING = "choosing_ending"
    ENDING_CHOSEN = "ending_chosen"
    COMPLETE = "complete"


class _Fold(NamedTuple):
    latest: ChatMessage | None = None
    latest_assistant: ChatMessage | None = None
    latest_options: ChatMessage | None = None
    final_story: ChatMessage | None = None


def _step(acc: _Fold, message: ChatMessage) -> _Fold:
    acc = acc._replace(latest=message)
    if message.sender is Sender.ASSISTANT:
        acc = acc._replace(latest_assistant=message)
    if message.kind.has_options:
        acc = acc._replace(latest_options=message)
    if message.kind.is_final_story:
        acc = acc._replace(final_story=message)
    return acc


class SessionView(NamedTuple):
    state: ViewState
    phase: Phase
    needs_story_type: bool
    accepts_free_text: bool
    latest_assistant: ChatMessage | None
    options_message: ChatMessage | None  # the message the current options belong to
    arc_step_index: int | None
    message_count: int

    @property
    def options(self) -> list[Choice]:
        """Display-form options, or [] when nothing can be chosen."""
        if self.options_message is None:
            return []
        return self.options_message.display_options

    @property
    def canonical_options(self) -> list[Choice]:
        if self.options_message is None:
            return []
        return self.options_message.options


def _state(session: StorySession, fold: _Fold) -> ViewState:
    if fold.final_story is not None or session.progress.compile_completed_at is not None:
        return ViewState.COMPLETE
    if session.selected_ending_id is not None:
        return ViewState.ENDING_CHOSEN
    if session.pending_character_traits is not None:
        return ViewState.TRAITS_QUESTION
    if session.pending_introduction is not None:
        return ViewState.CHARACTER_INTRO
    if session.current_phase is Phase.WARMUP:
        return ViewState.WARMUP

    offering = fold.latest is not None and fold.latest is fold.latest_options
    if session.current_phase is Phase.ENDING:
        if offering and fold.latest.kind is MessageKind.ENDING_OPTIONS:
            return ViewState.CHOOSING_ENDING
        return ViewState.AWAITING_ENDING
    if arc_completed(session):
        return ViewState.AWAITING_ENDING
    if offering and fold.latest.kind.is_story_options:
        return ViewState.CHOOSING_OPTION
    return ViewState.AWAITING_BEAT


def derive_view(session: StorySession, messages: list[ChatMessage]) -> SessionView:
    fold = reduce(_step, sorted(messages, key=lambda m: m.seq), _Fold())
    state = _state(session, fold)
    choosing = state in (ViewState.CHOOSING_OPTION, ViewState.CHOOSING_ENDING)
    return SessionView(
        state=state,
        phase=session.current_phase,
        needs_story_type=session.story_type_id is None,
        accepts_free_text=state in (
            ViewState.WARMUP, ViewState.TRAITS_QUESTION, ViewState.CHOOSING_OPTION,
        ),
        latest_assistant=fold.latest_assistant,
        options_message=fold.latest_options if choosing else None,
        arc_step_index=session.arc_step_index,
        message_count=len(messages),
    )

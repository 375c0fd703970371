"""Session engine — the user-facing actions of a story session.

The engine ties the pieces together: it checks what the current view allows,
commits the child's side of an action, calls the orchestrator for the
generated side, publishes a snapshot to the feed and returns a StepResult.

Only one action may be in flight per session. A second call while the first
is still awaiting its collaborator raises SessionBusyError; the flag is
cleared whether the action succeeds or fails.

Collaborator failures never escape an action. They become an error Notice
with ok=False, and because every generated write happens after its
collaborator call, the session is left where it was so the same step can be
retried (resume re-requests whatever the view says is missing).

Choosing an option commits the child's choice together with the arc advance
before the next beat or the ending is requested.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import NamedTuple

from storyguide import arc
from storyguide.api import StoryApi, StoryApiError
from storyguide.feed import SessionFeed
from storyguide.models import (
    ChatMessage,
    Choice,
    MessageKind,
    Notice,
    StorySession,
    utcnow,
)
from storyguide.pipeline import phases
from storyguide.pipeline.autocompile import AutoCompileTrigger, is_finished, resolve_output_type
from storyguide.pipeline.introductions import CharacterIntroductions
from storyguide.pipeline.orchestrator import StoryOrchestrator
from storyguide.pipeline.view import SessionView, ViewState, derive_view
from storyguide.placeholders import EntityResolver
from storyguide.storage import ArrayUnion, Storage, new_id

logger = logging.getLogger(__name__)


class SessionBusyError(RuntimeError):
    """Another action is already running for this session."""


class StepResult(NamedTuple):
    ok: bool
    notice: Notice | None
    view: SessionView
    messages: list[ChatMessage]


_Outcome = tuple[list[ChatMessage], Notice | None]


class SessionEngine:
    def __init__(
        self,
        storage: Storage,
        api: StoryApi,
        feed: SessionFeed | None = None,
        resolver: EntityResolver | None = None,
        autocompile: AutoCompileTrigger | None = None,
    ) -> None:
        self._storage = storage
        self._api = api
        self.feed = feed or SessionFeed(storage)
        self.orchestrator = StoryOrchestrator(storage, api, resolver)
        self.introductions = CharacterIntroductions(storage, api)
        self.autocompile = autocompile
        self._busy: set[str] = set()

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._busy

    def view(self, session_id: str) -> SessionView:
        return derive_view(*self._storage.snapshot(session_id))

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _run(
        self,
        session_id: str,
        failure_title: str,
        action: Callable[[StorySession], Awaitable[_Outcome]],
    ) -> StepResult:
        if session_id in self._busy:
            raise SessionBusyError(f"Session {session_id} is busy")
        session = self._storage.require_session(session_id)
        self._busy.add(session_id)
        try:
            try:
                messages, notice = await action(session)
                ok = True
            except StoryApiError as e:
                logger.warning("%s for session %s: %s", failure_title, session_id, e)
                messages, notice, ok = [], Notice(level="error", title=failure_title, description=str(e)), False

            await self.feed.publish(session_id)
            if self.autocompile is not None:
                notice = self.autocompile.take_notice(session_id) or notice
            return StepResult(ok=ok, notice=notice, view=self.view(session_id), messages=messages)
        finally:
            self._busy.discard(session_id)

    def _require_state(self, session: StorySession, *allowed: ViewState) -> SessionView:
        view = self.view(session.id)
        if view.state not in allowed:
            raise phases.SessionStateError(
                f"Session {session.id} is in state {view.state.value}, "
                f"expected {'/'.join(s.value for s in allowed)}"
            )
        return view

    async def _continue_story(self, session_id: str, selected_option_id: str | None = None) -> list[ChatMessage]:
        """Ask for whatever comes next: the ending once the arc is done, else a beat."""
        session = self._storage.require_session(session_id)
        if phases.arc_completed(session):
            messages = await self.orchestrator.run_ending(session_id)
            self._storage.log_event(session_id, "ending.presented", attributes={
                "endings": len(messages[-1].options),
            })
            return messages
        return await self.orchestrator.run_beat(session_id, selected_option_id=selected_option_id)

    def _total_steps(self, session: StorySession) -> int:
        return len(arc.arc_steps(self._storage.get_story_type(session.story_type_id)))

    def _story_context(self, session: StorySession) -> str:
        messages = self._storage.get_messages(session.id)
        return "\n".join(m.text for m in messages[-6:] if m.kind is not MessageKind.CHILD_CHOICE)

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    async def create_session(
        self,
        child_id: str,
        parent_uid: str,
        generator_id: str = "beat",
        story_title: str | None = None,
    ) -> StorySession:
        if self._storage.get_generator(generator_id) is None:
            raise phases.SessionStateError(f"Unknown story generator {generator_id!r}")
        session = self._storage.create_session(StorySession(
            id=new_id(),
            child_id=child_id,
            parent_uid=parent_uid,
            generator_id=generator_id,
            story_title=story_title,
        ))
        self._storage.log_event(session.id, "session.created", attributes={"generatorId": generator_id})
        await self.feed.publish(session.id)
        return session

    async def select_story_type(self, session_id: str, story_type_id: str) -> StepResult:
        async def action(session: StorySession) -> _Outcome:
            story_type = self._storage.get_story_type(story_type_id)
            if story_type is None:
                raise phases.SessionStateError(f"Unknown story type {story_type_id!r}")
            child = self._storage.get_child(session.child_id)
            updates = phases.begin_story(session, story_type, child.display_name if child else None)
            self._storage.batch().update_session(session_id, updates).commit()
            self._storage.log_event(session_id, "story_type.chosen", attributes={"storyTypeId": story_type.id})
            logger.info("Session %s chose story type %s", session_id, story_type.id)
            return await self.orchestrator.run_beat(session_id), None

        return await self._run(session_id, "Could not start story", action)

    async def start_story(self, session_id: str) -> StepResult:
        """First beat for generators that do not need a story type."""
        async def action(session: StorySession) -> _Outcome:
            generator = self.orchestrator.generator_for(session)
            if generator.capabilities.requires_story_type and session.story_type_id is None:
                raise phases.SessionStateError(f"Generator {generator.id} needs a story type first")
            self._require_state(session, ViewState.WARMUP, ViewState.AWAITING_BEAT)
            return await self.orchestrator.run_beat(session_id), None

        return await self._run(session_id, "Could not start story", action)

    # ------------------------------------------------------------------
    # Child input
    # ------------------------------------------------------------------

    async def send_message(self, session_id: str, text: str) -> StepResult:
        text = text.strip()
        if not text:
            raise phases.SessionStateError("Message is empty")

        async def action(session: StorySession) -> _Outcome:
            route = phases.route_child_input(session)
            if route is phases.InputRoute.TRAITS_ANSWER:
                return await self._answer_traits(session, text), None
            if route is phases.InputRoute.WARMUP_CHAT:
                return await self.orchestrator.warmup_reply(session_id, text), None

            self._require_state(session, ViewState.CHOOSING_OPTION, ViewState.AWAITING_BEAT)
            message = self.orchestrator.child_message(session, MessageKind.CHILD_MESSAGE, text)
            return await self.orchestrator.run_beat(session_id, user_message=message), None

        return await self._run(session_id, "Error sending message", action)

    async def _answer_traits(self, session: StorySession, text: str) -> list[ChatMessage]:
        slot = session.pending_character_traits
        answer = self.orchestrator.child_message(session, MessageKind.CHARACTER_TRAITS_ANSWER, text)
        batch = self._storage.batch()
        batch.append_message(session.id, answer)
        batch.update_session(session.id, phases.close_traits_question(session))
        if self._storage.get_character(slot.character_id) is not None:
            batch.update_character(slot.character_id, {"traits": ArrayUnion([text])})
        written = batch.commit()
        self._storage.log_event(session.id, "character.traits_answered", attributes={
            "characterId": slot.character_id,
        })
        return written + await self._continue_story(session.id)

    async def choose_option(self, session_id: str, option_id: str) -> StepResult:
        async def action(session: StorySession) -> _Outcome:
            view = self._require_state(session, ViewState.CHOOSING_OPTION)
            phases.require_option_choice(session)
            choice = _find_choice(view.canonical_options, option_id)
            if choice.is_more_option:
                return [await self.orchestrator.more_options(session_id)], None

            display = _find_choice(view.options, option_id).text
            message = self.orchestrator.child_message(
                session, MessageKind.CHILD_CHOICE, choice.text, choice.id,
                display=display if display != choice.text else None,
            )
            generator = self.orchestrator.generator_for(session)
            if choice.introduces_character and generator.capabilities.supports_character_introduction:
                return await self._introduce(session, choice, message)
            return await self._advance(session, message, choice.id), None

        return await self._run(session_id, "Error running beat", action)

    async def _advance(
        self,
        session: StorySession,
        message: ChatMessage | None,
        selected_option_id: str | None,
    ) -> list[ChatMessage]:
        """Commit the choice with its arc advance, then request what follows."""
        updates, step = phases.advance_arc(session, self._total_steps(session))
        batch = self._storage.batch()
        if message is not None:
            batch.append_message(session.id, message.model_copy(update={"reached_arc_end": step.reached_end}))
        written = batch.update_session(session.id, updates).commit()
        if step.reached_end:
            self._storage.log_event(session.id, "arc.completed", attributes={
                "totalSteps": self._total_steps(session),
            })
            logger.info("Session %s completed its arc", session.id)
        return written + await self._continue_story(session.id, selected_option_id)

    async def _introduce(self, session: StorySession, choice: Choice, message: ChatMessage) -> _Outcome:
        written = self._storage.append_messages(session.id, [message])
        intro = await self.introductions.start(session, choice, self._story_context(session))
        if intro is None:
            self._storage.log_event(session.id, "character.creation_failed", "warning", {"optionId": choice.id})
            notice = Notice(
                level="warning",
                title="Could not create character",
                description="The story will continue without the new character.",
            )
            # the choice message is already stored
            return written + await self._advance(session, None, choice.id), notice

        self.introductions.stage(self._storage.batch(), session, intro).commit()
        self._storage.log_event(session.id, "character.introduced", attributes={
            "characterId": intro.character_id, "optionId": choice.id,
        })
        return written, None

    async def continue_introduction(self, session_id: str) -> StepResult:
        async def action(session: StorySession) -> _Outcome:
            intro = session.pending_introduction
            if intro is None:
                raise phases.SessionStateError(f"Session {session_id} has no character introduction to continue")

            generator = self.orchestrator.generator_for(session)
            updates, step = phases.advance_arc(session, self._total_steps(session))
            self._storage.batch().update_session(session_id, {
                **updates, "pending_introduction": None,
            }).commit()
            session = self._storage.require_session(session_id)

            # an open traits question takes the next child message either way
            if session.pending_character_traits is not None:
                return [], None
            if generator.capabilities.asks_character_traits:
                if await self.introductions.ask_traits(session, intro):
                    return self._storage.get_messages(session_id)[-1:], None
            return await self._continue_story(session_id, intro.pending_option.id), None

        return await self._run(session_id, "Error continuing story", action)

    # ------------------------------------------------------------------
    # Endings and recovery
    # ------------------------------------------------------------------

    async def choose_ending(self, session_id: str, ending_id: str) -> StepResult:
        async def action(session: StorySession) -> _Outcome:
            if session.selected_ending_id is not None:
                raise phases.EndingAlreadyChosenError(f"Session {session_id} already has an ending")
            view = self._require_state(session, ViewState.CHOOSING_ENDING)
            choice = _find_choice(view.canonical_options, ending_id)
            display = _find_choice(view.options, ending_id).text
            message = self.orchestrator.child_message(
                session, MessageKind.CHILD_ENDING_CHOICE, choice.text, choice.id,
                display=display if display != choice.text else None,
            )
            batch = self._storage.batch().append_message(session_id, message)
            written = batch.update_session(
                session_id, phases.select_ending(session, choice.id, choice.text),
            ).commit()
            self._storage.log_event(session_id, "ending.chosen", attributes={"endingId": choice.id})
            notice = Notice(title="Ending selected", description="Great choice! Compiling your story...")
            return written, notice

        return await self._run(session_id, "Error choosing ending", action)

    async def more_options(self, session_id: str) -> StepResult:
        async def action(session: StorySession) -> _Outcome:
            self._require_state(session, ViewState.CHOOSING_OPTION)
            return [await self.orchestrator.more_options(session_id)], None

        return await self._run(session_id, "Could not load more options", action)

    async def resume(self, session_id: str) -> StepResult:
        """Re-request the beat or ending the session is waiting for."""
        async def action(session: StorySession) -> _Outcome:
            view = self._require_state(session, ViewState.AWAITING_BEAT, ViewState.AWAITING_ENDING)
            if view.state is ViewState.AWAITING_ENDING:
                return await self._continue_story(session_id), None
            last = self._storage.get_messages(session_id)[-1:]
            option_id = last[0].selected_option_id if last and last[0].kind is MessageKind.CHILD_CHOICE else None
            return await self.orchestrator.run_beat(session_id, selected_option_id=option_id), None

        return await self._run(session_id, "Error running beat", action)

    async def compile(self, session_id: str, output_type_id: str | None = None) -> StepResult:
        """Manual compile, for stories the automatic attempt could not finish."""
        async def action(session: StorySession) -> _Outcome:
            snapshot = self._storage.snapshot(session_id)
            if not is_finished(snapshot):
                raise phases.SessionStateError(f"Session {session_id} has no finished story to compile")
            preferred = output_type_id or (self.autocompile.default_output_type_id if self.autocompile else None)
            output_type = resolve_output_type(self._storage.get_output_types(), preferred)
            if output_type is None:
                raise phases.SessionStateError("No story output type is available")
            await self._api.compile(session_id, output_type.id)
            self._storage.batch().update_session(session_id, {"progress.compile_completed_at": utcnow()}).commit()
            self._storage.log_event(session_id, "compile.completed", attributes={
                "outputTypeId": output_type.id, "manual": True,
            })
            return [], Notice(title="Story compiled", description=f"Compiled as {output_type.name}.")

        return await self._run(session_id, "Compile failed", action)


def _find_choice(choices: list[Choice], choice_id: str) -> Choice:
    for choice in choices:
        if choice.id == choice_id:
            return choice
    raise phases.SessionStateError(f"Option {choice_id!r} is not on offer")

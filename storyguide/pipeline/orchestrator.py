"""Story generation orchestrator — one collaborator call, one atomic write.

Every operation follows the same flow:
  1. Load the session and check preconditions (phase, generator).
  2. Call the collaborator. A StoryApiError propagates before anything is
     written, so a failed call leaves the session exactly as it was.
  3. Extract actor ids from every returned text (header, question, options,
     final story, endings).
  4. Commit the new messages, the actor-set union, the debug scratch fields
     and any phase updates in a single Batch.

Message shapes per generator mode:
  beat      → beat_continuation + beat_options (two messages)
  gemini3/4 → one combined *_question message carrying header_text
  any mode  → *_final_story when the generator reports the story complete
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from storyguide.api import GenerationResult, StoryApi
from storyguide.models import (
    ChatMessage,
    Choice,
    GeneratorMode,
    MessageKind,
    Sender,
    StoryGenerator,
    StorySession,
    final_story_kind,
    question_kind,
)
from storyguide.pipeline import phases
from storyguide.placeholders import (
    ActorName,
    EntityResolver,
    StorageResolver,
    choice_texts,
    extract_actor_ids,
    replace_names_with_placeholders,
    resolve_choices,
    resolve_text,
)
from storyguide.storage import ArrayUnion, Storage, new_id

logger = logging.getLogger(__name__)

DEFAULT_QUESTION = "What happens next?"
ENDING_QUESTION = "Which ending do you like best?"


class StoryOrchestrator:
    def __init__(
        self,
        storage: Storage,
        api: StoryApi,
        resolver: EntityResolver | None = None,
    ) -> None:
        self._storage = storage
        self._api = api
        self._resolver = resolver or StorageResolver(storage)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def generator_for(self, session: StorySession) -> StoryGenerator:
        generator = self._storage.get_generator(session.generator_id)
        if generator is None:
            raise phases.SessionStateError(f"Unknown story generator {session.generator_id!r}")
        return generator

    def _resolved(self, text: str | None, given: str | None) -> str | None:
        """Display form: the collaborator's, else resolved locally."""
        if given:
            return given
        if not text:
            return None
        resolved = resolve_text(text, self._resolver)
        return resolved if resolved != text else None

    def _resolved_options(self, options: list[Choice], given: list[Choice]) -> list[Choice]:
        if given:
            return given
        if not extract_actor_ids(*choice_texts(options)):
            return []
        return resolve_choices(options, self._resolver)

    def canonical_child_text(self, session: StorySession, text: str) -> str:
        """Swap known actor names in child free text for their placeholders."""
        if not session.actors:
            return text
        entities = self._resolver.lookup(session.actors)
        names = [ActorName(id=i, display_name=e.display_name) for i, e in entities.items()]
        return replace_names_with_placeholders(text, names)

    def child_message(
        self,
        session: StorySession,
        kind: MessageKind,
        text: str,
        selected_option_id: str | None = None,
        display: str | None = None,
    ) -> ChatMessage:
        if display is None:
            canonical = self.canonical_child_text(session, text)
            display = text if canonical != text else None
            text = canonical
        return ChatMessage(
            id=new_id(),
            sender=Sender.CHILD,
            kind=kind,
            text=text,
            text_resolved=display,
            selected_option_id=selected_option_id,
        )

    @staticmethod
    def _debug_fields(flow: str, debug: dict[str, Any] | None) -> dict[str, Any]:
        prompt = debug.get("prompt") if debug else None
        return {
            "debug.last_flow": flow,
            "debug.last_prompt": prompt if isinstance(prompt, str) else None,
            "debug.last_flow_debug": debug,
        }

    def _commit(
        self,
        session: StorySession,
        messages: Iterable[ChatMessage],
        fields: dict[str, Any],
        texts: Iterable[str | None],
    ) -> list[ChatMessage]:
        actors = extract_actor_ids(*texts)
        batch = self._storage.batch()
        for message in messages:
            batch.append_message(session.id, message)
        batch.update_session(session.id, {**fields, "actors": ArrayUnion(actors)})
        written = batch.commit()
        if actors:
            logger.debug("Session %s actors += %s", session.id, actors)
        return written

    # ------------------------------------------------------------------
    # Beats
    # ------------------------------------------------------------------

    def _beat_messages(self, mode: GeneratorMode, result: GenerationResult) -> list[ChatMessage]:
        if result.is_story_complete:
            text = result.final_story or result.header_text or ""
            return [ChatMessage(
                id=new_id(),
                sender=Sender.ASSISTANT,
                kind=final_story_kind(mode),
                text=text,
                text_resolved=self._resolved(text, result.final_story_resolved),
            )]

        question = result.question or DEFAULT_QUESTION
        options_message = ChatMessage(
            id=new_id(),
            sender=Sender.ASSISTANT,
            kind=question_kind(mode),
            text=question,
            text_resolved=self._resolved(question, result.question_resolved),
            options=result.options,
            options_resolved=self._resolved_options(result.options, result.options_resolved),
        )
        if mode is not GeneratorMode.BEAT:
            options_message.header_text = result.header_text
            options_message.header_text_resolved = self._resolved(
                result.header_text, result.header_text_resolved,
            )
            return [options_message]

        messages = []
        if result.header_text:
            messages.append(ChatMessage(
                id=new_id(),
                sender=Sender.ASSISTANT,
                kind=MessageKind.BEAT_CONTINUATION,
                text=result.header_text,
                text_resolved=self._resolved(result.header_text, result.header_text_resolved),
            ))
        messages.append(options_message)
        return messages

    async def run_beat(
        self,
        session_id: str,
        *,
        selected_option_id: str | None = None,
        user_message: ChatMessage | None = None,
    ) -> list[ChatMessage]:
        """Generate the next beat and append it.

        user_message, when given, is the child's free text: it is sent to the
        generator in canonical form and committed in the same batch as the
        reply.
        """
        session = self._storage.require_session(session_id)
        generator = self.generator_for(session)
        updates = phases.normalize_for_beat(session)

        result = await self._api.generate(
            generator.api_endpoint,
            session_id=session_id,
            selected_option_id=selected_option_id,
            user_message=user_message.text if user_message else None,
        )

        messages = self._beat_messages(generator.mode, result)
        if user_message is not None:
            messages.insert(0, user_message)
        texts = [
            result.header_text, result.question, result.final_story,
            *choice_texts(result.options),
        ]
        written = self._commit(
            session, messages, {**updates, **self._debug_fields(generator.id, result.debug)}, texts,
        )
        logger.info(
            "Beat for session %s: %s",
            session_id, ", ".join(m.kind.value for m in written),
        )
        return written

    async def more_options(self, session_id: str) -> ChatMessage:
        """Re-query the generator and replace the latest options in place."""
        session = self._storage.require_session(session_id)
        generator = self.generator_for(session)
        if not generator.capabilities.supports_more_options:
            raise phases.SessionStateError(f"Generator {generator.id} does not offer more options")
        latest = next(
            (m for m in reversed(self._storage.get_messages(session_id)) if m.kind.has_options),
            None,
        )
        if latest is None or not latest.kind.is_story_options:
            raise phases.SessionStateError(f"Session {session_id} has no story options to replace")

        result = await self._api.generate(generator.api_endpoint, session_id=session_id, more_options=True)
        if not result.options:
            raise phases.SessionStateError("Generator returned no additional options")

        update: dict[str, Any] = {
            "options": result.options,
            "options_resolved": self._resolved_options(result.options, result.options_resolved),
        }
        if result.question:
            update["text"] = result.question
            update["text_resolved"] = self._resolved(result.question, result.question_resolved)
        replacement = latest.model_copy(update=update)

        batch = self._storage.batch()
        batch.replace_message(session_id, replacement)
        batch.update_session(session_id, {
            "actors": ArrayUnion(extract_actor_ids(result.question, *choice_texts(result.options))),
            **self._debug_fields(f"{generator.id}.more_options", result.debug),
        })
        (written,) = batch.commit()
        logger.info("Replaced options message %s in session %s", written.id, session_id)
        return written

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    async def run_ending(self, session_id: str) -> list[ChatMessage]:
        """Request ending choices and move the session to the ending phase."""
        session = self._storage.require_session(session_id)
        updates = phases.enter_ending(session)

        result = await self._api.ending(session_id)

        options = [Choice(id=e.id, text=e.text) for e in result.endings]
        given = [Choice(id=e.id, text=e.text_resolved) for e in result.endings if e.text_resolved]
        message = ChatMessage(
            id=new_id(),
            sender=Sender.ASSISTANT,
            kind=MessageKind.ENDING_OPTIONS,
            text=ENDING_QUESTION,
            options=options,
            options_resolved=self._resolved_options(
                options, given if len(given) == len(options) else [],
            ),
        )
        written = self._commit(
            session, [message], {**updates, **self._debug_fields("ending", result.debug)},
            [e.text for e in result.endings],
        )
        logger.info("Session %s entered the ending phase with %d endings", session_id, len(options))
        return written

    # ------------------------------------------------------------------
    # Warmup
    # ------------------------------------------------------------------

    async def warmup_reply(self, session_id: str, text: str) -> list[ChatMessage]:
        """Append the child's warmup message and the guide's reply together."""
        session = self._storage.require_session(session_id)
        if phases.route_child_input(session) is not phases.InputRoute.WARMUP_CHAT:
            raise phases.PhaseError(f"Session {session_id} is past warmup")
        child = self.child_message(session, MessageKind.CHILD_MESSAGE, text)

        result = await self._api.warmup_reply(session_id, child.text)

        reply = ChatMessage(
            id=new_id(),
            sender=Sender.ASSISTANT,
            kind=MessageKind.WARMUP_REPLY,
            text=result.assistant_text,
            text_resolved=self._resolved(result.assistant_text, result.assistant_text_resolved),
        )
        return self._commit(
            session, [child, reply], self._debug_fields("warmup", None),
            [child.text, result.assistant_text],
        )

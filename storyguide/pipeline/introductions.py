"""Character introduction workflow.

When a chosen option introduces a character, the character is created
through the collaborator first and the story pauses on an introduction card
until the child continues. Creation failure is not fatal: it is logged and
the story carries on as if the option were ordinary.

Avatar generation is started as a background asyncio task that nobody
awaits. Its outcome shows up later as an avatar_url on the character
document, never as a return value here.
"""

from __future__ import annotations

import asyncio
import logging

from storyguide.api import CharacterRequest, StoryApi, StoryApiError
from storyguide.models import (
    Character,
    ChatMessage,
    Choice,
    MessageKind,
    PendingIntroduction,
    Sender,
    StorySession,
)
from storyguide.pipeline import phases
from storyguide.storage import ArrayUnion, Batch, Storage, new_id

logger = logging.getLogger(__name__)

DEFAULT_NAME = "New Friend"
DEFAULT_LABEL = "A new friend"


class CharacterIntroductions:
    def __init__(self, storage: Storage, api: StoryApi) -> None:
        self._storage = storage
        self._api = api
        self._avatar_jobs: set[asyncio.Task] = set()

    @property
    def avatar_jobs(self) -> frozenset[asyncio.Task]:
        """Avatar tasks still running."""
        return frozenset(self._avatar_jobs)

    async def start(
        self,
        session: StorySession,
        choice: Choice,
        story_context: str = "",
    ) -> PendingIntroduction | None:
        """Create the character a choice introduces.

        Returns the pause to persist, or None when creation failed.
        """
        name = choice.new_character_name or DEFAULT_NAME
        label = choice.new_character_label or DEFAULT_LABEL
        character_type = choice.new_character_type or "Friend"
        request = CharacterRequest(
            session_id=session.id,
            parent_uid=session.parent_uid,
            child_id=session.child_id,
            character_label=label,
            character_name=name,
            character_type=character_type,
            story_context=story_context,
        )
        try:
            result = await self._api.create_character(request)
        except StoryApiError as e:
            logger.warning("Character creation failed for session %s option %s: %s", session.id, choice.id, e)
            return None

        logger.info("Created character %s (%s) for session %s", result.character_id, name, session.id)
        self.avatar_job(result.character_id)
        return PendingIntroduction(
            character_id=result.character_id,
            character_name=result.character.display_name or name,
            character_label=label,
            character_type=character_type,
            pending_option=choice,
        )

    def stage(self, batch: Batch, session: StorySession, intro: PendingIntroduction) -> Batch:
        """Add the pause and the character mirror to a batch."""
        existing = self._storage.get_character(intro.character_id)
        if existing is None:
            batch.set_character(Character(
                id=intro.character_id,
                display_name=intro.character_name,
                label=intro.character_label,
                character_type=intro.character_type,
                owner_child_id=session.child_id,
                parent_uid=session.parent_uid,
                session_id=session.id,
            ))
        batch.update_session(session.id, {
            "pending_introduction": intro,
            "supporting_character_ids": ArrayUnion([intro.character_id]),
        })
        return batch

    def avatar_job(self, character_id: str) -> asyncio.Task:
        """Start avatar generation in the background and return its handle."""
        task = asyncio.create_task(self._api.generate_avatar(character_id), name=f"avatar-{character_id}")
        self._avatar_jobs.add(task)

        def _done(t: asyncio.Task) -> None:
            self._avatar_jobs.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("Avatar generation failed for character %s: %s", character_id, exc)

        task.add_done_callback(_done)
        return task

    async def ask_traits(self, session: StorySession, intro: PendingIntroduction) -> bool:
        """Ask the child to describe the new character.

        Returns True when the question is now open. An already open question
        keeps the slot and nothing new is asked.
        """
        if session.pending_character_traits is not None:
            logger.info(
                "Session %s already waits for traits of %s; not asking about %s",
                session.id, session.pending_character_traits.character_id, intro.character_id,
            )
            return False
        try:
            result = await self._api.character_traits(session.id, intro.character_id)
        except StoryApiError as e:
            logger.warning("Traits question failed for character %s: %s", intro.character_id, e)
            return False

        batch = self._storage.batch()
        batch.append_message(session.id, ChatMessage(
            id=new_id(),
            sender=Sender.ASSISTANT,
            kind=MessageKind.CHARACTER_TRAITS_QUESTION,
            text=result.question,
        ))
        batch.update_session(session.id, phases.open_traits_question(
            session, intro.character_id, intro.character_label, result.question,
        ))
        if result.suggested_traits and self._storage.get_character(intro.character_id) is not None:
            batch.update_character(intro.character_id, {"traits": ArrayUnion(result.suggested_traits)})
        batch.commit()
        return True

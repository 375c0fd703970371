"""Auto-compile trigger.

Listens to session snapshots and compiles a finished story exactly once per
session. Snapshots arrive after every write, so evaluate() is called many
times for the same session; the attempted set is what keeps it to one call.

A session is finished when its latest assistant message is a final story, or
when the child has picked an ending.

Compilation needs an output type. When none is available yet the trigger
defers: nothing is called and the session is not marked, so a later
snapshot can still compile it. A failed compile is marked anyway and leaves a
warning notice for the engine to hand to the user.
"""

from __future__ import annotations

import logging
from enum import Enum

from storyguide.api import StoryApi, StoryApiError
from storyguide.feed import SessionFeed
from storyguide.models import ChatMessage, Notice, Sender, StoryOutputType, utcnow
from storyguide.storage import Snapshot, Storage

logger = logging.getLogger(__name__)


class CompileOutcome(str, Enum):
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    COMPILED = "compiled"
    FAILED = "failed"


COMPILE_FAILED_NOTICE = Notice(
    level="warning",
    title="Story saved",
    description="Your story was saved but may need manual compilation.",
)


def is_finished(snapshot: Snapshot) -> bool:
    latest: ChatMessage | None = next(
        (m for m in reversed(snapshot.messages) if m.sender is Sender.ASSISTANT), None,
    )
    if latest is not None and latest.kind.is_final_story:
        return True
    return snapshot.session.selected_ending_id is not None


def resolve_output_type(
    output_types: list[StoryOutputType],
    preferred_id: str | None = None,
) -> StoryOutputType | None:
    """The preferred live output type, else the first live one."""
    live = [t for t in output_types if t.status == "live"]
    for output_type in live:
        if output_type.id == preferred_id:
            return output_type
    return live[0] if live else None


class AutoCompileTrigger:
    def __init__(
        self,
        storage: Storage,
        api: StoryApi,
        default_output_type_id: str | None = None,
    ) -> None:
        self._storage = storage
        self._api = api
        self.default_output_type_id = default_output_type_id
        self._attempted: set[str] = set()
        self._notices: dict[str, Notice] = {}

    def attach(self, feed: SessionFeed):
        """Subscribe to every session on the feed. Returns the unsubscribe callable."""
        async def _listener(snapshot: Snapshot) -> None:
            await self.evaluate(snapshot)

        return feed.subscribe(_listener)

    def attempted(self, session_id: str) -> bool:
        return session_id in self._attempted

    def take_notice(self, session_id: str) -> Notice | None:
        """Pop the notice left by the last compile attempt, if any."""
        return self._notices.pop(session_id, None)

    async def evaluate(self, snapshot: Snapshot) -> CompileOutcome:
        session = snapshot.session
        if session.id in self._attempted:
            return CompileOutcome.SKIPPED
        if session.progress.compile_completed_at is not None:
            self._attempted.add(session.id)
            return CompileOutcome.SKIPPED
        if not is_finished(snapshot):
            return CompileOutcome.SKIPPED

        output_type = resolve_output_type(self._storage.get_output_types(), self.default_output_type_id)
        if output_type is None:
            logger.info("Session %s is finished but no output type is available; deferring compile", session.id)
            return CompileOutcome.DEFERRED

        self._attempted.add(session.id)
        try:
            result = await self._api.compile(session.id, output_type.id)
        except StoryApiError as e:
            logger.warning("Auto-compile failed for session %s: %s", session.id, e)
            self._storage.log_event(session.id, "compile.failed", "error", {"error": str(e)})
            self._notices[session.id] = COMPILE_FAILED_NOTICE
            return CompileOutcome.FAILED

        self._storage.batch().update_session(
            session.id, {"progress.compile_completed_at": utcnow()},
        ).commit()
        self._storage.log_event(session.id, "compile.completed", attributes={
            "outputTypeId": output_type.id, "storyId": result.story_id,
        })
        logger.info("Compiled session %s as %s", session.id, output_type.id)
        return CompileOutcome.COMPILED

"""Snapshot feed — the live-subscription adapter over storage.

Writers publish a session id after committing; the feed reads one consistent
snapshot and hands it to every subscribed listener in registration order.
Listeners are async and run one after another; the feed never spawns tasks.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from storyguide.storage import Snapshot, Storage

logger = logging.getLogger(__name__)

Listener = Callable[[Snapshot], Awaitable[None]]


class SessionFeed:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._listeners: list[tuple[str | None, Listener]] = []

    def subscribe(self, listener: Listener, session_id: str | None = None) -> Callable[[], None]:
        """Register a listener for one session, or every session when session_id is None.

        Returns a callable that removes the subscription.
        """
        entry = (session_id, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    async def publish(self, session_id: str) -> Snapshot:
        snapshot = self._storage.snapshot(session_id)
        for target, listener in list(self._listeners):
            if target is not None and target != session_id:
                continue
            try:
                await listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed for session %s", session_id)
        return snapshot

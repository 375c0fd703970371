"""Story session endpoints: create, inspect, and every child action.

Action endpoints return a step result:
  {"ok": bool, "notice": Notice | null, "view": {...}, "messages": [...]}

ok=false means the story collaborator failed; the session is unchanged and
the same action (or /resume) can be retried. State errors (wrong phase,
option not on offer, ending already chosen) and busy sessions are 409.
"""

from collections.abc import Awaitable
from typing import Any

from fastapi import APIRouter, HTTPException

from backend import services
from storyguide.models import ChatMessage
from storyguide.pipeline import SessionBusyError, SessionStateError, SessionView, StepResult
from storyguide.storage import SessionNotFoundError

from .models import (
    ChooseEnding,
    ChooseOption,
    CompileBody,
    CreateSession,
    SelectStoryType,
    SendMessage,
)

router = APIRouter()


def _message_dict(message: ChatMessage) -> dict[str, Any]:
    data = message.model_dump(mode="json")
    data["display_text"] = message.display_text
    data["display_options"] = [c.model_dump(mode="json") for c in message.display_options]
    return data


def _view_dict(view: SessionView) -> dict[str, Any]:
    latest = view.latest_assistant
    return {
        "state": view.state.value,
        "phase": view.phase.value,
        "needs_story_type": view.needs_story_type,
        "accepts_free_text": view.accepts_free_text,
        "text": latest.display_text if latest else None,
        "header_text": (latest.header_text_resolved or latest.header_text) if latest else None,
        "options": [c.model_dump(mode="json") for c in view.options],
        "arc_step_index": view.arc_step_index,
        "message_count": view.message_count,
    }


def _session_or_404(session_id: str):
    session = services.storage().get_session(session_id)
    if not session:
        raise HTTPException(404, "Session not found")
    return session


async def _act(step: Awaitable[StepResult]) -> dict[str, Any]:
    try:
        result = await step
    except SessionNotFoundError:
        raise HTTPException(404, "Session not found")
    except (SessionStateError, SessionBusyError) as e:
        raise HTTPException(409, str(e))
    return {
        "ok": result.ok,
        "notice": result.notice.model_dump() if result.notice else None,
        "view": _view_dict(result.view),
        "messages": [_message_dict(m) for m in result.messages],
    }


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.get("/sessions")
async def list_sessions(child_id: str | None = None):
    """List sessions, optionally for one child."""
    return services.storage().list_sessions(child_id)


@router.post("/sessions", status_code=201)
async def create_session(body: CreateSession):
    """Start a new session in the warmup phase."""
    try:
        session = await services.engine().create_session(
            body.child_id, body.parent_uid, body.generator_id, body.story_title,
        )
    except SessionStateError as e:
        raise HTTPException(400, str(e))
    return session


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    """Get a session with its current view."""
    session = _session_or_404(session_id)
    return {
        "session": session,
        "view": _view_dict(services.engine().view(session_id)),
        "busy": services.engine().is_busy(session_id),
    }


@router.get("/sessions/{session_id}/messages")
async def get_messages(session_id: str):
    """Get the message log in order, with display forms."""
    _session_or_404(session_id)
    return [_message_dict(m) for m in services.storage().get_messages(session_id)]


@router.get("/sessions/{session_id}/events")
async def get_events(session_id: str):
    """Diagnostic event log for a session."""
    _session_or_404(session_id)
    return services.storage().get_events(session_id)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@router.post("/sessions/{session_id}/story-type")
async def select_story_type(session_id: str, body: SelectStoryType):
    """Pick the story type and request the first beat."""
    return await _act(services.engine().select_story_type(session_id, body.story_type_id))


@router.post("/sessions/{session_id}/start")
async def start_story(session_id: str):
    """Request the first beat for generators without story types."""
    return await _act(services.engine().start_story(session_id))


@router.post("/sessions/{session_id}/messages")
async def send_message(session_id: str, body: SendMessage):
    """Child free text: warmup chat, traits answer or story message."""
    return await _act(services.engine().send_message(session_id, body.text))


@router.post("/sessions/{session_id}/choices")
async def choose_option(session_id: str, body: ChooseOption):
    return await _act(services.engine().choose_option(session_id, body.option_id))


@router.post("/sessions/{session_id}/introduction/continue")
async def continue_introduction(session_id: str):
    return await _act(services.engine().continue_introduction(session_id))


@router.post("/sessions/{session_id}/endings")
async def choose_ending(session_id: str, body: ChooseEnding):
    return await _act(services.engine().choose_ending(session_id, body.ending_id))


@router.post("/sessions/{session_id}/more-options")
async def more_options(session_id: str):
    return await _act(services.engine().more_options(session_id))


@router.post("/sessions/{session_id}/resume")
async def resume(session_id: str):
    """Retry the beat or ending the session is waiting for."""
    return await _act(services.engine().resume(session_id))


@router.post("/sessions/{session_id}/compile")
async def compile_story(session_id: str, body: CompileBody | None = None):
    """Manually compile a finished story."""
    output_type_id = body.output_type_id if body else None
    return await _act(services.engine().compile(session_id, output_type_id))

"""End-to-end session flows through SessionEngine with the stub collaborator."""

import asyncio

import pytest

from conftest import beat, final_story
from storyguide.models import Choice, MessageKind, Phase, Sender
from storyguide.pipeline import (
    EndingAlreadyChosenError,
    PhaseError,
    SessionBusyError,
    SessionStateError,
    ViewState,
)
from storyguide.pipeline.autocompile import COMPILE_FAILED_NOTICE

MEET_FIDO = Choice(
    id="meet",
    text="Say hello to the puppy",
    introduces_character=True,
    new_character_name="Fido",
    new_character_label="a curious puppy",
    new_character_type="Pet",
)


async def _story_started(engine, story_type) -> str:
    session = await engine.create_session("maya", "parent-1")
    result = await engine.select_story_type(session.id, story_type.id)
    assert result.ok
    return session.id


def _kinds(storage, session_id) -> list[MessageKind]:
    return [m.kind for m in storage.get_messages(session_id)]


# ---------------------------------------------------------------------------
# Setup and warmup
# ---------------------------------------------------------------------------

class TestSetup:
    async def test_new_session_starts_in_warmup(self, engine, storage, child) -> None:
        session = await engine.create_session("maya", "parent-1")
        view = engine.view(session.id)
        assert view.state is ViewState.WARMUP
        assert view.needs_story_type
        assert storage.get_events(session.id)[0]["event"] == "session.created"

    async def test_unknown_generator_rejected(self, engine) -> None:
        with pytest.raises(SessionStateError):
            await engine.create_session("maya", "parent-1", generator_id="nope")

    async def test_warmup_chat(self, engine, storage, child) -> None:
        session = await engine.create_session("maya", "parent-1")
        result = await engine.send_message(session.id, "  I like dogs  ")

        assert result.ok
        assert [m.sender for m in result.messages] == [Sender.CHILD, Sender.ASSISTANT]
        assert result.messages[0].text == "I like dogs"
        assert result.view.state is ViewState.WARMUP

    async def test_empty_message_rejected(self, engine, child) -> None:
        session = await engine.create_session("maya", "parent-1")
        with pytest.raises(SessionStateError):
            await engine.send_message(session.id, "   ")

    async def test_select_story_type_runs_first_beat(self, engine, storage, api, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)

        session = storage.get_session(session_id)
        assert session.story_title == "Maya Forest Walk"
        assert session.current_phase is Phase.STORY
        assert session.arc_step_index == 0
        assert engine.view(session_id).state is ViewState.CHOOSING_OPTION
        assert len(api.calls_to("generate")) == 1

    async def test_beat_generator_needs_story_type(self, engine, child) -> None:
        session = await engine.create_session("maya", "parent-1")
        with pytest.raises(SessionStateError):
            await engine.start_story(session.id)

    async def test_story_type_chosen_only_once(self, engine, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        with pytest.raises(SessionStateError):
            await engine.select_story_type(session_id, story_type.id)


# ---------------------------------------------------------------------------
# Arc walk and endings
# ---------------------------------------------------------------------------

class TestArcToEnding:
    async def test_three_step_arc_requests_ending_once(self, engine, storage, api, child, story_type, output_type) -> None:
        session_id = await _story_started(engine, story_type)

        first = await engine.choose_option(session_id, "left")
        assert storage.get_session(session_id).arc_step_index == 1
        assert first.view.state is ViewState.CHOOSING_OPTION

        await engine.choose_option(session_id, "right")
        assert storage.get_session(session_id).arc_step_index == 2

        last = await engine.choose_option(session_id, "left")
        assert last.view.state is ViewState.CHOOSING_ENDING
        assert len(api.calls_to("generate")) == 3
        assert len(api.calls_to("ending")) == 1

        session = storage.get_session(session_id)
        assert session.current_phase is Phase.ENDING
        assert session.arc_step_index == 2
        choices = [m for m in storage.get_messages(session_id) if m.kind is MessageKind.CHILD_CHOICE]
        assert [m.reached_arc_end for m in choices] == [False, False, True]
        events = [e["event"] for e in storage.get_events(session_id)]
        assert events.count("arc.completed") == 1
        assert "ending.presented" in events

    async def test_choose_ending_compiles_once(self, engine, storage, api, child, story_type, output_type) -> None:
        session_id = await _story_started(engine, story_type)
        for option in ("left", "right", "left"):
            await engine.choose_option(session_id, option)

        result = await engine.choose_ending(session_id, "happy")

        assert result.notice.title == "Ending selected"
        assert result.view.state is ViewState.COMPLETE
        session = storage.get_session(session_id)
        assert session.selected_ending_id == "happy"
        assert session.selected_ending_text == "Everyone has a picnic"
        assert session.progress.compile_completed_at is not None
        assert api.calls_to("compile") == [{"session_id": session_id, "output_type_id": "picture-book"}]

    async def test_ending_is_write_once(self, engine, storage, child, story_type, output_type) -> None:
        session_id = await _story_started(engine, story_type)
        for option in ("left", "right", "left"):
            await engine.choose_option(session_id, option)
        await engine.choose_ending(session_id, "happy")

        with pytest.raises(EndingAlreadyChosenError):
            await engine.choose_ending(session_id, "sleepy")
        assert storage.get_session(session_id).selected_ending_id == "happy"
        assert not engine.is_busy(session_id)

    async def test_free_text_rejected_while_choosing_ending(self, engine, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        for option in ("left", "right", "left"):
            await engine.choose_option(session_id, option)
        with pytest.raises(PhaseError):
            await engine.send_message(session_id, "a dragon!")

    async def test_compile_failure_notice_wins(self, engine, storage, api, child, story_type, output_type) -> None:
        session_id = await _story_started(engine, story_type)
        for option in ("left", "right", "left"):
            await engine.choose_option(session_id, option)
        api.fail("compile", "printer jam")

        result = await engine.choose_ending(session_id, "happy")

        assert result.ok
        assert result.notice == COMPILE_FAILED_NOTICE
        assert result.view.state is ViewState.ENDING_CHOSEN

        manual = await engine.compile(session_id)
        assert manual.notice.title == "Story compiled"
        assert manual.view.state is ViewState.COMPLETE

    async def test_story_message_runs_beat(self, engine, storage, api, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        result = await engine.send_message(session_id, "Let's find a dragon")

        assert result.messages[0].kind is MessageKind.CHILD_MESSAGE
        assert api.calls_to("generate")[-1]["user_message"] == "Let's find a dragon"
        assert storage.get_session(session_id).arc_step_index == 0


# ---------------------------------------------------------------------------
# Failures and recovery
# ---------------------------------------------------------------------------

class TestFailures:
    async def test_beat_failure_becomes_notice_and_resume_retries(self, engine, storage, api, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        api.fail("generate", "model overloaded")

        failed = await engine.choose_option(session_id, "left")

        assert not failed.ok
        assert failed.notice.level == "error"
        assert failed.notice.title == "Error running beat"
        assert "model overloaded" in failed.notice.description
        assert failed.view.state is ViewState.AWAITING_BEAT
        assert storage.get_session(session_id).arc_step_index == 1

        resumed = await engine.resume(session_id)
        assert resumed.ok
        assert resumed.view.state is ViewState.CHOOSING_OPTION
        assert api.calls_to("generate")[-1]["selected_option_id"] == "left"
        assert storage.get_session(session_id).arc_step_index == 1

    async def test_ending_failure_resumes_into_endings(self, engine, api, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        await engine.choose_option(session_id, "left")
        await engine.choose_option(session_id, "right")
        api.fail("ending")

        failed = await engine.choose_option(session_id, "left")
        assert failed.view.state is ViewState.AWAITING_ENDING

        resumed = await engine.resume(session_id)
        assert resumed.view.state is ViewState.CHOOSING_ENDING
        assert len(api.calls_to("ending")) == 2

    async def test_resume_only_when_waiting(self, engine, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        with pytest.raises(SessionStateError):
            await engine.resume(session_id)

    async def test_second_action_while_busy(self, engine, api, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        api.gate = asyncio.Event()
        first = asyncio.create_task(engine.choose_option(session_id, "left"))
        while not engine.is_busy(session_id):
            await asyncio.sleep(0)

        with pytest.raises(SessionBusyError):
            await engine.choose_option(session_id, "right")

        api.gate.set()
        result = await first
        assert result.ok
        assert not engine.is_busy(session_id)

    async def test_unknown_option(self, engine, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        with pytest.raises(SessionStateError):
            await engine.choose_option(session_id, "nope")
        assert not engine.is_busy(session_id)


# ---------------------------------------------------------------------------
# Character introductions
# ---------------------------------------------------------------------------

class TestIntroductions:
    async def test_creation_happens_before_arc_advance(self, engine, storage, api, child, story_type) -> None:
        api.queue("generate", beat(options=[MEET_FIDO, Choice(id="stay", text="Stay home")]))
        session_id = await _story_started(engine, story_type)

        result = await engine.choose_option(session_id, "meet")

        assert result.view.state is ViewState.CHARACTER_INTRO
        session = storage.get_session(session_id)
        assert session.arc_step_index == 0
        assert session.pending_introduction.character_name == "Fido"
        assert session.supporting_character_ids == ["char-1"]
        assert storage.get_character("char-1").label == "a curious puppy"
        assert len(api.calls_to("generate")) == 1

        with pytest.raises(SessionStateError):
            await engine.choose_option(session_id, "stay")

    async def test_creation_failure_still_advances(self, engine, storage, api, child, story_type) -> None:
        api.queue("generate", beat(options=[MEET_FIDO]))
        api.fail("create_character")
        session_id = await _story_started(engine, story_type)

        result = await engine.choose_option(session_id, "meet")

        assert result.ok
        assert result.notice.level == "warning"
        assert result.view.state is ViewState.CHOOSING_OPTION
        assert storage.get_session(session_id).arc_step_index == 1
        assert storage.get_session(session_id).pending_introduction is None
        assert _kinds(storage, session_id).count(MessageKind.CHILD_CHOICE) == 1

    async def test_traits_question_then_answer(self, engine, storage, api, child, story_type) -> None:
        api.queue("generate", beat(options=[MEET_FIDO]))
        session_id = await _story_started(engine, story_type)
        await engine.choose_option(session_id, "meet")

        asked = await engine.continue_introduction(session_id)

        assert asked.view.state is ViewState.TRAITS_QUESTION
        assert asked.messages[-1].kind is MessageKind.CHARACTER_TRAITS_QUESTION
        session = storage.get_session(session_id)
        assert session.arc_step_index == 1
        assert session.pending_introduction is None
        assert len(api.calls_to("generate")) == 1

        with pytest.raises(SessionStateError):
            await engine.choose_option(session_id, "meet")

        answered = await engine.send_message(session_id, "fluffy and brave")

        assert answered.messages[0].kind is MessageKind.CHARACTER_TRAITS_ANSWER
        assert answered.view.state is ViewState.CHOOSING_OPTION
        assert storage.get_session(session_id).pending_character_traits is None
        assert storage.get_character("char-1").traits == ["friendly", "fluffy and brave"]
        assert len(api.calls_to("generate")) == 2

    async def test_gemini_introduction_continues_with_beat(self, engine, storage, api, child, output_type) -> None:
        session = await engine.create_session("maya", "parent-1", generator_id="gemini3")
        api.queue("generate", beat(options=[MEET_FIDO]))
        started = await engine.start_story(session.id)
        assert started.view.state is ViewState.CHOOSING_OPTION

        await engine.choose_option(session.id, "meet")
        api.queue("generate", final_story("$$char-1$$ and $$maya$$ went home."))
        result = await engine.continue_introduction(session.id)

        assert api.calls_to("character_traits") == []
        assert api.calls_to("generate")[-1]["selected_option_id"] == "meet"
        assert result.view.state is ViewState.COMPLETE
        assert storage.get_session(session.id).actors == ["char-1", "maya"]
        assert len(api.calls_to("compile")) == 1

    async def test_continue_without_introduction(self, engine, child, story_type) -> None:
        session_id = await _story_started(engine, story_type)
        with pytest.raises(SessionStateError):
            await engine.continue_introduction(session_id)


# ---------------------------------------------------------------------------
# More options
# ---------------------------------------------------------------------------

class TestMoreOptions:
    async def test_more_option_choice_replaces_options(self, engine, storage, api, child) -> None:
        session = await engine.create_session("maya", "parent-1", generator_id="gemini4")
        api.queue("generate", beat(options=[
            Choice(id="a", text="Climb"), Choice(id="more", text="Something else", is_more_option=True),
        ]))
        await engine.start_story(session.id)
        count = len(storage.get_messages(session.id))

        api.queue("generate", beat(options=[Choice(id="b", text="Dig")]))
        result = await engine.choose_option(session.id, "more")

        assert [c.id for c in result.view.options] == ["b"]
        assert len(storage.get_messages(session.id)) == count
        assert storage.get_session(session.id).arc_step_index == 0

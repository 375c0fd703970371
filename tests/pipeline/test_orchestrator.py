"""Tests for storyguide.pipeline.orchestrator — collaborator call + atomic write."""

import pytest

from conftest import beat, final_story
from storyguide.api import EndingOption, EndingResult, GenerationResult, StoryApiError, WarmupResult
from storyguide.models import Character, Choice, MessageKind, Phase, Sender, StorySession
from storyguide.pipeline.orchestrator import StoryOrchestrator
from storyguide.pipeline.phases import PhaseError, SessionStateError


@pytest.fixture
def orchestrator(storage, api) -> StoryOrchestrator:
    return StoryOrchestrator(storage, api)


def _new_session(storage, generator_id="beat", **kw) -> StorySession:
    return storage.create_session(StorySession(
        id="s1", child_id="maya", parent_uid="p", generator_id=generator_id, **kw,
    ))


# ---------------------------------------------------------------------------
# run_beat
# ---------------------------------------------------------------------------

class TestRunBeat:
    async def test_beat_mode_appends_continuation_and_options(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        written = await orchestrator.run_beat("s1")

        assert [m.kind for m in written] == [MessageKind.BEAT_CONTINUATION, MessageKind.BEAT_OPTIONS]
        assert written[1].options[0].id == "left"
        assert api.calls_to("generate")[0]["endpoint"] == "/api/storyBeat"

    async def test_normalizes_warmup_session(self, storage, orchestrator) -> None:
        _new_session(storage)
        await orchestrator.run_beat("s1")
        session = storage.get_session("s1")
        assert session.current_phase is Phase.STORY
        assert session.arc_step_index == 0
        assert session.progress.warmup_completed_at is not None

    async def test_gemini_mode_single_combined_message(self, storage, orchestrator) -> None:
        _new_session(storage, generator_id="gemini4")
        written = await orchestrator.run_beat("s1")
        assert len(written) == 1
        assert written[0].kind is MessageKind.GEMINI4_QUESTION
        assert written[0].header_text == "The sun came up over the hill."

    async def test_story_complete_appends_final_story(self, storage, api, orchestrator) -> None:
        _new_session(storage, generator_id="gemini3")
        api.queue("generate", final_story("The end of $$maya$$'s walk."))
        written = await orchestrator.run_beat("s1")
        assert [m.kind for m in written] == [MessageKind.GEMINI3_FINAL_STORY]
        assert storage.get_session("s1").actors == ["maya"]

    async def test_actors_from_every_text_committed_with_messages(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        api.queue("generate", beat(
            header="$$maya$$ saw $$fido$$.",
            question="Where should $$maya$$ go?",
            options=[Choice(id="a", text="Follow $$owl$$"), Choice(id="b", text="Stay")],
        ))
        await orchestrator.run_beat("s1")
        assert storage.get_session("s1").actors == ["maya", "fido", "owl"]

    async def test_actor_set_only_grows(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        api.queue("generate", beat(header="$$fido$$ ran"), beat(header="Nobody here"), beat(header="$$owl$$ hooted"))
        history = []
        for _ in range(3):
            await orchestrator.run_beat("s1")
            history.append(list(storage.get_session("s1").actors))
        assert history == [["fido"], ["fido"], ["fido", "owl"]]

    async def test_resolved_text_from_collaborator_or_local(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        storage.save_character(Character(id="fido", display_name="Fido"))
        api.queue("generate", GenerationResult(
            header_text="$$fido$$ wagged its tail",
            question="What now?",
            question_resolved="What now, friend?",
            options=[Choice(id="a", text="Pet $$fido$$")],
        ))
        continuation, options = await orchestrator.run_beat("s1")

        assert continuation.text == "$$fido$$ wagged its tail"
        assert continuation.text_resolved == "Fido wagged its tail"
        assert options.text_resolved == "What now, friend?"
        assert options.options[0].text == "Pet $$fido$$"
        assert options.options_resolved[0].text == "Pet Fido"

    async def test_debug_scratch_overwritten(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        api.queue("generate", beat(debug={"prompt": "first"}), beat(debug={"model": "x"}))
        await orchestrator.run_beat("s1")
        assert storage.get_session("s1").debug.last_prompt == "first"
        await orchestrator.run_beat("s1")
        debug = storage.get_session("s1").debug
        assert debug.last_prompt is None
        assert debug.last_flow_debug == {"model": "x"}
        assert debug.last_flow == "beat"

    async def test_failure_leaves_session_untouched(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        api.fail("generate", "model overloaded")
        with pytest.raises(StoryApiError):
            await orchestrator.run_beat("s1")
        session = storage.get_session("s1")
        assert session.current_phase is Phase.WARMUP
        assert session.arc_step_index is None
        assert storage.get_messages("s1") == []

    async def test_child_message_committed_with_reply(self, storage, api, orchestrator) -> None:
        session = _new_session(storage, current_phase=Phase.STORY, arc_step_index=0)
        message = orchestrator.child_message(session, MessageKind.CHILD_MESSAGE, "a dragon!")
        written = await orchestrator.run_beat("s1", user_message=message)
        assert written[0].sender is Sender.CHILD
        assert api.calls_to("generate")[0]["user_message"] == "a dragon!"

    async def test_unknown_generator(self, storage, orchestrator) -> None:
        _new_session(storage, generator_id="missing")
        with pytest.raises(SessionStateError):
            await orchestrator.run_beat("s1")


# ---------------------------------------------------------------------------
# more_options
# ---------------------------------------------------------------------------

class TestMoreOptions:
    async def test_replaces_in_place_twice(self, storage, api, orchestrator) -> None:
        _new_session(storage, generator_id="gemini3")
        await orchestrator.run_beat("s1")
        count = len(storage.get_messages("s1"))

        api.queue(
            "generate",
            beat(options=[Choice(id="c", text="Climb")]),
            beat(options=[Choice(id="d", text="Dig for $$mole$$")]),
        )
        await orchestrator.more_options("s1")
        await orchestrator.more_options("s1")

        messages = storage.get_messages("s1")
        assert len(messages) == count
        assert [c.id for c in messages[-1].options] == ["d"]
        assert api.calls_to("generate")[-1]["more_options"] is True
        assert "mole" in storage.get_session("s1").actors

    async def test_generator_without_more_options(self, storage, orchestrator) -> None:
        _new_session(storage)
        await orchestrator.run_beat("s1")
        with pytest.raises(SessionStateError):
            await orchestrator.more_options("s1")

    async def test_nothing_to_replace(self, storage, orchestrator) -> None:
        _new_session(storage, generator_id="gemini3")
        with pytest.raises(SessionStateError):
            await orchestrator.more_options("s1")


# ---------------------------------------------------------------------------
# run_ending / warmup_reply
# ---------------------------------------------------------------------------

class TestEnding:
    async def test_appends_ending_options_and_enters_phase(self, storage, api, orchestrator) -> None:
        _new_session(storage, current_phase=Phase.STORY, arc_step_index=2)
        api.queue("ending", EndingResult(endings=[
            EndingOption(id="e1", text="$$fido$$ finds home", text_resolved="Fido finds home"),
        ]))
        (message,) = await orchestrator.run_ending("s1")

        assert message.kind is MessageKind.ENDING_OPTIONS
        assert message.options[0].text == "$$fido$$ finds home"
        assert message.options_resolved[0].text == "Fido finds home"
        session = storage.get_session("s1")
        assert session.current_phase is Phase.ENDING
        assert session.progress.story_arc_completed_at is not None
        assert session.actors == ["fido"]

    async def test_failure_keeps_story_phase(self, storage, api, orchestrator) -> None:
        _new_session(storage, current_phase=Phase.STORY, arc_step_index=2)
        api.fail("ending")
        with pytest.raises(StoryApiError):
            await orchestrator.run_ending("s1")
        assert storage.get_session("s1").current_phase is Phase.STORY


class TestWarmup:
    async def test_child_message_and_reply_together(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        api.queue("warmup_reply", WarmupResult(assistant_text="Do you like animals?"))
        written = await orchestrator.warmup_reply("s1", "Hi!")
        assert [m.kind for m in written] == [MessageKind.CHILD_MESSAGE, MessageKind.WARMUP_REPLY]
        assert storage.get_session("s1").current_phase is Phase.WARMUP

    async def test_failure_appends_nothing(self, storage, api, orchestrator) -> None:
        _new_session(storage)
        api.fail("warmup_reply")
        with pytest.raises(StoryApiError):
            await orchestrator.warmup_reply("s1", "Hi!")
        assert storage.get_messages("s1") == []

    async def test_only_during_warmup(self, storage, orchestrator) -> None:
        _new_session(storage, current_phase=Phase.STORY)
        with pytest.raises(PhaseError):
            await orchestrator.warmup_reply("s1", "Hi!")

    async def test_known_names_become_placeholders(self, storage, orchestrator) -> None:
        _new_session(storage, actors=["fido"])
        storage.save_character(Character(id="fido", display_name="Fido"))
        child, _ = await orchestrator.warmup_reply("s1", "I love fido")
        assert child.text == "I love $$fido$$"
        assert child.text_resolved == "I love fido"

import asyncio
import shutil
from collections import defaultdict
from pathlib import Path

import pytest

from backend import services
from storyguide.api import (
    CharacterResult,
    CompileResult,
    CreatedCharacter,
    EndingOption,
    EndingResult,
    GenerationResult,
    StoryApiError,
    TraitsResult,
    WarmupResult,
)
from storyguide.models import ArcStep, ArcTemplate, ChildProfile, Choice, StoryOutputType, StoryType

TEST_DATA_DIR = Path("data-tests")


def beat(header="The sun came up over the hill.", question="What happens next?", options=None, **kw):
    """A GenerationResult with two ordinary options unless told otherwise."""
    if options is None:
        options = [Choice(id="left", text="Go left"), Choice(id="right", text="Go right")]
    return GenerationResult(header_text=header, question=question, options=options, **kw)


def final_story(text="And they all lived happily ever after."):
    return GenerationResult(is_story_complete=True, final_story=text)


class StubStoryApi:
    """In-memory story collaborator.

    Every call is recorded in ``calls``. Answers come from per-method queues
    (``queue``/``fail``) and fall back to a canned default. Setting ``gate``
    to an asyncio.Event makes generate() wait for it.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self._queues: dict[str, list] = defaultdict(list)
        self.gate: asyncio.Event | None = None
        self._created = 0

    def queue(self, method: str, *responses) -> None:
        self._queues[method].extend(responses)

    def fail(self, method: str, message: str = "collaborator down") -> None:
        self._queues[method].append(StoryApiError(message))

    def calls_to(self, method: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def _answer(self, method: str, default, **kwargs):
        self.calls.append((method, kwargs))
        queue = self._queues[method]
        response = queue.pop(0) if queue else default(**kwargs)
        if isinstance(response, BaseException):
            raise response
        return response

    async def generate(self, endpoint, *, session_id, selected_option_id=None, user_message=None, more_options=False):
        if self.gate is not None:
            await self.gate.wait()
        return await self._answer(
            "generate", lambda **_: beat(),
            endpoint=endpoint, session_id=session_id, selected_option_id=selected_option_id,
            user_message=user_message, more_options=more_options,
        )

    async def ending(self, session_id):
        default = lambda **_: EndingResult(endings=[  # noqa: E731
            EndingOption(id="happy", text="Everyone has a picnic"),
            EndingOption(id="sleepy", text="Everyone falls asleep"),
        ])
        return await self._answer("ending", default, session_id=session_id)

    async def warmup_reply(self, session_id, user_message):
        return await self._answer(
            "warmup_reply", lambda **_: WarmupResult(assistant_text="That sounds fun! Tell me more."),
            session_id=session_id, user_message=user_message,
        )

    async def character_traits(self, session_id, character_id):
        default = lambda **_: TraitsResult(  # noqa: E731
            question="What is your new friend like?", suggested_traits=["friendly"],
        )
        return await self._answer("character_traits", default, session_id=session_id, character_id=character_id)

    async def create_character(self, request):
        def default(request):
            self._created += 1
            return CharacterResult(
                character_id=f"char-{self._created}",
                character=CreatedCharacter(display_name=request.character_name),
            )
        return await self._answer("create_character", default, request=request)

    async def generate_avatar(self, character_id):
        return await self._answer("generate_avatar", lambda **_: None, character_id=character_id)

    async def compile(self, session_id, output_type_id):
        return await self._answer(
            "compile", lambda **_: CompileResult(story_id="book-1"),
            session_id=session_id, output_type_id=output_type_id,
        )


@pytest.fixture
def api():
    return StubStoryApi()


@pytest.fixture(autouse=True)
def clean_test_data(api):
    """Wipe and re-init data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    services.init_services(TEST_DATA_DIR, api=api)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def storage():
    return services.storage()


@pytest.fixture
def engine():
    return services.engine()


@pytest.fixture
def child(storage):
    profile = ChildProfile(id="maya", display_name="Maya", parent_uid="parent-1")
    storage.save_child(profile)
    return profile


@pytest.fixture
def story_type(storage):
    """Three-step arc."""
    st = StoryType(
        id="forest",
        name="Forest Walk",
        arc_template=ArcTemplate(steps=[
            ArcStep(id="start", label="Into the forest"),
            ArcStep(id="middle", label="A surprise", suggests_new_character=True),
            ArcStep(id="end", label="Home again"),
        ]),
    )
    storage.save_story_type(st)
    return st


@pytest.fixture
def output_type(storage):
    ot = StoryOutputType(id="picture-book", name="Picture Book")
    storage.save_output_types([ot])
    return ot

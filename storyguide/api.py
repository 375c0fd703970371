"""Story API client — HTTP connection to the generation collaborators.

The engine injects a client matching the StoryApi protocol. Every call is an
awaited boundary; none of them write to storage. Failures of any kind
(connection, HTTP status, timeout, ``{"ok": false}``, malformed body) are
raised as StoryApiError so callers have exactly one thing to catch.

Endpoints (POST, JSON, camelCase on the wire):

    generator endpoint      {sessionId, selectedOptionId?, userMessage?, moreOptions?}
    /api/storyEnding        {sessionId}
    /api/warmupReply        {sessionId, userMessage}
    /api/characterTraits    {sessionId, characterId}
    /api/characters/create  {sessionId, parentUid, childId, characterLabel, ...}
    /api/generateCharacterAvatar  {characterId}
    /api/storyCompile       {sessionId, storyOutputTypeId}

Two implementations are provided:

    HttpStoryApi  — real HTTP client (httpx).
    Tests use StubStoryApi (defined in the test helpers) instead.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from storyguide.models import CharacterType, Choice

logger = logging.getLogger(__name__)


class StoryApiError(RuntimeError):
    """Raised when a collaborator cannot be reached or reports a failure."""


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------

class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GenerationResult(_Wire):
    """One generated increment of story.

    Beat-style endpoints answer with ``storyContinuation``; it is accepted as
    the header text.
    """

    header_text: str | None = None
    header_text_resolved: str | None = None
    question: str = ""
    question_resolved: str | None = None
    options: list[Choice] = Field(default_factory=list)
    options_resolved: list[Choice] = Field(default_factory=list)
    is_story_complete: bool = False
    final_story: str | None = None
    final_story_resolved: str | None = None
    debug: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _continuation_as_header(cls, data: Any) -> Any:
        if isinstance(data, dict) and "storyContinuation" in data and not data.get("headerText"):
            data = dict(data)
            data["headerText"] = data.pop("storyContinuation")
            if "storyContinuationResolved" in data:
                data["headerTextResolved"] = data.pop("storyContinuationResolved")
        return data


class EndingOption(_Wire):
    id: str
    text: str
    text_resolved: str | None = None


class EndingResult(_Wire):
    endings: list[EndingOption]
    debug: dict[str, Any] | None = None


class WarmupResult(_Wire):
    assistant_text: str
    assistant_text_resolved: str | None = None


class TraitsResult(_Wire):
    question: str
    suggested_traits: list[str] = Field(default_factory=list)


class CharacterRequest(_Wire):
    session_id: str
    parent_uid: str
    child_id: str
    character_label: str
    character_name: str
    character_type: CharacterType = "Friend"
    story_context: str = ""
    generate_avatar: bool = False


class CreatedCharacter(_Wire):
    display_name: str
    avatar_url: str | None = None


class CharacterResult(_Wire):
    character_id: str
    character: CreatedCharacter


class CompileResult(_Wire):
    story_id: str | None = None


# ---------------------------------------------------------------------------
# Protocol: every client implementation must match these signatures
# ---------------------------------------------------------------------------

class StoryApi(Protocol):
    async def generate(
        self,
        endpoint: str,
        *,
        session_id: str,
        selected_option_id: str | None = None,
        user_message: str | None = None,
        more_options: bool = False,
    ) -> GenerationResult: ...

    async def ending(self, session_id: str) -> EndingResult: ...

    async def warmup_reply(self, session_id: str, user_message: str) -> WarmupResult: ...

    async def character_traits(self, session_id: str, character_id: str) -> TraitsResult: ...

    async def create_character(self, request: CharacterRequest) -> CharacterResult: ...

    async def generate_avatar(self, character_id: str) -> None: ...

    async def compile(self, session_id: str, output_type_id: str) -> CompileResult: ...


# ---------------------------------------------------------------------------
# HttpStoryApi
# ---------------------------------------------------------------------------

DEFAULT_ENDPOINTS = {
    "ending": "/api/storyEnding",
    "warmup": "/api/warmupReply",
    "traits": "/api/characterTraits",
    "create_character": "/api/characters/create",
    "avatar": "/api/generateCharacterAvatar",
    "compile": "/api/storyCompile",
}


class HttpStoryApi:
    """Async HTTP client for the story collaborators.

    Args:
        base_url:  Base URL of the collaborator service, e.g. "http://localhost:9002".
        api_key:   Bearer token, or empty string if not required.
        timeout:   HTTP timeout in seconds. Defaults to 120.
        endpoints: Overrides for the fixed endpoint paths in DEFAULT_ENDPOINTS.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        endpoints: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = self._url(path)
        body = {k: v for k, v in body.items() if v is not None}
        logger.debug("story api call url=%s keys=%s", url, sorted(body))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise StoryApiError(f"Cannot connect to story service at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise StoryApiError(_error_message(e.response) or (
                f"Story service returned HTTP {e.response.status_code}"
            )) from e
        except httpx.TimeoutException as e:
            raise StoryApiError(f"Story service timed out after {self._timeout}s") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise StoryApiError(f"Story service returned invalid JSON from {path}") from e
        if not isinstance(data, dict):
            raise StoryApiError(f"Unexpected response format from {path}")
        if not data.get("ok", False):
            raise StoryApiError(data.get("errorMessage") or f"Story service call to {path} failed")
        logger.debug("story api response url=%s", url)
        return data

    async def _call(self, path: str, body: dict[str, Any], model: type[_Wire]):
        data = await self._post(path, body)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise StoryApiError(f"Malformed response from {path}: {e.error_count()} error(s)") from e

    async def generate(
        self,
        endpoint: str,
        *,
        session_id: str,
        selected_option_id: str | None = None,
        user_message: str | None = None,
        more_options: bool = False,
    ) -> GenerationResult:
        body = {
            "sessionId": session_id,
            "selectedOptionId": selected_option_id,
            "userMessage": user_message,
            "moreOptions": more_options or None,
        }
        return await self._call(endpoint, body, GenerationResult)

    async def ending(self, session_id: str) -> EndingResult:
        return await self._call(self._endpoints["ending"], {"sessionId": session_id}, EndingResult)

    async def warmup_reply(self, session_id: str, user_message: str) -> WarmupResult:
        body = {"sessionId": session_id, "userMessage": user_message}
        return await self._call(self._endpoints["warmup"], body, WarmupResult)

    async def character_traits(self, session_id: str, character_id: str) -> TraitsResult:
        body = {"sessionId": session_id, "characterId": character_id}
        return await self._call(self._endpoints["traits"], body, TraitsResult)

    async def create_character(self, request: CharacterRequest) -> CharacterResult:
        body = request.model_dump(by_alias=True)
        return await self._call(self._endpoints["create_character"], body, CharacterResult)

    async def generate_avatar(self, character_id: str) -> None:
        await self._post(self._endpoints["avatar"], {"characterId": character_id})

    async def compile(self, session_id: str, output_type_id: str) -> CompileResult:
        body = {"sessionId": session_id, "storyOutputTypeId": output_type_id}
        return await self._call(self._endpoints["compile"], body, CompileResult)


def _error_message(response: httpx.Response) -> str | None:
    """Pull errorMessage out of an error response body, if there is one."""
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        return data.get("errorMessage")
    return None

"""Pydantic request bodies for API endpoints."""

from pydantic import BaseModel


class CreateChild(BaseModel):
    display_name: str
    parent_uid: str
    avatar_url: str | None = None


class CreateSession(BaseModel):
    child_id: str
    parent_uid: str
    generator_id: str = "beat"
    story_title: str | None = None


class SelectStoryType(BaseModel):
    story_type_id: str


class SendMessage(BaseModel):
    text: str


class ChooseOption(BaseModel):
    option_id: str


class ChooseEnding(BaseModel):
    ending_id: str


class CompileBody(BaseModel):
    output_type_id: str | None = None


class CheckConnectionBody(BaseModel):
    url: str | None = None
    api_key: str = ""

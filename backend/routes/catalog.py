"""Catalog endpoints: story types, generators, output types, children, characters."""

from fastapi import APIRouter, HTTPException

from backend import services
from storyguide.models import ChildProfile
from storyguide.storage import new_id

from .models import CreateChild

router = APIRouter()


@router.get("/story-types")
async def list_story_types(status: str | None = None):
    """List story types, optionally only those with the given status."""
    types = services.storage().get_story_types()
    if status:
        types = [t for t in types if t.status == status]
    return types


@router.get("/story-types/{story_type_id}")
async def get_story_type(story_type_id: str):
    story_type = services.storage().get_story_type(story_type_id)
    if not story_type:
        raise HTTPException(404, "Story type not found")
    return story_type


@router.get("/generators")
async def list_generators():
    """List story generators (built-ins unless overridden in generators.json)."""
    return services.storage().get_generators()


@router.get("/output-types")
async def list_output_types():
    return services.storage().get_output_types()


@router.get("/children")
async def list_children(parent_uid: str | None = None):
    return services.storage().list_children(parent_uid)


@router.post("/children", status_code=201)
async def create_child(body: CreateChild):
    """Create a child profile."""
    child = ChildProfile(id=new_id(), **body.model_dump())
    services.storage().save_child(child)
    return child


@router.get("/children/{child_id}")
async def get_child(child_id: str):
    child = services.storage().get_child(child_id)
    if not child:
        raise HTTPException(404, "Child not found")
    return child


@router.get("/characters/{character_id}")
async def get_character(character_id: str):
    """Get a character, e.g. to pick up an avatar generated in the background."""
    character = services.storage().get_character(character_id)
    if not character:
        raise HTTPException(404, "Character not found")
    return character

"""Create demo catalog data for development/testing."""

import shutil

from backend import services
from storyguide.models import ArcStep, ArcTemplate, ChildProfile, StoryOutputType, StoryType

DEMO_PARENT_UID = "demo-parent"

DEMO_STORY_TYPES = [
    StoryType(
        id="animal-adventure",
        name="Animal Adventure",
        short_description="A journey with a brave animal friend.",
        age_range="3-6",
        tags=["animals", "adventure"],
        arc_template=ArcTemplate(steps=[
            ArcStep(id="meet", label="Meet the hero", guidance="Introduce the child and their setting."),
            ArcStep(id="friend", label="A new friend", suggests_new_character=True,
                    guidance="Offer at least one option that introduces a friendly animal."),
            ArcStep(id="problem", label="Something goes wrong"),
            ArcStep(id="solve", label="Working together", guidance="The friends solve the problem together."),
        ]),
    ),
    StoryType(
        id="bedtime",
        name="Bedtime Story",
        short_description="A calm story that winds down for sleep.",
        age_range="2-5",
        tags=["calm", "bedtime"],
        arc_template=ArcTemplate(steps=[
            ArcStep(id="evening", label="Evening comes"),
            ArcStep(id="dream", label="Into the dream"),
            ArcStep(id="home", label="Safe at home"),
        ]),
    ),
    StoryType(
        id="open-sky",
        name="Open Sky",
        short_description="No fixed arc: the guide decides when the story ends.",
        status="draft",
        tags=["experimental"],
    ),
]

DEMO_CHILDREN = [
    ChildProfile(id="demo-maya", display_name="Maya", parent_uid=DEMO_PARENT_UID),
    ChildProfile(id="demo-leo", display_name="Leo", parent_uid=DEMO_PARENT_UID),
]

DEMO_OUTPUT_TYPES = [
    StoryOutputType(id="picture-book", name="Picture Book"),
    StoryOutputType(id="poem", name="Story Poem", status="draft"),
]


def create_demo_data() -> None:
    """Wipe sessions/characters/children and create a fresh demo catalog."""
    storage = services.storage()
    for sub in ("sessions", "characters", "children"):
        path = storage.base_path / sub
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True, exist_ok=True)

    for story_type in DEMO_STORY_TYPES:
        storage.save_story_type(story_type)
    for child in DEMO_CHILDREN:
        storage.save_child(child)
    storage.save_output_types(DEMO_OUTPUT_TYPES)

    print(
        f"Created {len(DEMO_STORY_TYPES)} story types + {len(DEMO_CHILDREN)} children "
        f"+ {len(DEMO_OUTPUT_TYPES)} output types."
    )

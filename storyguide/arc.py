"""Arc tracker — a session's position in its story type's ordered beats.

A story type with no declared arc (zero steps) is open-ended: the tracker
never reports the arc as complete and the generator's own completion signal
is the only way the story ends.
"""

from __future__ import annotations

from typing import NamedTuple

from storyguide.models import ArcStep, StoryType


class ArcAdvance(NamedTuple):
    next_index: int
    reached_end: bool


def advance(current_index: int, total_steps: int) -> ArcAdvance:
    """Move one step forward, clamped to the last step."""
    if total_steps <= 0:
        return ArcAdvance(next_index=0, reached_end=False)
    next_index = min(current_index + 1, total_steps - 1)
    return ArcAdvance(next_index=next_index, reached_end=current_index + 1 >= total_steps)


def arc_steps(story_type: StoryType | None) -> list[ArcStep]:
    if story_type is None:
        return []
    return story_type.arc_template.steps


def step_at(story_type: StoryType | None, index: int | None) -> ArcStep | None:
    """The arc step at index, or None when out of range or unset."""
    steps = arc_steps(story_type)
    if index is None or not 0 <= index < len(steps):
        return None
    return steps[index]

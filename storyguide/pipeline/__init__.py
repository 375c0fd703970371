"""Story session progression pipeline.

Drives a child through a story session:
  1. Warmup — free chat with the guide until a story type is chosen.
  2. Story — beats generated one at a time; each chosen option advances the
     story type's arc. Options may introduce a new character, which pauses
     the story on an introduction card and may ask the child for traits.
  3. Ending — once the arc is complete, ending choices are offered and the
     child picks exactly one.
  4. Compile — a finished story is compiled once, automatically.

Modules:
  phases         — pure phase transitions returning batch field updates
  view           — derive_view(): what the child sees, folded from the log
  orchestrator   — collaborator calls + one atomic write per call
  introductions  — character creation, avatar task, traits question
  autocompile    — exactly-once compile trigger fed by snapshots
  engine         — user actions, busy flag, notices
"""

from .autocompile import AutoCompileTrigger, CompileOutcome  # noqa: F401
from .engine import SessionBusyError, SessionEngine, StepResult  # noqa: F401
from .introductions import CharacterIntroductions  # noqa: F401
from .orchestrator import StoryOrchestrator  # noqa: F401
from .phases import (  # noqa: F401
    EndingAlreadyChosenError,
    InputRoute,
    PhaseError,
    SessionStateError,
)
from .view import SessionView, ViewState, derive_view  # noqa: F401

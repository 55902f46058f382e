from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence

from guiloop.agent.actions import ParsedAction, ScreenGeometry, Size
from guiloop.agent.grammar import strip_reflection


class RunStatus(str, Enum):
    INIT = "init"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_HUMAN = "awaiting_human"
    FINISHED = "finished"
    ERRORED = "errored"
    ABORTED = "aborted"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({RunStatus.FINISHED, RunStatus.ERRORED, RunStatus.ABORTED, RunStatus.STOPPED})


@dataclass
class ActionOutcome:
    action: ParsedAction
    success: bool
    observation: Optional[str] = None
    error: Optional[str] = None
    cost_ms: int = 0


@dataclass
class Turn:
    iteration: int
    screenshot: Optional[bytes] = None
    screenshot_size: Optional[Size] = None
    geometry: Optional[ScreenGeometry] = None
    raw_text: str = ""
    thought: str = ""
    actions: List[ParsedAction] = field(default_factory=list)
    outcomes: List[ActionOutcome] = field(default_factory=list)
    error: Optional[str] = None
    user_message: Optional[str] = None
    start: float = field(default_factory=time.time)
    end: float = 0.0

    @property
    def cost_ms(self) -> int:
        return int(max(0.0, self.end - self.start) * 1000)

    def summary(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "thought": self.thought,
            "actions": [a.brief() for a in self.actions],
            "outcomes": [
                {"action": o.action.type.value, "success": o.success, "error": o.error, "cost_ms": o.cost_ms}
                for o in self.outcomes
            ],
            "error": self.error,
            "user_message": self.user_message,
            "cost_ms": self.cost_ms,
        }


class Conversation:
    """
    Append-only record of a run. Turns are built off to the side and only
    appended once complete, so a cancelled iteration leaves no partial turn.
    """

    def __init__(self, instruction: str) -> None:
        self.instruction = instruction
        self._turns: List[Turn] = []

    def append(self, turn: Turn) -> None:
        if turn.end == 0.0:
            turn.end = time.time()
        self._turns.append(turn)

    @property
    def turns(self) -> List[Turn]:
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)


@dataclass
class LoopState:
    max_image_length: int
    iteration: int = 0
    status: RunStatus = RunStatus.INIT
    consecutive_failures: int = 0
    screenshot_errors: int = 0
    # Newest screenshots, current one last; older ones fall off the left.
    image_history: Deque[bytes] = field(init=False)

    def __post_init__(self) -> None:
        self.image_history = deque(maxlen=self.max_image_length)


@dataclass
class HistoryMessage:
    role: str  # "user" | "assistant"
    text: Optional[str] = None
    image: Optional[bytes] = None


@dataclass
class PromptContext:
    system_prompt: str
    instruction: str
    messages: List[HistoryMessage]
    screenshot_size: Optional[Size] = None
    feedback: Optional[str] = None

    @property
    def images(self) -> List[bytes]:
        return [m.image for m in self.messages if m.image is not None]


def build_prompt_messages(conversation: Conversation, image_window: Sequence[bytes]) -> List[HistoryMessage]:
    """
    Interleaves past screenshots and model replies, oldest first, ending with
    the current screenshot. `image_window` is the run's bounded image history
    (newest last, the current screenshot included); turns whose screenshot
    has slid out of it contribute their text only.
    """
    window = list(image_window)
    if not window:
        raise ValueError("image window is empty")
    current, past = window[-1], window[:-1]

    shot_turns = sum(1 for t in conversation.turns if t.screenshot is not None)
    past = past[max(0, len(past) - shot_turns) :]
    first_kept = shot_turns - len(past)

    msgs: List[HistoryMessage] = []
    seen = 0
    for t in conversation.turns:
        if t.screenshot is not None:
            if seen >= first_kept:
                msgs.append(HistoryMessage("user", image=past[seen - first_kept]))
            seen += 1
        if t.raw_text:
            msgs.append(HistoryMessage("assistant", text=strip_reflection(t.raw_text)))
        if t.user_message:
            msgs.append(HistoryMessage("user", text=t.user_message))
    msgs.append(HistoryMessage("user", image=current))
    return msgs

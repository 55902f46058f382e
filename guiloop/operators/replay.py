"""
Operators and models that need no live device.

FrameOperator reads whatever the capture daemon last wrote to
RUN_DIR/latest.jpg and records the actions it is asked to perform instead
of injecting them. ScriptedModel hands back a fixed list of completions.
Together they let the whole loop run end to end on a recorded session.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from guiloop.agent.actions import ActionType, ParsedAction, ScreenGeometry
from guiloop.agent.history import PromptContext
from guiloop.operators.base import ExecutionResult, Screenshot
from guiloop.util.image import get_image_size
from guiloop.util.log import get_logger
from guiloop.util.paths import LAST_SENT_JPG, LATEST_JPG

log = get_logger("guiloop.operators.replay")


@dataclass
class FrameOperator:
    latest_jpg: Path = LATEST_JPG
    # Physical screen size; defaults to the frame size.
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    scale_factor: float = 1.0
    wait_s: float = 5.0
    dump_last_sent: bool = False
    performed: List[ParsedAction] = field(default_factory=list)

    async def screenshot(self) -> Screenshot:
        p = self.latest_jpg
        if not p.exists():
            raise FileNotFoundError(f"latest frame missing: {p} (is the capture daemon running?)")
        data = await asyncio.to_thread(p.read_bytes)

        if self.dump_last_sent:
            try:
                LAST_SENT_JPG.parent.mkdir(parents=True, exist_ok=True)
                LAST_SENT_JPG.write_bytes(data)
            except OSError as e:
                log.warning("Could not write %s: %s", LAST_SENT_JPG, e)

        w, h = self.screen_width, self.screen_height
        if w is None or h is None:
            dims = get_image_size(data)
            if dims is None:
                # Let the agent count this as a screenshot failure.
                return Screenshot(data, None)
            w, h = dims
        return Screenshot(data, ScreenGeometry.from_physical(w, h, self.scale_factor))

    async def execute(self, action: ParsedAction, geometry: ScreenGeometry) -> ExecutionResult:
        self.performed.append(action)
        log.info("Recorded %s", action.brief())
        if action.type == ActionType.WAIT:
            ms = action.params.get("ms")
            delay = self.wait_s if ms is None else ms / 1000.0
            if delay > 0:
                await asyncio.sleep(delay)
        return ExecutionResult.ok(f"recorded {action.type.value}")


class ScriptedModel:
    """Replays canned completions in order; the last one repeats."""

    def __init__(self, replies: Sequence[str], delay_s: float = 0.0) -> None:
        if not replies:
            raise ValueError("ScriptedModel needs at least one reply")
        self.replies = list(replies)
        self.delay_s = delay_s
        self.contexts: List[PromptContext] = []
        self._i = 0

    async def invoke(self, context: PromptContext) -> str:
        self.contexts.append(context)
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        reply = self.replies[min(self._i, len(self.replies) - 1)]
        self._i += 1
        return reply


def load_script(path: Path) -> List[str]:
    """Completions separated by lines holding only '---'."""
    text = path.read_text(encoding="utf-8")
    chunks: List[str] = []
    cur: List[str] = []
    for line in text.splitlines():
        if line.strip() == "---":
            chunks.append("\n".join(cur).strip())
            cur = []
        else:
            cur.append(line)
    chunks.append("\n".join(cur).strip())
    return [c for c in chunks if c]

from __future__ import annotations

from io import BytesIO
from typing import List, Optional

from PIL import Image

from guiloop.agent.actions import ParsedAction, ScreenGeometry
from guiloop.operators.base import ExecutionResult, Screenshot

_UNSET = object()


def make_image(width: int = 192, height: int = 108, fmt: str = "PNG") -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), (40, 80, 120)).save(buf, format=fmt)
    return buf.getvalue()


class FakeOperator:
    """Serves a fixed screenshot and records what it is asked to do."""

    def __init__(
        self,
        image: Optional[bytes] = None,
        geometry=_UNSET,
        fail_first: int = 0,
    ) -> None:
        self.image = image if image is not None else make_image()
        self.geometry = ScreenGeometry.from_physical(1920, 1080) if geometry is _UNSET else geometry
        self.fail_first = fail_first
        self.executed: List[ParsedAction] = []
        self.screenshots = 0

    async def screenshot(self) -> Screenshot:
        self.screenshots += 1
        return Screenshot(self.image, self.geometry)

    async def execute(self, action: ParsedAction, geometry: ScreenGeometry) -> ExecutionResult:
        if self.fail_first > 0:
            self.fail_first -= 1
            return ExecutionResult.failed("element not found")
        self.executed.append(action)
        return ExecutionResult.ok()

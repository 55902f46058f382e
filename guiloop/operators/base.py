from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from guiloop.agent.actions import ParsedAction, ScreenGeometry


@dataclass
class Screenshot:
    image_bytes: bytes
    geometry: Optional[ScreenGeometry]


@dataclass
class ExecutionResult:
    success: bool
    observation: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, observation: Optional[str] = None) -> "ExecutionResult":
        return cls(True, observation=observation)

    @classmethod
    def failed(cls, error: str) -> "ExecutionResult":
        return cls(False, error=error)


@runtime_checkable
class Operator(Protocol):
    """
    Performs actions on the target device. Actions arrive one at a time,
    in order, with points already in physical pixels.
    """

    async def screenshot(self) -> Screenshot:
        ...

    async def execute(self, action: ParsedAction, geometry: ScreenGeometry) -> ExecutionResult:
        ...

from __future__ import annotations

from typing import Protocol, runtime_checkable

from guiloop.agent.history import PromptContext


@runtime_checkable
class Model(Protocol):
    """Anything that turns a prompt context into raw completion text."""

    async def invoke(self, context: PromptContext) -> str:
        ...

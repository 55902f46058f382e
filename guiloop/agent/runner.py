from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Dict, Optional, Tuple, TypeVar

from guiloop.agent.actions import ActionSchema, ActionType, ParsedAction, ScreenGeometry, Size
from guiloop.agent.coords import ModelSpace, map_action
from guiloop.agent.errors import (
    RECOVERABLE,
    AgentError,
    CoordinateError,
    ErrorCode,
    ExecutionError,
    ModelError,
    StepTimeoutError,
)
from guiloop.agent.events import AgentEvent, EventChannel, is_terminal_status
from guiloop.agent.grammar import parse
from guiloop.agent.history import (
    ActionOutcome,
    Conversation,
    LoopState,
    PromptContext,
    RunStatus,
    Turn,
    build_prompt_messages,
)
from guiloop.agent.validate import is_dangerous_text, normalize_all
from guiloop.model.base import Model
from guiloop.model.prompts import build_system_prompt
from guiloop.model.schema import DEFAULT_SCHEMA, get_schema
from guiloop.operators.base import ExecutionResult, Operator, Screenshot
from guiloop.util.image import get_image_size
from guiloop.util.log import get_logger

log = get_logger("guiloop.agent")

T = TypeVar("T")

MAX_LOOP_COUNT = 25
MAX_IMAGE_LENGTH = 5
MAX_SCREENSHOT_ERRORS = 10


@dataclass
class AgentConfig:
    schema: str = DEFAULT_SCHEMA
    parse_mode: str = "bc"
    language: str = "English"

    max_loop_count: int = MAX_LOOP_COUNT
    max_image_length: int = MAX_IMAGE_LENGTH
    # Consecutive recoverable failures tolerated before the run errors out.
    retry_budget: int = 3
    max_screenshot_errors: int = MAX_SCREENSHOT_ERRORS
    screenshot_retry_s: float = 1.0

    model_timeout_s: float = 120.0
    screenshot_timeout_s: float = 15.0
    execute_timeout_s: float = 30.0
    loop_interval_s: float = 0.0

    dry_run: bool = False
    allow_danger: bool = False
    # Checked between iterations; the run stops while this file exists.
    stop_file: Optional[Path] = None

    def limits(self) -> "LoopLimits":
        return LoopLimits(
            max_loop_count=self.max_loop_count,
            max_image_length=self.max_image_length,
            retry_budget=self.retry_budget,
            max_screenshot_errors=self.max_screenshot_errors,
            screenshot_retry_s=self.screenshot_retry_s,
            model_timeout_s=self.model_timeout_s,
            screenshot_timeout_s=self.screenshot_timeout_s,
            execute_timeout_s=self.execute_timeout_s,
            loop_interval_s=self.loop_interval_s,
        )


@dataclass(frozen=True)
class LoopLimits:
    max_loop_count: int
    max_image_length: int
    retry_budget: int
    max_screenshot_errors: int
    screenshot_retry_s: float
    model_timeout_s: float
    screenshot_timeout_s: float
    execute_timeout_s: float
    loop_interval_s: float

    def __post_init__(self) -> None:
        for name in ("max_loop_count", "max_image_length", "retry_budget", "max_screenshot_errors"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        for name in ("model_timeout_s", "screenshot_timeout_s", "execute_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")


@dataclass
class RunResult:
    status: RunStatus
    iterations: int
    conversation: Conversation
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    final_answer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "iterations": self.iterations,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
            "final_answer": self.final_answer,
            "turns": [t.summary() for t in self.conversation.turns],
        }


@dataclass
class _Ending:
    status: RunStatus
    error: Optional[str] = None
    code: Optional[ErrorCode] = None
    final_answer: Optional[str] = None


class GUIAgent:
    """
    Drives one model and one operator through screenshot -> predict ->
    act iterations until the model finishes, a limit is hit, or the run
    is stopped. One agent runs one instruction at a time.
    """

    def __init__(
        self,
        model: Model,
        operator: Operator,
        cfg: Optional[AgentConfig] = None,
        schema: Optional[ActionSchema] = None,
        events: Optional[EventChannel] = None,
        system_prompt: Optional[str] = None,
    ) -> None:
        self.model = model
        self.operator = operator
        self.cfg = cfg or AgentConfig()
        self.schema = schema or get_schema(self.cfg.schema)
        self.limits = self.cfg.limits()
        self.events = events or EventChannel()
        self._system_prompt = system_prompt

        self.state: Optional[LoopState] = None
        self.conversation: Optional[Conversation] = None

        self._running = False
        self._stop_requested = False
        self._paused = False
        self._pending_message: Optional[str] = None
        self._wake: Optional[asyncio.Event] = None
        self._last_action: Optional[str] = None

    # -- control, callable while run() is in progress --

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._stop_requested = True
        if self._wake is not None:
            self._wake.set()

    def pause(self) -> None:
        if self._running:
            self._paused = True

    def resume(self, message: Optional[str] = None) -> None:
        self._paused = False
        waiting = self.state is not None and self.state.status in (RunStatus.PAUSED, RunStatus.AWAITING_HUMAN)
        if message and not waiting:
            log.warning("Ignoring resume message while not paused: %r", message[:200])
            message = None
        self._pending_message = message
        if self._wake is not None:
            self._wake.set()

    def snapshot(self) -> Dict[str, Any]:
        st = self.state
        return {
            "running": self._running,
            "status": st.status.value if st else RunStatus.INIT.value,
            "done": is_terminal_status(st.status) if st else False,
            "iteration": st.iteration if st else 0,
            "consecutive_failures": st.consecutive_failures if st else 0,
            "screenshot_errors": st.screenshot_errors if st else 0,
            "instruction": self.conversation.instruction if self.conversation else None,
            "turns": len(self.conversation) if self.conversation else 0,
            "last_action": self._last_action,
            "schema": self.schema.version,
        }

    # -- the loop --

    async def run(self, instruction: str) -> RunResult:
        if self._running:
            raise RuntimeError("agent is already running an instruction")

        self._running = True
        self._stop_requested = False
        self._paused = False
        self._pending_message = None
        self._last_action = None
        self._wake = asyncio.Event()

        conv = Conversation(instruction)
        state = LoopState(max_image_length=self.limits.max_image_length)
        self.conversation = conv
        self.state = state
        t0 = time.time()

        log.info(
            "Run start: schema=%s max_loop=%d retry_budget=%d instruction=%r",
            self.schema.version, self.limits.max_loop_count, self.limits.retry_budget, instruction[:200],
        )

        try:
            await self._set_status(state, RunStatus.RUNNING)
            ending = await self._loop(conv, state)
        except asyncio.CancelledError:
            log.info("Run cancelled at iteration %d", state.iteration)
            await self._finish(state, _Ending(RunStatus.STOPPED, "cancelled"), t0)
            self._running = False
            raise
        except Exception as e:
            log.exception("Run failed unexpectedly at iteration %d", state.iteration)
            ending = _Ending(RunStatus.ERRORED, f"{type(e).__name__}: {e}", ErrorCode.UNKNOWN)

        try:
            await self._finish(state, ending, t0)
        finally:
            self._running = False

        return RunResult(
            status=ending.status,
            iterations=state.iteration,
            conversation=conv,
            error=ending.error,
            error_code=ending.code,
            final_answer=ending.final_answer,
        )

    async def _loop(self, conv: Conversation, state: LoopState) -> _Ending:
        lim = self.limits
        system_prompt = self._system_prompt or build_system_prompt(self.schema, conv.instruction, self.cfg.language)
        feedback: Optional[str] = None

        while True:
            if self._should_stop():
                return _Ending(RunStatus.STOPPED, "stopped by user")

            if self._paused:
                message = await self._wait_for_resume(state, RunStatus.PAUSED)
                if message and not self._stop_requested:
                    conv.append(Turn(iteration=state.iteration, user_message=message))
                continue

            if state.iteration >= lim.max_loop_count:
                return _Ending(
                    RunStatus.ABORTED,
                    f"reached max loop count ({lim.max_loop_count})",
                    ErrorCode.REACH_MAX_LOOP,
                )

            if state.screenshot_errors >= lim.max_screenshot_errors:
                return _Ending(
                    RunStatus.ERRORED,
                    f"screenshot failed {state.screenshot_errors} times",
                    ErrorCode.SCREENSHOT_RETRY,
                )

            start = time.time()
            try:
                shot, size = await self._capture()
            except AgentError as e:
                # Does not consume an iteration.
                state.screenshot_errors += 1
                log.warning("Screenshot failed (%d/%d): %s", state.screenshot_errors, lim.max_screenshot_errors, e)
                await self._emit_error(state, e)
                if lim.screenshot_retry_s > 0:
                    await asyncio.sleep(lim.screenshot_retry_s)
                continue

            state.iteration += 1
            state.image_history.append(shot.image_bytes)
            turn = Turn(
                iteration=state.iteration,
                screenshot=shot.image_bytes,
                screenshot_size=size,
                geometry=shot.geometry,
                start=start,
            )
            context = PromptContext(
                system_prompt=system_prompt,
                instruction=conv.instruction,
                messages=build_prompt_messages(conv, state.image_history),
                screenshot_size=size,
                feedback=feedback,
            )

            ending, feedback = await self._step(state, turn, context)

            conv.append(turn)
            if turn.actions:
                self._last_action = turn.actions[-1].brief()
            await self.events.emit(
                AgentEvent(
                    iteration=state.iteration,
                    status=state.status,
                    last_action=self._last_action,
                    timing_ms=turn.cost_ms,
                    error=turn.error,
                    kind="turn",
                    detail=turn.summary(),
                )
            )

            if ending is not None:
                if ending.status != RunStatus.AWAITING_HUMAN:
                    return ending
                message = await self._wait_for_resume(state, RunStatus.AWAITING_HUMAN)
                if self._stop_requested:
                    return _Ending(RunStatus.STOPPED, "stopped while awaiting user")
                if message:
                    conv.append(Turn(iteration=state.iteration, user_message=message))
                continue

            if lim.loop_interval_s > 0:
                await asyncio.sleep(lim.loop_interval_s)

    async def _step(self, state: LoopState, turn: Turn, context: PromptContext) -> Tuple[Optional[_Ending], Optional[str]]:
        """
        One model call and the actions it asks for. Returns (ending, feedback):
        ending is set when the run should leave the loop, feedback carries the
        last recoverable failure into the next prompt.
        """
        try:
            raw = await self._invoke(context)
            turn.raw_text = raw
            prediction = parse(raw, self.cfg.parse_mode)
            turn.thought = prediction.thought
            actions = normalize_all(prediction, self.schema)
        except RECOVERABLE as e:
            return await self._fail(state, turn, e)

        turn.actions = actions
        log.info("Iteration %d: %s", state.iteration, "; ".join(a.brief() for a in actions))

        space: Optional[ModelSpace] = None
        for action in actions:
            if self._stop_requested:
                break

            if action.type == ActionType.FINISHED:
                turn.outcomes.append(ActionOutcome(action, True))
                state.consecutive_failures = 0
                return _Ending(RunStatus.FINISHED, final_answer=action.params.get("content")), None
            if action.type == ActionType.CALL_USER:
                turn.outcomes.append(ActionOutcome(action, True))
                state.consecutive_failures = 0
                return _Ending(RunStatus.AWAITING_HUMAN), None
            if action.type == ActionType.ERROR_ENV:
                turn.outcomes.append(ActionOutcome(action, True))
                return _Ending(RunStatus.ERRORED, "model reported an environment error", ErrorCode.ENVIRONMENT_ERROR), None

            try:
                if space is None and action.points:
                    space = ModelSpace.for_schema(self.schema, turn.screenshot_size)
                mapped = map_action(action, space, turn.geometry)
            except CoordinateError as e:
                log.warning("Skipping %s: %s", action.brief(), e)
                turn.outcomes.append(ActionOutcome(action, False, error=e.describe()))
                await self._emit_error(state, e, last_action=action.brief())
                continue

            t0 = time.time()
            try:
                result = await self._perform(mapped, turn.geometry)
            except RECOVERABLE as e:
                turn.outcomes.append(ActionOutcome(mapped, False, error=e.describe(), cost_ms=_ms_since(t0)))
                return await self._fail(state, turn, e)
            turn.outcomes.append(ActionOutcome(mapped, True, observation=result.observation, cost_ms=_ms_since(t0)))

        state.consecutive_failures = 0
        return None, None

    async def _fail(self, state: LoopState, turn: Turn, e: AgentError) -> Tuple[Optional[_Ending], Optional[str]]:
        state.consecutive_failures += 1
        turn.error = e.describe()
        log.warning(
            "Iteration %d failed (%d/%d): %s",
            state.iteration, state.consecutive_failures, self.limits.retry_budget, turn.error,
        )
        await self._emit_error(state, e)
        if state.consecutive_failures >= self.limits.retry_budget:
            return _Ending(RunStatus.ERRORED, turn.error, ErrorCode.RETRY_EXHAUSTED), None
        return None, turn.error

    async def _capture(self) -> Tuple[Screenshot, Size]:
        try:
            shot = await self._bounded(self.operator.screenshot(), self.limits.screenshot_timeout_s, "screenshot")
        except AgentError:
            raise
        except Exception as e:
            raise ExecutionError(f"screenshot failed: {type(e).__name__}: {e}") from e

        dims = get_image_size(shot.image_bytes) if shot is not None else None
        if dims is None:
            raise ExecutionError("screenshot is not a readable image")
        return shot, Size(*dims)

    async def _invoke(self, context: PromptContext) -> str:
        try:
            raw = await self._bounded(self.model.invoke(context), self.limits.model_timeout_s, "model call")
        except AgentError:
            raise
        except Exception as e:
            raise ModelError(f"{type(e).__name__}: {e}") from e
        if not raw or not raw.strip():
            raise ModelError("model returned an empty response")
        return raw

    async def _perform(self, action: ParsedAction, geometry: Optional[ScreenGeometry]) -> ExecutionResult:
        if action.type == ActionType.TYPE and not self.cfg.allow_danger:
            text = action.params.get("content") or ""
            if is_dangerous_text(text):
                raise ExecutionError(f"refused dangerous text without allow_danger: {text!r}", action.type.value)

        if self.cfg.dry_run:
            log.info("Dry run: %s", action.brief())
            return ExecutionResult.ok("dry run")

        try:
            result = await self._bounded(
                self.operator.execute(action, geometry),
                self.limits.execute_timeout_s,
                f"{action.type.value} action",
            )
        except AgentError:
            raise
        except Exception as e:
            raise ExecutionError(f"{type(e).__name__}: {e}", action.type.value) from e

        if not result.success:
            raise ExecutionError(result.error or "operator reported failure", action.type.value)
        return result

    async def _bounded(self, aw: Awaitable[T], timeout_s: float, what: str) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=timeout_s)
        except asyncio.TimeoutError:
            raise StepTimeoutError(what, timeout_s) from None

    def _should_stop(self) -> bool:
        if self._stop_requested:
            return True
        sf = self.cfg.stop_file
        if sf is not None and sf.exists():
            log.info("Stop file present: %s", sf)
            return True
        return False

    async def _wait_for_resume(self, state: LoopState, status: RunStatus) -> Optional[str]:
        assert self._wake is not None
        self._wake.clear()
        self._pending_message = None
        if status == RunStatus.AWAITING_HUMAN:
            self._paused = True
        await self._set_status(state, status)
        while self._paused and not self._stop_requested:
            await self._wake.wait()
            self._wake.clear()
        message, self._pending_message = self._pending_message, None
        if not self._stop_requested:
            await self._set_status(state, RunStatus.RUNNING)
        return message

    async def _set_status(self, state: LoopState, status: RunStatus) -> None:
        state.status = status
        await self.events.emit(
            AgentEvent(iteration=state.iteration, status=status, last_action=self._last_action)
        )

    async def _emit_error(self, state: LoopState, e: AgentError, last_action: Optional[str] = None) -> None:
        await self.events.emit(
            AgentEvent(
                iteration=state.iteration,
                status=state.status,
                last_action=last_action or self._last_action,
                error=e.describe(),
                kind="error",
                detail={"kind": e.kind},
            )
        )

    async def _finish(self, state: LoopState, ending: _Ending, t0: float) -> None:
        state.status = ending.status
        await self.events.emit(
            AgentEvent(
                iteration=state.iteration,
                status=ending.status,
                last_action=self._last_action,
                timing_ms=_ms_since(t0),
                error=ending.error,
                error_code=ending.code.value if ending.code else None,
                kind="terminal",
                detail={"final_answer": ending.final_answer} if ending.final_answer else {},
            )
        )


def _ms_since(t0: float) -> int:
    return int((time.time() - t0) * 1000)

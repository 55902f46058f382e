from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from guiloop.agent.actions import ScreenGeometry, Size
from guiloop.agent.coords import ModelSpace, map_action
from guiloop.agent.errors import AgentError
from guiloop.agent.events import AgentEvent, EventChannel
from guiloop.agent.grammar import parse
from guiloop.agent.runner import MAX_LOOP_COUNT, AgentConfig, GUIAgent
from guiloop.agent.validate import normalize_all
from guiloop.model.client import DEFAULT_GEMINI_MODEL, GeminiModel, OpenAICompatModel
from guiloop.model.schema import DEFAULT_SCHEMA, get_schema
from guiloop.operators.replay import FrameOperator, ScriptedModel
from guiloop.util.log import get_logger, setup_logging
from guiloop.util.paths import LATEST_JPG

log = get_logger("guiloop.server")


# Global state
class AppState:
    def __init__(self) -> None:
        self.agent: Optional[GUIAgent] = None
        self.task: Optional[asyncio.Task] = None
        self.events = EventChannel()
        self.logs: List[str] = []
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self.agent is not None and self.agent.running


state = AppState()


def _log_event(e: AgentEvent) -> None:
    if e.kind == "turn":
        state.logs.append(f"[{e.iteration}] {e.last_action or '(no action)'}")
    elif e.kind == "error":
        state.logs.append(f"[{e.iteration}] error: {e.error}")
    elif e.kind == "terminal":
        state.logs.append(f"Run ended: {e.status.value}" + (f" ({e.error})" if e.error else ""))
    else:
        state.logs.append(f"Status: {e.status.value}")


state.events.add_observer(_log_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(verbose=True)
    log.info("Server starting...")
    yield
    if state.agent is not None and state.agent.running:
        state.agent.stop()
    log.info("Server shutting down...")


app = FastAPI(lifespan=lifespan)


class RunRequest(BaseModel):
    instruction: str
    provider: str = "gemini"  # gemini | openai
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    thinking_level: Optional[str] = None
    schema_version: str = DEFAULT_SCHEMA
    max_loop_count: int = MAX_LOOP_COUNT
    allow_danger: bool = False
    dry_run: bool = False
    # Canned completions instead of a live model.
    script: Optional[List[str]] = None
    # Block until the run ends and return its result.
    wait: bool = False


class ResumeRequest(BaseModel):
    message: Optional[str] = None


class ParseRequest(BaseModel):
    text: str
    schema_version: str = DEFAULT_SCHEMA
    mode: str = "bc"
    width: Optional[int] = Field(default=None, description="screenshot width, enables mapping")
    height: Optional[int] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    scale_factor: float = Field(default=1.0, gt=0)


def _build_model(req: RunRequest):
    if req.script:
        return ScriptedModel(req.script)
    if req.provider == "openai":
        kw: Dict[str, Any] = {"base_url": req.base_url, "api_key": req.api_key}
        if req.model:
            kw["model"] = req.model
        return OpenAICompatModel(**kw)
    if req.provider == "gemini":
        return GeminiModel(
            model=req.model or DEFAULT_GEMINI_MODEL,
            thinking_level=req.thinking_level,
            api_key=req.api_key,
        )
    raise ValueError(f"unknown provider {req.provider!r}")


async def _run(agent: GUIAgent, instruction: str) -> Dict[str, Any]:
    result = await agent.run(instruction)
    state.last_result = result.to_dict()
    return state.last_result


@app.post("/api/run")
async def run_agent(req: RunRequest):
    if state.running:
        return JSONResponse({"error": "Agent already running"}, status_code=409)

    try:
        model = _build_model(req)
        cfg = AgentConfig(
            schema=req.schema_version,
            max_loop_count=req.max_loop_count,
            allow_danger=req.allow_danger,
            dry_run=req.dry_run,
        )
        agent = GUIAgent(model, FrameOperator(latest_jpg=LATEST_JPG), cfg, events=state.events)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    state.agent = agent
    state.events.history.clear()
    state.logs = [f"Starting agent: {req.instruction}"]
    state.last_result = None

    if req.wait:
        return await _run(agent, req.instruction)

    state.task = asyncio.create_task(_run(agent, req.instruction))
    return {"status": "started"}


@app.post("/api/stop")
async def stop_agent():
    if not state.running:
        return JSONResponse({"error": "Agent not running"}, status_code=409)
    state.agent.stop()
    state.logs.append("Stop requested...")
    return {"status": "stopping"}


@app.post("/api/pause")
async def pause_agent():
    if not state.running:
        return JSONResponse({"error": "Agent not running"}, status_code=409)
    state.agent.pause()
    return {"status": "pausing"}


@app.post("/api/resume")
async def resume_agent(req: ResumeRequest):
    if not state.running:
        return JSONResponse({"error": "Agent not running"}, status_code=409)
    state.agent.resume(req.message)
    return {"status": "resumed"}


@app.get("/api/state")
async def get_state():
    snap = state.agent.snapshot() if state.agent else {"running": False, "status": "idle"}
    snap["logs"] = state.logs[-50:]
    snap["result"] = state.last_result
    return snap


@app.post("/api/parse")
async def parse_text(req: ParseRequest):
    try:
        schema = get_schema(req.schema_version)
        prediction = parse(req.text, req.mode)
        actions = normalize_all(prediction, schema)
    except AgentError as e:
        return JSONResponse({"error": e.kind, "detail": str(e)}, status_code=422)
    except ValueError as e:
        return JSONResponse({"error": "BadRequest", "detail": str(e)}, status_code=400)

    out: Dict[str, Any] = {
        "thought": prediction.thought,
        "reflection": prediction.reflection,
        "actions": [a.to_dict() for a in actions],
    }

    if req.width and req.height:
        shot = Size(req.width, req.height)
        geometry = ScreenGeometry.from_physical(
            req.screen_width or req.width,
            req.screen_height or req.height,
            req.scale_factor,
        )
        try:
            space = ModelSpace.for_schema(schema, shot)
            out["mapped"] = [map_action(a, space, geometry).to_dict() for a in actions]
        except AgentError as e:
            return JSONResponse({"error": e.kind, "detail": str(e)}, status_code=422)
    return out


@app.websocket("/ws/events")
async def websocket_events(websocket: WebSocket):
    await websocket.accept()
    snap = state.agent.snapshot() if state.agent else {"running": False, "status": "idle"}
    await websocket.send_json({"kind": "state", **snap})
    q = state.events.subscribe()

    async def _pump() -> None:
        while True:
            event = await q.get()
            await websocket.send_json(event.to_dict())

    pump = asyncio.create_task(_pump())
    try:
        # Clients only listen; reading here is how a disconnect is noticed.
        while True:
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        state.events.unsubscribe(q)


async def _read_latest_loop():
    """Yields an MJPEG stream from latest.jpg."""
    while True:
        if LATEST_JPG.exists():
            data = await asyncio.to_thread(LATEST_JPG.read_bytes)
            yield (
                b"--frame\r\n"
                b"Content-Type: image/jpeg\r\n\r\n" + data + b"\r\n"
            )
        await asyncio.sleep(0.1)


@app.get("/stream")
async def video_stream():
    return StreamingResponse(
        _read_latest_loop(),
        media_type="multipart/x-mixed-replace; boundary=frame"
    )


def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()

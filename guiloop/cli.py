from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import time
from pathlib import Path
from typing import Tuple

from guiloop.agent.actions import ScreenGeometry, Size
from guiloop.agent.coords import ModelSpace, map_action
from guiloop.agent.errors import AgentError
from guiloop.agent.grammar import MODES, parse
from guiloop.agent.history import RunStatus
from guiloop.agent.runner import MAX_LOOP_COUNT, AgentConfig, GUIAgent
from guiloop.agent.validate import normalize_all
from guiloop.model.client import DEFAULT_GEMINI_MODEL, DEFAULT_OPENAI_MODEL, GeminiModel, OpenAICompatModel
from guiloop.model.schema import DEFAULT_SCHEMA, SCHEMAS, get_schema
from guiloop.operators.replay import FrameOperator, ScriptedModel, load_script
from guiloop.util.log import get_logger, setup_logging
from guiloop.util.paths import LATEST_JPG, RUN_DIR, STOP_FILE

log = get_logger("guiloop.cli")


def _size(s: str) -> Tuple[int, int]:
    try:
        w, h = s.lower().split("x", 1)
        size = int(w), int(h)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got {s!r}") from None
    if size[0] <= 0 or size[1] <= 0:
        raise argparse.ArgumentTypeError(f"size must be positive, got {s!r}")
    return size


def cmd_status(_args) -> int:
    print("Run dir:", RUN_DIR)

    if LATEST_JPG.exists():
        age = time.time() - LATEST_JPG.stat().st_mtime
        print("latest.jpg:", str(LATEST_JPG), f"(age {age:.2f}s)")
    else:
        print("latest.jpg: (missing)")

    print("Stop file:", STOP_FILE, "(present)" if STOP_FILE.exists() else "(absent)")
    print("Schemas:", ", ".join(sorted(SCHEMAS)), f"(default {DEFAULT_SCHEMA})")
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "OPENAI_API_KEY", "GUILOOP_BASE_URL"):
        print(f"{var}:", "set" if os.getenv(var) else "(unset)")
    return 0


def cmd_parse(args) -> int:
    setup_logging(args.verbose)

    if args.scale <= 0:
        print(f"ERROR: --scale must be positive, got {args.scale}", file=sys.stderr)
        return 2

    if args.text == "-":
        text = sys.stdin.read()
    elif args.file:
        text = Path(args.file).read_text(encoding="utf-8")
    else:
        text = args.text or ""

    try:
        schema = get_schema(args.schema)
        prediction = parse(text, args.mode)
        actions = normalize_all(prediction, schema)
        out = {
            "thought": prediction.thought,
            "reflection": prediction.reflection,
            "actions": [a.to_dict() for a in actions],
        }
        if args.size:
            sw, sh = args.size
            pw, ph = args.screen or args.size
            space = ModelSpace.for_schema(schema, Size(sw, sh))
            geometry = ScreenGeometry.from_physical(pw, ph, args.scale)
            out["mapped"] = [map_action(a, space, geometry).to_dict() for a in actions]
    except AgentError as e:
        print(f"ERROR: {e.describe()}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print(json.dumps(out, indent=2, ensure_ascii=False))
    return 0


def _build_model(args):
    if args.script:
        return ScriptedModel(load_script(Path(args.script)))
    if args.provider == "openai":
        return OpenAICompatModel(model=args.model or DEFAULT_OPENAI_MODEL, base_url=args.base_url)
    return GeminiModel(model=args.model or DEFAULT_GEMINI_MODEL, thinking_level=args.thinking_level)


def cmd_run(args) -> int:
    setup_logging(args.verbose)

    if args.scale <= 0:
        print(f"ERROR: --scale must be positive, got {args.scale}", file=sys.stderr)
        return 2

    if STOP_FILE.exists():
        log.warning("Removing stale stop file %s", STOP_FILE)
        STOP_FILE.unlink()

    screen_w, screen_h = args.screen if args.screen else (None, None)
    operator = FrameOperator(
        latest_jpg=Path(args.frame),
        screen_width=screen_w,
        screen_height=screen_h,
        scale_factor=args.scale,
        dump_last_sent=not args.no_dump,
    )
    cfg = AgentConfig(
        schema=args.schema,
        parse_mode=args.mode,
        max_loop_count=args.max_loops,
        retry_budget=args.retry_budget,
        model_timeout_s=args.model_timeout,
        loop_interval_s=args.loop_interval,
        dry_run=args.dry_run,
        allow_danger=args.allow_danger,
        stop_file=STOP_FILE,
    )
    try:
        agent = GUIAgent(_build_model(args), operator, cfg)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    result = asyncio.run(agent.run(args.instruction))
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.status == RunStatus.FINISHED else 1


def cmd_stop(_args) -> int:
    STOP_FILE.touch()
    print("Stop requested:", STOP_FILE)
    return 0


def cmd_serve(args) -> int:
    import uvicorn
    # Import the app to ensure it loads correctly
    from guiloop.server import app
    print(f"Starting server on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="guiloop")
    p.add_argument("-v", "--verbose", action="store_true")

    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("status")
    sp.set_defaults(func=cmd_status)

    sp = sub.add_parser("parse", help="Parse a model completion into actions (JSON)")
    sp.add_argument("text", nargs="?", help="completion text, or - for stdin")
    sp.add_argument("--file", help="read the completion from a file")
    sp.add_argument("--schema", default=DEFAULT_SCHEMA, choices=sorted(SCHEMAS))
    sp.add_argument("--mode", default="bc", choices=MODES)
    sp.add_argument("--size", type=_size, help="screenshot WIDTHxHEIGHT; enables mapping to pixels")
    sp.add_argument("--screen", type=_size, help="physical screen WIDTHxHEIGHT (default: --size)")
    sp.add_argument("--scale", type=float, default=1.0)
    sp.set_defaults(func=cmd_parse)

    sp = sub.add_parser("run", help='Run agent loop: guiloop run "..."')
    sp.add_argument("instruction")
    sp.add_argument("--provider", default="gemini", choices=["gemini", "openai"])
    sp.add_argument("--model", default=None)
    sp.add_argument("--base-url", default=None, help="OpenAI-compatible endpoint (or GUILOOP_BASE_URL)")
    sp.add_argument("--thinking-level", default=None, help="Gemini thinking level (minimal/low/medium/high)")
    sp.add_argument("--script", default=None, help="replay completions from a file ('---' separated)")
    sp.add_argument("--schema", default=DEFAULT_SCHEMA, choices=sorted(SCHEMAS))
    sp.add_argument("--mode", default="bc", choices=MODES)
    sp.add_argument("--frame", default=str(LATEST_JPG))
    sp.add_argument("--screen", type=_size, default=None, help="physical screen WIDTHxHEIGHT (default: frame size)")
    sp.add_argument("--scale", type=float, default=1.0)
    sp.add_argument("--max-loops", type=int, default=MAX_LOOP_COUNT)
    sp.add_argument("--retry-budget", type=int, default=3)
    sp.add_argument("--model-timeout", type=float, default=120.0)
    sp.add_argument("--loop-interval", type=float, default=0.0)
    sp.add_argument("--dry-run", action="store_true")
    sp.add_argument("--allow-danger", action="store_true")
    sp.add_argument("--no-dump", action="store_true", help="do not write last_sent.jpg")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("stop", help="Ask a running agent to stop")
    sp.set_defaults(func=cmd_stop)

    sp = sub.add_parser("serve", help="Run the guiloop web server")
    sp.add_argument("--host", default="0.0.0.0")
    sp.add_argument("--port", type=int, default=8000)
    sp.set_defaults(func=cmd_serve)

    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "verbose"):
        args.verbose = False
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())

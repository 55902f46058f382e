# Action space tables, one per model family.
# Loaded once at import and never mutated; runs share them read-only.

from __future__ import annotations

from typing import Dict, Tuple

from guiloop.agent.actions import ActionSchema, ActionSpec, ActionType, ParamSpec, ParamType

POINT = ParamSpec("point", ParamType.POINT, aliases=("start_box", "start_point", "box"))
OPT_POINT = ParamSpec("point", ParamType.POINT, required=False, aliases=("start_box", "start_point", "box"))
START = ParamSpec("start", ParamType.POINT, aliases=("start_box", "start_point"))
END = ParamSpec("end", ParamType.POINT, aliases=("end_box", "end_point"))
KEY = ParamSpec("key", ParamType.KEY, aliases=("hotkey", "keys"))
CONTENT = ParamSpec("content", ParamType.STRING, aliases=("text",))
OPT_CONTENT = ParamSpec("content", ParamType.STRING, required=False, aliases=("text", "summary"))
DIRECTION = ParamSpec("direction", ParamType.DIRECTION)
WAIT_MS = ParamSpec("ms", ParamType.INTEGER, required=False)

_POINTER: Tuple[ActionSpec, ...] = (
    ActionSpec(ActionType.CLICK, (POINT,), call_names=("left_single", "left_click")),
    ActionSpec(ActionType.DOUBLE_CLICK, (POINT,), call_names=("left_double",)),
    ActionSpec(ActionType.RIGHT_CLICK, (POINT,), call_names=("right_single",)),
    ActionSpec(ActionType.MIDDLE_CLICK, (POINT,)),
    ActionSpec(ActionType.HOVER, (POINT,), call_names=("mouse_move",)),
    ActionSpec(ActionType.DRAG, (START, END), call_names=("select", "left_click_drag")),
)

_KEYBOARD: Tuple[ActionSpec, ...] = (
    ActionSpec(ActionType.TYPE, (CONTENT,)),
    ActionSpec(ActionType.HOTKEY, (KEY,)),
    ActionSpec(ActionType.PRESS, (KEY,)),
    ActionSpec(ActionType.RELEASE, (KEY,)),
)

_CONTROL: Tuple[ActionSpec, ...] = (
    ActionSpec(ActionType.WAIT, (WAIT_MS,)),
    ActionSpec(ActionType.SCREENSHOT, ()),
    ActionSpec(ActionType.FINISHED, (OPT_CONTENT,)),
    ActionSpec(ActionType.CALL_USER, ()),
    ActionSpec(ActionType.ERROR_ENV, ()),
)

UI_TARS_1_0 = ActionSchema(
    version="ui-tars-1.0",
    specs=_POINTER + _KEYBOARD + (ActionSpec(ActionType.SCROLL, (OPT_POINT, DIRECTION)),) + _CONTROL,
    coordinates="relative",
    factors=(1000, 1000),
)

UI_TARS_1_5 = ActionSchema(
    version="ui-tars-1.5",
    specs=UI_TARS_1_0.specs,
    coordinates="absolute",
    factors=(1000, 1000),
)

MOBILE = ActionSchema(
    version="mobile",
    specs=(
        ActionSpec(ActionType.CLICK, (POINT,)),
        ActionSpec(ActionType.LONG_PRESS, (POINT,)),
        ActionSpec(ActionType.DRAG, (START, END), call_names=("swipe",)),
        ActionSpec(ActionType.TYPE, (CONTENT,)),
        ActionSpec(ActionType.SCROLL, (OPT_POINT, DIRECTION)),
        ActionSpec(ActionType.OPEN_APP, (ParamSpec("app_name", ParamType.STRING, aliases=("app",)),)),
        ActionSpec(ActionType.PRESS_HOME, ()),
        ActionSpec(ActionType.PRESS_BACK, ()),
    )
    + _CONTROL,
    coordinates="relative",
    factors=(1000, 1000),
    platform="mobile",
)

SCHEMAS: Dict[str, ActionSchema] = {s.version: s for s in (UI_TARS_1_0, UI_TARS_1_5, MOBILE)}
DEFAULT_SCHEMA = UI_TARS_1_0.version


def get_schema(version: str = DEFAULT_SCHEMA) -> ActionSchema:
    try:
        return SCHEMAS[version]
    except KeyError:
        raise ValueError(f"unknown action schema {version!r} (known: {', '.join(sorted(SCHEMAS))})") from None


# Human-readable action space for the system prompt, per schema.
ACTION_SPACE_DOCS: Dict[str, Tuple[str, ...]] = {
    "computer": (
        "click(point='<point>x1 y1</point>')",
        "left_double(point='<point>x1 y1</point>')",
        "right_single(point='<point>x1 y1</point>')",
        "drag(start_point='<point>x1 y1</point>', end_point='<point>x2 y2</point>')",
        "hotkey(key='ctrl c') # Split keys with a space and use lowercase. Also, do not use more than 3 keys in one hotkey action.",
        "type(content='xxx') # Use escape characters \\', \\\", and \\n in content part to ensure we can parse the content in normal python string format. If you want to submit your input, use \\n at the end of content.",
        "scroll(point='<point>x1 y1</point>', direction='down or up or right or left') # Show more information on the `direction` side.",
        "wait() #Sleep for 5s and take a screenshot to check for any changes.",
        "finished(content='xxx') # Use escape characters \\', \\\", and \\n in content part to ensure we can parse the content in normal python string format.",
        "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
    ),
    "mobile": (
        "click(point='<point>x1 y1</point>')",
        "long_press(point='<point>x1 y1</point>')",
        "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
        "scroll(point='<point>x1 y1</point>', direction='down or up or right or left')",
        "open_app(app_name='')",
        "drag(start_point='<point>x1 y1</point>', end_point='<point>x2 y2</point>')",
        "press_home()",
        "press_back()",
        "finished(content='xxx')",
    ),
}

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

Number = Union[int, float]


class ActionType(str, Enum):
    CLICK = "click"
    DOUBLE_CLICK = "double_click"
    RIGHT_CLICK = "right_click"
    MIDDLE_CLICK = "middle_click"
    HOVER = "hover"
    DRAG = "drag"
    TYPE = "type"
    HOTKEY = "hotkey"
    PRESS = "press"
    RELEASE = "release"
    SCROLL = "scroll"
    WAIT = "wait"
    SCREENSHOT = "screenshot"
    LONG_PRESS = "long_press"
    OPEN_APP = "open_app"
    PRESS_HOME = "press_home"
    PRESS_BACK = "press_back"
    CALL_USER = "call_user"
    FINISHED = "finished"
    ERROR_ENV = "error_env"


# Control actions end the turn; the operator never performs them.
CONTROL_ACTIONS = frozenset({ActionType.CALL_USER, ActionType.FINISHED, ActionType.ERROR_ENV})


class Space(str, Enum):
    MODEL = "model"
    SCREENSHOT = "screenshot"
    LOGICAL = "logical"
    PHYSICAL = "physical"


class ParamType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    KEY = "key"
    DIRECTION = "direction"
    BUTTON = "button"
    POINT = "point"


DIRECTIONS = ("up", "down", "left", "right")
BUTTONS = ("left", "right", "middle")


@dataclass(frozen=True)
class Point:
    x: Number
    y: Number
    space: Space

    def as_tuple(self) -> Tuple[Number, Number]:
        return (self.x, self.y)


@dataclass(frozen=True)
class Size:
    width: int
    height: int

    @property
    def empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True)
class ScreenGeometry:
    physical_size: Size
    logical_size: Optional[Size] = None
    scale_factor: Optional[float] = 1.0

    @classmethod
    def from_physical(cls, width: int, height: int, scale_factor: float = 1.0) -> "ScreenGeometry":
        logical = Size(int(round(width / scale_factor)), int(round(height / scale_factor)))
        return cls(Size(width, height), logical, scale_factor)


@dataclass(frozen=True)
class RawActionToken:
    name: str
    args_text: str
    source: str = ""


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: ParamType
    required: bool = True
    aliases: Tuple[str, ...] = ()

    def accepts(self, key: str) -> bool:
        return key == self.name or key in self.aliases


@dataclass(frozen=True)
class ActionSpec:
    type: ActionType
    params: Tuple[ParamSpec, ...] = ()
    # Extra call names some model families use for the same action.
    call_names: Tuple[str, ...] = ()

    def param_for(self, key: str) -> Optional[ParamSpec]:
        for p in self.params:
            if p.accepts(key):
                return p
        return None


@dataclass(frozen=True)
class ActionSchema:
    """Immutable table of the action calls one model family may emit."""

    version: str
    specs: Tuple[ActionSpec, ...]
    # "relative": points are reported on a fixed factor grid (e.g. 0-1000).
    # "absolute": points are pixels of the smart-resized screenshot.
    coordinates: str = "relative"
    factors: Tuple[int, int] = (1000, 1000)
    platform: str = "computer"
    _index: Mapping[str, ActionSpec] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index: Dict[str, ActionSpec] = {}
        for spec in self.specs:
            for name in (spec.type.value,) + spec.call_names:
                if name in index:
                    raise ValueError(f"duplicate call name {name!r} in schema {self.version}")
                index[name] = spec
        object.__setattr__(self, "_index", index)

    def lookup(self, name: str) -> Optional[ActionSpec]:
        return self._index.get(name)

    def spec_for(self, t: ActionType) -> Optional[ActionSpec]:
        return self._index.get(t.value)

    @property
    def call_names(self) -> List[str]:
        return sorted(self._index)


@dataclass(frozen=True)
class ParsedAction:
    type: ActionType
    params: Dict[str, Any] = field(default_factory=dict)
    raw_text: str = ""
    space: Space = Space.MODEL

    @property
    def is_control(self) -> bool:
        return self.type in CONTROL_ACTIONS

    @property
    def points(self) -> List[Point]:
        return [v for v in self.params.values() if isinstance(v, Point)]

    def point(self, name: str = "point") -> Optional[Point]:
        v = self.params.get(name)
        return v if isinstance(v, Point) else None

    def with_points(self, fn: Callable[[Point], Point], space: Space) -> "ParsedAction":
        params = {k: (fn(v) if isinstance(v, Point) else v) for k, v in self.params.items()}
        return replace(self, params=params, space=space)

    def to_call(self) -> str:
        """Serializes back to the call syntax the model emits."""
        args: List[str] = []
        for k, v in self.params.items():
            if v is None:
                continue
            if isinstance(v, Point):
                s = f"<point>{_fmt_num(v.x)},{_fmt_num(v.y)}</point>"
            elif isinstance(v, bool):
                s = "true" if v else "false"
            elif isinstance(v, (int, float)):
                args.append(f"{k}={_fmt_num(v)}")
                continue
            else:
                s = str(v)
            args.append(f"{k}='{quote(s)}'")
        return f"{self.type.value}({', '.join(args)})"

    def brief(self) -> str:
        parts = []
        for k, v in self.params.items():
            if v is None:
                continue
            if isinstance(v, Point):
                parts.append(f"{k}@{_fmt_num(v.x)},{_fmt_num(v.y)}")
            else:
                t = str(v)
                parts.append(f"{k}={t[:40]!r}{'…' if len(t) > 40 else ''}")
        return f"{self.type.value}({', '.join(parts)})"

    def to_dict(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for k, v in self.params.items():
            if isinstance(v, Point):
                params[k] = {"x": v.x, "y": v.y, "space": v.space.value}
            else:
                params[k] = v
        return {"type": self.type.value, "params": params, "space": self.space.value, "raw_text": self.raw_text}


def quote(s: str) -> str:
    return s.replace("\\", "\\\\").replace("'", "\\'")


def unquote(s: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(s):
        c = s[i]
        if c == "\\" and i + 1 < len(s) and s[i + 1] in "\\'\"":
            out.append(s[i + 1])
            i += 2
            continue
        out.append(c)
        i += 1
    return "".join(out)


def _fmt_num(v: Number) -> str:
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return repr(v) if isinstance(v, float) else str(v)

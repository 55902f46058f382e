from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from guiloop.agent.actions import (
    BUTTONS,
    DIRECTIONS,
    ActionSchema,
    ActionType,
    ParamSpec,
    ParamType,
    ParsedAction,
    Point,
    RawActionToken,
    Space,
    unquote,
)
from guiloop.agent.errors import ValidationError
from guiloop.agent.grammar import Prediction
from guiloop.util.log import get_logger

log = get_logger("guiloop.agent.validate")

MAX_KEY_LEN = 64
MAX_TEXT_LEN = 2000
MAX_WAIT_MS = 60000

DANGER_PATTERNS = [
    "rm -", "rm -rf", "del /", "format ", "mkfs", "shutdown", "reboot",
    "passwd", "net user", "reg delete", "diskpart", "bcdedit",
]

_KW_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*=(?!=)\s*(.*)$", re.S)
_LOOSE_KW_RE = re.compile(r"(?:^|,)\s*([A-Za-z_][A-Za-z0-9_]*)\s*=(?!=)")
_NUM_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_TAG_RE = re.compile(r"</?(point|bbox)>")
_KEY_SPLIT_RE = re.compile(r"\s+|(?<=\w)\+(?=\w)")

Arg = Tuple[Optional[str], str]


def normalize(token: RawActionToken, schema: ActionSchema) -> ParsedAction:
    spec = schema.lookup(token.name)
    if spec is None:
        raise ValidationError(
            ValidationError.UNKNOWN_ACTION,
            f"unknown action {token.name!r} for schema {schema.version}",
            action=token.name,
        )

    action_name = spec.type.value
    values: Dict[str, Any] = {}
    positional: List[str] = []

    for key, raw in split_args(token.args_text):
        if key is None:
            positional.append(raw)
            continue
        p = spec.param_for(key)
        if p is None:
            log.warning("Dropping unknown argument %r of %s", key, token.name)
            continue
        if p.name in values:
            log.warning("Argument %r of %s given twice; keeping the first", key, token.name)
            continue
        values[p.name] = raw

    free = [p for p in spec.params if p.name not in values]
    i = 0
    for p in free:
        if i >= len(positional):
            break
        raw = positional[i]
        # click(100, 200): two bare numbers fill one point parameter
        if p.type == ParamType.POINT and _is_number(raw) and i + 1 < len(positional) and _is_number(positional[i + 1]):
            raw = f"({raw},{positional[i + 1]})"
            i += 1
        elif not p.required and not _fits(p, raw, action_name):
            # scroll('down'): an optional parameter the value cannot fill is skipped
            continue
        i += 1
        values[p.name] = raw
    if i < len(positional):
        raise ValidationError(
            ValidationError.TYPE_MISMATCH,
            f"{action_name} takes {len(spec.params)} argument(s), got extra positional {positional[i:]!r}",
            action=action_name,
        )

    params: Dict[str, Any] = {}
    for p in spec.params:
        raw = values.get(p.name)
        v = None if raw is None else _coerce(p, raw, action_name)
        if v is None and p.required:
            raise ValidationError(
                ValidationError.MISSING_ARGUMENT,
                f"{action_name} requires argument {p.name!r}",
                action=action_name,
                param=p.name,
            )
        params[p.name] = v

    if spec.type == ActionType.WAIT and (params.get("ms") or 0) > MAX_WAIT_MS:
        raise ValidationError(
            ValidationError.TYPE_MISMATCH,
            f"wait.ms must be at most {MAX_WAIT_MS}, got {params['ms']}",
            action=action_name,
            param="ms",
        )

    return ParsedAction(type=spec.type, params=params, raw_text=token.source, space=Space.MODEL)


def normalize_all(prediction: Prediction, schema: ActionSchema) -> List[ParsedAction]:
    return [normalize(t, schema) for t in prediction.tokens]


def split_args(args_text: str) -> List[Arg]:
    """
    Splits call arguments on top-level commas. Returns (keyword or None, value)
    pairs with surrounding quotes removed and escapes resolved.
    """
    s = (args_text or "").strip()
    if not s:
        return []

    pieces = _split_strict(s)
    if pieces is None:
        return _split_loose(s)

    out: List[Arg] = []
    for piece in pieces:
        m = _KW_RE.match(piece)
        if m:
            out.append((m.group(1), _decode(m.group(2))))
        else:
            out.append((None, _decode(piece)))
    return out


def parse_point(value: str) -> Optional[Point]:
    """
    Reads a model-space point from any of the coordinate notations models use:
    <point>X,Y</point>, <point>X Y</point>, (X,Y), [X,Y], or a box
    [x1,y1,x2,y2] / <bbox>x1 y1 x2 y2</bbox> which yields its centre.
    Returns None for an empty value; raises ValueError when unreadable.
    """
    s = _TAG_RE.sub(" ", value or "")
    s = re.sub(r"[()\[\]]", " ", s).strip()
    if not s:
        return None
    parts = [p for p in re.split(r"[,\s]+", s) if p]
    nums = [_num(p) for p in parts]
    if len(nums) == 2:
        return Point(nums[0], nums[1], Space.MODEL)
    if len(nums) == 4:
        x1, y1, x2, y2 = nums
        return Point(_mid(x1, x2), _mid(y1, y2), Space.MODEL)
    raise ValueError(f"expected 2 or 4 coordinates, got {len(nums)}")


def is_dangerous_text(text: str) -> bool:
    t = text.lower()
    return any(p in t for p in DANGER_PATTERNS)


def _fits(p: ParamSpec, raw: str, action: str) -> bool:
    try:
        _coerce(p, raw, action)
    except ValidationError:
        return False
    return True


def _coerce(p: ParamSpec, raw: str, action: str) -> Any:
    def bad(why: str) -> ValidationError:
        return ValidationError(
            ValidationError.TYPE_MISMATCH,
            f"{action}.{p.name}: {why} (got {raw[:80]!r})",
            action=action,
            param=p.name,
        )

    if p.type == ParamType.STRING:
        if len(raw) > MAX_TEXT_LEN:
            raise bad(f"longer than {MAX_TEXT_LEN} chars")
        return raw

    if p.type == ParamType.POINT:
        try:
            return parse_point(raw)
        except ValueError as e:
            raise bad(str(e)) from None

    if not raw.strip():
        return None

    if p.type == ParamType.INTEGER:
        try:
            f = float(raw)
        except ValueError:
            raise bad("not an integer") from None
        if not f.is_integer():
            raise bad("not an integer")
        if f < 0:
            raise bad("must not be negative")
        return int(f)

    if p.type == ParamType.KEY:
        keys = [k for k in _KEY_SPLIT_RE.split(raw.strip().lower()) if k]
        key = " ".join(keys)
        if len(key) > MAX_KEY_LEN:
            raise bad(f"longer than {MAX_KEY_LEN} chars")
        return key

    if p.type == ParamType.DIRECTION:
        d = raw.strip().lower()
        if d not in DIRECTIONS:
            raise bad(f"direction must be one of {', '.join(DIRECTIONS)}")
        return d

    if p.type == ParamType.BUTTON:
        b = raw.strip().lower()
        if b not in BUTTONS:
            raise bad(f"button must be one of {', '.join(BUTTONS)}")
        return b

    raise bad(f"unsupported parameter type {p.type}")


def _split_strict(s: str) -> Optional[List[str]]:
    pieces: List[str] = []
    depth = 0
    quote: Optional[str] = None
    start = 0
    i = 0
    while i < len(s):
        c = s[i]
        if quote:
            if c == "\\":
                i += 2
                continue
            if c == quote:
                quote = None
        elif c in ("'", '"'):
            quote = c
        elif c == "<" and (s.startswith("<point>", i) or s.startswith("<bbox>", i)):
            tag = "</point>" if s.startswith("<point>", i) else "</bbox>"
            end = s.find(tag, i)
            if end == -1:
                return None
            i = end + len(tag)
            continue
        elif c in "([{":
            depth += 1
        elif c in ")]}":
            depth -= 1
        elif c == "," and depth == 0:
            pieces.append(s[start:i].strip())
            start = i + 1
        i += 1
    if quote or depth != 0:
        return None
    pieces.append(s[start:].strip())
    return [p for p in pieces if p]


def _split_loose(s: str) -> List[Arg]:
    matches = list(_LOOSE_KW_RE.finditer(s))
    if not matches:
        return [(None, _strip_quotes(s))]
    out: List[Arg] = []
    for idx, m in enumerate(matches):
        end = matches[idx + 1].start() if idx + 1 < len(matches) else len(s)
        out.append((m.group(1), _strip_quotes(s[m.end():end].strip())))
    return out


def _decode(v: str) -> str:
    v = v.strip()
    if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
        return unquote(v[1:-1])
    return v


def _strip_quotes(v: str) -> str:
    if v[:1] in ("'", '"'):
        v = v[1:]
    if v[-1:] in ("'", '"'):
        v = v[:-1]
    return unquote(v)


def _is_number(s: str) -> bool:
    return bool(_NUM_RE.match(s.strip()))


def _num(s: str):
    if not _is_number(s):
        raise ValueError(f"not a number: {s!r}")
    f = float(s)
    return int(f) if f.is_integer() and "." not in s else f


def _mid(a, b):
    m = (a + b) / 2
    return int(m) if float(m).is_integer() else m

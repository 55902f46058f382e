"""
Lexical pass over a raw model completion.

A completion looks like::

    Thought: The search box is at the top.
    Action: click(point='<point>510 150</point>')

    type(content='weather\\n')

The parser pulls out the thought (and reflection, when present) and the
ordered list of call tokens. It never evaluates anything; argument text is
handed to the normalizer untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from guiloop.agent.actions import RawActionToken
from guiloop.agent.errors import ParseError
from guiloop.util.log import get_logger

log = get_logger("guiloop.agent.grammar")

_THINK_RE = re.compile(r"<think>.*?</think>", re.S)
_BOX_MARK_RE = re.compile(r"<\|box_start\|>|<\|box_end\|>")
_ACTION_LABEL_RE = re.compile(r"^[ \t]*Action:", re.M)
_CALL_START_RE = re.compile(r"^[ \t]*([A-Za-z_][A-Za-z0-9_]*)\(", re.M)
# Action names are lower-case; without a label, "Note(...)" style prose is not a call.
_BARE_CALL_START_RE = re.compile(r"^[ \t]*([a-z_][a-z0-9_]*)\(", re.M)
_INLINE_LABEL_RE = re.compile(r"(?<=\s)Action:")

_THOUGHT_RE = re.compile(r"Thought:\s*(.+)", re.S)
_REFLECTION_RE = re.compile(r"Reflection:\s*(.+?)Action_Summary:\s*(.+)", re.S)
_SUMMARY_RE = re.compile(r"Action_Summary:\s*(.+)", re.S)

_O1_THOUGHT_RE = re.compile(r"<Thought>\s*(.*?)\s*</Thought>", re.S)
_O1_SUMMARY_RE = re.compile(r"Action_Summary:\s*(.*?)\s*Action:", re.S)
_O1_ACTION_RE = re.compile(r"Action:\s*(.*?)\s*</Output>", re.S)

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")", "]", "}"}

MODES = ("bc", "o1")


@dataclass
class Prediction:
    thought: str
    tokens: List[RawActionToken] = field(default_factory=list)
    reflection: Optional[str] = None
    raw_text: str = ""


def parse(raw_text: str, mode: str = "bc") -> Prediction:
    """Splits a completion into thought + call tokens, in source order."""
    if mode not in MODES:
        raise ValueError(f"unknown parse mode {mode!r}")

    text = _BOX_MARK_RE.sub("", _THINK_RE.sub("", raw_text or "")).strip()

    if mode == "o1":
        thought, reflection, region = _split_o1(text)
        labelled = True
    else:
        thought, reflection, region, labelled = _split_bc(text)

    if labelled:
        found = _scan_calls(region, _CALL_START_RE)
    else:
        found = _trailing_block(region, _scan_calls(region, _BARE_CALL_START_RE))
    if not found:
        raise ParseError("no action call found in model output", text=raw_text or "")

    if thought is None:
        thought = region[: found[0][0]].strip()
        if not labelled and thought.startswith("Thought:"):
            thought = thought[len("Thought:") :].strip()

    tokens = [tok for _, tok in found]
    log.debug("parsed %d call(s): %s", len(tokens), ", ".join(t.name for t in tokens))
    return Prediction(thought=thought, tokens=tokens, reflection=reflection, raw_text=raw_text)


def strip_reflection(text: str) -> str:
    """History keeps the summary and action, not the reflection block."""
    return re.sub(r"Reflection:[\s\S]*?(?=Action_Summary:|Action:|$)", "", text or "").strip()


def _split_bc(text: str) -> Tuple[Optional[str], Optional[str], str, bool]:
    # The last "Action:" label opens the action region, so a thought that
    # mentions the word does not swallow the calls.
    labels = list(_ACTION_LABEL_RE.finditer(text)) or list(_INLINE_LABEL_RE.finditer(text))
    if not labels:
        return None, None, text, False

    head, region = text[: labels[-1].start()], text[labels[-1].end() :]
    thought: Optional[str] = None
    reflection: Optional[str] = None

    if "Thought:" in head:
        m = _THOUGHT_RE.search(head)
        if m:
            thought = m.group(1).strip()
    elif head.startswith("Reflection:"):
        m = _REFLECTION_RE.search(head)
        if m:
            reflection = m.group(1).strip()
            thought = m.group(2).strip()
    elif head.startswith("Action_Summary:"):
        m = _SUMMARY_RE.search(head)
        if m:
            thought = m.group(1).strip()
    return thought, reflection, region, True


def _split_o1(text: str) -> Tuple[Optional[str], Optional[str], str]:
    tm = _O1_THOUGHT_RE.search(text)
    sm = _O1_SUMMARY_RE.search(text)
    am = _O1_ACTION_RE.search(text)

    thought = tm.group(1) if tm else ""
    if sm:
        thought = f"{thought}\n<Action_Summary>\n{sm.group(1)}"
    region = am.group(1) if am else ""
    return thought, None, region


def _scan_calls(region: str, start_re: "re.Pattern[str]") -> List[Tuple[int, RawActionToken]]:
    out: List[Tuple[int, RawActionToken]] = []
    pos = 0
    while True:
        m = start_re.search(region, pos)
        if not m:
            break
        open_idx = m.end() - 1
        close = _match_paren(region, open_idx)
        if close is None or not _line_ends_after(region, close):
            close = _loose_close(region, open_idx)
        if close is None:
            pos = m.end()
            continue

        name = m.group(1)
        out.append(
            (
                m.start(1),
                RawActionToken(
                    name=name,
                    args_text=region[open_idx + 1 : close],
                    source=region[m.start(1) : close + 1],
                ),
            )
        )
        pos = close + 1
    return out


def _match_paren(s: str, open_idx: int) -> Optional[int]:
    """Index of the ')' matching s[open_idx], honouring quotes and brackets."""
    stack: List[str] = []
    quote: Optional[str] = None
    i = open_idx
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
        elif c in _OPENERS:
            stack.append(_OPENERS[c])
        elif c in _CLOSERS:
            if not stack or stack[-1] != c:
                return None
            stack.pop()
            if not stack:
                return i
        i += 1
    return None


def _line_ends_after(s: str, idx: int) -> bool:
    nl = s.find("\n", idx + 1)
    rest = s[idx + 1 : nl if nl != -1 else len(s)].strip()
    return not rest or rest.startswith("#")


def _loose_close(s: str, open_idx: int) -> Optional[int]:
    # Models sometimes leave an apostrophe unescaped inside a quoted value,
    # e.g. type(content='I'm here'). Fall back to the first line, up to the
    # next blank line, that ends in ')' (a trailing comment is allowed).
    stop = s.find("\n\n", open_idx)
    if stop == -1:
        stop = len(s)
    chunk = s[open_idx:stop]
    line_start = open_idx + 1
    for nl_rel in _line_breaks(chunk):
        line_end = open_idx + nl_rel
        close = s.rfind(")", line_start, line_end)
        if close != -1 and _line_ends_after(s, close):
            return close
        line_start = line_end + 1
    return None


def _line_breaks(chunk: str) -> List[int]:
    return [i for i, c in enumerate(chunk) if c == "\n"] + [len(chunk)]


def _trailing_block(region: str, found: List[Tuple[int, RawActionToken]]) -> List[Tuple[int, RawActionToken]]:
    """Without a label, only the calls after the last line of prose count."""
    for i in range(len(found) - 1, 0, -1):
        prev_start, prev = found[i - 1]
        gap = region[prev_start + len(prev.source) : found[i][0]]
        if any(line.strip() and not line.strip().startswith("#") for line in gap.splitlines()):
            return found[i:]
    return found

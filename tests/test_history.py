from collections import deque

from guiloop.agent.actions import ActionType, ParsedAction
from guiloop.agent.history import ActionOutcome, Conversation, LoopState, PromptContext, Turn, build_prompt_messages


def _conversation(n: int) -> Conversation:
    conv = Conversation("open the settings")
    for i in range(1, n + 1):
        conv.append(Turn(iteration=i, screenshot=f"img{i}".encode(), raw_text=f"Action: wait() # {i}"))
    return conv


def _window(conv: Conversation, current: bytes, size: int) -> deque:
    window = deque(maxlen=size)
    for t in conv.turns:
        if t.screenshot is not None:
            window.append(t.screenshot)
    window.append(current)
    return window


def test_append_stamps_end_time():
    conv = Conversation("x")
    t = Turn(iteration=1)
    conv.append(t)
    assert t.end >= t.start
    assert len(conv) == 1
    assert conv.turns[-1] is t


def test_turns_is_a_copy():
    conv = _conversation(2)
    conv.turns.clear()
    assert len(conv) == 2


def test_prompt_messages_interleave_history():
    conv = _conversation(2)
    msgs = build_prompt_messages(conv, _window(conv, b"now", 5))
    assert [(m.role, m.image, m.text) for m in msgs] == [
        ("user", b"img1", None),
        ("assistant", None, "Action: wait() # 1"),
        ("user", b"img2", None),
        ("assistant", None, "Action: wait() # 2"),
        ("user", b"now", None),
    ]


def test_only_newest_images_are_kept():
    conv = _conversation(6)
    msgs = build_prompt_messages(conv, _window(conv, b"now", 5))
    images = [m.image for m in msgs if m.image is not None]
    assert images == [b"img3", b"img4", b"img5", b"img6", b"now"]
    # Text of older turns survives.
    assert len([m for m in msgs if m.role == "assistant"]) == 6
    assert msgs[-1].image == b"now"
    # img3 sits right before the reply of turn 3.
    i = [m.image for m in msgs].index(b"img3")
    assert msgs[i + 1].text == "Action: wait() # 3"


def test_loop_state_image_history_is_bounded():
    state = LoopState(max_image_length=3)
    for i in range(7):
        state.image_history.append(f"img{i}".encode())
        assert len(state.image_history) <= 3
    assert list(state.image_history) == [b"img4", b"img5", b"img6"]


def test_user_messages_and_reflection_in_history():
    conv = Conversation("x")
    conv.append(Turn(iteration=1, screenshot=b"a", raw_text="Reflection: r\nAction_Summary: s\nAction: call_user()"))
    conv.append(Turn(iteration=1, user_message="I logged in for you"))
    msgs = build_prompt_messages(conv, [b"a", b"b"])
    texts = [m.text for m in msgs if m.text]
    assert texts == ["Action_Summary: s\nAction: call_user()", "I logged in for you"]


def test_prompt_context_images():
    conv = _conversation(1)
    msgs = build_prompt_messages(conv, _window(conv, b"now", 1))
    ctx = PromptContext(system_prompt="sys", instruction="x", messages=msgs)
    assert ctx.images == [b"now"]


def test_turn_summary():
    wait = ParsedAction(ActionType.WAIT, {})
    t = Turn(iteration=3, thought="wait for it", actions=[wait], outcomes=[ActionOutcome(wait, True, cost_ms=5)])
    t.end = t.start + 0.2505
    s = t.summary()
    assert s["iteration"] == 3
    assert s["actions"] == ["wait()"]
    assert s["outcomes"][0]["success"] is True
    assert s["cost_ms"] == 250

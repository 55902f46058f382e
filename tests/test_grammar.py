import pytest

from guiloop.agent.errors import ParseError
from guiloop.agent.grammar import parse, strip_reflection


def test_thought_and_single_action():
    p = parse("Thought: The search box is at the top.\nAction: click(point='<point>510 150</point>')")
    assert p.thought == "The search box is at the top."
    assert len(p.tokens) == 1
    assert p.tokens[0].name == "click"
    assert p.tokens[0].args_text == "point='<point>510 150</point>'"


def test_unlabelled_text_before_call_is_the_thought():
    p = parse("I will click the button.\nclick(point='<point>512,384</point>')")
    assert p.thought == "I will click the button."
    assert [t.name for t in p.tokens] == ["click"]


def test_multiple_calls_keep_source_order():
    p = parse("Thought: copy then paste\nAction: hotkey(key='ctrl c')\n\nhotkey(key='ctrl v')\n\nwait()")
    assert [t.name for t in p.tokens] == ["hotkey", "hotkey", "wait"]
    assert p.tokens[0].args_text == "key='ctrl c'"
    assert p.tokens[1].args_text == "key='ctrl v'"
    assert p.tokens[2].args_text == ""


def test_no_action_found():
    with pytest.raises(ParseError) as ei:
        parse("I think we are done here.")
    assert ei.value.kind == "NoActionFound"
    assert ei.value.text == "I think we are done here."


def test_empty_text_has_no_action():
    with pytest.raises(ParseError):
        parse("")


def test_think_block_is_ignored():
    p = parse("<think>maybe click(point='<point>1 1</point>')</think>Thought: wait a bit\nAction: wait()")
    assert [t.name for t in p.tokens] == ["wait"]
    assert p.thought == "wait a bit"


def test_box_markers_are_stripped():
    p = parse("Action: click(start_box='<|box_start|>(100,200)<|box_end|>')")
    assert p.tokens[0].args_text == "start_box='(100,200)'"


def test_parens_inside_quotes_do_not_end_the_call():
    p = parse("Action: type(content='f(x) = (a + b)')")
    assert p.tokens[0].args_text == "content='f(x) = (a + b)'"


def test_escaped_quote_inside_value():
    p = parse(r"""Action: type(content='it\'s "ok"')""")
    assert p.tokens[0].args_text == r"""content='it\'s "ok"'"""


def test_unescaped_apostrophe_falls_back_to_line_end():
    p = parse("Action: type(content='I'm here')")
    assert p.tokens[0].name == "type"
    assert p.tokens[0].args_text == "content='I'm here'"


def test_trailing_comment_after_call():
    p = parse("Action: wait() # give the page time")
    assert [t.name for t in p.tokens] == ["wait"]


def test_reflection_and_summary():
    p = parse("Reflection: the menu did not open\nAction_Summary: try a right click\nAction: right_single(start_box='(5,5)')")
    assert p.reflection == "the menu did not open"
    assert p.thought == "try a right click"
    assert p.tokens[0].name == "right_single"


def test_action_summary_only():
    p = parse("Action_Summary: press enter\nAction: hotkey(key='enter')")
    assert p.thought == "press enter"
    assert p.reflection is None


def test_o1_mode():
    text = (
        "<Thought>The button is bottom right.</Thought>\n"
        "Action_Summary: click it\n"
        "Action: click(point='<point>5 5</point>')</Output>"
    )
    p = parse(text, mode="o1")
    assert p.thought.startswith("The button is bottom right.")
    assert "click it" in p.thought
    assert [t.name for t in p.tokens] == ["click"]


def test_unknown_mode():
    with pytest.raises(ValueError):
        parse("Action: wait()", mode="xml")


def test_raw_text_is_kept():
    raw = "Thought: x\nAction: wait()"
    assert parse(raw).raw_text == raw


def test_strip_reflection():
    text = "Reflection: r\nAction_Summary: s\nAction: wait()"
    assert strip_reflection(text) == "Action_Summary: s\nAction: wait()"


def test_action_word_inside_thought():
    p = parse("Thought: The previous Action: click did nothing, so try again.\nAction: click(point='<point>100,200</point>')")
    assert p.thought == "The previous Action: click did nothing, so try again."
    assert [t.name for t in p.tokens] == ["click"]
    assert p.tokens[0].args_text == "point='<point>100,200</point>'"


def test_last_action_label_wins():
    p = parse("Thought: first idea\nAction: wait()\nThought: better idea\nAction: hotkey(key='enter')")
    assert [t.name for t in p.tokens] == ["hotkey"]


def test_label_on_the_thought_line():
    p = parse("Thought: press enter Action: hotkey(key='enter')")
    assert p.thought == "press enter"
    assert [t.name for t in p.tokens] == ["hotkey"]


def test_unlabelled_prose_shaped_like_a_call():
    p = parse("Note(the blue button)\nclick(point='<point>512,384</point>')")
    assert [t.name for t in p.tokens] == ["click"]
    assert p.thought == "Note(the blue button)"


def test_unlabelled_calls_after_the_last_prose_line():
    p = parse("wait()\nthat was a guess, instead:\nclick(point='<point>1,2</point>')\n\nwait()")
    assert [t.name for t in p.tokens] == ["click", "wait"]
    assert p.thought == "wait()\nthat was a guess, instead:"


def test_unlabelled_thought_label_is_stripped():
    p = parse("Thought: go there\nclick(point='<point>1,2</point>')")
    assert p.thought == "go there"

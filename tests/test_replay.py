import asyncio
import time

import pytest

from fakes import make_image

from guiloop.agent.actions import ActionType, ParsedAction
from guiloop.operators.replay import FrameOperator, load_script


def test_frame_geometry_comes_from_the_frame(tmp_path):
    frame = tmp_path / "latest.jpg"
    frame.write_bytes(make_image(320, 200, fmt="JPEG"))
    shot = asyncio.run(FrameOperator(latest_jpg=frame).screenshot())
    assert shot.geometry.physical_size.width == 320
    assert shot.geometry.physical_size.height == 200


def test_missing_frame(tmp_path):
    with pytest.raises(FileNotFoundError):
        asyncio.run(FrameOperator(latest_jpg=tmp_path / "nope.jpg").screenshot())


def test_wait_uses_its_milliseconds(tmp_path):
    op = FrameOperator(latest_jpg=tmp_path / "latest.jpg", wait_s=30.0)
    t0 = time.monotonic()
    res = asyncio.run(op.execute(ParsedAction(ActionType.WAIT, {"ms": 10}), None))
    assert res.success
    assert time.monotonic() - t0 < 5
    assert [a.type for a in op.performed] == [ActionType.WAIT]


def test_load_script(tmp_path):
    f = tmp_path / "script.txt"
    f.write_text("Action: wait()\n---\n\n---\nAction: finished()\n", encoding="utf-8")
    assert load_script(f) == ["Action: wait()", "Action: finished()"]

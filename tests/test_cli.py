import json

from fakes import make_image

import guiloop.cli as cli
from guiloop.operators.base import ExecutionResult
from guiloop.operators.replay import FrameOperator


def test_parse_prints_mapped_actions(capsys):
    rc = cli.main(["parse", "I will click the button.\nclick(point='<point>512,384</point>')", "--size", "1920x1080"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["thought"] == "I will click the button."
    assert out["mapped"][0]["params"]["point"] == {"x": 983, "y": 414, "space": "physical"}


def test_parse_from_file(tmp_path, capsys):
    f = tmp_path / "reply.txt"
    f.write_text("Thought: open it\nAction: left_double(start_box='(10,20)')", encoding="utf-8")
    rc = cli.main(["parse", "--file", str(f)])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["actions"][0]["type"] == "double_click"


def test_parse_failure_exit_code(capsys):
    rc = cli.main(["parse", "no calls in here"])
    assert rc == 2
    assert "NoActionFound" in capsys.readouterr().err


def test_run_with_script(tmp_path, monkeypatch, capsys):
    frame = tmp_path / "latest.jpg"
    frame.write_bytes(make_image(192, 108, fmt="JPEG"))
    script = tmp_path / "script.txt"
    script.write_text(
        "Thought: press it\nAction: click(point='<point>500,500</point>')\n---\nAction: finished(content='ok')\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(cli, "STOP_FILE", tmp_path / "guiloop.stop")

    rc = cli.main(["run", "press the button", "--script", str(script), "--frame", str(frame), "--no-dump"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["status"] == "finished"
    assert out["iterations"] == 2
    assert out["final_answer"] == "ok"


def test_run_stops_when_stop_file_appears(tmp_path, monkeypatch, capsys):
    frame = tmp_path / "latest.jpg"
    frame.write_bytes(make_image(192, 108, fmt="JPEG"))
    script = tmp_path / "script.txt"
    script.write_text("Action: wait()\n", encoding="utf-8")
    stop = tmp_path / "guiloop.stop"
    monkeypatch.setattr(cli, "STOP_FILE", stop)

    async def execute_then_stop(self, action, geometry):
        stop.touch()
        return ExecutionResult.ok()

    monkeypatch.setattr(FrameOperator, "execute", execute_then_stop)

    rc = cli.main(["run", "wait forever", "--script", str(script), "--frame", str(frame), "--no-dump"])
    assert rc == 1
    out = json.loads(capsys.readouterr().out)
    assert out["status"] == "stopped"
    assert out["iterations"] == 1


def test_status(capsys):
    assert cli.main(["status"]) == 0
    assert "Schemas:" in capsys.readouterr().out

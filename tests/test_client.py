from fakes import make_image

from guiloop.agent.history import HistoryMessage, PromptContext
from guiloop.model.client import GeminiModel, OpenAICompatModel
from guiloop.util.image import downscale, get_image_size, to_data_url


def _context(feedback=None):
    img = make_image(64, 36)
    msgs = [
        HistoryMessage("user", image=img),
        HistoryMessage("assistant", text="Action: wait()"),
        HistoryMessage("user", text="I logged in for you"),
        HistoryMessage("user", image=img),
    ]
    return PromptContext(system_prompt="SYSTEM", instruction="x", messages=msgs, feedback=feedback)


def test_gemini_contents_alternate_roles():
    contents = GeminiModel().build_contents(_context(feedback="UnknownAction: fly"))
    assert [c.role for c in contents] == ["user", "model", "user"]
    last = contents[-1].parts
    # text reply, second screenshot and feedback merged into one user turn
    assert len(last) == 3
    assert last[1].inline_data.mime_type == "image/jpeg"
    assert "UnknownAction: fly" in last[2].text


def test_openai_messages_lead_with_system_prompt():
    msgs = OpenAICompatModel(base_url="http://localhost:8000/v1").build_messages(_context())
    assert msgs[0] == {"role": "user", "content": "SYSTEM"}
    assert msgs[1]["content"][0]["image_url"]["url"].startswith("data:image/png;base64,")
    assert msgs[2] == {"role": "assistant", "content": "Action: wait()"}
    assert msgs[3] == {"role": "user", "content": "I logged in for you"}
    assert len(msgs) == 5


def test_downscale_respects_pixel_budget():
    jpeg, w, h = downscale(make_image(400, 200), max_pixels=20000)
    assert w * h <= 20000
    assert get_image_size(jpeg) == (w, h)
    assert abs(w / h - 2) < 0.05


def test_unreadable_image_has_no_size():
    assert get_image_size(b"") is None
    assert get_image_size(b"garbage") is None


def test_data_url_for_jpeg():
    assert to_data_url(make_image(8, 8, fmt="JPEG")).startswith("data:image/jpeg;base64,")

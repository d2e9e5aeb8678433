import base64
import io
import json
import wave

import pytest

import creative_suite
from creative_suite import CHAT_APOLOGY, MAX_PANELS, SPEECH_UNAVAILABLE
from conftest import (
    _DummyChat, inline_response, make_client, make_png, script_response, text_response,
)
from server import create_app


def _app(handler=None, chat=None):
    return create_app(make_client(handler, chat))


def _events(resp):
    body = resp.get_data(as_text=True)
    return [json.loads(chunk[len("data: "):]) for chunk in body.split("\n\n") if chunk]


def test_create_app_requires_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
        create_app()


def test_index_and_config():
    client = _app().test_client()
    assert client.get("/").status_code == 200
    cfg = client.get("/api/config").get_json()
    assert cfg["styles"] == ["Vibrante", "Manga", "Vintage", "Noir"]
    assert cfg["maxPanels"] == MAX_PANELS
    assert cfg["features"] == ["chat", "analyze", "story", "comic"]


def test_chat_streams_and_keeps_history():
    client = _app(chat=_DummyChat(["Hola", ", ¿qué tal?"])).test_client()
    resp = client.post("/api/chat", json={"message": "hola"})
    assert resp.mimetype == "text/event-stream"
    assert _events(resp) == [
        {"type": "message", "text": "Hola"},
        {"type": "message", "text": "Hola, ¿qué tal?"},
        {"type": "done", "text": "Hola, ¿qué tal?"},
    ]
    history = client.get("/api/chat/history").get_json()["messages"]
    assert history == [{"role": "user", "text": "hola"},
                       {"role": "model", "text": "Hola, ¿qué tal?"}]


def test_chat_mid_stream_failure_ends_with_apology():
    client = _app(chat=_DummyChat(["Hola"], fail_after=1)).test_client()
    events = _events(client.post("/api/chat", json={"message": "hola"}))
    assert events[-1] == {"type": "error", "text": CHAT_APOLOGY}
    history = client.get("/api/chat/history").get_json()["messages"]
    assert history[-1] == {"role": "model", "text": CHAT_APOLOGY}


def test_chat_start_failure_is_reported_and_releases_turn():
    chat = _DummyChat(["ok"], start_error=ConnectionError("offline"))
    client = _app(chat=chat).test_client()
    assert client.post("/api/chat", json={"message": "hola"}).status_code == 502
    chat.start_error = None
    assert client.post("/api/chat", json={"message": "otra vez"}).status_code == 200


def test_chat_rejects_blank_and_concurrent_turns():
    app = _app()
    client = app.test_client()
    assert client.post("/api/chat", json={"message": "  "}).status_code == 400
    app.extensions["creative_suite"].chat_busy = True
    assert client.post("/api/chat", json={"message": "hola"}).status_code == 409


def test_analyze_route(png_bytes):
    client = _app(lambda **_: text_response("Un cuadrado rojo.")).test_client()
    resp = client.post("/api/analyze", data={"prompt": "¿Qué es?", "file": (io.BytesIO(png_bytes), "a.png")},
                       content_type="multipart/form-data")
    assert resp.get_json()["analysis"] == "Un cuadrado rojo."


def test_analyze_requires_image_and_question(png_bytes):
    client = _app().test_client()
    resp = client.post("/api/analyze", data={"file": (io.BytesIO(png_bytes), "a.png")},
                       content_type="multipart/form-data")
    assert resp.status_code == 400
    resp = client.post("/api/analyze", data={"prompt": "hola", "file": (io.BytesIO(b"nope"), "a.png")},
                       content_type="multipart/form-data")
    assert resp.status_code == 400


def test_story_route_swallows_errors(png_bytes):
    def boom(**_):
        raise ConnectionError("down")
    client = _app(boom).test_client()
    resp = client.post("/api/story", data={"file": (io.BytesIO(png_bytes), "a.png")},
                       content_type="multipart/form-data")
    assert resp.status_code == 200
    assert resp.get_json()["story"] == creative_suite.STORY_ERROR


def test_speech_unavailable_is_not_an_error():
    client = _app(lambda **_: inline_response(None)).test_client()
    resp = client.post("/api/speech", json={"text": "Había una vez"})
    assert resp.status_code == 200
    assert resp.get_json() == {"audio": None, "error": SPEECH_UNAVAILABLE}


def test_speech_returns_wav():
    client = _app(lambda **_: inline_response(b"\x00\x00" * 10, mime="audio/L16")).test_client()
    data = client.post("/api/speech", json={"text": "Había una vez"}).get_json()
    assert data["mimeType"] == "audio/wav"
    assert base64.b64decode(data["audio"])[:4] == b"RIFF"


def test_speech_uses_rate_from_audio_mime_type():
    pcm = b"\x00\x01" * 16
    client = _app(lambda **_: inline_response(pcm, mime="audio/L16;codec=pcm;rate=16000")).test_client()
    data = client.post("/api/speech", json={"text": "Había una vez"}).get_json()
    with wave.open(io.BytesIO(base64.b64decode(data["audio"]))) as wf:
        assert wf.getframerate() == 16000
        assert wf.readframes(wf.getnframes()) == pcm


def _upload(client, n):
    files = [(io.BytesIO(make_png((i * 20, 0, 0))), f"{i}.png") for i in range(n)]
    return client.post("/api/comic/uploads", data={"files": files}, content_type="multipart/form-data")


def test_comic_image_first_flow_and_dialogue_edit():
    client = _app(lambda **_: script_response(3)).test_client()
    uploaded = _upload(client, 3).get_json()["uploadedImages"]
    resp = client.post("/api/comic/generate", json={"prompt": "Un paseo. Luego llueve."})
    assert resp.status_code == 200
    panels = resp.get_json()["panels"]
    assert [p["imageUrl"] for p in panels] == [u["previewUrl"] for u in uploaded]

    board = client.put("/api/comic/panels/2/dialogue", json={"dialogue": "¡Qué lluvia!"}).get_json()
    assert board["panels"][2]["dialogue"] == "¡Qué lluvia!"
    assert board["panels"][2]["description"] == panels[2]["description"]
    assert board["panels"][2]["imageUrl"] == panels[2]["imageUrl"]
    assert client.put("/api/comic/panels/9/dialogue", json={"dialogue": "x"}).status_code == 404


def test_comic_uploads_are_capped():
    client = _app().test_client()
    board = _upload(client, MAX_PANELS + 2).get_json()
    assert len(board["uploadedImages"]) == MAX_PANELS
    assert board["imageFirst"]
    board = client.delete("/api/comic/uploads/0").get_json()
    assert len(board["uploadedImages"]) == MAX_PANELS - 1


def test_comic_text_first_failure_reports_error():
    def handler(model, contents, config):
        if model == creative_suite.IMAGE_MODEL:
            raise ConnectionError("image service down")
        return script_response(4)
    client = _app(handler).test_client()
    resp = client.post("/api/comic/generate", json={"prompt": "Cuatro viñetas", "panelCount": 4, "style": "Noir"})
    assert resp.status_code == 502
    board = resp.get_json()
    assert board["panels"] == []
    assert board["error"]
    assert board["style"] == "Noir"


def test_comic_text_first_success():
    def handler(model, contents, config):
        if model == creative_suite.IMAGE_MODEL:
            return inline_response(b"img")
        return script_response(2)
    client = _app(handler).test_client()
    board = client.post("/api/comic/generate", json={"prompt": "Dos viñetas", "panelCount": 2}).get_json()
    assert [p["imageUrl"] for p in board["panels"]] == ["data:image/png;base64,aW1n"] * 2


def test_comic_generate_validates_input():
    client = _app().test_client()
    assert client.post("/api/comic/generate", json={"prompt": ""}).status_code == 400
    assert client.post("/api/comic/generate", json={"prompt": "x", "panelCount": 0}).status_code == 400


def test_replace_panel_image_route():
    client = _app(lambda **_: script_response(1)).test_client()
    _upload(client, 1)
    client.post("/api/comic/generate", json={"prompt": "historia"})
    new_png = make_png((0, 255, 0))
    board = client.post("/api/comic/panels/0/image", data={"file": (io.BytesIO(new_png), "n.png")},
                        content_type="multipart/form-data").get_json()
    assert board["panels"][0]["imageUrl"] == "data:image/png;base64," + base64.b64encode(new_png).decode()


def test_comic_uploads_rejected_while_generating():
    app = _app()
    client = app.test_client()
    _upload(client, 2)
    board = app.extensions["creative_suite"].comic
    board._lock.acquire()
    try:
        assert _upload(client, 1).status_code == 409
        assert client.delete("/api/comic/uploads/0").status_code == 409
    finally:
        board._lock.release()
    assert len(board.uploaded_images) == 2
    assert client.delete("/api/comic/uploads/0").status_code == 200


@pytest.mark.parametrize("method,url", [
    ("post", "/api/chat"),
    ("post", "/api/speech"),
    ("post", "/api/comic/generate"),
    ("put", "/api/comic/panels/0/dialogue"),
])
@pytest.mark.parametrize("body", ["[1]", "null", "\"texto\"", "{oops"])
def test_json_routes_reject_non_object_bodies(method, url, body):
    client = _app().test_client()
    resp = getattr(client, method)(url, data=body, content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json()["error"]

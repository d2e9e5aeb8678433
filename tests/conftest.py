import io
import json
from types import SimpleNamespace
from typing import Any, Callable, List, Optional

import pytest
from PIL import Image

from creative_suite import GenerationClient, PromptLogger


def make_png(color=(255, 0, 0), size=(4, 4), fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def text_response(text: Optional[str]):
    return SimpleNamespace(text=text, candidates=[])


def inline_response(data: Optional[bytes], mime: str = "image/png"):
    parts = [SimpleNamespace(text="aquí tienes", inline_data=None)]
    if data is not None:
        parts.append(SimpleNamespace(
            text=None, inline_data=SimpleNamespace(data=data, mime_type=mime)))
    return SimpleNamespace(text=None, candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def script_response(n: int, prefix: str = "escena"):
    items = [{"description": f"{prefix} {i}", "dialogue": f"línea {i}"} for i in range(n)]
    return text_response(json.dumps(items))


class _DummyChat:
    def __init__(self, chunks: List[Any], fail_after: Optional[int] = None,
                 start_error: Optional[Exception] = None):
        self.chunks = chunks
        self.fail_after = fail_after
        self.start_error = start_error
        self.sent: List[str] = []

    def send_message_stream(self, message: str):
        self.sent.append(message)
        if self.start_error is not None:
            raise self.start_error
        return self._stream()

    def _stream(self):
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i == self.fail_after:
                raise ConnectionError("stream dropped")
            yield SimpleNamespace(text=chunk)
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise ConnectionError("stream dropped")


class _DummyChats:
    def __init__(self, chat: _DummyChat):
        self.chat = chat
        self.created: List[str] = []

    def create(self, model: str):
        self.created.append(model)
        return self.chat


class _DummyModels:
    def __init__(self, handler: Callable[..., Any]):
        self.handler = handler
        self.calls: List[dict] = []

    def generate_content(self, model: str, contents: Any, config: Any = None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        return self.handler(model=model, contents=contents, config=config)


class DummyGenAI:
    def __init__(self, handler: Optional[Callable[..., Any]] = None,
                 chat: Optional[_DummyChat] = None):
        self.models = _DummyModels(handler or (lambda **_: text_response("ok")))
        self.chats = _DummyChats(chat or _DummyChat(["Hola", " mundo"]))


def make_client(handler=None, chat=None) -> GenerationClient:
    return GenerationClient(client=DummyGenAI(handler, chat), prompt_log=PromptLogger(echo=False))


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()

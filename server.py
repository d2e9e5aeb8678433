import os
import json
import atexit
import base64
import logging
import threading
from pathlib import Path
from typing import Optional, Generator

from flask import Blueprint, Flask, Response, current_app, jsonify, request

from creative_suite import (
    COMIC_STYLES, DEFAULT_PANEL_COUNT, MAX_PANELS, SPEECH_UNAVAILABLE, ChatMessage,
    ChatTurn, ComicBoard, ComicBoardBusyError, ConversationBuffer, Feature, GenerationClient,
    InvalidUploadError, TurnState, encode_upload, pcm_to_wav, require_api_key,
    sample_rate_from_mime,
)

logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent

api = Blueprint("creative_suite", __name__)


class SuiteState:
    def __init__(self, g: GenerationClient):
        self.g = g
        self.conversation = ConversationBuffer()
        self.comic = ComicBoard(g)
        self.lock = threading.Lock()
        # one chat turn in flight at a time
        self.chat_busy = False
        self.analysis: Optional[str] = None
        self.story: Optional[str] = None

    def claim_chat(self) -> bool:
        with self.lock:
            if self.chat_busy:
                return False
            self.chat_busy = True
            return True

    def release_chat(self):
        with self.lock:
            self.chat_busy = False


def get_state() -> SuiteState:
    return current_app.extensions["creative_suite"]


def read_upload(field: str = "file"):
    file = request.files.get(field)
    if file is None or file.filename == "":
        return None
    return encode_upload(file.filename, file.read())


def json_body() -> Optional[dict]:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else None


def text_field(data: dict, key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


NOT_AN_OBJECT = {"error": "Request body must be a JSON object"}


def sse(evt) -> str:
    return f"data: {json.dumps(evt)}\n\n"


@api.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@api.route("/api/config")
def api_config():
    return jsonify({
        "features": [f.value for f in Feature],
        "styles": COMIC_STYLES,
        "maxPanels": MAX_PANELS,
        "defaultPanelCount": DEFAULT_PANEL_COUNT,
    })


# ------------------ CHAT -------------------------

@api.route("/api/chat", methods=["POST"])
def api_chat():
    data = json_body()
    if data is None:
        return jsonify(NOT_AN_OBJECT), 400
    message = text_field(data, "message")
    if not message:
        return jsonify({"error": "Message required"}), 400

    state = get_state()
    if not state.claim_chat():
        return jsonify({"error": "A reply is still streaming"}), 409

    state.conversation.append(ChatMessage(role="user", text=message))
    turn = ChatTurn(state.g, state.conversation, message)
    try:
        turn.start()
    except Exception as e:
        state.release_chat()
        logger.error("Could not start chat turn: %s", e)
        return jsonify({"error": f"Could not start chat turn: {e}"}), 502

    def gen() -> Generator[str, None, None]:
        try:
            for msg in turn.stream():
                if turn.state is TurnState.FAILED:
                    yield sse({"type": "error", "text": msg.text})
                else:
                    yield sse({"type": "message", "text": msg.text})
            if turn.state is TurnState.DONE:
                yield sse({"type": "done", "text": turn.text})
        finally:
            state.release_chat()

    resp = Response(gen(), mimetype="text/event-stream")
    resp.call_on_close(state.release_chat)
    return resp


@api.route("/api/chat/history")
def api_chat_history():
    return jsonify({"messages": get_state().conversation.to_list()})


# ------------------ ANALYZE / STORY --------------

@api.route("/api/analyze", methods=["POST"])
def api_analyze():
    prompt = (request.form.get("prompt") or "").strip()
    try:
        image = read_upload()
    except InvalidUploadError as e:
        return jsonify({"error": str(e)}), 400
    if image is None or not prompt:
        return jsonify({"error": "Por favor, sube una imagen e ingresa una pregunta."}), 400

    state = get_state()
    state.analysis = state.g.analyze_image(prompt, image.base64, image.mimeType)
    return jsonify({"analysis": state.analysis, "previewUrl": image.previewUrl})


@api.route("/api/story", methods=["POST"])
def api_story():
    try:
        image = read_upload()
    except InvalidUploadError as e:
        return jsonify({"error": str(e)}), 400
    if image is None:
        return jsonify({"error": "No file provided"}), 400

    state = get_state()
    state.story = state.g.generate_story_from_image(image.base64, image.mimeType)
    return jsonify({"story": state.story, "previewUrl": image.previewUrl})


@api.route("/api/speech", methods=["POST"])
def api_speech():
    data = json_body()
    if data is None:
        return jsonify(NOT_AN_OBJECT), 400
    text = text_field(data, "text")
    if not text:
        return jsonify({"error": "Text required"}), 400

    audio = get_state().g.generate_speech(text)
    if audio is None:
        return jsonify({"audio": None, "error": SPEECH_UNAVAILABLE})
    wav = pcm_to_wav(audio.data, sample_rate_from_mime(audio.mime_type))
    return jsonify({"audio": base64.b64encode(wav).decode("utf-8"), "mimeType": "audio/wav"})


# ------------------ COMIC ------------------------

@api.route("/api/comic")
def api_comic():
    return jsonify(get_state().comic.to_dict())


@api.route("/api/comic/uploads", methods=["POST"])
def api_comic_uploads():
    files = request.files.getlist("files")[:MAX_PANELS]
    if not files:
        return jsonify({"error": "No files provided"}), 400
    try:
        images = [encode_upload(f.filename, f.read()) for f in files]
    except InvalidUploadError as e:
        return jsonify({"error": str(e)}), 400

    board = get_state().comic
    try:
        board.set_uploaded_images(images)
    except ComicBoardBusyError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify(board.to_dict())


@api.route("/api/comic/uploads/<int:index>", methods=["DELETE"])
def api_comic_remove_upload(index: int):
    board = get_state().comic
    try:
        board.remove_uploaded_image(index)
    except IndexError as e:
        return jsonify({"error": str(e)}), 404
    except ComicBoardBusyError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify(board.to_dict())


@api.route("/api/comic/generate", methods=["POST"])
def api_comic_generate():
    data = json_body()
    if data is None:
        return jsonify(NOT_AN_OBJECT), 400
    prompt = text_field(data, "prompt")
    if not prompt:
        return jsonify({"error": "Prompt required"}), 400

    board = get_state().comic
    if board.is_loading:
        return jsonify({"error": "A comic is already being generated"}), 409
    if not board.image_first:
        try:
            board.set_panel_count(int(data.get("panelCount", board.panel_count)))
        except (TypeError, ValueError) as e:
            return jsonify({"error": str(e)}), 400
        board.style = str(data.get("style") or board.style)

    if not board.generate(prompt):
        status = 502 if board.error else 409
        return jsonify(board.to_dict()), status
    return jsonify(board.to_dict())


@api.route("/api/comic/panels/<int:index>/dialogue", methods=["PUT"])
def api_comic_dialogue(index: int):
    data = json_body()
    if data is None:
        return jsonify(NOT_AN_OBJECT), 400
    dialogue = data.get("dialogue")
    if not isinstance(dialogue, str):
        return jsonify({"error": "dialogue must be a string"}), 400

    board = get_state().comic
    if index >= len(board.panels):
        return jsonify({"error": f"No panel {index}"}), 404
    board.edit_dialogue(index, dialogue)
    return jsonify(board.to_dict())


@api.route("/api/comic/panels/<int:index>/image", methods=["POST"])
def api_comic_panel_image(index: int):
    try:
        image = read_upload()
    except InvalidUploadError as e:
        return jsonify({"error": str(e)}), 400
    if image is None:
        return jsonify({"error": "No file provided"}), 400

    board = get_state().comic
    if index >= len(board.panels):
        return jsonify({"error": f"No panel {index}"}), 404
    board.replace_panel_image(index, image)
    return jsonify(board.to_dict())


def create_app(g: Optional[GenerationClient] = None) -> Flask:
    if g is None:
        g = GenerationClient(require_api_key())
    app = Flask(__name__, static_folder=None)
    app.extensions["creative_suite"] = SuiteState(g)
    app.register_blueprint(api)
    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    app = create_app()
    prompt_log = os.getenv("PROMPT_LOG_FILE")
    if prompt_log:
        atexit.register(
            app.extensions["creative_suite"].g.prompts.flush, Path(prompt_log))
    app.run(host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "5001")), debug=True, threaded=True)

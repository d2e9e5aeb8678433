# creative_suite.py
import io
import os
import wave
import base64
import logging
import threading
from enum import Enum
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Generator, Iterator, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from PIL import Image, UnidentifiedImageError

from google import genai
from google.genai import types

logger = logging.getLogger(__name__)

# ------------------ ENV & CONFIG ------------------
load_dotenv()

# Models (override via env if your account uses different names)
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemini-2.5-flash")
TTS_MODEL = os.getenv("TTS_MODEL", "gemini-2.5-flash-preview-tts")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image")

TTS_VOICE = os.getenv("TTS_VOICE", "Puck")
TTS_SAMPLE_RATE = int(os.getenv("TTS_SAMPLE_RATE", "24000"))

# upload cap for the comic flow and upper bound of the panel slider
MAX_PANELS = int(os.getenv("MAX_PANELS", "6"))
DEFAULT_PANEL_COUNT = int(os.getenv("DEFAULT_PANEL_COUNT", "4"))
PANEL_WORKERS = int(os.getenv("PANEL_WORKERS", str(MAX_PANELS)))
PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "1") == "1"

ALLOWED_IMAGE_FORMATS = {"PNG": "image/png",
                         "JPEG": "image/jpeg", "WEBP": "image/webp"}
COMIC_STYLES = ["Vibrante", "Manga", "Vintage", "Noir"]


def require_api_key() -> str:
    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
    if not api_key:
        raise RuntimeError("Missing GEMINI_API_KEY in .env")
    return api_key


# ------------------ PROMPTS & MESSAGES ------------
STORY_PROMPT = ("Analiza el ambiente y la escena de esta imagen. Escribe el párrafo "
                "inicial de una historia ambientada en este mundo, en español.")
SPEECH_PROMPT_TPL = "Lee esto con una voz expresiva: {text}"

COMIC_SCRIPT_INSTRUCTION_TPL = (
    "Eres un guionista de cómics. Crea un guion para un cómic de {panel_count} viñetas "
    "basado en la petición del usuario. Para cada viñeta, proporciona una descripción "
    "visual detallada para un generador de imágenes y una breve línea de diálogo. "
    "Responde en español y únicamente con el JSON.")
COMIC_SCRIPT_FROM_IMAGES_INSTRUCTION = (
    "Eres un guionista de cómics. Basado en la siguiente petición del usuario y la "
    "secuencia de imágenes proporcionadas, crea un guion de cómic. Para cada imagen, "
    "proporciona una descripción visual concisa de lo que ves y una breve línea de "
    "diálogo que encaje con la escena. El número de viñetas debe coincidir con el "
    "número de imágenes. Responde en español y únicamente con el JSON.")

STYLE_ENHANCEMENTS = {
    "manga": "en un estilo de arte manga en blanco y negro, con tramas de puntos y líneas de acción dinámicas.",
    "vintage": "en un estilo de cómic vintage de los años 50, con colores desaturados y estética de puntos Ben-Day.",
    "noir": "en un estilo de cómic noir, con alto contraste, sombras profundas, y una atmósfera sombría y cinematográfica.",
    "vibrante": "en un estilo de arte de cómic vibrante y de alto contraste.",
}

ANALYZE_FALLBACK = "Lo siento, no pude analizar la imagen."
ANALYZE_ERROR = ("Ocurrió un error al analizar la imagen. Por favor, revisa el registro "
                 "del servidor para más detalles.")
STORY_FALLBACK = "No se pudo generar una historia para esta imagen."
STORY_ERROR = ("Ocurrió un error al generar la historia. Por favor, revise el registro "
               "del servidor para más detalles.")
SPEECH_UNAVAILABLE = "No se pudo generar el audio para la historia."
CHAT_APOLOGY = "Lo siento, algo salió mal."
COMIC_GENERIC_ERROR = "No se pudo generar el cómic. Inténtalo de nuevo."


# ------------------ DATA MODELS -------------------


class Feature(str, Enum):
    CHAT = "chat"
    ANALYZE = "analyze"
    STORY = "story"
    COMIC = "comic"


class ChatMessage(BaseModel):
    role: Literal["user", "model"]
    text: str


class ScriptPanel(BaseModel):
    description: str = Field(
        description="Descripción visual detallada de la escena de la viñeta.")
    dialogue: str = Field(
        description="Diálogo o texto narrativo para la viñeta.")


class ComicPanel(ScriptPanel):
    imageUrl: Optional[str] = None


class UploadedImage(BaseModel):
    filename: str
    base64: str
    mimeType: str
    previewUrl: str


# Structured output schema for both comic script requests
COMIC_SCRIPT_SCHEMA = list[ScriptPanel]
_COMIC_SCRIPT_ADAPTER = TypeAdapter(List[ComicPanel])


# ------------------ ERRORS ------------------------


class ComicGenerationError(RuntimeError):
    """Hard failure of a comic flow; the caller clears any partial panels."""


class EmptyScriptError(ComicGenerationError):
    def __init__(self):
        super().__init__(
            "La respuesta del modelo para el guion del cómic estaba vacía.")


class MalformedScriptError(ComicGenerationError):
    def __init__(self, raw_text: str):
        super().__init__(
            "La respuesta del modelo para el guion del cómic no era un JSON válido.")
        self.raw_text = raw_text


class PanelCountMismatchError(ComicGenerationError):
    def __init__(self, message: str, expected: int, actual: int):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class PanelImageError(ComicGenerationError):
    pass


class InvalidUploadError(ValueError):
    pass


class ComicBoardBusyError(RuntimeError):
    pass


# ------------------ UTILITIES ---------------------


def data_url(mime: str, b64: str) -> str:
    return f"data:{mime};base64,{b64}"


def encode_upload(filename: str, data: bytes) -> UploadedImage:
    """Validate an uploaded PNG/JPEG/WEBP file and base64-encode it."""
    try:
        img = Image.open(io.BytesIO(data))
        fmt = img.format
        img.verify()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidUploadError(f"'{filename}' is not a readable image: {e}")
    mime = ALLOWED_IMAGE_FORMATS.get(fmt or "")
    if not mime:
        raise InvalidUploadError(
            f"'{filename}' is {fmt}; only PNG, JPEG and WEBP are allowed")
    b64 = base64.b64encode(data).decode("utf-8")
    return UploadedImage(filename=filename, base64=b64, mimeType=mime,
                         previewUrl=data_url(mime, b64))


def to_inline_image_part(b64: str, mime: str = "image/png") -> types.Part:
    return types.Part.from_bytes(data=base64.b64decode(b64), mime_type=mime)


def style_enhancement(style: str) -> str:
    return STYLE_ENHANCEMENTS.get((style or "").lower(), STYLE_ENHANCEMENTS["vibrante"])


def first_inline_blob(resp):
    """Return the first inline-data blob (data + mime_type) of a response, if any."""
    for c in getattr(resp, "candidates", None) or []:
        content = getattr(c, "content", None)
        for p in getattr(content, "parts", None) or []:
            inline = getattr(p, "inline_data", None)
            if inline is not None and getattr(inline, "data", None):
                return inline
    return None


def first_inline_data(resp) -> Optional[bytes]:
    inline = first_inline_blob(resp)
    return inline.data if inline is not None else None


def sample_rate_from_mime(mime: Optional[str], default: int = TTS_SAMPLE_RATE) -> int:
    """Read the rate parameter of e.g. "audio/L16;codec=pcm;rate=24000"."""
    for param in (mime or "").split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "rate" and value.isdigit():
            return int(value)
    return default


def pcm_to_wav(pcm: bytes, sample_rate: int = TTS_SAMPLE_RATE) -> bytes:
    """Wrap raw 16-bit mono PCM from the TTS model in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def parse_comic_script(raw_text: Optional[str]) -> List[ComicPanel]:
    if not raw_text or not raw_text.strip():
        raise EmptyScriptError()
    try:
        return _COMIC_SCRIPT_ADAPTER.validate_json(raw_text.strip())
    except ValidationError as e:
        logger.error(
            "Could not parse comic script: %s. Received text: %s", e, raw_text)
        raise MalformedScriptError(raw_text) from e


# --- Simple prompt logger (log + file) ---


class PromptLogger:
    def __init__(self, echo: bool = PRINT_PROMPTS):
        self.echo = echo
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if self.echo:
            logger.info(block)

    def flush(self, out_file: Path):
        out_file.write_text("".join(self.lines), encoding="utf-8")


# ------------------ GENAI WRAPPER ----------------


class GenerationClient:
    def __init__(self, api_key: Optional[str] = None, client=None,
                 prompt_log: Optional[PromptLogger] = None):
        self.client = client if client is not None else genai.Client(
            api_key=api_key)
        self.prompts = prompt_log or PromptLogger()
        self._chat = None
        self._chat_lock = threading.Lock()

    def chat_session(self):
        """The shared conversational session, created on first use."""
        with self._chat_lock:
            if self._chat is None:
                self._chat = self.client.chats.create(model=CHAT_MODEL)
            return self._chat

    def stream_chat_turn(self, prompt: str) -> Iterator[str]:
        self.prompts.log("CHAT_TURN", prompt)
        stream = self.chat_session().send_message_stream(prompt)
        return self._text_fragments(stream)

    @staticmethod
    def _text_fragments(stream) -> Generator[str, None, None]:
        for chunk in stream:
            text = getattr(chunk, "text", None)
            if text:
                yield text

    def _describe_image(self, prompt: str, b64: str, mime: str) -> Optional[str]:
        resp = self.client.models.generate_content(
            model=CHAT_MODEL,
            contents=[to_inline_image_part(b64, mime),
                      types.Part.from_text(text=prompt)],
        )
        return getattr(resp, "text", None)

    def analyze_image(self, prompt: str, b64: str, mime: str) -> str:
        self.prompts.log("ANALYZE_IMAGE_PROMPT", prompt)
        try:
            return self._describe_image(prompt, b64, mime) or ANALYZE_FALLBACK
        except Exception as e:
            logger.error("Error analyzing image: %s", e)
            return ANALYZE_ERROR

    def generate_story_from_image(self, b64: str, mime: str) -> str:
        self.prompts.log("STORY_PROMPT", STORY_PROMPT)
        try:
            return self._describe_image(STORY_PROMPT, b64, mime) or STORY_FALLBACK
        except Exception as e:
            logger.error("Error generating story: %s", e)
            return STORY_ERROR

    def generate_speech(self, text: str):
        """Return the inline audio blob (raw PCM + mime type), or None when speech is unavailable."""
        try:
            resp = self.client.models.generate_content(
                model=TTS_MODEL,
                contents=SPEECH_PROMPT_TPL.format(text=text),
                config=types.GenerateContentConfig(
                    response_modalities=["AUDIO"],
                    speech_config=types.SpeechConfig(
                        voice_config=types.VoiceConfig(
                            prebuilt_voice_config=types.PrebuiltVoiceConfig(
                                voice_name=TTS_VOICE),
                        ),
                    ),
                ),
            )
        except Exception as e:
            logger.error("Error generating speech: %s", e)
            return None
        return first_inline_blob(resp)

    # Structured output generation
    def _generate_script(self, contents, system_instruction: str) -> List[ComicPanel]:
        resp = self.client.models.generate_content(
            model=CHAT_MODEL,
            contents=contents,
            config={
                "system_instruction": system_instruction,
                "response_mime_type": "application/json",
                "response_schema": COMIC_SCRIPT_SCHEMA,
            },
        )
        raw = getattr(resp, "text", None)
        self.prompts.log("COMIC_SCRIPT_RESPONSE", raw or "<empty>")
        return parse_comic_script(raw)

    def generate_comic_script(self, prompt: str, panel_count: int) -> List[ComicPanel]:
        self.prompts.log("COMIC_SCRIPT_PROMPT", prompt)
        return self._generate_script(
            prompt, COMIC_SCRIPT_INSTRUCTION_TPL.format(panel_count=panel_count))

    def generate_comic_script_from_images(self, prompt: str,
                                          images: List[UploadedImage]) -> List[ComicPanel]:
        self.prompts.log("COMIC_SCRIPT_FROM_IMAGES_PROMPT",
                         f"{prompt}\n[{len(images)} images]")
        parts = [types.Part.from_text(text=prompt)]
        parts.extend(to_inline_image_part(img.base64, img.mimeType)
                     for img in images)
        return self._generate_script(parts, COMIC_SCRIPT_FROM_IMAGES_INSTRUCTION)

    def generate_image_for_comic(self, description: str, style: str) -> str:
        """Generate one square panel image; returns base64 PNG data."""
        full_prompt = f"{description}, {style_enhancement(style)}"
        self.prompts.log("COMIC_PANEL_IMAGE_PROMPT", full_prompt)
        resp = self.client.models.generate_content(
            model=IMAGE_MODEL,
            contents=[types.Part.from_text(text=full_prompt)],
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE"],
                image_config=types.ImageConfig(aspect_ratio="1:1"),
            ),
        )
        data = first_inline_data(resp)
        if not data:
            raise PanelImageError(
                "No se pudo generar la imagen para la viñeta del cómic.")
        if isinstance(data, str):
            return data
        return base64.b64encode(data).decode("utf-8")


# ------------------ CHAT -------------------------


class ConversationBuffer:
    """Ordered chat messages with change notifications."""

    def __init__(self):
        self.messages: List[ChatMessage] = []
        self._listeners: List[Callable[[str, ChatMessage], None]] = []

    def subscribe(self, listener: Callable[[str, ChatMessage], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self, kind: str, message: ChatMessage):
        for listener in list(self._listeners):
            listener(kind, message)

    def append(self, message: ChatMessage):
        self.messages.append(message)
        self._notify("append", message)

    def replace_last(self, message: ChatMessage):
        if not self.messages:
            raise IndexError("replace_last on an empty conversation")
        self.messages[-1] = message
        self._notify("replace", message)

    def to_list(self) -> List[Dict[str, str]]:
        return [m.model_dump() for m in self.messages]


class TurnState(str, Enum):
    AWAITING_FIRST_CHUNK = "awaiting-first-chunk"
    ACCUMULATING = "accumulating"
    DONE = "done"
    FAILED = "failed"


class ChatTurn:
    """One streamed model reply, applied to the last message of the buffer.

    ``start`` opens the stream; failures there propagate to the caller.
    ``stream`` consumes fragments and yields the updated model message after
    each mutation. A failure while streaming replaces the partial reply with
    the apology message instead of raising.
    """

    def __init__(self, g: GenerationClient, buffer: ConversationBuffer, prompt: str):
        self.g = g
        self.buffer = buffer
        self.prompt = prompt
        self.state: Optional[TurnState] = None
        self.text = ""
        self._fragments: Optional[Iterator[str]] = None

    def start(self):
        self._fragments = self.g.stream_chat_turn(self.prompt)
        self.buffer.append(ChatMessage(role="model", text=""))
        self.state = TurnState.AWAITING_FIRST_CHUNK

    def stream(self) -> Generator[ChatMessage, None, None]:
        if self._fragments is None:
            self.start()
        try:
            for fragment in self._fragments:
                self.text += fragment
                self.state = TurnState.ACCUMULATING
                msg = ChatMessage(role="model", text=self.text)
                self.buffer.replace_last(msg)
                yield msg
        except Exception as e:
            logger.error("Error sending message: %s", e)
            self.text = ""
            self.state = TurnState.FAILED
            msg = ChatMessage(role="model", text=CHAT_APOLOGY)
            self.buffer.replace_last(msg)
            yield msg
            return
        self.state = TurnState.DONE

    def run(self) -> ChatMessage:
        for _ in self.stream():
            pass
        return self.buffer.messages[-1]


# ------------------ COMIC ------------------------


def generate_panel_images(g: GenerationClient, script: List[ComicPanel], style: str,
                          workers: int = PANEL_WORKERS) -> List[str]:
    """Fan out one image request per panel; any failure fails the whole join."""
    if not script:
        return []
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(script)))) as pool:
        return list(pool.map(lambda p: g.generate_image_for_comic(p.description, style), script))


def build_text_first_comic(g: GenerationClient, prompt: str, panel_count: int, style: str,
                           on_script: Optional[Callable[[List[ComicPanel]], None]] = None) -> List[ComicPanel]:
    script = g.generate_comic_script(prompt, panel_count)
    if len(script) != panel_count:
        raise PanelCountMismatchError(
            f"El guion generado no tiene {panel_count} viñetas.",
            expected=panel_count, actual=len(script))
    if on_script:
        on_script(script)
    images = generate_panel_images(g, script, style)
    return [p.model_copy(update={"imageUrl": data_url("image/png", b64)})
            for p, b64 in zip(script, images)]


def build_image_first_comic(g: GenerationClient, prompt: str,
                            images: List[UploadedImage]) -> List[ComicPanel]:
    script = g.generate_comic_script_from_images(prompt, images)
    if len(script) != len(images):
        raise PanelCountMismatchError(
            f"El guion generado ({len(script)}) no coincide con el número de imágenes ({len(images)}).",
            expected=len(images), actual=len(script))
    return [p.model_copy(update={"imageUrl": img.previewUrl})
            for p, img in zip(script, images)]


class ComicBoard:
    def __init__(self, g: GenerationClient):
        self.g = g
        self.panels: List[ComicPanel] = []
        self.uploaded_images: List[UploadedImage] = []
        self.panel_count = DEFAULT_PANEL_COUNT
        self.style = COMIC_STYLES[0]
        self.is_loading = False
        self.error = ""
        self._lock = threading.Lock()

    @property
    def image_first(self) -> bool:
        return len(self.uploaded_images) > 0

    @property
    def current_panel_count(self) -> int:
        return len(self.uploaded_images) if self.image_first else self.panel_count

    def set_panel_count(self, count: int):
        if not 1 <= count <= MAX_PANELS:
            raise ValueError(f"panel count must be between 1 and {MAX_PANELS}")
        self.panel_count = count

    def _claim_uploads(self):
        if not self._lock.acquire(blocking=False):
            raise ComicBoardBusyError(
                "Uploads cannot change while a comic is being generated")

    def set_uploaded_images(self, images: List[UploadedImage]):
        self._claim_uploads()
        try:
            self.uploaded_images = list(images[:MAX_PANELS])
            self.panels = []
        finally:
            self._lock.release()

    def remove_uploaded_image(self, index: int):
        self._claim_uploads()
        try:
            if not 0 <= index < len(self.uploaded_images):
                raise IndexError(f"no uploaded image at {index}")
            self.uploaded_images = [img for i, img in enumerate(self.uploaded_images)
                                    if i != index]
        finally:
            self._lock.release()

    def _publish_script(self, script: List[ComicPanel]):
        self.panels = [p.model_copy() for p in script]

    def generate(self, prompt: str) -> bool:
        """Run the flow matching the current uploads. Returns True on success."""
        if not prompt.strip() or not self._lock.acquire(blocking=False):
            return False
        try:
            self.is_loading = True
            self.error = ""
            self.panels = [ComicPanel(description="", dialogue="")
                           for _ in range(self.current_panel_count)]
            images = list(self.uploaded_images)
            if images:
                self.panels = build_image_first_comic(self.g, prompt, images)
            else:
                self.panels = build_text_first_comic(
                    self.g, prompt, self.panel_count, self.style, on_script=self._publish_script)
            return True
        except Exception as e:
            logger.error("Comic generation failed: %s", e)
            self.error = str(e) if isinstance(
                e, ComicGenerationError) else COMIC_GENERIC_ERROR
            self.panels = []
            return False
        finally:
            self.is_loading = False
            self._lock.release()

    def edit_dialogue(self, index: int, dialogue: str):
        self.panels[index] = self.panels[index].model_copy(
            update={"dialogue": dialogue})

    def replace_panel_image(self, index: int, image: UploadedImage):
        self.panels[index] = self.panels[index].model_copy(
            update={"imageUrl": image.previewUrl})

    def to_dict(self) -> Dict:
        return {
            "panels": [p.model_dump() for p in self.panels],
            "uploadedImages": [{"filename": i.filename, "previewUrl": i.previewUrl}
                               for i in self.uploaded_images],
            "panelCount": self.current_panel_count,
            "style": self.style,
            "imageFirst": self.image_first,
            "isLoading": self.is_loading,
            "error": self.error,
        }

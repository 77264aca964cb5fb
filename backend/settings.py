import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

BASE_DIR = Path(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = BASE_DIR.parent / "data"
SETTINGS_FILE = DATA_DIR / "settings.json"

GEMINI_API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GOOGLE_CLOUD_API_KEY")
DEEPGRAM_API_KEY_ENV_VAR = "DEEPGRAM_API_KEY"
OPENAI_API_KEY_ENV_VAR = "OPENAI_API_KEY"

DEFAULT_SYSTEM_INSTRUCTION = """You are a helpful assistant. When greeting the user for the first time, introduce yourself and provide a list of things you can help with, such as:

1. Answering questions and providing information on a wide range of topics
2. Assisting with coding tasks and debugging code issues
3. Generating creative content like stories or ideas
4. Explaining complex concepts in simple terms
5. Helping with language translation and grammar
6. Providing recommendations based on user preferences
7. Assisting with math and scientific calculations
8. Helping organize thoughts and plans

Remember to be friendly, helpful, and tailor your responses to the user's needs."""

DEFAULT_SETTINGS: Dict[str, Any] = {
    "model": {
        "transport": "live",  # live | rest | openai
        "name": "models/gemini-2.0-flash-exp",
        "openai_model": "gpt-4o",
        "temperature": 1.8,
        "top_p": 0.95,
        "top_k": 65,
        "response_modalities": ["AUDIO"],
        "voice": None,
        "system_instruction": DEFAULT_SYSTEM_INSTRUCTION,
        "start_message": ".",
    },
    "audio": {
        "send_sample_rate": 16000,
        "receive_sample_rate": 24000,
        "chunk_size": 1024,
        "input_device_index": None,
        "input_device_name": None,
        "output_device_index": None,
    },
    "capture": {
        "fps": 5.0,
        "max_size": 640,
        "jpeg_quality": 40,
        "camera_index": None,
        "facing_mode": "user",  # user | environment
        "screen_monitor": 1,
    },
    "transcription": {
        "transcribe_model_speech": True,
        "transcribe_user_speech": False,
        "model": "nova-2",
        "language": "en-US",
        "idle_timeout_sec": 60.0,
        "settle_delay_sec": 1.0,
        "max_reconnect_attempts": 5,
        "reconnect_delay_sec": 1.0,
        "pending_audio_limit": 10,
    },
}


def _clamp_int(value, low, high, default):
    try:
        iv = int(value)
    except Exception:
        return default
    return max(low, min(high, iv))


def _clamp_float(value, low, high, default):
    try:
        fv = float(value)
    except Exception:
        return default
    return max(low, min(high, fv))


def _optional_int(value) -> Optional[int]:
    if value is None or value == "" or value == "default":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """Return DEFAULT_SETTINGS deep-merged with the JSON file at `path` (if any)."""
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    path = Path(path) if path else SETTINGS_FILE
    if not path.exists():
        return settings
    try:
        with open(path, "r", encoding="utf-8") as f:
            loaded = json.load(f)
        if isinstance(loaded, dict):
            deep_merge(settings, loaded)
        else:
            logger.warning("[CONFIG] Ignoring %s: top level is not an object", path)
    except Exception as e:
        logger.error("[CONFIG] Error loading settings from %s: %s", path, e)
    return settings


def save_settings(settings: Dict[str, Any], path: Optional[Path] = None) -> None:
    path = Path(path) if path else SETTINGS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings, f, indent=4)
    logger.info("[CONFIG] Settings saved to %s", path)


def get_gemini_api_key() -> Optional[str]:
    return next((os.getenv(name) for name in GEMINI_API_KEY_ENV_VARS if os.getenv(name)), None)


def get_deepgram_api_key() -> Optional[str]:
    return os.getenv(DEEPGRAM_API_KEY_ENV_VAR) or None


def get_openai_api_key() -> Optional[str]:
    return os.getenv(OPENAI_API_KEY_ENV_VAR) or None


@dataclass
class ModelConfig:
    transport: str = "live"
    name: str = "models/gemini-2.0-flash-exp"
    openai_model: str = "gpt-4o"
    temperature: float = 1.8
    top_p: float = 0.95
    top_k: int = 65
    response_modalities: List[str] = field(default_factory=lambda: ["AUDIO"])
    voice: Optional[str] = None
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    start_message: Optional[str] = "."

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "ModelConfig":
        m = settings.get("model") or {}
        transport = str(m.get("transport") or "live").lower()
        if transport not in ("live", "rest", "openai"):
            transport = "live"
        modalities = m.get("response_modalities") or ["AUDIO"]
        if isinstance(modalities, str):
            modalities = [modalities]
        return cls(
            transport=transport,
            name=str(m.get("name") or "models/gemini-2.0-flash-exp"),
            openai_model=str(m.get("openai_model") or "gpt-4o"),
            temperature=_clamp_float(m.get("temperature", 1.8), 0.0, 2.0, 1.8),
            top_p=_clamp_float(m.get("top_p", 0.95), 0.0, 1.0, 0.95),
            top_k=_clamp_int(m.get("top_k", 65), 1, 500, 65),
            response_modalities=[str(x).upper() for x in modalities],
            voice=m.get("voice") or None,
            system_instruction=m.get("system_instruction") or DEFAULT_SYSTEM_INSTRUCTION,
            start_message=m.get("start_message"),
        )

    def generation_config(self) -> Dict[str, Any]:
        gen: Dict[str, Any] = {
            "temperature": self.temperature,
            "topP": self.top_p,
            "topK": self.top_k,
            "responseModalities": list(self.response_modalities),
        }
        if self.voice:
            gen["speechConfig"] = {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}}}
        return gen


@dataclass
class AudioConfig:
    send_sample_rate: int = 16000
    receive_sample_rate: int = 24000
    chunk_size: int = 1024
    input_device_index: Optional[int] = None
    input_device_name: Optional[str] = None
    output_device_index: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "AudioConfig":
        a = settings.get("audio") or {}
        return cls(
            send_sample_rate=_clamp_int(a.get("send_sample_rate", 16000), 8000, 48000, 16000),
            receive_sample_rate=_clamp_int(a.get("receive_sample_rate", 24000), 8000, 48000, 24000),
            chunk_size=_clamp_int(a.get("chunk_size", 1024), 128, 8192, 1024),
            input_device_index=_optional_int(a.get("input_device_index")),
            input_device_name=a.get("input_device_name") or None,
            output_device_index=_optional_int(a.get("output_device_index")),
        )


@dataclass
class CaptureConfig:
    fps: float = 5.0
    max_size: int = 640
    jpeg_quality: int = 40
    camera_index: Optional[int] = None
    facing_mode: str = "user"
    screen_monitor: int = 1

    @property
    def interval_sec(self) -> float:
        return 1.0 / max(self.fps, 0.01)

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "CaptureConfig":
        c = settings.get("capture") or {}
        facing = str(c.get("facing_mode") or "user").lower()
        if facing not in ("user", "environment"):
            facing = "user"
        return cls(
            fps=_clamp_float(c.get("fps", 5.0), 0.2, 30.0, 5.0),
            max_size=_clamp_int(c.get("max_size", 640), 160, 4096, 640),
            jpeg_quality=_clamp_int(c.get("jpeg_quality", 40), 10, 95, 40),
            camera_index=_optional_int(c.get("camera_index")),
            facing_mode=facing,
            screen_monitor=_clamp_int(c.get("screen_monitor", 1), 0, 32, 1),
        )


@dataclass
class TranscriptionConfig:
    transcribe_model_speech: bool = True
    transcribe_user_speech: bool = False
    model: str = "nova-2"
    language: str = "en-US"
    idle_timeout_sec: float = 60.0
    settle_delay_sec: float = 1.0
    max_reconnect_attempts: int = 5
    reconnect_delay_sec: float = 1.0
    pending_audio_limit: int = 10

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "TranscriptionConfig":
        t = settings.get("transcription") or {}
        return cls(
            transcribe_model_speech=bool(t.get("transcribe_model_speech", True)),
            transcribe_user_speech=bool(t.get("transcribe_user_speech", False)),
            model=str(t.get("model") or "nova-2"),
            language=str(t.get("language") or "en-US"),
            idle_timeout_sec=_clamp_float(t.get("idle_timeout_sec", 60.0), 1.0, 3600.0, 60.0),
            settle_delay_sec=_clamp_float(t.get("settle_delay_sec", 1.0), 0.0, 10.0, 1.0),
            max_reconnect_attempts=_clamp_int(t.get("max_reconnect_attempts", 5), 0, 50, 5),
            reconnect_delay_sec=_clamp_float(t.get("reconnect_delay_sec", 1.0), 0.0, 60.0, 1.0),
            pending_audio_limit=_clamp_int(t.get("pending_audio_limit", 10), 1, 1000, 10),
        )


@dataclass
class AgentConfig:
    """Everything a LiveAgent needs, resolved once at construction."""

    model: ModelConfig = field(default_factory=ModelConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    gemini_api_key: Optional[str] = None
    deepgram_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]] = None) -> "AgentConfig":
        settings = settings if settings is not None else load_settings()
        return cls(
            model=ModelConfig.from_settings(settings),
            audio=AudioConfig.from_settings(settings),
            capture=CaptureConfig.from_settings(settings),
            transcription=TranscriptionConfig.from_settings(settings),
            gemini_api_key=get_gemini_api_key(),
            deepgram_api_key=get_deepgram_api_key(),
            openai_api_key=get_openai_api_key(),
        )

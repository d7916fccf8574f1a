import os
from pathlib import Path
from typing import List, Optional

import torch
from dotenv import load_dotenv


def _default_device() -> str:
    return "cuda:0" if torch.cuda.is_available() else "cpu"


PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_FILE = PROJECT_ROOT / ".env"
load_dotenv(ENV_FILE, override=False)


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_int(name: str, default: int) -> int:
    value = _getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _getenv_bool(name: str, default: bool) -> bool:
    value = _getenv(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _getenv_list(name: str, default: List[str]) -> List[str]:
    value = _getenv(name)
    if value is None:
        return list(default)
    items = [item.strip() for item in value.split(",")]
    return [item for item in items if item] or list(default)


DEFAULT_MODELS = [
    "meta-llama/Llama-3.2-1B-Instruct",
    "togethercomputer/RedPajama-INCITE-Chat-3B-v1",
]

MODEL_ID_DEFAULT = _getenv("LOCALCHAT_MODEL_ID", DEFAULT_MODELS[0])
AVAILABLE_MODELS = _getenv_list("LOCALCHAT_MODELS", DEFAULT_MODELS)
if MODEL_ID_DEFAULT not in AVAILABLE_MODELS:
    AVAILABLE_MODELS.insert(0, MODEL_ID_DEFAULT)
MODEL_BASE_DIR_DEFAULT = _getenv("LOCALCHAT_MODEL_BASE_DIR")
DEVICE_DEFAULT = _getenv("LOCALCHAT_DEVICE", _default_device())
if DEVICE_DEFAULT:
    DEVICE_DEFAULT = DEVICE_DEFAULT.split()[0]
    if DEVICE_DEFAULT == "cuda":
        DEVICE_DEFAULT = "cuda:0"
HF_TOKEN = _getenv("HF_TOKEN")
MAX_INPUT_TOKENS = _getenv_int("LOCALCHAT_MAX_INPUT_TOKENS", 1024)
MAX_NEW_TOKENS = _getenv_int("LOCALCHAT_MAX_NEW_TOKENS", 512)
ESCAPE_HTML = _getenv_bool("LOCALCHAT_ESCAPE_HTML", True)
PRELOAD_MODEL = _getenv_bool("LOCALCHAT_PRELOAD", True)
GREETING = _getenv("LOCALCHAT_GREETING", "Hello! How can I assist you today?")
PORT = _getenv_int("PORT", 8000)

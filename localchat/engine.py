import gc
import io
import os
import re
import sys
import threading
import time
import uuid
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from typing import List, Optional

import torch
from dotenv import set_key
from starlette.concurrency import run_in_threadpool
from transformers import AutoModelForCausalLM, AutoTokenizer

from .config import (
    AVAILABLE_MODELS,
    DEVICE_DEFAULT,
    ENV_FILE,
    HF_TOKEN,
    MAX_INPUT_TOKENS,
    MAX_NEW_TOKENS,
    MODEL_BASE_DIR_DEFAULT,
    MODEL_ID_DEFAULT,
)

_engine = None
_engine_lock = threading.Lock()
_runtime = {
    "model_id": MODEL_ID_DEFAULT,
    "model_base_dir": MODEL_BASE_DIR_DEFAULT,
    "device": DEVICE_DEFAULT,
    "model_source": None,
    "load_status": "idle",
    "load_error": None,
}

_load_jobs = {}
_load_jobs_lock = threading.RLock()
_MAX_JOB_LOGS = 300

_PERCENT_RE = re.compile(r"(\d{1,3})%")
_SHARD_RE = re.compile(r"(\d{1,5})\s*/\s*(\d{1,5})")

_WEIGHT_FILES = ("model.safetensors", "pytorch_model.bin")
_WEIGHT_INDEX_FILES = ("model.safetensors.index.json", "pytorch_model.bin.index.json")


class ChatEngine:
    def __init__(
        self,
        model,
        tokenizer,
        model_id: str,
        device: str = "cpu",
        max_new_tokens: int = MAX_NEW_TOKENS,
        max_input_tokens: int = MAX_INPUT_TOKENS,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.model_id = model_id
        self.device = device
        self.max_new_tokens = max_new_tokens
        self.max_input_tokens = max_input_tokens
        self._generate_lock = threading.Lock()
        # Keep the most recent turns when the history is longer than the window.
        self.tokenizer.truncation_side = "left"

    def build_prompt(self, messages: List[dict]) -> str:
        if getattr(self.tokenizer, "chat_template", None):
            return self.tokenizer.apply_chat_template(
                messages,
                tokenize=False,
                add_generation_prompt=True,
            )
        return transcript_prompt(messages)

    def generate_reply(self, messages: List[dict]) -> str:
        prompt = self.build_prompt(messages)
        encoded = self.tokenizer(
            prompt,
            return_tensors="pt",
            truncation=True,
            max_length=self.max_input_tokens,
            add_special_tokens=not getattr(self.tokenizer, "chat_template", None),
        )
        target_device = getattr(self.model, "device", None) or self.device
        input_ids = encoded["input_ids"].to(target_device)
        generate_kwargs = {
            "max_new_tokens": self.max_new_tokens,
            "do_sample": False,
            "pad_token_id": self.tokenizer.pad_token_id,
        }
        attention_mask = encoded.get("attention_mask")
        if attention_mask is not None:
            generate_kwargs["attention_mask"] = attention_mask.to(target_device)

        with self._generate_lock, torch.no_grad():
            output = self.model.generate(input_ids, **generate_kwargs)

        new_tokens = output[0][input_ids.shape[-1]:]
        return self.tokenizer.decode(new_tokens, skip_special_tokens=True).strip()

    async def create_chat_completion(self, messages: List[dict]) -> dict:
        content = await run_in_threadpool(self.generate_reply, messages)
        return {
            "model": self.model_id,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
        }

    def close(self):
        try:
            self.model.to("cpu")
        except Exception as exc:
            print(f"Could not move model to cpu before release: {exc}")


def transcript_prompt(messages: List[dict]) -> str:
    labels = {"system": "System", "user": "User", "assistant": "Assistant"}
    parts = [f"{labels.get(item['role'], item['role'])}: {item['content']}" for item in messages]
    parts.append("Assistant:")
    return "\n\n".join(parts)


def normalize_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1].strip()
    return value if value else None


def normalize_device(value: Optional[str]) -> Optional[str]:
    value = normalize_optional(value)
    if not value:
        return None
    value = value.split()[0]
    if value == "cuda":
        return "cuda:0"
    return value


def looks_like_local_path(value: Optional[str]) -> bool:
    value = normalize_optional(value)
    if not value:
        return False
    if re.match(r"^[a-zA-Z]:[\\/]", value):
        return True
    if value.startswith(("\\\\", "./", ".\\", "../", "..\\", "/", "~")):
        return True
    return os.path.isabs(os.path.expanduser(value))


def resolve_model_source(model_id: str, model_base_dir: Optional[str]) -> str:
    model_base_dir = normalize_optional(model_base_dir)
    if looks_like_local_path(model_id):
        return os.path.expanduser(model_id)
    if model_base_dir:
        candidate = os.path.join(model_base_dir, *model_id.split("/"))
        if os.path.isdir(candidate):
            return candidate
    return model_id


def validate_local_model_source(model_source: str):
    source_path = Path(model_source)
    if not source_path.exists():
        raise FileNotFoundError(f"Local model path does not exist: {model_source}")
    if not source_path.is_dir():
        raise ValueError(f"Local model path is not a Transformers checkpoint directory: {model_source}")

    files = {entry.name for entry in source_path.iterdir() if entry.is_file()}
    if "config.json" not in files:
        raise ValueError(f"Local model path has no config.json: {model_source}")
    has_weights = any(name in files for name in _WEIGHT_FILES + _WEIGHT_INDEX_FILES) or any(
        name.endswith(".safetensors") for name in files
    )
    if not has_weights:
        raise ValueError(f"Local model path has no model weights: {model_source}")


def available_models() -> List[str]:
    return list(AVAILABLE_MODELS)


def is_selectable(model_id: Optional[str]) -> bool:
    model_id = normalize_optional(model_id)
    if not model_id:
        return False
    return model_id in AVAILABLE_MODELS or looks_like_local_path(model_id)


def _is_cuda_oom_error(exc: Exception) -> bool:
    message = str(exc or "").lower()
    return (
        "cuda out of memory" in message
        or ("out of memory" in message and "cuda" in message)
        or "cublas_status_alloc_failed" in message
    )


def _cleanup_engine(engine_obj=None):
    if engine_obj is not None:
        close_fn = getattr(engine_obj, "close", None)
        if callable(close_fn):
            close_fn()
    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    gc.collect()


def load_engine(model_id: str, model_source: str, device: str) -> ChatEngine:
    token_kwargs = {}
    if HF_TOKEN:
        token_kwargs["token"] = HF_TOKEN

    use_cuda = device.startswith("cuda")
    if use_cuda and not torch.cuda.is_available():
        raise RuntimeError(f"Requested device {device}, but CUDA is not available.")

    print(f"Loading tokenizer for {model_source}...")
    tokenizer = AutoTokenizer.from_pretrained(model_source, **token_kwargs)
    if tokenizer.pad_token_id is None and tokenizer.eos_token_id is not None:
        tokenizer.pad_token = tokenizer.eos_token

    model_kwargs = dict(token_kwargs)
    if use_cuda:
        model_kwargs.update({"torch_dtype": "auto", "device_map": "auto", "low_cpu_mem_usage": True})

    print("Tokenizer loaded. Loading checkpoint shards...")
    try:
        model = AutoModelForCausalLM.from_pretrained(model_source, **model_kwargs)
    except Exception as exc:
        message = str(exc)
        if "does not recognize this architecture" in message or "model_type" in message:
            raise RuntimeError(
                "Transformers cannot load this model architecture with the installed version. "
                f"Original error: {message}"
            ) from exc
        if _is_cuda_oom_error(exc):
            raise RuntimeError(
                "CUDA out of memory while loading the model. "
                "Try LOCALCHAT_DEVICE=cpu or a smaller model."
            ) from exc
        raise

    if not use_cuda:
        model.to("cpu")
    print("Switching model to eval mode...")
    model.eval()
    print("Model is ready.")
    return ChatEngine(model, tokenizer, model_id=model_id, device=device)


def current_engine():
    with _engine_lock:
        if _runtime["load_status"] != "ready":
            return None
        return _engine


def install_engine(engine, model_id: Optional[str] = None, device: Optional[str] = None):
    global _engine

    with _engine_lock:
        previous = _engine
        _engine = engine
        _runtime.update(
            {
                "model_id": model_id or getattr(engine, "model_id", None) or _runtime["model_id"],
                "device": device or getattr(engine, "device", None) or _runtime["device"],
                "load_status": "ready" if engine is not None else "idle",
                "load_error": None,
            }
        )
    if previous is not None and previous is not engine:
        _cleanup_engine(previous)


def release_engine():
    install_engine(None)


def runtime_state():
    with _engine_lock:
        return {
            "model_loaded": _engine is not None and _runtime["load_status"] == "ready",
            "model_id": _runtime["model_id"],
            "model_source": _runtime["model_source"]
            or resolve_model_source(_runtime["model_id"], _runtime["model_base_dir"]),
            "model_base_dir": _runtime["model_base_dir"],
            "device": _runtime["device"],
            "load_status": _runtime["load_status"],
            "load_error": _runtime["load_error"],
        }


def persist_runtime_to_env():
    with _engine_lock:
        model_id = _runtime["model_id"] or ""
        device = _runtime["device"] or ""

    ENV_FILE.touch(exist_ok=True)
    set_key(str(ENV_FILE), "LOCALCHAT_MODEL_ID", model_id, quote_mode="never")
    set_key(str(ENV_FILE), "LOCALCHAT_DEVICE", device, quote_mode="never")


def load_model(model_id: Optional[str] = None, device: Optional[str] = None, force_reload: bool = False):
    global _engine

    with _engine_lock:
        target_model_id = normalize_optional(model_id) or _runtime["model_id"] or MODEL_ID_DEFAULT
        target_device = normalize_device(device) or _runtime["device"] or DEVICE_DEFAULT
        target_source = resolve_model_source(target_model_id, _runtime["model_base_dir"])

        same_config = (
            _engine is not None
            and _runtime["load_status"] == "ready"
            and _runtime["model_id"] == target_model_id
            and _runtime["device"] == target_device
        )
        if same_config and not force_reload:
            return _engine

        previous = _engine
        _engine = None
        _runtime.update(
            {
                "model_id": target_model_id,
                "device": target_device,
                "model_source": target_source,
                "load_status": "loading",
                "load_error": None,
            }
        )
    if previous is not None:
        _cleanup_engine(previous)

    try:
        if looks_like_local_path(target_source) or os.path.isdir(target_source):
            validate_local_model_source(target_source)
        engine = load_engine(target_model_id, target_source, target_device)
    except Exception as exc:
        with _engine_lock:
            _runtime.update({"load_status": "failed", "load_error": str(exc)})
        _cleanup_engine()
        raise

    with _engine_lock:
        # A newer selection may have replaced this one while it was loading.
        if _runtime["model_id"] != target_model_id or _runtime["device"] != target_device:
            stale = engine
        else:
            stale = None
            _engine = engine
            _runtime["load_status"] = "ready"
    if stale is not None:
        _cleanup_engine(stale)
        raise RuntimeError(f"Model selection changed while loading {target_model_id}.")
    return engine


def _new_load_job(payload: dict):
    job_id = str(uuid.uuid4())
    with _load_jobs_lock:
        _load_jobs[job_id] = {
            "job_id": job_id,
            "status": "queued",
            "stage": "queued",
            "progress": 0,
            "message": "Queued",
            "logs": ["Load job queued."],
            "error": None,
            "started_at": time.time(),
            "updated_at": time.time(),
            "finished_at": None,
            "model_id": payload.get("model_id"),
            "device": payload.get("device"),
            "persist_env": bool(payload.get("persist_env", False)),
        }
    return job_id


def _load_job_update(job_id: str, **fields):
    with _load_jobs_lock:
        job = _load_jobs.get(job_id)
        if not job:
            return
        job.update(fields)
        job["updated_at"] = time.time()


def _load_job_log(job_id: str, message: str):
    with _load_jobs_lock:
        job = _load_jobs.get(job_id)
        if not job:
            return
        logs = job.get("logs", [])
        logs.append(message)
        if len(logs) > _MAX_JOB_LOGS:
            logs = logs[-_MAX_JOB_LOGS:]
        job["logs"] = logs
        job["updated_at"] = time.time()


def load_job_snapshot(job_id: str):
    with _load_jobs_lock:
        job = _load_jobs.get(job_id)
        if not job:
            return None
        return dict(job, logs=list(job.get("logs", [])))


def active_load_job():
    with _load_jobs_lock:
        active = [job for job in _load_jobs.values() if job.get("status") in ("queued", "loading")]
        if not active:
            return {"job_id": None, "status": "idle"}
        active.sort(key=lambda item: item.get("started_at", 0), reverse=True)
        job = active[0]
        return {
            "job_id": job.get("job_id"),
            "status": job.get("status"),
            "model_id": job.get("model_id"),
            "stage": job.get("stage"),
            "progress": job.get("progress"),
            "message": job.get("message"),
            "started_at": job.get("started_at"),
        }


def parse_progress_text(job_id: str, text: str):
    clean = " ".join((text or "").replace("\t", " ").strip().split())
    if not clean:
        return

    lower_clean = clean.lower()
    pct_match = _PERCENT_RE.search(clean)
    if "shard" in lower_clean and pct_match:
        pct = min(int(pct_match.group(1)), 99)
        count_match = _SHARD_RE.search(clean)
        message = f"Loading checkpoint shards {pct}%"
        if count_match:
            message = f"Loading checkpoint shards {count_match.group(1)}/{count_match.group(2)}"
        _load_job_update(job_id, stage="loading_shards", progress=pct, message=message)
        _load_job_log(job_id, message)
        return

    if "model is ready" in lower_clean or "eval mode" in lower_clean:
        _load_job_update(job_id, stage="finalizing", progress=99, message=clean)
        _load_job_log(job_id, clean)
        return

    if any(keyword in lower_clean for keyword in ("loading", "tokenizer", "checkpoint", "download")):
        _load_job_update(job_id, stage="loading", message=clean)
        _load_job_log(job_id, clean)


class _LoadProgressStream(io.TextIOBase):
    def __init__(self, job_id: str, passthrough):
        super().__init__()
        self._job_id = job_id
        self._passthrough = passthrough

    def write(self, s):
        text = s if isinstance(s, str) else str(s)
        if self._passthrough is not None:
            self._passthrough.write(text)
            self._passthrough.flush()
        for chunk in re.split(r"[\r\n]+", text):
            parse_progress_text(self._job_id, chunk)
        return len(text)

    def flush(self):
        if self._passthrough is not None:
            self._passthrough.flush()


def _run_load_job(job_id: str, payload: dict):
    _load_job_update(job_id, status="loading", stage="starting", message="Starting model load...")
    _load_job_log(job_id, f"Starting model load for {payload.get('model_id')}.")

    out_stream = _LoadProgressStream(job_id, sys.stdout)
    err_stream = _LoadProgressStream(job_id, sys.stderr)
    try:
        with redirect_stdout(out_stream), redirect_stderr(err_stream):
            load_model(
                model_id=payload.get("model_id"),
                device=payload.get("device"),
                force_reload=bool(payload.get("force_reload", False)),
            )
        if payload.get("persist_env"):
            persist_runtime_to_env()
            _load_job_log(job_id, f"Persisted settings to {ENV_FILE}")
        _load_job_update(
            job_id,
            status="completed",
            stage="completed",
            progress=100,
            message="Model loaded",
            finished_at=time.time(),
            result=runtime_state(),
        )
        _load_job_log(job_id, "Model load completed.")
    except Exception as exc:
        _load_job_update(
            job_id,
            status="failed",
            stage="failed",
            message=f"Model load failed: {exc}",
            error=str(exc),
            finished_at=time.time(),
        )
        _load_job_log(job_id, f"Model load failed: {exc}")


def start_load_job(payload: dict) -> str:
    # One load at a time: a running job owns sys.stdout and sys.stderr.
    with _load_jobs_lock:
        active = [job for job in _load_jobs.values() if job.get("status") in ("queued", "loading")]
        if active:
            active.sort(key=lambda item: item.get("started_at", 0), reverse=True)
            return active[0].get("job_id")
        job_id = _new_load_job(payload)

    thread = threading.Thread(target=_run_load_job, args=(job_id, payload), daemon=True)
    thread.start()
    return job_id


def select_model(
    model_id: str,
    device: Optional[str] = None,
    force_reload: bool = False,
    persist_env: bool = False,
) -> str:
    target_model_id = normalize_optional(model_id)
    if not is_selectable(target_model_id):
        raise ValueError(f"Unknown model: {model_id}. Available models: {', '.join(AVAILABLE_MODELS)}")
    return start_load_job(
        {
            "model_id": target_model_id,
            "device": normalize_device(device),
            "force_reload": force_reload,
            "persist_env": persist_env,
        }
    )

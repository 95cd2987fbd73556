import copy
import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}
VALID_ORIENTATIONS = {"landscape", "portrait"}
VALID_VIDEO_DURATIONS = {5, 10}
TRUE_BOOL_STRINGS = {"1", "true", "yes", "on"}
FALSE_BOOL_STRINGS = {"0", "false", "no", "off"}

# Credential name -> environment variables checked in order.
CREDENTIAL_ENV_VARS: Dict[str, tuple[str, ...]] = {
    "HF_API_KEY": ("HF_API_KEY", "HF_TOKEN"),
    "RUNWAY_API_KEY": ("RUNWAY_API_KEY", "RUNWAYML_API_SECRET"),
    "REPLICATE_API_TOKEN": ("REPLICATE_API_TOKEN",),
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "server": {
        "listen_host": "127.0.0.1",
        "listen_port": 8000,
        "request_timeout_sec": 120,
        "poll_interval_sec": 10.0,
        "poll_max_attempts": 60,
        "poll_retry_count": 0,
        "request_retry_backoff_sec": 1.0,
    },
    "paths": {
        "data_dir": "data",
        "logs_dir": "logs",
    },
    "logging": {
        "level": "INFO",
    },
    "history": {
        "max_entries": 100,
    },
    "providers": {
        "huggingface_model": "stabilityai/stable-diffusion-3.5-large",
        "runway_base_url": "https://api.dev.runwayml.com",
        "runway_api_version": "2024-11-06",
        "runway_model": "gen3a_turbo",
        "replicate_base_url": "https://api.replicate.com",
        "replicate_version": "lucataco/animate-diff:beecf59c4aee8d81bf04f0381033dfa10dc16e845b4ae00d281e2fa377e48a9f",
    },
    "defaults": {
        "width": 512,
        "height": 512,
        "steps": 30,
        "guidance": 7.5,
        "seed": -1,
        "enhance_prompt": True,
        "model": "stable-diffusion-3.5-large",
        "style": "photorealistic",
        "video_duration": 5,
        "video_orientation": "landscape",
    },
}


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_bool_setting(raw_value: Any, default: bool = False) -> bool:
    if raw_value is None:
        return default
    if isinstance(raw_value, bool):
        return raw_value
    if isinstance(raw_value, str):
        normalized = raw_value.strip().lower()
        if normalized in TRUE_BOOL_STRINGS:
            return True
        if normalized in FALSE_BOOL_STRINGS:
            return False
        return default
    return bool(raw_value)


def _clamp_int(raw: Any, default: int, low: int, high: int) -> int:
    try:
        value = int(raw)
    except Exception:
        value = default
    return max(low, min(value, high))


def _clamp_float(raw: Any, default: float, low: float, high: float) -> float:
    try:
        value = float(raw)
    except Exception:
        value = default
    return max(low, min(value, high))


def _snap_dimension(raw: Any, default: int) -> int:
    value = _clamp_int(raw, default, 256, 1024)
    return int(round(value / 64.0)) * 64


def sanitize_settings(payload: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = copy.deepcopy(payload)
    server = cleaned.setdefault("server", {})
    defaults = cleaned.setdefault("defaults", {})
    history = cleaned.setdefault("history", {})
    logging_config = cleaned.setdefault("logging", {})
    providers = cleaned.setdefault("providers", {})

    listen_port = _clamp_int(server.get("listen_port", 8000), 8000, 0, 65535)
    server["listen_port"] = listen_port if listen_port >= 1 else 8000
    server["listen_host"] = str(server.get("listen_host", "127.0.0.1")).strip() or "127.0.0.1"
    server["request_timeout_sec"] = _clamp_float(server.get("request_timeout_sec", 120), 120.0, 5.0, 600.0)
    server["poll_interval_sec"] = _clamp_float(server.get("poll_interval_sec", 10.0), 10.0, 0.5, 120.0)
    server["poll_max_attempts"] = _clamp_int(server.get("poll_max_attempts", 60), 60, 1, 1000)
    server["poll_retry_count"] = _clamp_int(server.get("poll_retry_count", 0), 0, 0, 5)
    server["request_retry_backoff_sec"] = _clamp_float(server.get("request_retry_backoff_sec", 1.0), 1.0, 0.1, 10.0)

    raw_level = str(logging_config.get("level", "INFO")).strip().upper()
    logging_config["level"] = raw_level if raw_level in VALID_LOG_LEVELS else "INFO"

    history["max_entries"] = _clamp_int(history.get("max_entries", 100), 100, 1, 1000)

    for key, fallback in DEFAULT_SETTINGS["providers"].items():
        providers[key] = str(providers.get(key) or fallback).strip() or fallback

    defaults["width"] = _snap_dimension(defaults.get("width", 512), 512)
    defaults["height"] = _snap_dimension(defaults.get("height", 512), 512)
    defaults["steps"] = _clamp_int(defaults.get("steps", 30), 30, 10, 50)
    guidance = _clamp_float(defaults.get("guidance", 7.5), 7.5, 1.0, 20.0)
    defaults["guidance"] = round(guidance * 2.0) / 2.0
    seed = _clamp_int(defaults.get("seed", -1), -1, -1, 1_000_000)
    defaults["seed"] = -1 if seed == 0 else seed
    defaults["enhance_prompt"] = parse_bool_setting(defaults.get("enhance_prompt", True), default=True)
    defaults["model"] = str(defaults.get("model") or DEFAULT_SETTINGS["defaults"]["model"]).strip()
    defaults["style"] = str(defaults.get("style") or DEFAULT_SETTINGS["defaults"]["style"]).strip()
    duration = _clamp_int(defaults.get("video_duration", 5), 5, 5, 10)
    defaults["video_duration"] = duration if duration in VALID_VIDEO_DURATIONS else 5
    orientation = str(defaults.get("video_orientation", "landscape")).strip().lower()
    defaults["video_orientation"] = orientation if orientation in VALID_ORIENTATIONS else "landscape"
    return cleaned


# Vendor endpoints receive credentials, so they can only be set in the settings file.
READ_ONLY_SETTINGS: tuple[tuple[str, str], ...] = (
    ("providers", "runway_base_url"),
    ("providers", "replicate_base_url"),
)


def strip_read_only_settings(current: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Drop read-only keys from a client update.

    Raises ValueError naming the key when the update tries to change one.
    Echoing the current value back is allowed and ignored.
    """
    cleaned = copy.deepcopy(updates)
    for section, key in READ_ONLY_SETTINGS:
        values = cleaned.get(section)
        if not isinstance(values, dict) or key not in values:
            continue
        requested = str(values.pop(key) or "").strip()
        if requested and requested != str(current.get(section, {}).get(key) or ""):
            raise ValueError(f"{section}.{key} cannot be changed through the API")
    return cleaned


def resolve_path(path_like: str, base_dir: Path) -> Path:
    candidate = Path(path_like).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate.resolve()


def ensure_runtime_dirs(settings: Dict[str, Any], base_dir: Path) -> None:
    for key in ("data_dir", "logs_dir"):
        resolve_path(str(settings["paths"][key]), base_dir).mkdir(parents=True, exist_ok=True)


def resolve_credential(name: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Return the credential value from the environment.

    Raises ConfigurationError naming the variable when it is not set, so
    callers can reject a request before any network call is made.
    """
    env = os.environ if environ is None else environ
    candidates = CREDENTIAL_ENV_VARS.get(name, (name,))
    for env_name in candidates:
        value = str(env.get(env_name) or "").strip()
        if value:
            return value
    raise ConfigurationError(f"{name} is missing. Set the {name} environment variable on the server.")


def credential_status(environ: Optional[Mapping[str, str]] = None) -> Dict[str, bool]:
    status: Dict[str, bool] = {}
    for name in CREDENTIAL_ENV_VARS:
        try:
            resolve_credential(name, environ)
            status[name] = True
        except ConfigurationError:
            status[name] = False
    return status


class SettingsStore:
    def __init__(self, path: Path, defaults: Dict[str, Any]) -> None:
        self._path = path
        self._defaults = copy.deepcopy(defaults)
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        loaded, should_persist = self._load()
        self._settings = loaded
        if should_persist:
            self._write(self._settings)

    def _load(self) -> tuple[Dict[str, Any], bool]:
        if not self._path.exists():
            return sanitize_settings(copy.deepcopy(self._defaults)), True
        try:
            content = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(content, dict):
                return sanitize_settings(copy.deepcopy(self._defaults)), True
            merged = sanitize_settings(deep_merge(self._defaults, content))
            should_persist = merged != content
            return merged, should_persist
        except Exception:
            return sanitize_settings(copy.deepcopy(self._defaults)), True

    def _write(self, payload: Dict[str, Any]) -> None:
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self._path)

    def get(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._settings)

    def update(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            merged = deep_merge(self._settings, updates)
            self._settings = sanitize_settings(deep_merge(self._defaults, merged))
            self._write(self._settings)
            return copy.deepcopy(self._settings)

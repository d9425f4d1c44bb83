from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/memoria/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "embedding_model": "MEMORIA_EMBEDDING_MODEL",
    "embedding_dim": "MEMORIA_EMBEDDING_DIM",
    "embedding_disabled": "MEMORIA_EMBEDDING_DISABLED",
    "summarizer_provider": "MEMORIA_SUMMARIZER_PROVIDER",
    "summarizer_model": "MEMORIA_SUMMARIZER_MODEL",
    "summarizer_api_key": "MEMORIA_SUMMARIZER_API_KEY",
    "summarizer_base_url": "MEMORIA_SUMMARIZER_BASE_URL",
    "summary_max_chars": "MEMORIA_SUMMARY_MAX_CHARS",
    "max_context_tokens": "MEMORIA_MAX_CONTEXT_TOKENS",
    "condense_max_attempts": "MEMORIA_CONDENSE_MAX_ATTEMPTS",
    "condense_backoff_s": "MEMORIA_CONDENSE_BACKOFF_S",
    "condense_backoff_max_s": "MEMORIA_CONDENSE_BACKOFF_MAX_S",
    "condense_sweep_interval_s": "MEMORIA_CONDENSE_SWEEP_INTERVAL_S",
    "retrieval_breadth_factor": "MEMORIA_RETRIEVAL_BREADTH_FACTOR",
    "retrieval_min_breadth": "MEMORIA_RETRIEVAL_MIN_BREADTH",
    "retrieval_timeout_ms": "MEMORIA_RETRIEVAL_TIMEOUT_MS",
    "retrieval_full_scan_fallback": "MEMORIA_RETRIEVAL_FULL_SCAN_FALLBACK",
}

_INT_KEYS = {
    "embedding_dim",
    "summary_max_chars",
    "max_context_tokens",
    "condense_max_attempts",
    "retrieval_breadth_factor",
    "retrieval_min_breadth",
    "retrieval_timeout_ms",
}
_FLOAT_KEYS = {
    "condense_backoff_s",
    "condense_backoff_max_s",
    "condense_sweep_interval_s",
}
_BOOL_KEYS = {
    "embedding_disabled",
    "retrieval_full_scan_fallback",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("MEMORIA_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    """Settings stored in the memoria config file; a missing or blank file is empty."""
    config_path = get_config_path(path)
    try:
        raw = config_path.read_text()
    except FileNotFoundError:
        return {}
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"memoria config {config_path} is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"memoria config {config_path} must be a JSON object of settings")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    unknown = sorted(set(data) - {item.name for item in fields(MemoriaConfig)})
    if unknown:
        raise ValueError(f"unknown memoria settings: {', '.join(unknown)}")
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    """Raw ``MEMORIA_*`` values keyed by setting name; parsing happens in ``load_config``."""
    return {
        key: os.environ[env_var]
        for key, env_var in CONFIG_ENV_OVERRIDES.items()
        if env_var in os.environ
    }


@dataclass
class MemoriaConfig:
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    # Fixed for the lifetime of a database; a model with another width is an InvalidVector.
    embedding_dim: int = 384
    embedding_disabled: bool = False
    summarizer_provider: str | None = None
    summarizer_model: str | None = None
    summarizer_api_key: str | None = None
    summarizer_base_url: str | None = None
    summary_max_chars: int = 6000
    max_context_tokens: int = 1_048_576
    condense_max_attempts: int = 5
    condense_backoff_s: float = 2.0
    condense_backoff_max_s: float = 300.0
    condense_sweep_interval_s: float = 30.0
    retrieval_breadth_factor: int = 5
    retrieval_min_breadth: int = 50
    retrieval_timeout_ms: int = 2000
    retrieval_full_scan_fallback: bool = False


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> MemoriaConfig:
    cfg = MemoriaConfig()
    try:
        data = read_config_file(path)
    except ValueError as exc:
        warnings.warn(f"{exc}; using defaults", RuntimeWarning, stacklevel=2)
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: MemoriaConfig, data: dict[str, Any]) -> MemoriaConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        setattr(cfg, key, value)
    return cfg

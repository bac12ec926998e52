from __future__ import annotations

import os
import tempfile
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .config import NON_STREAM_STRATEGIES, WIRE_FORMATS, GatewayConfig

CONFIG_FILE_ENV = "CHAT_RELAY_CONFIG_FILE"
ENV_PREFIX = "CHAT_RELAY_"
DEFAULT_CONFIG_PATH = Path("configs/chat_relay.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "server": ["host", "port", "enable_metrics"],
    "backend": ["ollama_base_url", "backend_pool_size", "backend_timeout_ms"],
    "relay": [
        "queue_capacity",
        "keepalive_interval_s",
        "stream_wire_format",
        "non_stream_strategy",
    ],
    "logging": ["log_path", "max_log_bytes", "log_prompts"],
}

_CHOICES: dict[str, tuple[str, ...]] = {
    "stream_wire_format": WIRE_FORMATS,
    "non_stream_strategy": NON_STREAM_STRATEGIES,
}

# Lower bounds; values below fall back to the default.
_MINIMUMS: dict[str, float] = {
    "port": 1,
    "backend_pool_size": 1,
    "backend_timeout_ms": 0,
    "queue_capacity": 1,
    "keepalive_interval_s": 0,
    "max_log_bytes": 1,
}


def _field_types() -> dict[str, Any]:
    return {f.name: f.type for f in fields(GatewayConfig)}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value))


def _coerce_float(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return float(str(value))


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


# Field annotations are strings under postponed evaluation.
_CASTERS: dict[str, Callable[[Any], Any]] = {
    "bool": _coerce_bool,
    "int": _coerce_int,
    "float": _coerce_float,
    "str": _coerce_str,
}


def _coerce_value(field_type: Any, value: Any) -> Any:
    if isinstance(field_type, str):
        name = field_type
    else:
        name = getattr(field_type, "__name__", "")
    if name.startswith("Optional["):
        if value in ("", None):
            return None
        name = name[len("Optional[") : -1]
    caster = _CASTERS.get(name)
    if caster:
        return caster(value)
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    env = os.environ

    def env_bool(name: str, current: bool) -> bool:
        val = env.get(name)
        if val is None:
            return current
        return val.lower() in {"1", "true", "yes", "on"}

    def env_int(name: str, current: int) -> int:
        val = env.get(name)
        if val is None:
            return current
        try:
            return int(val)
        except ValueError:
            return current

    def env_float(name: str, current: float) -> float:
        val = env.get(name)
        if val is None:
            return current
        try:
            return float(val)
        except ValueError:
            return current

    def env_str(name: str, current: str) -> str:
        val = env.get(name)
        if val is None:
            return current
        return val

    overrides = {
        "host": env_str("CHAT_RELAY_HOST", config["host"]),
        "port": env_int("CHAT_RELAY_PORT", config["port"]),
        "enable_metrics": env_bool(
            "CHAT_RELAY_ENABLE_METRICS", config["enable_metrics"]
        ),
        "ollama_base_url": env_str(
            "CHAT_RELAY_OLLAMA_BASE_URL", config["ollama_base_url"]
        ),
        "backend_pool_size": env_int(
            "CHAT_RELAY_BACKEND_POOL_SIZE", config["backend_pool_size"]
        ),
        "backend_timeout_ms": env_int(
            "CHAT_RELAY_BACKEND_TIMEOUT_MS", config["backend_timeout_ms"]
        ),
        "queue_capacity": env_int(
            "CHAT_RELAY_QUEUE_CAPACITY", config["queue_capacity"]
        ),
        "keepalive_interval_s": env_float(
            "CHAT_RELAY_KEEPALIVE_INTERVAL_S", config["keepalive_interval_s"]
        ),
        "stream_wire_format": env_str(
            "CHAT_RELAY_STREAM_WIRE_FORMAT", config["stream_wire_format"]
        ),
        "non_stream_strategy": env_str(
            "CHAT_RELAY_NON_STREAM_STRATEGY", config["non_stream_strategy"]
        ),
        "log_path": env_str("CHAT_RELAY_LOG_PATH", config["log_path"]),
        "max_log_bytes": env_int("CHAT_RELAY_MAX_LOG_BYTES", config["max_log_bytes"]),
        "log_prompts": env_bool("CHAT_RELAY_LOG_PROMPTS", config["log_prompts"]),
    }
    config.update(overrides)
    return _validate(config)


def _default_config_dict() -> dict[str, Any]:
    defaults = GatewayConfig()
    data = asdict(defaults)
    data.pop("config_file_path", None)
    return data


def _validate(config: dict[str, Any]) -> dict[str, Any]:
    defaults = _default_config_dict()
    for key, allowed in _CHOICES.items():
        value = str(config.get(key, "")).strip().lower()
        config[key] = value if value in allowed else defaults[key]
    for key, minimum in _MINIMUMS.items():
        if config.get(key, defaults[key]) < minimum:
            config[key] = defaults[key]
    return config


def _normalize(config: dict[str, Any]) -> dict[str, Any]:
    field_types = _field_types()
    normalized = {}
    for key, default_value in _default_config_dict().items():
        value = config.get(key, default_value)
        field_type = field_types.get(key)
        try:
            normalized[key] = _coerce_value(field_type, value)
        except Exception:  # noqa: BLE001
            normalized[key] = default_value
    return _validate(normalized)


def _ensure_config_file(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    write_config(GatewayConfig(), path)


def _config_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def load_file_config() -> dict[str, Any]:
    path = _config_path()
    _ensure_config_file(path)
    base = _default_config_dict()
    base.update(_read_config_file(path))
    return _normalize(base)


def load_gateway_config() -> GatewayConfig:
    candidate = _config_path()
    _ensure_config_file(candidate)
    normalized = _normalize(_read_config_file(candidate))
    normalized = _apply_env_overrides(normalized)
    cfg = GatewayConfig(**normalized)
    cfg.config_file_path = str(candidate)
    return cfg


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return '""'
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _ordered_sections(config: GatewayConfig) -> dict[str, dict[str, Any]]:
    config_dict = asdict(config)
    config_dict.pop("config_file_path", None)
    sections: dict[str, dict[str, Any]] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = {key: config_dict[key] for key in keys if key in config_dict}
        if section_values:
            sections[section] = section_values
    return sections


def write_config(config: GatewayConfig, path: Path | None = None) -> None:
    path = Path(path or _config_path()).expanduser()
    lines: list[str] = [
        "# Chat relay gateway configuration.",
        "# Generated automatically. Edit values as needed.",
    ]
    for section, values in _ordered_sections(config).items():
        lines.append("")
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_format_value(value)}")

    tmp_fd, tmp_path = tempfile.mkstemp(
        prefix="chat_relay_config_", suffix=".toml", dir=path.parent
    )
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        Path(tmp_path).replace(path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass


def update_config_file(updates: dict[str, Any]) -> GatewayConfig:
    path = _config_path()
    _ensure_config_file(path)
    base = _default_config_dict()
    base.update(_read_config_file(path))

    unknown = [key for key in updates if key not in base]
    if unknown:
        raise KeyError(f"Unknown configuration field(s): {', '.join(sorted(unknown))}")

    base.update(updates)
    file_config = GatewayConfig(**_normalize(base))
    file_config.config_file_path = str(path)
    write_config(file_config, path)
    return load_gateway_config()


def list_env_overrides() -> dict[str, str]:
    return {
        key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)
    }

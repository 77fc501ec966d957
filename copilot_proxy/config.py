"""Configuration helpers for the Copilot completion proxy."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

DEFAULT_INSTRUCT_MODEL = "gpt-3.5-turbo-instruct"
DEFAULT_BIND = "127.0.0.1:8080"
DEFAULT_CONFIG_PATH = "config.json"
OVERRIDE_PREFIX = "OVERRIDE_"


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing or invalid."""


@dataclass(frozen=True)
class Backend:
    """Connection details for one upstream API."""

    api_base: str
    api_key: str
    organization: str = ""
    project: str = ""


@dataclass(frozen=True)
class ProxyConfig:
    """Process-wide configuration, loaded once at startup and never mutated."""

    bind: str = DEFAULT_BIND
    proxy_url: str = ""
    timeout: int = 600
    codex_api_base: str = ""
    codex_api_key: str = ""
    codex_api_organization: str = ""
    codex_api_project: str = ""
    code_instruct_model: str = DEFAULT_INSTRUCT_MODEL
    chat_api_base: str = ""
    chat_api_key: str = ""
    chat_api_organization: str = ""
    chat_api_project: str = ""
    chat_max_tokens: int = 4096
    chat_model_default: str = ""
    chat_model_map: dict[str, str] = field(default_factory=dict)
    chat_locale: str = ""
    auth_token: str = ""

    def backend(self, name: str) -> Backend:
        if name == "chat":
            return Backend(
                self.chat_api_base,
                self.chat_api_key,
                self.chat_api_organization,
                self.chat_api_project,
            )
        if name == "codex":
            return Backend(
                self.codex_api_base,
                self.codex_api_key,
                self.codex_api_organization,
                self.codex_api_project,
            )
        raise ValueError(f"unknown backend {name!r}")

    def bind_address(self) -> tuple[str, int]:
        """Split ``bind`` into host and port; an empty host means all interfaces."""

        host, _, port = self.bind.rpartition(":")
        return (host or "0.0.0.0"), int(port)


def _parse_str(raw: str) -> str:
    return raw


def _parse_int(raw: str) -> int:
    # int() tolerates whitespace and underscores; overrides must be plain digits
    text = raw[1:] if raw[:1] in {"+", "-"} else raw
    if not text.isdigit():
        raise ValueError(f"invalid integer {raw!r}")
    return int(raw)


# Scalar fields that may be overridden from the environment.
_OVERRIDES: tuple[tuple[str, Callable[[str], Any]], ...] = (
    ("bind", _parse_str),
    ("proxy_url", _parse_str),
    ("timeout", _parse_int),
    ("codex_api_base", _parse_str),
    ("codex_api_key", _parse_str),
    ("codex_api_organization", _parse_str),
    ("codex_api_project", _parse_str),
    ("code_instruct_model", _parse_str),
    ("chat_api_base", _parse_str),
    ("chat_api_key", _parse_str),
    ("chat_api_organization", _parse_str),
    ("chat_api_project", _parse_str),
    ("chat_max_tokens", _parse_int),
    ("chat_model_default", _parse_str),
    ("chat_locale", _parse_str),
    ("auth_token", _parse_str),
)


def apply_env_overrides(values: dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Overlay ``OVERRIDE_<FIELD>`` environment variables onto raw config values.

    Values that cannot be coerced to the field's type are ignored and the
    file-provided value is kept.
    """

    env = os.environ if environ is None else environ
    merged = dict(values)
    for name, parse in _OVERRIDES:
        raw = env.get(OVERRIDE_PREFIX + name.upper())
        if raw is None:
            continue
        try:
            merged[name] = parse(raw)
        except ValueError:
            continue
    return merged


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file {path} does not exist") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc

    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def build_config(values: Mapping[str, Any]) -> ProxyConfig:
    """Create a ProxyConfig from raw values, dropping unknown keys."""

    known = {name for name, _ in _OVERRIDES} | {"chat_model_map"}
    kwargs = {key: value for key, value in values.items() if key in known and value is not None}

    model_map = kwargs.get("chat_model_map")
    if model_map is not None and not isinstance(model_map, dict):
        raise ConfigError("chat_model_map must be a JSON object")
    if model_map is not None:
        kwargs["chat_model_map"] = {str(k): str(v) for k, v in model_map.items()}

    if not kwargs.get("code_instruct_model"):
        kwargs["code_instruct_model"] = DEFAULT_INSTRUCT_MODEL
    return ProxyConfig(**kwargs)


def load_config(path: str | os.PathLike[str] = DEFAULT_CONFIG_PATH, environ: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """Read the JSON config file and apply environment overrides."""

    expanded = os.path.expanduser(os.path.expandvars(os.fspath(path)))
    values = _read_config_file(Path(expanded))
    return build_config(apply_env_overrides(values, environ))

"""Request body rewriting for the chat and code-completion upstreams.

Both rewriters take the decoded client JSON body and return a new dict; the
caller's object is never modified. ``dump_body`` serializes the result with
literal angle brackets and non-ASCII characters so fill-in-middle tokens reach
the upstream verbatim.
"""
from __future__ import annotations

import copy
import json
from typing import Any

from .config import ProxyConfig

LOCALE_MARKER = "Respond in the following locale"
DEFAULT_LOCALE = "zh_CN"
STABLE_CODE_MARKER = "stable-code"
CF_MODEL_PREFIX = "@"

_STRIPPED_CHAT_FIELDS = ("intent", "intent_threshold", "intent_content")
_STRIPPED_CODE_FIELDS = ("extra", "nwo")


def _resolve_chat_model(model: Any, cfg: ProxyConfig) -> str:
    if isinstance(model, str) and model in cfg.chat_model_map:
        return cfg.chat_model_map[model]
    return cfg.chat_model_default


def _append_locale(messages: Any, locale: str) -> None:
    if not isinstance(messages, list) or not messages:
        return
    last = messages[-1]
    if not isinstance(last, dict):
        return
    content = last.get("content")
    if content is None:
        content = ""
    if not isinstance(content, str) or LOCALE_MARKER in content:
        return
    last["content"] = f"{content} {LOCALE_MARKER}: {locale}."


def rewrite_chat(body: dict[str, Any], cfg: ProxyConfig) -> dict[str, Any]:
    """Prepare a client chat-completion body for the chat upstream."""

    out = copy.deepcopy(body)
    out["model"] = _resolve_chat_model(out.get("model"), cfg)

    if "function_call" not in out:
        _append_locale(out.get("messages"), cfg.chat_locale or DEFAULT_LOCALE)

    for key in _STRIPPED_CHAT_FIELDS:
        out.pop(key, None)

    max_tokens = out.get("max_tokens")
    if isinstance(max_tokens, (int, float)) and not isinstance(max_tokens, bool):
        if int(max_tokens) > cfg.chat_max_tokens:
            out["max_tokens"] = cfg.chat_max_tokens
    return out


def _fim_stable_code(prompt: str, suffix: str) -> str:
    return f"<fim_prefix>{prompt}<fim_suffix>{suffix}<fim_middle>"


def _fim_cf(prompt: str, suffix: str) -> str:
    return f"<｜fim▁begin｜>{prompt}<｜fim▁hole｜>{suffix}<｜fim▁end｜>"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _with_fim_message(body: dict[str, Any], content: str) -> dict[str, Any]:
    body["messages"] = [{"role": "user", "content": content}]
    return body


def rewrite_code(body: dict[str, Any], cfg: ProxyConfig) -> dict[str, Any]:
    """Turn a Copilot codex completion request into a fill-in-middle chat request.

    Models containing ``stable-code`` use the ``<fim_*>`` tokens and models
    prefixed with ``@`` use the ``<｜fim▁*｜>`` tokens. Any other model is sent
    as-is apart from the model and stripped fields; there is no chat prompt
    construction for general backends.
    """

    out = copy.deepcopy(body)
    for key in _STRIPPED_CODE_FIELDS:
        out.pop(key, None)

    model = cfg.code_instruct_model
    out["model"] = model

    prompt = _as_text(out.get("prompt"))
    suffix = _as_text(out.get("suffix"))
    if STABLE_CODE_MARKER in model:
        return _with_fim_message(out, _fim_stable_code(prompt, suffix))
    if model.startswith(CF_MODEL_PREFIX):
        return _with_fim_message(out, _fim_cf(prompt, suffix))
    return out


def dump_body(body: dict[str, Any]) -> bytes:
    """Serialize an upstream body without escaping ``<``, ``>`` or non-ASCII text."""

    return json.dumps(body, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

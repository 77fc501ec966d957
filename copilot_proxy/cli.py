"""Entry points for launching the FastAPI proxy via uvicorn."""
from __future__ import annotations

import argparse
import dataclasses
import logging

import uvicorn

from .app import create_app
from .config import DEFAULT_CONFIG_PATH, ConfigError, ProxyConfig, load_config


logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


def mask_secret(value: str) -> str:
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def _log_configuration(cfg: ProxyConfig) -> None:
    """Emit a concise summary of the active configuration values."""

    logger.info("Initializing Copilot completion proxy ...")
    logger.info(
        "✓ Loaded configuration bind=%s proxy=%s timeout=%ss auth=%s",
        cfg.bind,
        cfg.proxy_url or "none",
        cfg.timeout,
        "enabled" if cfg.auth_token else "disabled",
    )
    logger.info(
        "✓ Codex upstream %s key=%s model=%s",
        cfg.codex_api_base,
        mask_secret(cfg.codex_api_key),
        cfg.code_instruct_model,
    )
    logger.info(
        "✓ Chat upstream %s key=%s default_model=%s mapped=%d max_tokens=%d",
        cfg.chat_api_base,
        mask_secret(cfg.chat_api_key),
        cfg.chat_model_default or "(empty)",
        len(cfg.chat_model_map),
        cfg.chat_max_tokens,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Copilot completion proxy server")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to the JSON config file",
    )
    parser.add_argument(
        "--bind",
        default=None,
        metavar="HOST:PORT",
        help="Listen address, overrides the config file",
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as err:
        logger.error("[!] Configuration error: %s", err)
        raise SystemExit(1)
    if args.bind:
        cfg = dataclasses.replace(cfg, bind=args.bind)

    try:
        host, port = cfg.bind_address()
    except ValueError:
        logger.error("[!] Invalid bind address: %s", cfg.bind)
        raise SystemExit(1)

    _log_configuration(cfg)

    uvicorn.run(
        create_app(cfg),
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    run()

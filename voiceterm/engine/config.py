"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via VOICETERM_* env vars;
the listen port also honours the conventional PORT variable.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Async sink for browser-bound messages.
# Signature: async def callback(message: dict[str, Any]) -> None
BroadcastCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: BroadcastCallback | None,
    message: dict[str, Any],
) -> None:
    """Deliver a message to the callback if set, logging its failures."""
    if callback is None:
        return
    try:
        await callback(message)
    except Exception:
        logger.exception("Broadcast callback failed type=%s", message.get("type"))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass
class RelayConfig:
    """Relay server configuration."""

    host: str = "0.0.0.0"
    port: int = 3456

    # Working directory handed to the assistant process.
    cwd: str = field(default_factory=lambda: str(Path.home()))

    # Assistant CLI invocation.
    command: str = "claude"
    model: str | None = None
    permission_mode: str | None = None
    extra_args: list[str] = field(default_factory=list)

    # Whether the CLI accepts interrupt control requests on stdin.
    interrupt_supported: bool = True

    # Grace period between SIGTERM and SIGKILL on stop.
    stop_timeout_seconds: float = 5.0

    # Directory of browser assets served at /; skipped if missing.
    static_dir: str | None = None

    log_level: str = "INFO"

    def build_argv(self, command: str | None = None) -> list[str]:
        """Command line for a long-lived stream-json assistant session."""
        argv = [
            command or self.command,
            "--print",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if self.model:
            argv.extend(["--model", self.model])
        if self.permission_mode:
            argv.extend(["--permission-mode", self.permission_mode])
        argv.extend(self.extra_args)
        return argv

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from PORT and VOICETERM_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items()
            if k.startswith("VOICETERM_") or k == "PORT"
        }
        if overrides:
            logger.info(
                "RelayConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no env overrides, using defaults")

        defaults = cls()
        config = cls(
            host=os.getenv("VOICETERM_HOST", defaults.host),
            port=int(os.getenv("PORT", os.getenv("VOICETERM_PORT", str(defaults.port)))),
            cwd=os.getenv("VOICETERM_CWD", defaults.cwd),
            command=os.getenv("VOICETERM_COMMAND", defaults.command),
            model=os.getenv("VOICETERM_MODEL") or None,
            permission_mode=os.getenv("VOICETERM_PERMISSION_MODE") or None,
            interrupt_supported=_env_flag(
                "VOICETERM_INTERRUPT", defaults.interrupt_supported,
            ),
            stop_timeout_seconds=float(os.getenv(
                "VOICETERM_STOP_TIMEOUT", str(defaults.stop_timeout_seconds),
            )),
            static_dir=os.getenv("VOICETERM_STATIC_DIR") or None,
            log_level=os.getenv("VOICETERM_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "RelayConfig.from_env: host=%s port=%s cwd=%s command=%s",
            config.host, config.port, config.cwd, config.command,
        )
        return config

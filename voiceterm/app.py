"""voiceterm command-line entry point."""
from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from voiceterm.engine.config import RelayConfig


def _configure_logging(level_name: str, log_dir: Path | None) -> Path | None:
    """Root logger: stderr plus a rotating file under *log_dir*."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_dir is None:
        return None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logging.getLogger(__name__).warning(
            "Cannot create log dir %s (%s); logging to stderr only", log_dir, exc,
        )
        return None
    log_file = log_dir / "voiceterm-server.log"
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Explicit --config, else ./voiceterm.yaml when present."""
    log = logging.getLogger(__name__)
    if explicit:
        path = Path(explicit)
        log.info("Using explicit config path: %s (exists=%s)", path, path.exists())
        return path
    auto = Path.cwd() / "voiceterm.yaml"
    if auto.is_file():
        log.info("Auto-discovered config: %s", auto)
        return auto
    log.info("No config file found (tried %s); using env and defaults", auto)
    return None


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="voiceterm",
        description="Voice-controlled front-end for a command-line AI assistant",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to listen on (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Listen port (default: $PORT or 3456)",
    )
    parser.add_argument(
        "--cwd", default=None,
        help="Working directory for the assistant (default: $HOME)",
    )
    parser.add_argument(
        "--command", default=None,
        help="Assistant CLI executable (default: claude)",
    )
    parser.add_argument(
        "--static-dir", default=None,
        help="Directory of browser assets to serve at /",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./voiceterm.yaml if present)",
    )
    parser.add_argument(
        "--log-level", default=None,
        help="Logging level (default: $VOICETERM_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--no-log-file", action="store_true",
        help="Log to stderr only",
    )
    args = parser.parse_args()

    log_dir = None if args.no_log_file else Path.home() / ".voiceterm" / "logs"
    log_file = _configure_logging(
        args.log_level or os.getenv("VOICETERM_LOG_LEVEL", "INFO"), log_dir,
    )
    log = logging.getLogger(__name__)

    config = RelayConfig.from_env()
    config_path = _resolve_config_path(args.config)
    if config_path is not None:
        from voiceterm.engine.yaml_config import ConfigError, load_yaml_config

        try:
            config = load_yaml_config(config_path, base=config)
        except ConfigError as exc:
            log.error("%s", exc)
            sys.exit(2)

    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.cwd is not None:
        config.cwd = args.cwd
    if args.command is not None:
        config.command = args.command
    if args.static_dir is not None:
        config.static_dir = args.static_dir
    if args.log_level is None and config.log_level:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    log.info(
        "Starting voiceterm host=%s port=%s cwd=%s config=%s log=%s",
        config.host, config.port, config.cwd,
        config_path or "<none>", log_file or "<stderr>",
    )

    from voiceterm.server.app import run

    try:
        run(config)
    except KeyboardInterrupt:
        log.info("Interrupted.")
    sys.exit(0)


if __name__ == "__main__":
    main()

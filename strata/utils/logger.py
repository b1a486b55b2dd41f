"""
Centralized logging for Strata.

Provides:
- Rotated file logging under ~/.strata/logs
- Console logging on stderr when verbose
- Run-specific logging via bound run_id
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from strata.config.models import LoggingConfig


def use_emoji_logs() -> bool:
    """
    Check if emoji prefixes should be used in log messages.

    Returns True unless STRATA_EMOJI_LOGS is set to "0" or "false".
    """
    value = os.environ.get("STRATA_EMOJI_LOGS", "1").lower()
    return value not in ("0", "false", "no", "off")


_EMOJI_TO_ASCII = {
    "🔄": "[RETRY]",
    "⚠️": "[WARN]",
    "⏱️": "[TIMEOUT]",
    "✅": "[OK]",
    "❌": "[ERROR]",
    "🗄️": "[STATE]",
    "🔍": "[REFRESH]",
    "🧹": "[DESTROY]",
    "🚀": "[APPLY]",
    "📋": "[PLAN]",
}


def log_prefix(emoji: str) -> str:
    """
    Return the log prefix for an emoji, honouring STRATA_EMOJI_LOGS.

    Args:
        emoji: The emoji to use when emoji logs are enabled.

    Returns:
        The emoji, or its ASCII equivalent (empty string if none).
    """
    if use_emoji_logs():
        return emoji
    return _EMOJI_TO_ASCII.get(emoji, "")


def setup_logger(
    verbose: bool = False,
    run_id: str | None = None,
    config: LoggingConfig | None = None,
) -> None:
    """
    Configure sinks.

    Rules:
    1. FILE: Always log to <log_dir>/strata.log (rotated).
    2. CONSOLE: DEBUG+ to stderr when verbose, otherwise console_level.

    Args:
        verbose: Enable debug console logging
        run_id: Optional run ID added to each file record
        config: LoggingConfig override
    """
    if config is None:
        from strata.config.models import LoggingConfig

        config = LoggingConfig()

    logger.remove()

    log_dir = Path(config.log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_format = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
        if run_id:
            file_format = "{time:YYYY-MM-DD HH:mm:ss} | " + run_id + " | {level: <8} | {name}:{function}:{line} - {message}"
        logger.add(
            log_dir / "strata.log",
            rotation=config.rotation,
            retention=config.retention,
            level=config.file_level.upper(),
            format=file_format,
            enqueue=True,
        )
    except OSError as e:
        # Read-only home; console sink still configured below
        print(f"Warning: file logging disabled ({e})", file=sys.stderr)

    console_format = (
        "<green>{time:HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    logger.add(
        sys.stderr,
        format=console_format,
        level="DEBUG" if verbose else config.console_level.upper(),
        colorize=True,
    )

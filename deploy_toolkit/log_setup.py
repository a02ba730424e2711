"""
log_setup.py - Logging configuration for Deploy Toolkit.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "deploy_toolkit"


def parse_level(level: Union[int, str]) -> int:
    """Accept either a logging constant or its name ("debug", "INFO")."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level!r}")
    return value


def setup_logging(
    log_dir: Optional[Path] = None,
    level: Union[int, str] = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure toolkit-wide logging.

    Installs a dated file handler under *log_dir* and, optionally, a terse
    stdout handler. Calling it again replaces the previous handlers.
    """
    level = parse_level(level)
    log_dir = Path(log_dir) if log_dir else Path.cwd() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / f"deploy_toolkit_{datetime.now():%Y%m%d}.log"

    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    # File handler
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(fh)

    # Console handler
    if console:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(
            "[%(levelname)-7s] %(message)s"
        ))
        root.addHandler(ch)

    root.debug("Logging initialized → %s", log_file)
    return root

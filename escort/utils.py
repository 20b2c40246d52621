"""Shared filesystem and logging helpers for Escort workflows."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

LOGGER_NAME = "escort"


def ensure_dir(path: str | Path) -> None:
    """Create a directory (and parents) if it does not exist."""
    if str(path) == "":
        return
    Path(path).mkdir(parents=True, exist_ok=True)


def write_json(path: str | Path, payload: dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


def setup_logger(log_path: Path, logger_name: str) -> logging.Logger:
    ensure_dir(log_path.parent)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def get_logger(logger: logging.Logger | None = None, suffix: str | None = None) -> logging.Logger:
    if isinstance(logger, logging.Logger):
        return logger
    name = LOGGER_NAME if not suffix else f"{LOGGER_NAME}.{suffix}"
    return logging.getLogger(name)

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss!UTC}Z | {level:<8} | {name}:{function}:{line} | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {thread.name} | {name}:{function}:{line} | {message}"


def configure_logging(log_dir: Path | None = None, level: str = "INFO", enqueue: bool = True) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        enqueue=enqueue,
        backtrace=True,
        diagnose=False,
        format=CONSOLE_FORMAT,
    )
    if log_dir is None:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        str(log_dir / "pipeline.log"),
        level="DEBUG",
        rotation="10 MB",
        retention="14 days",
        enqueue=enqueue,
        backtrace=True,
        diagnose=False,
        format=FILE_FORMAT,
    )

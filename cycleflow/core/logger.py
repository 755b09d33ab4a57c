"""Loguru setup for the ingestion service.

Messages carry a bracketed component tag ("[GARMIN_JOB] ..."); the patcher
copies it into extra["component"] so sinks can show or filter on it.
"""

import re
import sys
from pathlib import Path

from loguru import logger

COMPONENT_TAG = re.compile(r"^\[([A-Z_]+)\]")

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[component]: <15}</magenta> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]: <15} | {name}:{function}:{line} - {message}"


def _tag_component(record) -> None:
    if "component" not in record["extra"]:
        match = COMPONENT_TAG.match(record["message"])
        record["extra"]["component"] = match.group(1) if match else "-"


def setup_logger(
    level: str = "INFO",
    log_file: str | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize: bool = False,
) -> None:
    """Configure the console sink and an optional rotating file sink.

    Args:
        level: Minimum level for every sink
        log_file: Optional log file path; parent directories are created
        rotation: File rotation threshold (e.g. "10 MB", "1 day")
        retention: How long rotated files are kept
        serialize: Write the file sink as JSON lines instead of text
    """
    logger.remove()
    logger.configure(patcher=_tag_component)

    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            serialize=serialize,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    logger.debug(f"Logger initialized with level={level}, file={log_file or 'none'}")

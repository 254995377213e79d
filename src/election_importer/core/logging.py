"""Loguru logging configuration.

Every record carries the import job it belongs to: the pipeline runner
binds ``job_id`` with ``logger.contextualize`` and records logged outside
a job show ``-``. Records bound with ``json_output=True`` go to a JSON
sink instead of the text one.
"""

import sys
from pathlib import Path

from loguru import logger

_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | job={extra[job_id]} | {name}:{function}:{line} | {message}"
)
LOG_FILE_NAME = "election-importer.log"


def _is_json(record: dict) -> bool:
    return bool(record["extra"].get("json_output", False))


def setup_logging(log_level: str = "INFO", log_dir: str | None = None) -> None:
    """Configure Loguru sinks.

    Args:
        log_level: Minimum log level to emit.
        log_dir: Optional directory for log files.  When set, a rotating
            file sink is added (rotated every 24 hours, retained 7 days).
    """
    level = log_level.upper()
    logger.remove()
    logger.configure(extra={"job_id": "-"})
    logger.add(sys.stderr, level=level, format=_LOG_FORMAT, filter=lambda r: not _is_json(r))
    logger.add(sys.stderr, level=level, serialize=True, filter=_is_json)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path / LOG_FILE_NAME,
            level=level,
            format=_LOG_FORMAT,
            rotation="24h",
            retention="7 days",
            encoding="utf-8",
        )

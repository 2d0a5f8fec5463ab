"""
Structured logging for the risk ingest service.

JSON output through python-json-logger by default; LOG_FORMAT=text gives a
plain format for local runs. Call setup_logging() once at startup, then use
get_logger(__name__) everywhere else.
"""
import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

ROOT_LOGGER = "risk_ingest"

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class IngestJsonFormatter(jsonlogger.JsonFormatter):
    """Adds timestamp, level and logger name to every record."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name


def setup_logging(level: Optional[str] = None, format_type: str = "json") -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (defaults to INFO)
        format_type: "json" or "text"
    """
    log_level = LOG_LEVELS.get((level or "INFO").upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if format_type == "json":
        formatter = IngestJsonFormatter(
            fmt="%(timestamp)s %(level)s %(logger)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)

"""
Evidence Seal Observability

Structured logging for the evidence pipeline.
"""

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Extra attributes copied from log records into JSON output
EVIDENCE_FIELDS = ("file_id", "case_id", "content_hash", "batch_root", "state")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in EVIDENCE_FIELDS:
            if hasattr(record, name):
                log_data[name] = str(getattr(record, name))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class EvidenceLoggerAdapter(logging.LoggerAdapter):
    """Attaches evidence fields to every record logged through it."""

    def process(self, msg: Any, kwargs: Dict[str, Any]):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def evidence_logger(name: str, **fields: Any) -> EvidenceLoggerAdapter:
    """Logger bound to a file, case or batch."""
    unknown = set(fields) - set(EVIDENCE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log fields: {sorted(unknown)}")
    return EvidenceLoggerAdapter(logging.getLogger(name), fields)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level
        json_format: Use JSON formatting
        log_file: Optional log file path
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


__all__ = [
    "JSONFormatter",
    "EvidenceLoggerAdapter",
    "evidence_logger",
    "setup_logging",
]

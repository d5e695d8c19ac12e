from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO, Union


class JsonAuditLogger:
    """Structured logger for audit and operational events.

    Logs JSON lines to stdout and, when a log path is supplied, mirrors every
    event to that file so a long reconciliation session leaves a trail of each
    merge, skip, and flag.
    """

    def __init__(
        self,
        name: str = "tenant_reconcile",
        level: int = logging.INFO,
        log_path: Optional[Union[str, Path]] = None,
        stream: Optional[TextIO] = None,
    ):
        self.logger = logging.getLogger(name)
        if not any(getattr(h, "_audit_console", False) for h in self.logger.handlers):
            handler = logging.StreamHandler(stream or sys.stdout)
            handler.setFormatter(_JsonFormatter())
            handler._audit_console = True  # type: ignore[attr-defined]
            self.logger.addHandler(handler)
        self.log_path = Path(log_path) if log_path else None
        if self.log_path:
            self._attach_file(self.log_path)
        self.logger.setLevel(level)
        self.logger.propagate = False

    def _attach_file(self, path: Path) -> None:
        resolved = str(path.resolve())
        for handler in self.logger.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == resolved:
                return
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(_JsonFormatter())
        self.logger.addHandler(handler)

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        self.logger.log(level, message, extra={"extra": kwargs})

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            if isinstance(handler, logging.FileHandler):
                handler.close()
                self.logger.removeHandler(handler)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
        }

        extra: Optional[Dict[str, Any]] = getattr(record, "extra", None)  # type: ignore[attr-defined]
        if extra:
            payload.update(extra)

        return json.dumps(payload, default=str)

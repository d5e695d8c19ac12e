from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .audit import JsonAuditLogger
from .errors import ReconcileError
from .models import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointError(ReconcileError):
    """Raised when an existing checkpoint file cannot be read back."""


class CheckpointStore:
    """JSON checkpoint file holding processed principal names and counters.

    Writes go to a sibling temporary file that then replaces the checkpoint,
    so an interrupted save leaves the previous checkpoint intact.
    """

    def __init__(self, path: Union[str, Path], audit_logger: JsonAuditLogger):
        self.path = Path(path)
        self.audit = audit_logger

    def load(self) -> Optional[Checkpoint]:
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
            checkpoint = Checkpoint.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            raise CheckpointError(f"Checkpoint {self.path} could not be read: {exc}") from exc

        self.audit.info(
            "checkpoint_loaded",
            path=str(self.path),
            processed=len(checkpoint.processed),
        )
        return checkpoint

    def save(self, checkpoint: Checkpoint) -> bool:
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")
            os.replace(temp_path, self.path)
        except OSError as exc:
            self.audit.warning("checkpoint_save_failed", path=str(self.path), error=str(exc))
            return False

        self.audit.info(
            "checkpoint_saved",
            path=str(self.path),
            processed=len(checkpoint.processed),
        )
        return True

    def delete(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            self.audit.warning("checkpoint_delete_failed", path=str(self.path), error=str(exc))
            return
        self.audit.info("checkpoint_deleted", path=str(self.path))

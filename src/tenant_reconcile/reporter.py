"""Run statistics and the flagged-user CSV export."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .audit import JsonAuditLogger
from .models import FlaggedEntry, SessionCounters

FLAGGED_FIELDS = ["source_upn", "destination_upn", "differences", "note"]

SUMMARY_LABELS = {
    "processed": "Users processed",
    "with_differences": "Users with differences",
    "merged_to_destination": "Merged to destination",
    "merged_to_source": "Merged to source",
    "skipped": "Skipped",
    "no_match": "No destination match",
    "errors": "Errors",
}


class Reporter:
    def __init__(
        self,
        audit_logger: JsonAuditLogger,
        counters: Optional[SessionCounters] = None,
        flagged: Iterable[FlaggedEntry] = (),
    ):
        self.audit = audit_logger
        self.counters = counters or SessionCounters()
        self.flagged: List[FlaggedEntry] = list(flagged)

    def increment(self, counter: str, amount: int = 1) -> None:
        setattr(self.counters, counter, getattr(self.counters, counter) + amount)

    def add_flagged(self, entry: FlaggedEntry) -> None:
        self.flagged.append(entry)

    def summary(self) -> Dict[str, int]:
        summary = self.counters.as_dict()
        summary["flagged"] = len(self.flagged)
        return summary

    def render_summary(self) -> str:
        summary = self.summary()
        labels = dict(SUMMARY_LABELS, flagged="Flagged for review")
        width = max(len(label) for label in labels.values())
        lines = ["", "=== Reconciliation Summary ==="]
        lines.extend(f"{labels[key]:<{width}} : {summary[key]}" for key in labels)
        return "\n".join(lines)

    def export_flagged(self, path: Optional[Union[str, Path]]) -> Optional[Path]:
        """Write flagged users to CSV. Returns the written path, or None when skipped or failed."""
        if not path:
            return None
        if not self.flagged:
            self.audit.info("flagged_export_skipped", reason="no flagged users")
            return None

        export_path = Path(path)
        try:
            export_path.parent.mkdir(parents=True, exist_ok=True)
            with export_path.open("w", newline="", encoding="utf-8-sig") as fh:
                writer = csv.DictWriter(fh, fieldnames=FLAGGED_FIELDS)
                writer.writeheader()
                for entry in self.flagged:
                    writer.writerow(
                        {
                            "source_upn": entry.source_upn,
                            "destination_upn": entry.destination_upn,
                            "differences": entry.differences,
                            "note": entry.note or "",
                        }
                    )
        except OSError as exc:
            self.audit.error("flagged_export_failed", path=str(export_path), error=str(exc))
            return None

        self.audit.info("flagged_exported", path=str(export_path), count=len(self.flagged))
        return export_path

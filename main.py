from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from tenant_reconcile.audit import JsonAuditLogger
from tenant_reconcile.config import ReconcileConfig
from tenant_reconcile.decisions import ConsoleDecisionProvider
from tenant_reconcile.errors import ReconcileError
from tenant_reconcile.reconciler import build_session

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USER_ERRORS = 2


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reconcile user attributes between two Microsoft 365 tenants"
    )
    parser.add_argument("--config", required=True, help="Path to reconciliation configuration YAML")
    parser.add_argument("--checkpoint", help="Checkpoint file used to resume an interrupted run")
    parser.add_argument("--export-path", help="CSV path for flagged users (asked at end of run if omitted)")
    parser.add_argument("--log-path", help="Optional JSON-lines log file")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    audit_logger: Optional[JsonAuditLogger] = None
    session = None
    try:
        config = ReconcileConfig.load(Path(args.config)).with_overrides(
            checkpoint_path=_optional_path(args.checkpoint),
            export_path=_optional_path(args.export_path),
            log_path=_optional_path(args.log_path),
        )
        audit_logger = JsonAuditLogger(log_path=config.log_path)
        session = build_session(config, ConsoleDecisionProvider(), audit_logger=audit_logger)
        result = session.run()
    except ReconcileError as exc:
        print(f"Reconciliation aborted: {exc}", file=sys.stderr)
        return EXIT_FATAL
    except (KeyboardInterrupt, EOFError):
        print("Interrupted; rerun with the same checkpoint to resume.", file=sys.stderr)
        return EXIT_FATAL
    finally:
        if session is not None:
            session.close()
        if audit_logger is not None:
            audit_logger.close()

    if result.export_path:
        print(f"Flagged users written to {result.export_path}")
    return EXIT_OK if result.succeeded else EXIT_USER_ERRORS


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .audit import JsonAuditLogger
from .auth import TokenManager
from .decisions import DecisionProvider
from .directory import DirectoryOperations, DirectoryWriteError
from .models import Decision, Difference, FlaggedEntry, MatchedPair, UserRecord
from .reporter import Reporter

logger = logging.getLogger(__name__)


class ResolutionState(str, Enum):
    PRESENTED = "presented"
    MERGING = "merging"
    MERGED = "merged"
    FAILED = "failed"
    SKIPPED = "skipped"
    FLAGGED = "flagged"


TERMINAL_STATES = {
    ResolutionState.MERGED,
    ResolutionState.FAILED,
    ResolutionState.SKIPPED,
    ResolutionState.FLAGGED,
}


@dataclass
class Resolution:
    pair: MatchedPair
    differences: Sequence[Difference]
    state: ResolutionState = ResolutionState.PRESENTED
    decision: Optional[Decision] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES


def build_payload(origin: UserRecord, differences: Sequence[Difference]) -> Dict[str, Any]:
    """Values from ``origin`` for the differing attributes only, in difference order."""
    payload: Dict[str, Any] = {}
    for difference in differences:
        value = origin.get(difference.attribute)
        payload[difference.attribute] = list(value) if isinstance(value, tuple) else value
    return payload


class ResolutionEngine:
    """Obtains the operator decision for one matched pair and applies it."""

    def __init__(
        self,
        provider: DecisionProvider,
        source: DirectoryOperations,
        destination: DirectoryOperations,
        reporter: Reporter,
        audit_logger: JsonAuditLogger,
        token_manager: Optional[TokenManager] = None,
    ):
        self.provider = provider
        self.source = source
        self.destination = destination
        self.reporter = reporter
        self.audit = audit_logger
        self.token_manager = token_manager

    def resolve(self, pair: MatchedPair, differences: Sequence[Difference]) -> Resolution:
        resolution = Resolution(pair=pair, differences=list(differences))
        decision = self.provider.choose(pair, resolution.differences)
        resolution.decision = decision

        if decision is Decision.MERGE_TO_DESTINATION:
            self._merge(resolution, origin=pair.source, target=pair.destination, directory=self.destination)
        elif decision is Decision.MERGE_TO_SOURCE:
            self._merge(resolution, origin=pair.destination, target=pair.source, directory=self.source)
        elif decision is Decision.SKIP:
            resolution.state = ResolutionState.SKIPPED
            self.reporter.increment("skipped")
            self.audit.info("user_skipped", upn=pair.source.user_principal_name)
        elif decision is Decision.FLAG:
            note = self.provider.flag_note(pair)
            self.reporter.add_flagged(FlaggedEntry.from_pair(pair, resolution.differences, note))
            resolution.state = ResolutionState.FLAGGED
            self.audit.info("user_flagged", upn=pair.source.user_principal_name, note=note)
        else:
            raise ValueError(f"Unsupported decision: {decision!r}")

        return resolution

    def _merge(
        self,
        resolution: Resolution,
        origin: UserRecord,
        target: UserRecord,
        directory: DirectoryOperations,
    ) -> None:
        resolution.state = ResolutionState.MERGING
        resolution.payload = build_payload(origin, resolution.differences)
        attributes: List[str] = list(resolution.payload)
        # tokens can expire while the operator is at the prompt
        if self.token_manager is not None:
            self.token_manager.ensure_fresh(directory.tenant)
        try:
            directory.update_user(target.id, resolution.payload)
        except DirectoryWriteError as exc:
            resolution.state = ResolutionState.FAILED
            resolution.error = str(exc)
            self.reporter.increment("errors")
            self.audit.error(
                "user_merge_failed",
                tenant=directory.tenant,
                upn=target.user_principal_name,
                attributes=attributes,
                error=str(exc),
            )
            return

        resolution.state = ResolutionState.MERGED
        if resolution.decision is Decision.MERGE_TO_DESTINATION:
            self.reporter.increment("merged_to_destination")
        else:
            self.reporter.increment("merged_to_source")
        self.audit.info(
            "user_merged",
            tenant=directory.tenant,
            upn=target.user_principal_name,
            attributes=attributes,
        )

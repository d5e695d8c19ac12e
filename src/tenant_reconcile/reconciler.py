from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from .audit import JsonAuditLogger
from .auth import GraphAuthenticator, TokenManager, TokenSource
from .checkpoint import CheckpointStore
from .config import ReconcileConfig
from .decisions import DecisionProvider
from .differ import diff, unique_attributes
from .directory import DirectoryOperations, TenantExecutionContext
from .graph_client import GraphClient
from .matching import build_index, match_key, resolve
from .models import Checkpoint, FlaggedEntry, MatchedPair, SessionCounters, UserRecord
from .reporter import Reporter
from .resolution import Resolution, ResolutionEngine

logger = logging.getLogger(__name__)

SOURCE = "source"
DESTINATION = "destination"


def processed_key(user: UserRecord) -> str:
    """Checkpoint key of a source user. Users without a principal name fall back to their id."""
    return user.user_principal_name or user.id


@dataclass
class RunResult:
    counters: SessionCounters
    flagged: List[FlaggedEntry]
    resolutions: List[Resolution] = field(default_factory=list)
    export_path: Optional[Path] = None

    @property
    def succeeded(self) -> bool:
        return self.counters.errors == 0


class ReconciliationSession:
    """Sequential, resumable reconciliation of one source tenant against one destination."""

    def __init__(
        self,
        attributes: Sequence[str],
        source: DirectoryOperations,
        destination: DirectoryOperations,
        token_manager: TokenManager,
        provider: DecisionProvider,
        audit_logger: JsonAuditLogger,
        checkpoint_store: Optional[CheckpointStore] = None,
        checkpoint_interval: int = 5,
        export_path: Optional[Path] = None,
        output_fn: Callable[[str], None] = print,
    ):
        self.attributes = unique_attributes(attributes)
        self.source = source
        self.destination = destination
        self.token_manager = token_manager
        self.provider = provider
        self.audit = audit_logger
        self.checkpoint_store = checkpoint_store
        self.checkpoint_interval = checkpoint_interval
        self.export_path = export_path
        self.output_fn = output_fn
        self.reporter = Reporter(audit_logger)
        self.engine = ResolutionEngine(
            provider, source, destination, self.reporter, audit_logger, token_manager=token_manager
        )
        self.processed: Dict[str, None] = {}
        self.resolutions: List[Resolution] = []
        self.run_id = str(uuid.uuid4())

    def run(self) -> RunResult:
        self.audit.info("reconciliation_started", run_id=self.run_id, attributes=self.attributes)
        self.token_manager.acquire_all()

        source_users = self.source.list_users(self.attributes)
        destination_users = self.destination.list_users(self.attributes)
        index = build_index(destination_users)
        self._restore()

        since_save = 0
        try:
            for user in source_users:
                key = processed_key(user)
                if key in self.processed:
                    continue
                for tenant in self.token_manager.tenants:
                    self.token_manager.ensure_fresh(tenant)

                self._process(user, index, destination_users)
                self.processed[key] = None
                self.reporter.increment("processed")

                since_save += 1
                if since_save >= self.checkpoint_interval:
                    self._save_checkpoint()
                    since_save = 0
        except BaseException as exc:
            self.audit.warning(
                "reconciliation_interrupted",
                run_id=self.run_id,
                processed=self.reporter.counters.processed,
                reason=type(exc).__name__,
            )
            self._save_checkpoint()
            self.output_fn(self.reporter.render_summary())
            raise

        return self._finish()

    def close(self) -> None:
        self.source.close()
        self.destination.close()

    def _restore(self) -> None:
        if self.checkpoint_store is None:
            return
        checkpoint = self.checkpoint_store.load()
        if checkpoint is None:
            return
        self.processed = dict.fromkeys(checkpoint.processed)
        self.reporter.counters = checkpoint.counters()
        self.reporter.flagged = list(checkpoint.flagged)
        self.audit.info("reconciliation_resumed", run_id=self.run_id, processed=len(self.processed))

    def _process(
        self,
        user: UserRecord,
        index: Mapping[str, UserRecord],
        destination_users: Sequence[UserRecord],
    ) -> None:
        upn = user.user_principal_name
        if match_key(upn) is None:
            self.audit.warning("malformed_principal_name", tenant=SOURCE, user_id=user.id, upn=upn)
            self.reporter.increment("skipped")
            return

        counterpart = resolve(user, index, destination_users, self.destination.domain)
        if counterpart is None:
            self.audit.info("no_destination_match", upn=upn)
            self.reporter.increment("no_match")
            return

        differences = diff(user, counterpart, self.attributes)
        if not differences:
            return

        resolution = self.engine.resolve(MatchedPair(source=user, destination=counterpart), differences)
        self.reporter.increment("with_differences")
        self.resolutions.append(resolution)

    def _checkpoint(self) -> Checkpoint:
        return Checkpoint.capture(self.processed, self.reporter.counters, self.reporter.flagged)

    def _save_checkpoint(self) -> None:
        if self.checkpoint_store is not None:
            self.checkpoint_store.save(self._checkpoint())

    def _finish(self) -> RunResult:
        counters = self.reporter.counters
        if self.checkpoint_store is not None:
            if counters.errors == 0:
                self.checkpoint_store.delete()
            else:
                self._save_checkpoint()

        self.output_fn(self.reporter.render_summary())

        written: Optional[Path] = None
        if self.reporter.flagged:
            path = self.export_path or self.provider.export_path()
            written = self.reporter.export_flagged(path)

        self.audit.info("reconciliation_completed", run_id=self.run_id, **self.reporter.summary())
        return RunResult(
            counters=counters,
            flagged=list(self.reporter.flagged),
            resolutions=list(self.resolutions),
            export_path=written,
        )


def build_session(
    config: ReconcileConfig,
    provider: DecisionProvider,
    audit_logger: Optional[JsonAuditLogger] = None,
    authenticators: Optional[Mapping[str, TokenSource]] = None,
    transport: Optional[httpx.BaseTransport] = None,
    clock: Callable[[], float] = time.time,
    output_fn: Callable[[str], None] = print,
) -> ReconciliationSession:
    """Wire a session from configuration. Authenticators and transport are injectable."""
    audit = audit_logger or JsonAuditLogger(log_path=config.log_path)
    tenants = {SOURCE: config.source, DESTINATION: config.destination}

    if authenticators is None:
        secret = config.client_secret.resolve()
        authenticators = {
            role: GraphAuthenticator(
                tenant_id=tenant.tenant_id,
                client_id=config.client_id,
                client_secret=secret,
                audit_logger=audit,
                authority_host=config.authority_host,
                clock=clock,
            )
            for role, tenant in tenants.items()
        }
    token_manager = TokenManager(authenticators, config.scopes, audit, clock=clock)

    directories: Dict[str, DirectoryOperations] = {}
    for role, tenant in tenants.items():
        graph = GraphClient(
            tenant=role,
            token_provider=lambda role=role: token_manager.current_token(role),
            audit_logger=audit,
            base_url=config.graph_base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
            transport=transport,
        )
        context = TenantExecutionContext(
            tenant=role,
            tenant_id=tenant.tenant_id,
            domain=tenant.domain,
            graph=graph,
            page_size=config.page_size,
        )
        directories[role] = DirectoryOperations(context)

    store = CheckpointStore(config.checkpoint_path, audit) if config.checkpoint_path else None
    return ReconciliationSession(
        attributes=config.attributes,
        source=directories[SOURCE],
        destination=directories[DESTINATION],
        token_manager=token_manager,
        provider=provider,
        audit_logger=audit,
        checkpoint_store=store,
        checkpoint_interval=config.checkpoint_interval,
        export_path=config.export_path,
        output_fn=output_fn,
    )

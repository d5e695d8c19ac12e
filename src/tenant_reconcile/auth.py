from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol

import msal

from .audit import JsonAuditLogger
from .errors import ReconcileError

logger = logging.getLogger(__name__)

# Tokens are assumed to live 60 minutes; 55 keeps a margin for clock skew.
ASSUMED_TOKEN_LIFETIME_SECONDS = 55 * 60
REFRESH_BUFFER_SECONDS = 5 * 60


class AuthenticationError(ReconcileError):
    """Raised when a tenant token cannot be acquired or refreshed."""


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: float


class TokenSource(Protocol):
    def acquire_token(self, scopes: Iterable[str]) -> AccessToken: ...


class GraphAuthenticator:
    """Acquires app-only Graph tokens for one tenant with the client-credentials grant.

    Each call builds a fresh MSAL token cache so that a refresh always reaches
    the token endpoint instead of returning the cached token being replaced.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        audit_logger: JsonAuditLogger,
        authority_host: str = "https://login.microsoftonline.com",
        clock: Callable[[], float] = time.time,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.authority_host = authority_host.rstrip("/")
        self.audit = audit_logger
        self.clock = clock

    def acquire_token(self, scopes: Iterable[str]) -> AccessToken:
        try:
            app = msal.ConfidentialClientApplication(
                client_id=self.client_id,
                client_credential=self._client_secret,
                authority=f"{self.authority_host}/{self.tenant_id}",
                token_cache=msal.TokenCache(),
            )
            result = app.acquire_token_for_client(scopes=list(scopes))
        except (ValueError, OSError) as exc:
            raise AuthenticationError(
                f"Token request for tenant {self.tenant_id} failed: {exc}"
            ) from exc

        token = self._extract_token(result)
        self.audit.info(
            "acquired_app_token",
            tenant_id=self.tenant_id,
            auth_type="client_secret",
        )
        return AccessToken(token=token, expires_at=self.clock() + ASSUMED_TOKEN_LIFETIME_SECONDS)

    def _extract_token(self, result: Optional[dict]) -> str:
        if not result or "access_token" not in result:
            detail = (result or {}).get("error_description") or json.dumps(result)
            raise AuthenticationError(
                f"Token acquisition failed for tenant {self.tenant_id}: {detail}"
            )
        return result["access_token"]


class TokenManager:
    """Session context holding one token per tenant role.

    Components that talk to Graph receive this object and call
    :meth:`current_token`; the processing loop calls :meth:`ensure_fresh`
    before each user so long sessions outlive the token lifetime.
    """

    def __init__(
        self,
        authenticators: Mapping[str, TokenSource],
        scopes: Iterable[str],
        audit_logger: JsonAuditLogger,
        clock: Callable[[], float] = time.time,
        refresh_buffer: float = REFRESH_BUFFER_SECONDS,
    ):
        self._authenticators = dict(authenticators)
        self.scopes: List[str] = list(scopes)
        self.audit = audit_logger
        self.clock = clock
        self.refresh_buffer = refresh_buffer
        self._tokens: Dict[str, AccessToken] = {}

    @property
    def tenants(self) -> List[str]:
        return list(self._authenticators)

    def acquire(self, tenant: str) -> AccessToken:
        authenticator = self._authenticators.get(tenant)
        if authenticator is None:
            raise AuthenticationError(f"No credentials configured for tenant {tenant!r}")
        token = authenticator.acquire_token(self.scopes)
        self._tokens[tenant] = token
        return token

    def acquire_all(self) -> None:
        for tenant in self._authenticators:
            self.acquire(tenant)

    def current_token(self, tenant: str) -> str:
        token = self._tokens.get(tenant)
        if token is None:
            token = self.acquire(tenant)
        return token.token

    def remaining(self, tenant: str) -> float:
        token = self._tokens.get(tenant)
        if token is None:
            return 0.0
        return token.expires_at - self.clock()

    def ensure_fresh(self, tenant: str) -> bool:
        """Refresh the tenant token when it is close to expiry. Returns True on refresh."""
        remaining = self.remaining(tenant)
        if tenant in self._tokens and remaining >= self.refresh_buffer:
            return False
        self.audit.info(
            "token_refresh",
            tenant=tenant,
            remaining_seconds=round(max(remaining, 0.0)),
        )
        self.acquire(tenant)
        return True

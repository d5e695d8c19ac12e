from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ReconcileError
from .graph_client import GraphClient, GraphRequestError
from .models import UserRecord

logger = logging.getLogger(__name__)

KEY_FIELDS = ("id", "userPrincipalName")


class DirectoryReadError(ReconcileError):
    """Raised when a tenant's user listing cannot be retrieved in full."""


class DirectoryWriteError(ReconcileError):
    """Raised when a partial update of one user fails."""


@dataclass
class TenantExecutionContext:
    tenant: str
    tenant_id: str
    domain: str
    graph: GraphClient
    page_size: int = 999


def projection(attributes: Iterable[str]) -> List[str]:
    """Selected fields: the key fields first, then the requested attributes once each."""
    return list(dict.fromkeys([*KEY_FIELDS, *attributes]))


class DirectoryOperations:
    """User listing and partial updates executed within one tenant context."""

    def __init__(self, context: TenantExecutionContext):
        self.context = context

    @property
    def tenant(self) -> str:
        return self.context.tenant

    @property
    def domain(self) -> str:
        return self.context.domain

    def list_users(self, attributes: Iterable[str]) -> List[UserRecord]:
        attributes = list(attributes)
        params: Optional[Dict[str, str]] = {
            "$select": ",".join(projection(attributes)),
            "$top": str(self.context.page_size),
        }
        url: Optional[str] = "/v1.0/users"
        users: List[UserRecord] = []
        pages = 0

        while url:
            try:
                response = self.context.graph.get(url, params=params)
                data = response.json()
            except (GraphRequestError, ValueError) as exc:
                raise DirectoryReadError(
                    f"Listing users in tenant {self.context.tenant_id} failed on page {pages + 1}: {exc}"
                ) from exc

            for item in data.get("value", []):
                if not item.get("id"):
                    logger.warning("Skipping %s user without an id: %r", self.tenant, item)
                    continue
                users.append(UserRecord.from_graph(item, attributes))

            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None
            pages += 1

        self.context.graph.audit.info(
            "users_listed",
            tenant=self.tenant,
            tenant_id=self.context.tenant_id,
            pages=pages,
            count=len(users),
        )
        return users

    def update_user(self, user_id: str, payload: Mapping[str, Any]) -> None:
        try:
            self.context.graph.patch(f"/v1.0/users/{user_id}", json=dict(payload))
        except GraphRequestError as exc:
            raise DirectoryWriteError(
                f"Updating user {user_id} in tenant {self.context.tenant_id} failed: {exc}"
            ) from exc

    def close(self) -> None:
        self.context.graph.close()

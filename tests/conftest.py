from __future__ import annotations

import io
import json
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import httpx
import pytest

from tenant_reconcile.audit import JsonAuditLogger
from tenant_reconcile.auth import ASSUMED_TOKEN_LIFETIME_SECONDS, AccessToken, AuthenticationError
from tenant_reconcile.config import ReconcileConfig

SOURCE_TENANT_ID = "11111111-1111-1111-1111-111111111111"
DESTINATION_TENANT_ID = "22222222-2222-2222-2222-222222222222"
CLIENT_ID = "33333333-3333-3333-3333-333333333333"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubAuthenticator:
    """Issues sequential tokens named after the tenant role."""

    def __init__(self, role: str, clock: FakeClock, fail: bool = False):
        self.role = role
        self.clock = clock
        self.fail = fail
        self.calls = 0

    def acquire_token(self, scopes: Iterable[str]) -> AccessToken:
        if self.fail:
            raise AuthenticationError(f"invalid_client for {self.role}")
        self.calls += 1
        return AccessToken(
            token=f"{self.role}-token-{self.calls}",
            expires_at=self.clock() + ASSUMED_TOKEN_LIFETIME_SECONDS,
        )


class FakeTenant:
    def __init__(self, users: List[Dict[str, Any]], page_size: int = 2):
        self.users = users
        self.page_size = page_size
        self.patches: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_patch_ids: Set[str] = set()
        self.fail_list_page: Optional[int] = None
        self.list_requests: List[httpx.URL] = []


class FakeGraph:
    """In-memory Graph users API keyed on the bearer token's tenant role."""

    def __init__(self, source: FakeTenant, destination: FakeTenant):
        self.tenants = {"source": source, "destination": destination}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        token = request.headers["Authorization"].split(" ", 1)[1]
        tenant = self.tenants[token.split("-token-", 1)[0]]
        path = request.url.path

        if request.method == "GET" and path == "/v1.0/users":
            return self._list(tenant, request)
        if request.method == "PATCH" and path.startswith("/v1.0/users/"):
            user_id = path.rsplit("/", 1)[1]
            if user_id in tenant.fail_patch_ids:
                return httpx.Response(403, json={"error": {"message": "Insufficient privileges"}})
            tenant.patches.append((user_id, json.loads(request.content)))
            return httpx.Response(204)
        return httpx.Response(404, json={"error": {"message": "not found"}})

    def _list(self, tenant: FakeTenant, request: httpx.Request) -> httpx.Response:
        tenant.list_requests.append(request.url)
        offset = int(request.url.params.get("$skiptoken", "0"))
        page = offset // tenant.page_size + 1
        if tenant.fail_list_page == page:
            return httpx.Response(500, json={"error": {"message": "Internal error"}})

        select = request.url.params.get("$select")
        if select is None:
            # nextLink pages repeat the projection of the first request
            select = tenant.list_requests[0].params.get("$select")
        fields = select.split(",")
        chunk = tenant.users[offset : offset + tenant.page_size]
        body: Dict[str, Any] = {
            "value": [{name: user.get(name) for name in fields} for user in chunk]
        }
        if offset + tenant.page_size < len(tenant.users):
            body["@odata.nextLink"] = (
                f"https://graph.microsoft.com/v1.0/users?$skiptoken={offset + tenant.page_size}"
            )
        return httpx.Response(200, json=body)


def graph_user(upn: str, **attributes: Any) -> Dict[str, Any]:
    return {"id": f"id-{upn}", "userPrincipalName": upn, **attributes}


@pytest.fixture
def audit(tmp_path) -> JsonAuditLogger:
    logger = JsonAuditLogger(
        name=f"tenant_reconcile.test.{uuid.uuid4().hex}",
        log_path=tmp_path / "audit.jsonl",
        stream=io.StringIO(),
    )
    yield logger
    logger.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config_data(tmp_path) -> Dict[str, Any]:
    return {
        "source": {"tenant_id": SOURCE_TENANT_ID, "domain": "src.com"},
        "destination": {"tenant_id": DESTINATION_TENANT_ID, "domain": "dst.com"},
        "client_id": CLIENT_ID,
        "client_secret": {"value": "s3cret"},
        "attributes": ["department", "jobTitle", "businessPhones"],
        "checkpoint_path": str(tmp_path / "checkpoint.json"),
    }


@pytest.fixture
def config(config_data) -> ReconcileConfig:
    return ReconcileConfig.from_mapping(config_data)


def read_events(path) -> List[Dict[str, Any]]:
    with open(path, encoding="utf-8") as handle:
        return [json.loads(line) for line in handle if line.strip()]

"""Test doubles: an in-memory Graph backend, token and identity providers."""
import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from docpublisher.models import ResolvedRepository
from docpublisher.services.api_client import GraphClient
from docpublisher.services.retry import CircuitBreaker, RetryPolicy

BASE_URL = "https://graph.test/v1.0"
UPLOAD_HOST = "https://upload.test"
SITE_ID = "site-1"
DRIVE_ID = "drive-1"
DRIVE_PATH = f"/sites/{SITE_ID}/drives/{DRIVE_ID}"

SCENARIO_RECORD = {
    "tenantId": "t1",
    "clientId": "c1",
    "repositoryAddress": "https://contoso.example/sites/docs",
    "libraryName": "Documents",
    "oauth2": {"redirectUri": "https://localhost/cb", "scopes": ["repo.readwrite"]},
}

SERVICE_PRINCIPAL_RECORD = {
    "authMethod": "service-principal",
    "tenantId": "t1",
    "clientId": "c1",
    "clientSecret": "s3cret",
    "repositoryAddress": "https://contoso.example/sites/docs",
    "libraryName": "Documents",
    "defaultTags": ["generated"],
}

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


def resolved_repository() -> ResolvedRepository:
    return ResolvedRepository(site_id=SITE_ID, drive_id=DRIVE_ID, drive_name="Documents")


def make_client(graph: "FakeGraph", tokens=None, retry_policy: RetryPolicy = NO_WAIT,
                circuit_breaker: Optional[CircuitBreaker] = None) -> GraphClient:
    return GraphClient(
        tokens or StaticTokenProvider(),
        base_url=BASE_URL,
        retry_policy=retry_policy,
        circuit_breaker=circuit_breaker,
        transport=httpx.MockTransport(graph.handler),
    )


class StaticTokenProvider:
    """Hands out tokens in order; invalidate() moves to the next one."""

    def __init__(self, *tokens: str):
        self._tokens = list(tokens) or ["token-1"]
        self._index = 0
        self.invalidated: List[str] = []
        self.fetches = 0

    @property
    def current(self) -> str:
        return self._tokens[min(self._index, len(self._tokens) - 1)]

    async def get_valid_access_token(self) -> str:
        self.fetches += 1
        return self.current

    async def invalidate(self, rejected_token: str) -> None:
        self.invalidated.append(rejected_token)
        if rejected_token == self.current:
            self._index += 1


@dataclass
class Call:
    method: str
    path: str
    headers: Dict[str, str]
    body: bytes
    params: Dict[str, str]

    def json(self) -> Any:
        return json.loads(self.body)


@dataclass
class _Rule:
    method: str
    pattern: str
    status: int
    payload: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    times: int = 1


class FakeGraph:
    """
    In-memory Graph backend for httpx.MockTransport.

    Keeps folders, items and upload sessions; records every call and the
    peak number of concurrent content uploads.
    """

    def __init__(self, drives: Optional[List[Dict[str, Any]]] = None, upload_delay: float = 0.0):
        self.calls: List[Call] = []
        self.drives = drives if drives is not None else [
            {
                "id": DRIVE_ID,
                "name": "Documents",
                "driveType": "documentLibrary",
                "webUrl": "https://contoso.example/sites/docs/Shared%20Documents",
            }
        ]
        self.default_drive = {"id": "drive-default", "name": "Shared Documents", "driveType": "documentLibrary"}
        self.site_missing = False
        self.upload_delay = upload_delay
        self.folders: Dict[str, str] = {}  # path -> id
        self.items: Dict[str, Dict[str, Any]] = {}  # path -> item
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.complete_early_after: Optional[int] = None  # chunk count
        self.lost_chunk_responses = 0  # chunks stored but answered with a timeout
        self.stall_sessions = False
        self._rules: List[_Rule] = []
        self._counter = 0

    # ------------------------------------------------------------ scripting

    def fail(self, method: str, pattern: str, status: int, payload: Any = None,
             headers: Optional[Dict[str, str]] = None, times: int = 1) -> None:
        """Answer the next `times` matching calls with `status`."""
        self._rules.append(_Rule(method, pattern, status, payload, headers or {}, times))

    def add_folder(self, path: str) -> str:
        folder_id = self._next_id("folder")
        self.folders[path] = folder_id
        return folder_id

    # ------------------------------------------------------------- queries

    def find(self, method: str, pattern: str = "") -> List[Call]:
        return [c for c in self.calls if c.method == method and re.search(pattern, c.path)]

    def count(self, method: str, pattern: str = "") -> int:
        return len(self.find(method, pattern))

    @property
    def simple_uploads(self) -> List[Call]:
        return self.find("PUT", r":/content$")

    @property
    def session_creates(self) -> List[Call]:
        return self.find("POST", r"createUploadSession$")

    @property
    def chunk_puts(self) -> List[Call]:
        return self.find("PUT", r"^/session/")

    @property
    def folder_creates(self) -> List[Call]:
        return self.find("POST", r"/children$")

    # ------------------------------------------------------------- handler

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/v1.0"):
            path = path[len("/v1.0"):]
        body = request.content
        self.calls.append(
            Call(request.method, path, dict(request.headers), body, dict(request.url.params))
        )

        for rule in self._rules:
            if rule.times > 0 and rule.method == request.method and re.search(rule.pattern, path):
                rule.times -= 1
                return httpx.Response(rule.status, json=rule.payload, headers=rule.headers)

        if request.method in ("PUT",):
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                await asyncio.sleep(self.upload_delay)
                response = self._route(request.method, path, body, request)
                if self.lost_chunk_responses and path.startswith("/session/"):
                    self.lost_chunk_responses -= 1
                    raise httpx.ReadTimeout("timed out", request=request)
                return response
            finally:
                self.in_flight -= 1
        return self._route(request.method, path, body, request)

    def _route(self, method: str, path: str, body: bytes, request: httpx.Request) -> httpx.Response:
        site = {
            "id": SITE_ID,
            "displayName": "Docs",
            "webUrl": "https://contoso.example/sites/docs",
        }
        drive_prefix = f"{DRIVE_PATH}/"

        if method == "GET" and path.startswith("/sites/contoso.example"):
            if self.site_missing:
                return _error(404, "itemNotFound", "Requested site could not be found")
            return httpx.Response(200, json=site)
        if method == "GET" and path == f"/sites/{SITE_ID}":
            return httpx.Response(200, json=site)
        if method == "GET" and path == f"/sites/{SITE_ID}/drives":
            return httpx.Response(200, json={"value": self.drives})
        if method == "GET" and path == f"/sites/{SITE_ID}/drive":
            return httpx.Response(200, json=self.default_drive)
        if method == "GET" and path == DRIVE_PATH:
            return httpx.Response(200, json={**self.drives[0], "quota": {"used": 1024, "total": 4096}})
        if method == "GET" and path == f"{DRIVE_PATH}/root/children":
            children = [{"id": fid, "name": p} for p, fid in self.folders.items() if "/" not in p]
            return httpx.Response(200, json={"value": children})

        if path.startswith(drive_prefix + "root:/"):
            rest = path[len(drive_prefix + "root:/"):]
            if method == "GET":
                folder_id = self.folders.get(rest)
                if folder_id is None:
                    return _error(404, "itemNotFound", "The resource could not be found.")
                return httpx.Response(200, json={"id": folder_id, "name": rest.rsplit("/", 1)[-1], "folder": {}})
            if method == "PUT" and rest.endswith(":/content"):
                return self._store(rest[: -len(":/content")], len(body), 201)
            if method == "POST" and rest.endswith(":/createUploadSession"):
                session_id = self._next_id("session")
                self.sessions[session_id] = {
                    "path": rest[: -len(":/createUploadSession")],
                    "received": 0,
                    "chunks": 0,
                }
                return httpx.Response(200, json={"uploadUrl": f"{UPLOAD_HOST}/session/{session_id}"})

        match = re.match(rf"^{re.escape(DRIVE_PATH)}/items/([^/]+)/children$", path)
        if method == "POST" and match:
            return self._create_folder(match.group(1), json.loads(body))

        match = re.match(rf"^{re.escape(DRIVE_PATH)}/items/([^/]+)/listItem/fields$", path)
        if method == "PATCH" and match:
            self.metadata[match.group(1)] = json.loads(body)
            return httpx.Response(200, json=json.loads(body))

        match = re.match(r"^/session/(.+)$", path)
        if match:
            session = self.sessions.get(match.group(1))
            if session is None:
                return _error(404, "itemNotFound", "Upload session not found")
            if method == "DELETE":
                del self.sessions[match.group(1)]
                return httpx.Response(204)
            if method == "GET":
                return httpx.Response(200, json={"nextExpectedRanges": [f"{session['received']}-"]})
            if method == "PUT":
                return self._chunk(session, request.headers["Content-Range"], body)

        return _error(400, "invalidRequest", f"Unhandled {method} {path}")

    def _store(self, path: str, size: int, status: int) -> httpx.Response:
        item = self.items.get(path) or {"id": self._next_id("item")}
        item.update(
            {
                "name": path.rsplit("/", 1)[-1],
                "size": size,
                "webUrl": f"https://contoso.example/sites/docs/Shared%20Documents/{path}",
            }
        )
        self.items[path] = item
        return httpx.Response(status, json=item)

    def _create_folder(self, parent_id: str, payload: Dict[str, Any]) -> httpx.Response:
        if parent_id == "root":
            parent_path = ""
        else:
            parent_path = next((p for p, fid in self.folders.items() if fid == parent_id), None)
            if parent_path is None:
                return _error(404, "itemNotFound", "Parent not found")
        path = f"{parent_path}/{payload['name']}" if parent_path else payload["name"]
        if path in self.folders:
            return _error(409, "nameAlreadyExists", "An item with the same name already exists")
        folder_id = self.add_folder(path)
        return httpx.Response(201, json={"id": folder_id, "name": payload["name"], "folder": {}})

    def _chunk(self, session: Dict[str, Any], content_range: str, body: bytes) -> httpx.Response:
        match = re.match(r"bytes (\d+)-(\d+)/(\d+)", content_range)
        start, end, total = (int(v) for v in match.groups())
        if self.stall_sessions:
            return httpx.Response(202, json={"nextExpectedRanges": [f"{session['received']}-"]})
        if start != session["received"] or end - start + 1 != len(body):
            return _error(416, "invalidRange", "Unexpected range")
        session["received"] = end + 1
        session["chunks"] += 1
        if self.complete_early_after and session["chunks"] >= self.complete_early_after:
            return self._store(session["path"], total, 201)
        if session["received"] == total:
            return self._store(session["path"], total, 201)
        return httpx.Response(202, json={"nextExpectedRanges": [f"{session['received']}-"]})


def _error(status: int, code: str, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": code, "message": message}})


def token_result(token: str, expires_in: int = 3600, username: str = "user@contoso.example") -> Dict[str, Any]:
    return {
        "access_token": token,
        "expires_in": expires_in,
        "id_token_claims": {"preferred_username": username},
    }


class FakeIdentityProvider:
    """Scriptable IIdentityProvider double that counts calls by name."""

    def __init__(
        self,
        accounts: Optional[List[Dict[str, Any]]] = None,
        silent_result: Optional[Dict[str, Any]] = None,
        device_result: Optional[Dict[str, Any]] = None,
        client_result: Optional[Dict[str, Any]] = None,
        device_delay: float = 0.0,
    ):
        self.accounts = list(accounts or [])
        self.silent_result = silent_result
        self.device_result = device_result if device_result is not None else token_result("device-token")
        self.client_result = client_result if client_result is not None else token_result("app-token")
        self.device_delay = device_delay
        self.calls: List[str] = []
        self.silent_kwargs: List[Dict[str, Any]] = []
        self.cache_state = "serialized-cache"
        self.loaded_state: Optional[str] = None

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def get_accounts(self):
        self.calls.append("get_accounts")
        return list(self.accounts)

    async def acquire_token_silent(self, scopes, account, force_refresh=False):
        self.calls.append("acquire_token_silent")
        self.silent_kwargs.append({"scopes": list(scopes), "account": account, "force_refresh": force_refresh})
        result = self.silent_result
        if callable(result):
            result = result()
        return result

    async def initiate_device_flow(self, scopes):
        self.calls.append("initiate_device_flow")
        return {
            "user_code": "ABC123",
            "verification_uri": "https://microsoft.com/devicelogin",
            "message": "To sign in, use a web browser to open https://microsoft.com/devicelogin and enter ABC123",
            "expires_at": 9999999999,
        }

    async def acquire_token_by_device_flow(self, flow):
        self.calls.append("acquire_token_by_device_flow")
        await asyncio.sleep(self.device_delay)
        result = self.device_result
        if "access_token" in result:
            username = result.get("id_token_claims", {}).get("preferred_username")
            self.accounts = [{"username": username, "home_account_id": "uid.tid"}]
        return result

    async def acquire_token_for_client(self, scopes):
        self.calls.append("acquire_token_for_client")
        return self.client_result

    async def remove_account(self, account):
        self.calls.append("remove_account")
        self.accounts = [a for a in self.accounts if a != account]

    def serialize_cache(self):
        return self.cache_state

    def deserialize_cache(self, state):
        self.loaded_state = state



"""Shared fixtures: a fake WHOOP backend behind httpx.MockTransport, a fixed clock, a temp token file."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio

from whoop_auth import TokenData, TokenManager, TokenStore

NOW = 1_700_000_000_000
HOUR_MS = 3_600_000


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeWhoop:
    """Token endpoint plus resource API. The server decides which bearer tokens are valid."""

    def __init__(self) -> None:
        self.valid_tokens = set()
        self.token_calls: List[Dict[str, str]] = []
        self.api_calls: List[Tuple[str, str, Dict[str, str]]] = []
        self.token_status = 200
        self.token_body: Optional[Dict[str, Any]] = None
        self.api_status: Optional[int] = None
        self.payload: Any = {"records": []}
        self.delay = 0.0
        self.fail_connect = False

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_connect:
            raise httpx.ConnectError("connection refused", request=request)

        if request.url.path == "/oauth/oauth2/token":
            form = dict(parse_qsl(request.content.decode()))
            self.token_calls.append(form)
            if self.token_status != 200:
                return httpx.Response(self.token_status, text='{"error": "invalid_grant"}')
            if self.token_body is not None:
                body = self.token_body
            else:
                n = len(self.token_calls)
                body = {
                    "access_token": f"new-{n}",
                    "refresh_token": f"new-r-{n}",
                    "expires_in": 3600,
                    "scope": form.get("scope", ""),
                    "token_type": "bearer",
                }
            if "access_token" in body:
                self.valid_tokens.add(body["access_token"])
            return httpx.Response(200, json=body)

        auth = request.headers.get("Authorization", "")
        self.api_calls.append((request.url.path, auth, dict(request.url.params)))
        if self.api_status is not None:
            return httpx.Response(self.api_status, text="upstream failure")
        if auth[len("Bearer "):] not in self.valid_tokens:
            return httpx.Response(401, text="Authorization was not valid")
        return httpx.Response(200, json=self.payload)


@pytest.fixture
def fake_whoop() -> FakeWhoop:
    return FakeWhoop()


@pytest_asyncio.fixture
async def http_client(fake_whoop: FakeWhoop):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_whoop.handler)) as client:
        yield client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> TokenStore:
    return TokenStore(str(tmp_path / "tokens.json"))


@pytest.fixture
def make_manager(store, http_client, clock):
    def _make(tokens: Optional[TokenData] = None, **kwargs) -> TokenManager:
        options = {"client_id": "client", "client_secret": "secret"}
        options.update(kwargs)
        manager = TokenManager(store, http_client=http_client, clock=clock, **options)
        if tokens is not None:
            store.save(tokens)
        return manager

    return _make

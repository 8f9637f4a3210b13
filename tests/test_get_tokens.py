import threading
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

import get_tokens
from whoop_auth import WhoopHTTPError


def test_authorization_url_requests_every_read_scope():
    url = get_tokens.build_authorization_url("client", "http://localhost:8000/whoop/callback", "state123")

    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://api.prod.whoop.com/oauth/oauth2/auth"
    assert query["client_id"] == ["client"]
    assert query["response_type"] == ["code"]
    assert query["state"] == ["state123"]
    assert query["redirect_uri"] == ["http://localhost:8000/whoop/callback"]
    assert query["scope"][0].split() == [
        "offline",
        "read:recovery",
        "read:cycles",
        "read:workout",
        "read:sleep",
        "read:profile",
        "read:body_measurement",
    ]


def test_state_parameter_is_random_alphanumeric():
    first = get_tokens.generate_state_parameter(32)

    assert len(first) == 32
    assert first.isalnum()
    assert first != get_tokens.generate_state_parameter(32)


@pytest.mark.parametrize(
    "pasted, expected",
    [
        ("abc123", ("abc123", None)),
        ("  abc123 \n", ("abc123", None)),
        ("http://localhost:3000/callback?code=abc123&state=s1", ("abc123", "s1")),
        ("code=abc123&state=s1", ("abc123", "s1")),
    ],
)
def test_parse_pasted_code(pasted, expected):
    assert get_tokens.parse_pasted_code(pasted) == expected


def test_is_local_redirect():
    assert get_tokens.is_local_redirect("http://localhost:8000/whoop/callback")
    assert get_tokens.is_local_redirect("http://127.0.0.1:3000/cb")
    assert not get_tokens.is_local_redirect("https://example.com/callback")


@pytest.mark.asyncio
async def test_exchange_code_applies_expiry_margin(monkeypatch):
    monkeypatch.setattr(get_tokens, "now_ms", lambda: 1_000_000)
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": 3600})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        tokens = await get_tokens.exchange_code("the-code", "client", "secret", "http://localhost/cb", http_client=client)

    assert tokens.access_token == "a"
    assert tokens.refresh_token == "r"
    assert tokens.expires_at == 1_000_000 + 3_600_000 - 60_000
    assert seen["grant_type"] == ["authorization_code"]
    assert seen["code"] == ["the-code"]


@pytest.mark.asyncio
async def test_exchange_code_failure_keeps_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="invalid_request")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(WhoopHTTPError) as excinfo:
            await get_tokens.exchange_code("bad", "client", "secret", "http://localhost/cb", http_client=client)

    assert excinfo.value.status_code == 400
    assert excinfo.value.body == "invalid_request"


def test_callback_server_records_redirect_parameters():
    server = get_tokens.CallbackServer(("127.0.0.1", 0), "/whoop/callback")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        port = server.server_address[1]
        with httpx.Client(trust_env=False) as client:
            missing = client.get(f"http://127.0.0.1:{port}/elsewhere")
            response = client.get(f"http://127.0.0.1:{port}/whoop/callback?code=abc&state=s1")
    finally:
        server.shutdown()
        server.server_close()

    assert missing.status_code == 404
    assert response.status_code == 200
    assert "Authorization Successful" in response.text
    assert server.auth_completed.is_set()
    assert server.auth_result == {"code": "abc", "error": "", "state": "s1"}

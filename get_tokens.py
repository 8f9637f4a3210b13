#!/usr/bin/env python3
"""
WHOOP OAuth token helper

Runs the one-time authorization-code flow and writes the token file that the
MCP server reads on startup:

  1. Opens the WHOOP authorization page in your browser
  2. Captures the returned code (local callback server, or paste it in)
  3. Exchanges the code for access and refresh tokens
  4. Saves them to WHOOP_TOKEN_FILE (default ~/.whoop_tokens.json)
"""

import argparse
import asyncio
import secrets
import string
import sys
import threading
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from whoop_auth import TokenData, TokenStore, WhoopConnectionError, WhoopHTTPError, now_ms
from whoop_config import REQUEST_TIMEOUT, WHOOP_AUTH_URL, WHOOP_SCOPES, WHOOP_TOKEN_URL, Settings

console = Console()

# Seconds to wait for the browser redirect
AUTH_TIMEOUT = 300

RESULT_PAGE = """
<html>
<head>
    <title>WHOOP Authorization {title}</title>
    <style>
        body {{ font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; }}
        .container {{ text-align: center; margin-top: 50px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authorization {title}</h1>
        <p>{message}</p>
    </div>
</body>
</html>
"""


class CallbackServer(HTTPServer):
    """One-shot HTTP server that records the OAuth redirect parameters."""

    def __init__(self, address: Tuple[str, int], callback_path: str):
        super().__init__(address, CallbackHandler)
        self.callback_path = callback_path
        self.auth_result: Dict[str, str] = {}
        self.auth_completed = threading.Event()


class CallbackHandler(BaseHTTPRequestHandler):
    server: CallbackServer

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self.send_response(404)
            self.end_headers()
            self.wfile.write(b"404 Not Found")
            return

        query_components = parse_qs(parsed.query)
        self.server.auth_result = {
            "code": query_components.get("code", [""])[0],
            "error": query_components.get("error", [""])[0],
            "state": query_components.get("state", [""])[0],
        }

        if self.server.auth_result["code"]:
            page = RESULT_PAGE.format(
                title="Successful", message="You can close this window and return to the terminal."
            )
        else:
            page = RESULT_PAGE.format(
                title="Failed", message=f"Error: {self.server.auth_result['error'] or 'Unknown error'}"
            )

        self.send_response(200)
        self.send_header("Content-type", "text/html")
        self.end_headers()
        self.wfile.write(page.encode())
        self.server.auth_completed.set()

    # Suppress logging
    def log_message(self, format, *args):
        return


def generate_state_parameter(length: int = 32) -> str:
    """Generate a secure random state parameter for OAuth."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def build_authorization_url(client_id: str, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(WHOOP_SCOPES),
        "state": state,
    }
    return f"{WHOOP_AUTH_URL}?{urlencode(params)}"


def is_local_redirect(redirect_uri: str) -> bool:
    parsed = urlparse(redirect_uri)
    return parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1")


def parse_pasted_code(text: str) -> Tuple[str, Optional[str]]:
    """Accept either the bare code or the whole redirect URL; return (code, state)."""
    text = text.strip()
    if "code=" not in text:
        return text, None
    query = parse_qs(urlparse(text).query or text.split("?", 1)[-1])
    return query.get("code", [""])[0], query.get("state", [None])[0]


def wait_for_callback(redirect_uri: str, timeout: float = AUTH_TIMEOUT) -> Dict[str, str]:
    """Serve the redirect URI locally until WHOOP calls it (or the timeout passes)."""
    parsed = urlparse(redirect_uri)
    server = CallbackServer(("", parsed.port or 80), parsed.path or "/")
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()
    console.print(f"[dim]Callback server started at {redirect_uri}[/dim]")
    try:
        if not server.auth_completed.wait(timeout=timeout):
            return {"error": "timeout"}
        return server.auth_result
    finally:
        server.shutdown()
        server.server_close()


async def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    token_url: str = WHOOP_TOKEN_URL,
    http_client: Optional[httpx.AsyncClient] = None,
) -> TokenData:
    """Exchange an authorization code for tokens (grant_type=authorization_code)."""
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": redirect_uri,
    }
    headers = {
        "Content-Type": "application/x-www-form-urlencoded"
    }

    issued_at = now_ms()
    try:
        if http_client is not None:
            response = await http_client.post(token_url, headers=headers, data=data, timeout=REQUEST_TIMEOUT)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(token_url, headers=headers, data=data, timeout=REQUEST_TIMEOUT)
    except httpx.RequestError as e:
        raise WhoopConnectionError(f"Could not reach WHOOP token endpoint: {e}") from e

    if not response.is_success:
        raise WhoopHTTPError(
            f"Error exchanging code for token: {response.status_code} - {response.text}",
            response.status_code,
            response.text,
        )
    try:
        return TokenData.from_token_response(response.json(), issued_at)
    except ValueError as e:
        raise WhoopHTTPError(
            f"Unexpected token response: {e}", response.status_code, response.text
        ) from e


def parse_arguments(argv=None):
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(
        description="Get initial WHOOP access and refresh tokens for the MCP server",
    )
    parser.add_argument(
        "--token-file",
        default=settings.token_file,
        help=f"Where to write the tokens (default: {settings.token_file})",
    )
    parser.add_argument(
        "--redirect-uri",
        default=settings.redirect_uri,
        help="Redirect URI registered for your WHOOP app",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser",
    )
    parser.add_argument(
        "--manual",
        action="store_true",
        help="Paste the code (or redirect URL) instead of running a local callback server",
    )
    return parser.parse_args(argv), settings


def main(argv=None) -> int:
    args, settings = parse_arguments(argv)

    console.print(Panel("🏋️ WHOOP OAuth Token Helper", border_style="bright_blue"))

    client_id = settings.client_id or Prompt.ask("Enter your WHOOP_CLIENT_ID").strip()
    client_secret = settings.client_secret or Prompt.ask("Enter your WHOOP_CLIENT_SECRET", password=True).strip()
    if not client_id or not client_secret:
        console.print("[red]Error: client id and client secret are required[/red]")
        return 1

    state = generate_state_parameter(32)
    auth_url = build_authorization_url(client_id, args.redirect_uri, state)

    console.print("\n[bold cyan]📋 Step 1: Open this URL in your browser and authorize the app:[/bold cyan]\n")
    console.print(auth_url, soft_wrap=True)
    if not args.no_browser:
        webbrowser.open(auth_url)

    if args.manual or not is_local_redirect(args.redirect_uri):
        pasted = Prompt.ask("\n📋 Step 2: Paste the redirect URL (or just the 'code' parameter)")
        code, returned_state = parse_pasted_code(pasted)
        error = ""
    else:
        console.print("\n[bold cyan]📋 Step 2: Waiting for WHOOP to redirect back...[/bold cyan]")
        result = wait_for_callback(args.redirect_uri)
        code, returned_state, error = result.get("code", ""), result.get("state"), result.get("error", "")

    if error:
        console.print(f"[red]❌ Authentication failed: {error}[/red]")
        return 1
    if not code:
        console.print("[red]❌ No authorization code received. Please try again.[/red]")
        return 1
    if returned_state is not None and returned_state != state:
        console.print("[red]❌ State parameter mismatch. This could be a CSRF attack. Please try again.[/red]")
        return 1

    try:
        with console.status("[bold green]Exchanging code for tokens..."):
            tokens = asyncio.run(exchange_code(code, client_id, client_secret, args.redirect_uri))
    except (WhoopHTTPError, WhoopConnectionError) as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    store = TokenStore(args.token_file)
    if not store.save(tokens):
        console.print(f"[red]❌ Could not write {args.token_file}[/red]")
        console.print("Add these to the MCP server environment instead:")
        console.print(f"WHOOP_ACCESS_TOKEN={tokens.access_token}")
        console.print(f"WHOOP_REFRESH_TOKEN={tokens.refresh_token}")
        return 1

    console.print(f"\n[green]✅ Success! Tokens saved to {args.token_file}[/green]")
    console.print(
        "[dim]The server refreshes and re-saves them automatically; only WHOOP_CLIENT_ID "
        "and WHOOP_CLIENT_SECRET need to stay in its environment.[/dim]"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

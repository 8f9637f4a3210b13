"""
OAuth2 token lifecycle for the WHOOP API.

TokenStore persists a single credential record to a JSON file, and
TokenManager hands out a non-expired access token, refreshing it against the
WHOOP token endpoint when the local clock or the server says it is stale.
"""

import asyncio
import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from whoop_config import REQUEST_TIMEOUT, WHOOP_SCOPES, WHOOP_TOKEN_URL, Settings

logger = logging.getLogger(__name__)

# Refresh one minute before the vendor-reported expiry
EXPIRY_MARGIN_MS = 60_000
# Bootstrap tokens from the environment carry no expiry; assume one hour
BOOTSTRAP_VALIDITY_MS = 3_600_000


class WhoopError(Exception):
    """Base class for every error raised while talking to WHOOP."""


class WhoopAuthError(WhoopError):
    """The credential lifecycle could not produce a usable access token."""


class CredentialsUnavailableError(WhoopAuthError):
    """No tokens in memory, on disk, or in the environment."""


class MissingClientCredentialsError(WhoopAuthError):
    """WHOOP_CLIENT_ID / WHOOP_CLIENT_SECRET are not configured."""


class RefreshUnavailableError(WhoopAuthError):
    """A refresh was needed but there is no refresh token."""


class WhoopHTTPError(WhoopError):
    """A WHOOP endpoint answered with a non-success response."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TokenRefreshFailedError(WhoopAuthError, WhoopHTTPError):
    """The token endpoint rejected the refresh request."""

    def __init__(self, status_code: Optional[int], body: str):
        WhoopHTTPError.__init__(
            self, f"Failed to refresh token: {status_code} - {body}", status_code, body
        )


class ApiRequestFailedError(WhoopHTTPError):
    """A resource call failed, after the single retry-on-401 if one happened."""

    def __init__(self, status_code: Optional[int], body: str):
        super().__init__(f"Whoop API error: {status_code} - {body}", status_code, body)


class WhoopConnectionError(WhoopError):
    """The request never got an HTTP response (DNS, connect, timeout)."""


def now_ms() -> int:
    return int(time.time() * 1000)


def format_expiry(expires_at: int) -> str:
    try:
        return datetime.fromtimestamp(expires_at / 1000, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        # Outside the platform datetime range
        return f"{expires_at} ms"


@dataclass(frozen=True)
class TokenData:
    """The single credential record: bearer token, refresh token, expiry in epoch ms."""

    access_token: str
    refresh_token: str
    expires_at: int

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenData":
        """Build a record from the persisted layout; raises ValueError on bad input."""
        if not isinstance(data, dict):
            raise ValueError("token data must be a JSON object")
        try:
            access_token = data["accessToken"]
            refresh_token = data["refreshToken"]
            expires_at = data["expiresAt"]
        except KeyError as e:
            raise ValueError(f"missing field {e.args[0]}") from e
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ValueError("tokens must be strings")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            raise ValueError("expiresAt must be a number")
        if not math.isfinite(expires_at):
            raise ValueError("expiresAt must be finite")
        return cls(access_token, refresh_token, int(expires_at))

    @classmethod
    def from_token_response(cls, data: Dict[str, Any], issued_at: int) -> "TokenData":
        """Build a record from a token endpoint response issued at `issued_at` (epoch ms)."""
        if not isinstance(data, dict):
            raise ValueError("token response must be a JSON object")
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        expires_in = data.get("expires_in")
        if not access_token or not refresh_token:
            raise ValueError("token response is missing access_token or refresh_token")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            raise ValueError("token response is missing expires_in")
        if not math.isfinite(expires_in * 1000):
            raise ValueError("expires_in must be finite")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=issued_at + int(expires_in * 1000) - EXPIRY_MARGIN_MS,
        )


class TokenStore:
    """Single-record JSON file holding the current tokens."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[TokenData]:
        """Return the persisted record, or None when the file is missing or unreadable."""
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            tokens = TokenData.from_dict(data)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load persisted tokens from {self.path}: {e}")
            return None
        logger.info(f"Loaded persisted tokens from {self.path}")
        return tokens

    def save(self, tokens: TokenData) -> bool:
        """Overwrite the file with `tokens`. Returns False (after logging) if the write fails."""
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".whoop_tokens.", suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(tokens.to_dict(), f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to persist tokens to {self.path}: {e}")
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    logger.debug(f"Could not remove temporary file {tmp_path}")
            return False
        logger.info(f"Persisted new tokens to {self.path}")
        return True


class TokenManager:
    """Owns the in-memory credential record for the process.

    Refreshes are serialized by a lock: callers that queue up behind an
    in-flight refresh pick up its result instead of presenting the refresh
    token a second time (WHOOP rotates refresh tokens on every use).
    """

    def __init__(
        self,
        store: TokenStore,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        initial_access_token: Optional[str] = None,
        initial_refresh_token: Optional[str] = None,
        token_url: str = WHOOP_TOKEN_URL,
        scopes: Optional[List[str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.initial_access_token = initial_access_token
        self.initial_refresh_token = initial_refresh_token
        self.token_url = token_url
        self.scopes = list(scopes) if scopes is not None else list(WHOOP_SCOPES)
        self.http_client = http_client
        self.clock = clock
        self._tokens: Optional[TokenData] = None
        self._refresh_lock = asyncio.Lock()
        # Outcome of the last finished refresh, shared with callers that queued behind it
        self._refresh_generation = 0
        self._refresh_error: Optional[WhoopError] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "TokenManager":
        return cls(
            store=TokenStore(settings.token_file),
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            initial_access_token=settings.initial_access_token,
            initial_refresh_token=settings.initial_refresh_token,
            token_url=settings.token_url,
            **kwargs,
        )

    @property
    def tokens(self) -> Optional[TokenData]:
        return self._tokens

    def _ensure_tokens(self) -> TokenData:
        """Adopt tokens from the store, then from bootstrap env vars; raise if neither exists."""
        if self._tokens is not None:
            return self._tokens

        tokens = self.store.load()
        if tokens is not None:
            logger.info(f"Using persisted tokens (expires: {format_expiry(tokens.expires_at)})")
            self._tokens = tokens
            return tokens

        if self.initial_access_token and self.initial_refresh_token:
            logger.info("No persisted tokens found, using env vars for initial setup")
            tokens = TokenData(
                access_token=self.initial_access_token,
                refresh_token=self.initial_refresh_token,
                expires_at=self.clock() + BOOTSTRAP_VALIDITY_MS,
            )
            self._tokens = tokens
            self.store.save(tokens)
            return tokens

        raise CredentialsUnavailableError(
            "No tokens available. Either provide WHOOP_ACCESS_TOKEN and WHOOP_REFRESH_TOKEN "
            f"env vars, or run get_tokens.py to create {self.store.path}."
        )

    async def get_valid_access_token(self) -> str:
        """Return an access token that has not expired by the local clock."""
        tokens = self._ensure_tokens()
        if tokens.is_expired(self.clock()):
            logger.info("Token expired, refreshing...")
            return await self._refresh(stale_token=tokens.access_token)
        return tokens.access_token

    async def refresh(self, rejected_token: Optional[str] = None) -> str:
        """Force a refresh, regardless of the local expiry.

        `rejected_token` is the access token the server just refused. If a
        concurrent caller has already replaced it, the replacement is returned
        and no second refresh is made.
        """
        return await self._refresh(stale_token=rejected_token)

    async def _refresh(self, stale_token: Optional[str]) -> str:
        generation = self._refresh_generation
        async with self._refresh_lock:
            if self._refresh_generation != generation and self._refresh_error is not None:
                # The refresh we queued behind failed; the same refresh token would fail again
                logger.debug("Concurrent refresh failed, not retrying it")
                raise self._refresh_error
            current = self._tokens
            if (
                stale_token is not None
                and current is not None
                and current.access_token != stale_token
                and not current.is_expired(self.clock())
            ):
                logger.debug("Token already refreshed by a concurrent call")
                return current.access_token
            self._refresh_error = None
            try:
                return await self._request_new_tokens()
            except WhoopError as e:
                self._refresh_error = e
                raise
            finally:
                self._refresh_generation += 1

    async def _request_new_tokens(self) -> str:
        if not self.client_id or not self.client_secret:
            raise MissingClientCredentialsError(
                "Missing WHOOP_CLIENT_ID or WHOOP_CLIENT_SECRET environment variables"
            )
        if self._tokens is None or not self._tokens.refresh_token:
            raise RefreshUnavailableError("No refresh token available. Please re-authenticate.")

        logger.info("Refreshing access token...")
        refresh_data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": " ".join(self.scopes),
            "refresh_token": self._tokens.refresh_token,
        }
        headers = {
            "Content-Type": "application/x-www-form-urlencoded"
        }

        issued_at = self.clock()
        try:
            if self.http_client is not None:
                response = await self.http_client.post(
                    self.token_url, headers=headers, data=refresh_data, timeout=REQUEST_TIMEOUT
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.token_url, headers=headers, data=refresh_data, timeout=REQUEST_TIMEOUT
                    )
        except httpx.RequestError as e:
            raise WhoopConnectionError(f"Could not reach WHOOP token endpoint: {e}") from e

        if not response.is_success:
            raise TokenRefreshFailedError(response.status_code, response.text)

        try:
            tokens = TokenData.from_token_response(response.json(), issued_at)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            logger.error(f"Unexpected token response: {e}")
            raise TokenRefreshFailedError(response.status_code, response.text) from e

        self._tokens = tokens
        self.store.save(tokens)
        logger.info(f"Token refreshed successfully. New token expires at {format_expiry(tokens.expires_at)}")
        return tokens.access_token

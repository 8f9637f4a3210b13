import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

import pytz
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Constants
WHOOP_API_BASE = "https://api.prod.whoop.com/developer"
WHOOP_AUTH_URL = "https://api.prod.whoop.com/oauth/oauth2/auth"
WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"

WHOOP_SCOPES = [
    "offline",
    "read:recovery",
    "read:cycles",
    "read:workout",
    "read:sleep",
    "read:profile",
    "read:body_measurement",
]

# Seconds
REQUEST_TIMEOUT = 30.0

DEFAULT_TOKEN_FILE = os.path.join(os.path.expanduser("~"), ".whoop_tokens.json")
DEFAULT_REDIRECT_URI = "http://localhost:8000/whoop/callback"
DEFAULT_TIMEZONE = "America/New_York"


def _env(name: str) -> Optional[str]:
    """Read an environment variable, treating blank values as unset."""
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Process configuration, read once at startup."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    initial_access_token: Optional[str] = None
    initial_refresh_token: Optional[str] = None
    token_file: str = DEFAULT_TOKEN_FILE
    redirect_uri: str = DEFAULT_REDIRECT_URI
    timezone: str = DEFAULT_TIMEZONE
    log_level: str = "INFO"
    api_base: str = WHOOP_API_BASE
    token_url: str = WHOOP_TOKEN_URL

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            client_id=_env("WHOOP_CLIENT_ID"),
            client_secret=_env("WHOOP_CLIENT_SECRET"),
            initial_access_token=_env("WHOOP_ACCESS_TOKEN"),
            initial_refresh_token=_env("WHOOP_REFRESH_TOKEN"),
            token_file=os.path.expanduser(_env("WHOOP_TOKEN_FILE") or DEFAULT_TOKEN_FILE),
            redirect_uri=_env("WHOOP_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
            timezone=_env("WHOOP_TIMEZONE") or DEFAULT_TIMEZONE,
            log_level=(_env("WHOOP_LOG_LEVEL") or "INFO").upper(),
        )

    @property
    def tzinfo(self):
        """Display timezone; unknown names fall back to UTC."""
        try:
            return pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError:
            logging.getLogger(__name__).warning(
                f"Unknown WHOOP_TIMEZONE '{self.timezone}', using UTC"
            )
            return pytz.utc


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging on stderr (stdout belongs to the MCP stdio transport)."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stderr,
    )

import logging
from typing import Any, Dict, Optional

import httpx

from whoop_auth import ApiRequestFailedError, TokenManager, WhoopConnectionError
from whoop_config import REQUEST_TIMEOUT, WHOOP_API_BASE

logger = logging.getLogger(__name__)


class WhoopClient:
    """Authenticated gateway to the WHOOP developer API.

    Every call asks the TokenManager for a valid token. A 401 triggers exactly
    one forced refresh and one retry; anything else that is not a 2xx raises
    ApiRequestFailedError.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        api_base: str = WHOOP_API_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_manager = token_manager
        self.api_base = api_base.rstrip("/")
        self.http_client = http_client

    async def request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET `endpoint` (e.g. "/v2/recovery") and return the decoded JSON payload."""
        url = f"{self.api_base}{endpoint}"
        query = {key: str(value) for key, value in (params or {}).items() if value is not None}

        access_token = await self.token_manager.get_valid_access_token()
        response = await self._get(url, access_token, query)

        if response.status_code == 401:
            logger.warning(f"Got 401 from {endpoint}, attempting token refresh...")
            access_token = await self.token_manager.refresh(rejected_token=access_token)
            response = await self._get(url, access_token, query)

        if not response.is_success:
            raise ApiRequestFailedError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as e:
            raise ApiRequestFailedError(response.status_code, response.text) from e

    async def _get(self, url: str, access_token: str, params: Dict[str, str]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        try:
            if self.http_client is not None:
                return await self.http_client.get(url, headers=headers, params=params, timeout=REQUEST_TIMEOUT)
            async with httpx.AsyncClient() as client:
                return await client.get(url, headers=headers, params=params, timeout=REQUEST_TIMEOUT)
        except httpx.RequestError as e:
            raise WhoopConnectionError(f"Could not reach WHOOP API: {e}") from e

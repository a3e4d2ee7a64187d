"""
HTTP collaborators for the session core: silent refresh and server-side logout against the
portal API. Neither ever raises into the core.
"""
import logging
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RefreshCredential = Callable[[], Awaitable[str | None]]
InvalidateServerSide = Callable[[], Awaitable[None]]

REFRESH_PATH = "/api/auth/refresh"
LOGOUT_PATH = "/api/auth/logout"


class PortalAuthClient:
    """
    Talks to the portal's auth endpoints. The refresh credential is an httpOnly cookie held
    by the underlying httpx client; the bearer token is read from token_getter at call time.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token_getter: Callable[[], str | None] = lambda: None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        refresh_path: str = REFRESH_PATH,
        logout_path: str = LOGOUT_PATH,
    ):
        self._base_url = base_url.rstrip("/")
        self._token_getter = token_getter
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._refresh_path = refresh_path
        self._logout_path = logout_path

    async def refresh_credential(self) -> str | None:
        """Exchange the refresh cookie for a new bearer token. None on any failure."""
        try:
            r = await self._client.post(
                f"{self._base_url}{self._refresh_path}",
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning("Token refresh request failed: %s", e)
            return None
        if r.status_code != 200:
            logger.info("Token refresh rejected: HTTP %s", r.status_code)
            return None
        try:
            data = r.json()
        except ValueError:
            logger.warning("Token refresh returned a non-JSON body")
            return None
        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            return None
        return token

    async def invalidate_server_side(self) -> None:
        """Best-effort server-side logout; failures are logged only."""
        token = self._token_getter()
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            r = await self._client.post(f"{self._base_url}{self._logout_path}", headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Server-side logout failed: %s", e)
            return
        if r.status_code >= 400:
            logger.info("Server-side logout returned HTTP %s", r.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()

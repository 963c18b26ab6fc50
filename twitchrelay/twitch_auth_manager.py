import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import aiohttp

from .constants import HTTP_TIMEOUT, TWITCH_OAUTH_BASE, TwitchAuthError

# Configure logger for this module
logger = logging.getLogger(__name__)

# Time in seconds before actual expiry to consider the token as expired.
TOKEN_EXPIRY_BUFFER = 10

T = TypeVar("T")


class TwitchAuthManager:
    """
    Obtains and caches a Twitch app access token (client-credentials grant).

    The token is the only state shared between requests. Reads of a valid token
    never wait; when the token is missing or expired, a single refresh is started
    and every concurrent caller awaits that same refresh.
    """

    def __init__(self, client_id: str, client_secret: str, session: Optional[aiohttp.ClientSession] = None):
        if not client_id:
            raise ValueError("TWITCH_CLIENT_ID is not set in environment or passed to constructor.")
        if not client_secret:
            raise ValueError("TWITCH_SECRET is not set in environment or passed to constructor.")

        self.client_id = client_id
        self.client_secret = client_secret
        self.token_endpoint = f"{TWITCH_OAUTH_BASE}/token"

        self._session = session
        self._owns_session = session is None

        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[float] = None  # Unix timestamp for expiry
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def is_access_token_valid(self, buffer_seconds: int = TOKEN_EXPIRY_BUFFER) -> bool:
        """Checks if the cached access token is present and not expired (considering a buffer)."""
        if not self._access_token or self._token_expires_at is None:
            return False
        return time.time() < (self._token_expires_at - buffer_seconds)

    def clear_token(self) -> None:
        self._access_token = None
        self._token_expires_at = None

    async def _request_token(self) -> Tuple[str, int]:
        """
        Request a new app access token from the Twitch OAuth endpoint.

        Returns:
            The access token and its lifetime in seconds

        Raises:
            TwitchAuthError: On a non-200 status, an unexpected response body or a transport error
        """
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
        }
        session = await self._get_session()
        try:
            async with session.post(self.token_endpoint, data=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Failed to get app access token: {response.status} - {error_text}")
                    raise TwitchAuthError(f"Error requesting app access token: {response.status}")
                try:
                    result: Dict[str, Any] = await response.json()
                except (aiohttp.ContentTypeError, json.JSONDecodeError):
                    text_response = await response.text()
                    raise TwitchAuthError(
                        f"Token endpoint returned 200 OK but non-JSON response: {text_response}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"AIOHTTP client error during token request: {e}", exc_info=True)
            raise TwitchAuthError("AIOHTTP client error during token request") from e

        if not isinstance(result, dict):
            raise TwitchAuthError(f"Unexpected token response: {result!r}")
        access_token = result.get("access_token")
        expires_in = result.get("expires_in")
        if not isinstance(access_token, str) or not access_token:
            raise TwitchAuthError("Token response has no access_token")
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            raise TwitchAuthError(f"Invalid 'expires_in' value received: {expires_in}")
        return access_token, expires_in

    async def _refresh(self) -> str:
        requested_at = time.time()
        access_token, expires_in = await self._request_token()
        self._access_token = access_token
        self._token_expires_at = requested_at + expires_in
        logger.info(f"Obtained app access token valid for {expires_in} seconds")
        return access_token

    async def get_app_token(self) -> str:
        """
        Returns a valid app access token, refreshing it when missing or close to expiry.

        Raises:
            TwitchAuthError: If the refresh this call waited on failed
        """
        if self.is_access_token_valid():
            return self._access_token

        async with self._refresh_lock:
            if self.is_access_token_valid():
                return self._access_token
            if self._refresh_task is None or self._refresh_task.done():
                self._refresh_task = asyncio.ensure_future(self._refresh())
            task = self._refresh_task

        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._refresh_task is task:
                self._refresh_task = None

    async def authorize(self, fn: Callable[[str], Awaitable[T]]) -> T:
        """
        Run fn with a valid app access token.

        A TwitchAuthError raised by fn means Twitch rejected the token, so the cache
        is cleared and the next call requests a new one.
        """
        token = await self.get_app_token()
        try:
            return await fn(token)
        except TwitchAuthError:
            if self._access_token == token:
                self.clear_token()
            raise

"""Twitch Helix client and the stream-info aggregation used by the relay.

Three read-only resources are combined into one StreamInfo:
- streams: present only while the broadcaster is live
- channels: always present for an existing broadcaster
- users: only needed for the avatar
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError

from .constants import (
    HTTP_TIMEOUT,
    TWITCH_HELIX_BASE,
    ChannelNotFoundError,
    TwitchAuthError,
    TwitchLookupError,
)
from .twitch_signature_verifier import parse_rfc3339

logger = logging.getLogger(__name__)


class StreamFilterType(str, Enum):
    All = "all"
    Live = "live"


class StreamData(BaseModel):
    id: str
    user_id: str
    user_login: str
    user_name: str
    game_id: str
    game_name: str
    type: str
    title: str
    viewer_count: int = 0
    started_at: str
    language: str
    thumbnail_url: str
    tags: Optional[List[str]] = None
    is_mature: bool = False


class ChannelData(BaseModel):
    broadcaster_id: str
    broadcaster_login: str
    broadcaster_name: str
    broadcaster_language: str
    game_id: str
    game_name: str
    title: str
    delay: int = 0
    tags: Optional[List[str]] = None


class UserData(BaseModel):
    id: str
    login: str
    display_name: str
    type: str = ""
    broadcaster_type: str = ""
    description: str = ""
    profile_image_url: Optional[str] = None
    offline_image_url: Optional[str] = None
    created_at: Optional[str] = None


class StreamInfo(BaseModel):
    """Stream and channel data merged into one view; live-only fields are None when offline."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    user_login: str
    user_name: str
    game_id: str
    game_name: str
    title: str
    delay: int
    started_at: Optional[datetime] = None
    language: str
    thumbnail_url: Optional[str] = None
    avatar_url: Optional[str] = None


class TwitchAPIClient:
    """
    Minimal Helix client for the lookups the relay needs.

    All calls take the bearer token explicitly so they can run inside
    TwitchAuthManager.authorize.
    """

    def __init__(self, client_id: str, session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = TWITCH_HELIX_BASE):
        self.client_id = client_id
        self.base_url = base_url
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    async def _helix_get(self, path: str, token: str, params: List[tuple]) -> List[Dict[str, Any]]:
        """
        GET a Helix collection and return its 'data' list.

        Raises:
            TwitchAuthError: Twitch rejected the token (401)
            TwitchLookupError: Any other failure
        """
        url = f"{self.base_url}/{path}"
        session = await self._get_session()
        try:
            async with session.get(url, params=params, headers=self._headers(token)) as response:
                if response.status == 401:
                    raise TwitchAuthError(f"Helix GET /{path} rejected the access token")
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Helix GET /{path} failed: {response.status} - {error_text}")
                    raise TwitchLookupError(f"Helix GET /{path} failed: {response.status}")
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TwitchLookupError(f"HTTP error during Helix GET /{path}: {e}") from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise TwitchLookupError(f"Helix GET /{path} returned no data list")
        return data

    async def get_streams(self, token: str, *,
                          user_ids: Sequence[str] = (),
                          user_logins: Sequence[str] = (),
                          type: StreamFilterType = StreamFilterType.All,
                          first: Optional[int] = None) -> List[StreamData]:
        params = [("user_id", user_id) for user_id in user_ids]
        params += [("user_login", login) for login in user_logins]
        params.append(("type", StreamFilterType(type).value))
        if first is not None:
            params.append(("first", str(first)))
        data = await self._helix_get("streams", token, params)
        return _parse_list(StreamData, data, "streams")

    async def get_channels(self, token: str, broadcaster_ids: Sequence[str]) -> List[ChannelData]:
        params = [("broadcaster_id", broadcaster_id) for broadcaster_id in broadcaster_ids]
        data = await self._helix_get("channels", token, params)
        return _parse_list(ChannelData, data, "channels")

    async def get_users(self, token: str, *, ids: Sequence[str] = (), logins: Sequence[str] = ()) -> List[UserData]:
        params = [("id", user_id) for user_id in ids]
        params += [("login", login) for login in logins]
        data = await self._helix_get("users", token, params)
        return _parse_list(UserData, data, "users")


def _parse_list(model, data: List[Dict[str, Any]], path: str) -> list:
    try:
        return [model.model_validate(item) for item in data]
    except ValidationError as e:
        raise TwitchLookupError(f"Unexpected Helix /{path} record: {e}") from e


def merge_stream_info(stream: Optional[StreamData],
                      channel: Optional[ChannelData],
                      user: Optional[UserData] = None) -> StreamInfo:
    """
    Merge Helix resources into a StreamInfo.

    Each field prefers the live stream's value and falls back to the channel's.
    started_at and thumbnail_url exist only for a live stream, delay only on the
    channel and avatar_url only on the user.

    Raises:
        ChannelNotFoundError: If channel is None
    """
    if channel is None:
        raise ChannelNotFoundError("Broadcaster channel not found")

    if stream is None:
        return StreamInfo(
            user_id=channel.broadcaster_id,
            user_login=channel.broadcaster_login,
            user_name=channel.broadcaster_name,
            game_id=channel.game_id,
            game_name=channel.game_name,
            title=channel.title,
            delay=channel.delay,
            language=channel.broadcaster_language,
            avatar_url=user.profile_image_url if user else None,
        )

    return StreamInfo(
        user_id=stream.user_id,
        user_login=stream.user_login,
        user_name=stream.user_name,
        game_id=stream.game_id,
        game_name=stream.game_name,
        title=stream.title,
        delay=channel.delay,
        started_at=parse_rfc3339(stream.started_at) if stream.started_at else None,
        language=stream.language,
        thumbnail_url=stream.thumbnail_url or None,
        avatar_url=user.profile_image_url if user else None,
    )


async def _lookup_user(client: TwitchAPIClient, token: str, user_id: str) -> Optional[UserData]:
    # Only the avatar depends on this lookup, so a failure is not fatal.
    try:
        users = await client.get_users(token, ids=[user_id])
    except TwitchLookupError as e:
        logger.warning(f"User lookup for {user_id} failed, continuing without avatar: {e}")
        return None
    return users[0] if users else None


async def _no_user() -> None:
    return None


async def fetch_stream_info(client: TwitchAPIClient, token: str, broadcaster_id: str,
                            include_user: bool = True) -> StreamInfo:
    """
    Fetch stream, channel and (optionally) user data concurrently and merge them.

    Raises:
        ChannelNotFoundError: The broadcaster has no channel
        TwitchLookupError: The stream or channel lookup failed
        TwitchAuthError: The token was rejected
    """
    streams, channels, user = await asyncio.gather(
        client.get_streams(token, user_ids=[broadcaster_id], type=StreamFilterType.Live),
        client.get_channels(token, [broadcaster_id]),
        _lookup_user(client, token, broadcaster_id) if include_user else _no_user(),
    )
    stream = streams[0] if streams else None
    channel = channels[0] if channels else None
    if channel is None:
        raise ChannelNotFoundError(f"Channel not found for broadcaster {broadcaster_id}")
    return merge_stream_info(stream, channel, user)

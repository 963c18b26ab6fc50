import asyncio
import logging
import re
from enum import Enum, IntFlag
from typing import List, Literal, Optional

import aiohttp
from pydantic import BaseModel

from .constants import HTTP_TIMEOUT, WebhookDeliveryError

logger = logging.getLogger(__name__)

API_VERSION = "10"

API_BASE_ENDPOINT = f"https://discord.com/api/v{API_VERSION}"

WEBHOOK_URL_PATTERN = re.compile(
    r"https?://(?:ptb\.|canary\.)?discord\.com/api(?:/v\d{1,2})?/webhooks/(?P<id>\d{17,19})/(?P<token>[\w-]{68})",
    re.IGNORECASE,
)


class MessageFlags(IntFlag):
    Crossposted = 1
    IsCrosspost = 2
    SuppressEmbeds = 4
    SourceMessageDeleted = 8
    Urgent = 16
    HasThread = 32
    Ephemeral = 64
    Loading = 128
    FailedToMentionSomeRolesInThread = 256
    SuppressNotifications = 4096


class EmbedType(str, Enum):
    Rich = "rich"
    Image = "image"
    Video = "video"
    Gifv = "gifv"
    Article = "article"
    Link = "link"


class AllowedMentionTypes(str, Enum):
    Roles = "roles"
    Users = "users"
    Everyone = "everyone"


class EmbedFooter(BaseModel):
    text: str
    icon_url: Optional[str] = None
    proxy_icon_url: Optional[str] = None


class EmbedVisual(BaseModel):
    url: str
    proxy_url: Optional[str] = None
    height: Optional[int] = None
    width: Optional[int] = None


class EmbedImage(EmbedVisual):
    pass


class EmbedThumbnail(EmbedVisual):
    pass


class EmbedProvider(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None


class EmbedAuthor(BaseModel):
    name: str
    url: Optional[str] = None
    icon_url: Optional[str] = None
    proxy_icon_url: Optional[str] = None


class EmbedField(BaseModel):
    name: str
    value: str
    inline: Optional[bool] = None


class Embed(BaseModel):
    title: Optional[str] = None
    type: Optional[Literal["rich"]] = None
    description: Optional[str] = None
    url: Optional[str] = None
    timestamp: Optional[str] = None
    color: Optional[int] = None
    footer: Optional[EmbedFooter] = None
    image: Optional[EmbedImage] = None
    thumbnail: Optional[EmbedThumbnail] = None
    provider: Optional[EmbedProvider] = None
    author: Optional[EmbedAuthor] = None
    fields: Optional[List[EmbedField]] = None


class AllowedMentions(BaseModel):
    parse: Optional[List[AllowedMentionTypes]] = None
    roles: Optional[List[str]] = None
    users: Optional[List[str]] = None
    replied_user: Optional[bool] = None


class WebhookMessage(BaseModel):
    """Body of an execute-webhook call without attachments."""
    content: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    tts: Optional[bool] = None
    embeds: Optional[List[Embed]] = None
    allowed_mentions: Optional[AllowedMentions] = None
    flags: Optional[Literal[0, 4]] = None
    thread_name: Optional[str] = None

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class WebhookOptions(BaseModel):
    id: Optional[str] = None
    token: Optional[str] = None
    url: Optional[str] = None


class WebhookData(BaseModel):
    id: str
    token: str


def resolve_webhook_options(options: WebhookOptions) -> Optional[WebhookData]:
    """An explicit id and token win over the URL; None when neither yields a pair."""
    if options.id and options.token:
        return WebhookData(id=options.id, token=options.token)
    match = WEBHOOK_URL_PATTERN.search(options.url or "")
    if not match:
        return None
    return WebhookData(id=match.group("id"), token=match.group("token"))


def webhook_url(webhook: WebhookData) -> str:
    return f"{API_BASE_ENDPOINT}/webhooks/{webhook.id}/{webhook.token}"


async def execute_webhook(options: WebhookOptions, message: WebhookMessage,
                          session: Optional[aiohttp.ClientSession] = None) -> None:
    """
    Post a message to a Discord webhook.

    Raises:
        WebhookDeliveryError: The webhook could not be resolved, the request failed,
            or Discord answered with anything but 204
    """
    webhook = resolve_webhook_options(options)
    if webhook is None:
        raise WebhookDeliveryError("Failed to resolve webhook ID and token")

    url = webhook_url(webhook)
    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT))
    try:
        async with session.post(url, json=message.to_payload()) as response:
            if response.status != 204:
                error_text = await response.text()
                logger.error(f"Discord webhook {webhook.id} returned {response.status}: {error_text}")
                raise WebhookDeliveryError(f"Discord webhook returned {response.status}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise WebhookDeliveryError(f"HTTP error executing Discord webhook: {e}") from e
    finally:
        if own_session:
            await session.close()
    logger.info(f"Delivered message to Discord webhook {webhook.id}")

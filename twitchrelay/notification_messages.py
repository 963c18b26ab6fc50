import logging
from datetime import datetime, timedelta
from typing import Optional

import pendulum

from .constants import TWITCH_BASE
from .discord_webhook import (
    Embed,
    EmbedAuthor,
    EmbedField,
    EmbedFooter,
    EmbedImage,
    WebhookMessage,
)
from .twitch_api import StreamInfo

logger = logging.getLogger(__name__)

TWITCH_PURPLE = 0x9146FF
THUMBNAIL_WIDTH = 1280
THUMBNAIL_HEIGHT = 720


def channel_url(login: str) -> str:
    return f"{TWITCH_BASE}/{login}"


def humanize_relative(moment: datetime) -> str:
    """'5 minutes ago' for past moments, 'in 30 seconds' for future ones."""
    return pendulum.instance(moment).diff_for_humans()


def live_since(info: StreamInfo, received_at: datetime) -> datetime:
    """When the stream started, or when it becomes visible given the broadcast delay."""
    if info.started_at is not None:
        return info.started_at
    return received_at + timedelta(seconds=info.delay)


def sized_thumbnail(thumbnail_url: str, cache_buster: int) -> str:
    url = thumbnail_url.replace("{width}", str(THUMBNAIL_WIDTH)).replace("{height}", str(THUMBNAIL_HEIGHT))
    return f"{url}?cb={cache_buster}"


def build_stream_online_message(info: StreamInfo,
                                received_at: datetime,
                                username: Optional[str] = None,
                                avatar_url: Optional[str] = None) -> WebhookMessage:
    """Message announcing that a channel went live."""
    url = channel_url(info.user_login)
    started = live_since(info, received_at)
    relative = humanize_relative(started)

    embed = Embed(
        type="rich",
        title=info.title,
        url=url,
        description=f"Went live {relative}",
        color=TWITCH_PURPLE,
        timestamp=pendulum.instance(started).in_timezone("UTC").isoformat(),
        author=EmbedAuthor(name=info.user_name, url=url, icon_url=info.avatar_url),
        fields=[EmbedField(name="Game", value=info.game_name or "Unknown", inline=True)],
        footer=EmbedFooter(text="Twitch"),
    )
    if info.thumbnail_url:
        embed.image = EmbedImage(url=sized_thumbnail(info.thumbnail_url, int(received_at.timestamp())))

    return WebhookMessage(
        content=f"{info.user_name} is now live on Twitch! {url}",
        username=username,
        avatar_url=avatar_url,
        embeds=[embed],
    )


def build_revocation_message(display_name: str,
                             status: str,
                             username: Optional[str] = None,
                             avatar_url: Optional[str] = None) -> WebhookMessage:
    reason = status.replace("_", " ")
    return WebhookMessage(
        content=f"Stream notifications for {display_name} were revoked: {reason}",
        username=username,
        avatar_url=avatar_url,
    )

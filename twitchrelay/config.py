import logging
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .constants import DEFAULT_AGE_WARNING
from .discord_webhook import WebhookOptions

logger = logging.getLogger(__name__)


class RelayConfig(BaseModel):
    twitch_client_id: str
    twitch_secret: str
    twitch_webhook_secret: str
    age_warning_ms: int = DEFAULT_AGE_WARNING
    webhook: WebhookOptions = WebhookOptions()
    discord_username: Optional[str] = None
    discord_avatar_url: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8080
    webhook_path: str = "/"
    log_level: str = "INFO"


def _int_setting(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_config(environ: Optional[Mapping[str, str]] = None, env_file: Optional[str] = None) -> RelayConfig:
    """
    Build the relay configuration from environment variables.

    When environ is not given, a .env file is loaded into os.environ first.

    Raises:
        ValueError: A required variable is missing or a number is malformed
    """
    if environ is None:
        load_dotenv(env_file)
        environ = os.environ

    client_id = environ.get("TWITCH_CLIENT_ID")
    secret = environ.get("TWITCH_SECRET")
    if not client_id:
        raise ValueError("TWITCH_CLIENT_ID is not set in environment.")
    if not secret:
        raise ValueError("TWITCH_SECRET is not set in environment.")

    webhook = WebhookOptions(
        id=environ.get("DISCORD_WEBHOOK_ID") or None,
        token=environ.get("DISCORD_WEBHOOK_TOKEN") or None,
        url=environ.get("DISCORD_WEBHOOK_URL") or None,
    )
    if not (webhook.id and webhook.token) and not webhook.url:
        logger.warning("No Discord webhook configured; notifications will not be delivered.")

    return RelayConfig(
        twitch_client_id=client_id,
        twitch_secret=secret,
        twitch_webhook_secret=environ.get("TWITCH_WEBHOOK_SECRET") or secret,
        age_warning_ms=_int_setting(environ, "TWITCH_AGE_WARNING", DEFAULT_AGE_WARNING),
        webhook=webhook,
        discord_username=environ.get("DISCORD_USERNAME") or None,
        discord_avatar_url=environ.get("DISCORD_AVATAR_URL") or None,
        host=environ.get("RELAY_HOST") or "0.0.0.0",
        port=_int_setting(environ, "RELAY_PORT", 8080),
        webhook_path=environ.get("RELAY_WEBHOOK_PATH") or "/",
        log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
    )

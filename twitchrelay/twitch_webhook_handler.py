import asyncio
import json
import logging
from datetime import datetime
from typing import Coroutine, Optional, Set

import aiohttp
import pendulum
from aiohttp import web

from .config import RelayConfig
from .constants import (
    TWITCH_MESSAGE_ID,
    TWITCH_MESSAGE_SIGNATURE,
    TWITCH_MESSAGE_TIMESTAMP,
    TWITCH_MESSAGE_TYPE,
    ChannelNotFoundError,
    ClassificationError,
    MalformedInputError,
    UnsupportedBodyError,
)
from .discord_webhook import execute_webhook
from .event_models import (
    AnyWebhookBody,
    NotificationType,
    StreamOnlineCallbackVerificationBody,
    StreamOnlineNotificationBody,
    StreamOnlineRevocationBody,
    VerifiedRequest,
    classify_notification,
    parse_webhook_body,
)
from .notification_messages import build_revocation_message, build_stream_online_message
from .twitch_api import TwitchAPIClient, fetch_stream_info
from .twitch_auth_manager import TwitchAuthManager
from .twitch_signature_verifier import TwitchSignatureVerifier

logger = logging.getLogger(__name__)

_EVENTSUB_HEADERS = (
    TWITCH_MESSAGE_ID,
    TWITCH_MESSAGE_TIMESTAMP,
    TWITCH_MESSAGE_SIGNATURE,
    TWITCH_MESSAGE_TYPE,
)


class TwitchWebhookHandler:
    """
    Receives Twitch EventSub webhooks for stream.online and relays them to Discord.

    The response to Twitch depends only on verification and classification.
    Enrichment and delivery run afterwards as background tasks whose failures
    are logged and never reach the caller.
    """

    def __init__(self,
                 config: RelayConfig,
                 session: Optional[aiohttp.ClientSession] = None,
                 log_events: bool = False):
        """
        Initialize the webhook handler.

        Args:
            config: Relay configuration
            session: Optional shared HTTP session for outbound calls; each component
                creates its own when omitted
            log_events: Whether to log received bodies for debugging
        """
        self.config = config
        self.log_events = log_events
        self.http_session = session

        self.signature_verifier = TwitchSignatureVerifier(config.twitch_webhook_secret, config.age_warning_ms)
        self.auth_manager = TwitchAuthManager(config.twitch_client_id, config.twitch_secret, session)
        self.twitch_api = TwitchAPIClient(config.twitch_client_id, session)

        self._background_tasks: Set[asyncio.Task] = set()

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self.config.webhook_path, self.handle_webhook)
        app.router.add_get('/health', self.health_check)
        app.on_cleanup.append(self._on_cleanup)
        return app

    def run_server(self):
        """Start the HTTP server to listen for webhook events."""
        logger.info(f"Starting webhook server on {self.config.host}:{self.config.port}, path: {self.config.webhook_path}")
        web.run_app(self.create_app(), host=self.config.host, port=self.config.port)

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.drain()
        await self.auth_manager.close()
        await self.twitch_api.close()

    async def handle_webhook(self, request: web.Request) -> web.Response:
        """
        Handle incoming webhook requests.

        Returns:
            200 with the challenge, 204 when accepted, 401 for a bad signature,
            403 for an unsupported subscription type, 400 for anything else
        """
        received_at = pendulum.now("UTC")
        try:
            body = await request.read()
            headers = {name: request.headers[name] for name in _EVENTSUB_HEADERS if name in request.headers}
            verified_request = VerifiedRequest(
                body=body,
                headers=headers,
                verified=self.signature_verifier.verify_request(headers, body),
            )
            if not verified_request.verified:
                return web.Response(status=401)

            self.signature_verifier.check_age(verified_request.headers, received_at)

            try:
                payload = json.loads(verified_request.body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise MalformedInputError(f"Failed to parse webhook JSON payload: {e}")

            if self.log_events:
                logger.info(f"Received webhook body: {json.dumps(payload, indent=2)}")

            kind = classify_notification(verified_request.headers, payload)
            envelope = parse_webhook_body(kind, payload)
            return self.dispatch(kind, envelope, received_at)

        except UnsupportedBodyError as e:
            logger.warning(f"Rejected webhook: {e}")
            return web.Response(status=403)
        except (ClassificationError, MalformedInputError) as e:
            logger.warning(f"Rejected webhook: {e}")
            return web.Response(status=400)
        except Exception as e:
            logger.error(f"Error handling webhook: {e}", exc_info=True)
            return web.Response(status=400)

    def dispatch(self, kind: NotificationType, body: AnyWebhookBody, received_at: datetime) -> web.Response:
        if kind == NotificationType.WebhookCallbackVerification:
            return self.handle_challenge(body)
        elif kind == NotificationType.Notification:
            return self.handle_notification(body, received_at)
        return self.handle_revocation(body)

    def handle_challenge(self, body: StreamOnlineCallbackVerificationBody) -> web.Response:
        logger.info(f"Answering subscription challenge for broadcaster {body.broadcaster_user_id}")
        return web.Response(status=200, text=body.challenge)

    def handle_notification(self, body: StreamOnlineNotificationBody, received_at: datetime) -> web.Response:
        self._schedule(self.forward_notification(body, received_at))
        return web.Response(status=204)

    def handle_revocation(self, body: StreamOnlineRevocationBody) -> web.Response:
        logger.warning(
            f"Subscription {body.subscription.id} for broadcaster {body.broadcaster_user_id} revoked: {body.subscription.status}"
        )
        self._schedule(self.forward_revocation(body))
        return web.Response(status=204)

    def _schedule(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until all scheduled deliveries have finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def forward_notification(self, body: StreamOnlineNotificationBody, received_at: datetime) -> None:
        broadcaster_id = body.broadcaster_user_id
        try:
            info = await self.auth_manager.authorize(
                lambda token: fetch_stream_info(self.twitch_api, token, broadcaster_id)
            )
            message = build_stream_online_message(
                info,
                received_at,
                username=self.config.discord_username,
                avatar_url=self.config.discord_avatar_url,
            )
            await execute_webhook(self.config.webhook, message, session=self.http_session)
        except Exception as e:
            logger.exception(f"Failed to forward stream.online notification for broadcaster {broadcaster_id}: {e}")

    async def forward_revocation(self, body: StreamOnlineRevocationBody) -> None:
        broadcaster_id = body.broadcaster_user_id
        try:
            channels = await self.auth_manager.authorize(
                lambda token: self.twitch_api.get_channels(token, [broadcaster_id])
            )
            if not channels:
                raise ChannelNotFoundError(f"Channel not found for broadcaster {broadcaster_id}")
            message = build_revocation_message(
                channels[0].broadcaster_name,
                body.subscription.status,
                username=self.config.discord_username,
                avatar_url=self.config.discord_avatar_url,
            )
            await execute_webhook(self.config.webhook, message, session=self.http_session)
        except Exception as e:
            logger.exception(f"Failed to forward revocation for broadcaster {broadcaster_id}: {e}")

    async def health_check(self, request: web.Request) -> web.Response:
        """
        Simple health check endpoint to verify webhook server is running.
        """
        status = {
            "status": "ok",
            "timestamp": pendulum.now("UTC").isoformat(),
            "service": "twitchrelay",
            "webhook_path": self.config.webhook_path,
            "pending_deliveries": len(self._background_tasks),
        }
        return web.json_response(status)

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from aiohttp.test_utils import AioHTTPTestCase

from twitchrelay.config import RelayConfig
from twitchrelay.constants import (
    TWITCH_MESSAGE_ID,
    TWITCH_MESSAGE_SIGNATURE,
    TWITCH_MESSAGE_TIMESTAMP,
    TWITCH_MESSAGE_TYPE,
    TwitchAuthError,
)
from twitchrelay.discord_webhook import WebhookOptions
from twitchrelay.event_models import StreamOnlineNotificationBody
from twitchrelay.twitch_api import ChannelData, StreamData, UserData
from twitchrelay.twitch_webhook_handler import TwitchWebhookHandler

WEBHOOK_SECRET = "eventsub-secret"


def subscription(status="enabled", type_="stream.online"):
    return {
        "id": "f1c2a387-161a-49f9-a165-0f21d7a4e1c4",
        "status": status,
        "type": type_,
        "version": "1",
        "cost": 0,
        "condition": {"broadcaster_user_id": "1337"},
        "transport": {"method": "webhook", "callback": "https://example.com/"},
        "created_at": "2019-11-16T10:11:12.634234626Z",
    }


NOTIFICATION = {
    "subscription": subscription(),
    "event": {
        "id": "9001",
        "broadcaster_user_id": "1337",
        "broadcaster_user_login": "cool_user",
        "broadcaster_user_name": "Cool_User",
        "type": "live",
        "started_at": "2020-10-11T10:11:12.123Z",
    },
}

CHANNEL = ChannelData(
    broadcaster_id="1337",
    broadcaster_login="cool_user",
    broadcaster_name="Cool_User",
    broadcaster_language="en",
    game_id="509658",
    game_name="Just Chatting",
    title="Live coding a relay",
    delay=0,
)


def twitch_timestamp(moment=None):
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%f") + "123Z"


def signed_headers(body, message_type, secret=WEBHOOK_SECRET, timestamp=None):
    message_id = str(uuid.uuid4())
    timestamp = timestamp or twitch_timestamp()
    digest = hmac.new(secret.encode(), message_id.encode() + timestamp.encode() + body, hashlib.sha256).hexdigest()
    return {
        TWITCH_MESSAGE_ID: message_id,
        TWITCH_MESSAGE_TIMESTAMP: timestamp,
        TWITCH_MESSAGE_SIGNATURE: f"sha256={digest}",
        TWITCH_MESSAGE_TYPE: message_type,
        "Content-Type": "application/json",
    }


class TestTwitchWebhookHandler(AioHTTPTestCase):

    async def get_application(self):
        config = RelayConfig(
            twitch_client_id="client",
            twitch_secret="secret",
            twitch_webhook_secret=WEBHOOK_SECRET,
            webhook=WebhookOptions(id="223704706495545344", token="t" * 68),
            discord_username="Relay",
        )
        self.handler = TwitchWebhookHandler(config)
        return self.handler.create_app()

    async def post(self, payload, message_type, **kwargs):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        return await self.client.post("/", data=body, headers=signed_headers(body, message_type, **kwargs))

    async def test_challenge_is_echoed(self):
        payload = {"challenge": "abc123", "subscription": subscription("webhook_callback_verification_pending")}
        response = await self.post(payload, "webhook_callback_verification")
        self.assertEqual(response.status, 200)
        self.assertEqual(await response.text(), "abc123")

    async def test_invalid_signature(self):
        body = json.dumps(NOTIFICATION).encode()
        headers = signed_headers(body, "notification", secret="wrong-secret")
        response = await self.client.post("/", data=body, headers=headers)
        self.assertEqual(response.status, 401)

    async def test_missing_signature_headers(self):
        response = await self.client.post("/", data=json.dumps(NOTIFICATION))
        self.assertEqual(response.status, 401)

    async def test_tampered_body(self):
        body = json.dumps(NOTIFICATION).encode()
        headers = signed_headers(body, "notification")
        response = await self.client.post("/", data=body.replace(b"1337", b"1338"), headers=headers)
        self.assertEqual(response.status, 401)

    async def test_other_subscription_type_is_forbidden(self):
        payload = dict(NOTIFICATION, subscription=subscription(type_="channel.follow"))
        response = await self.post(payload, "notification")
        self.assertEqual(response.status, 403)

    async def test_unknown_message_type(self):
        response = await self.post(NOTIFICATION, "heartbeat")
        self.assertEqual(response.status, 400)

    async def test_invalid_json(self):
        response = await self.post(b"{not json", "notification")
        self.assertEqual(response.status, 400)

    async def test_envelope_mismatch(self):
        response = await self.post({"subscription": subscription()}, "notification")
        self.assertEqual(response.status, 400)

    async def test_stale_message_is_still_accepted(self):
        old = twitch_timestamp(datetime.now(timezone.utc) - timedelta(minutes=20))
        payload = {"challenge": "abc123", "subscription": subscription()}
        with self.assertLogs(logger='twitchrelay.twitch_signature_verifier', level='WARNING') as cm:
            response = await self.post(payload, "webhook_callback_verification", timestamp=old)
        self.assertEqual(response.status, 200)
        self.assertTrue(any("older than" in line for line in cm.output))

    async def test_notification_is_acknowledged_and_forwarded(self):
        with patch.object(self.handler, "forward_notification", new_callable=AsyncMock) as mock_forward:
            response = await self.post(NOTIFICATION, "notification")
            self.assertEqual(response.status, 204)
            await self.handler.drain()

        mock_forward.assert_awaited_once()
        body, received_at = mock_forward.await_args.args
        self.assertIsInstance(body, StreamOnlineNotificationBody)
        self.assertEqual(body.broadcaster_user_id, "1337")
        self.assertIsNotNone(received_at.tzinfo)

    async def test_notification_delivers_discord_message(self):
        stream = StreamData(
            id="40952121085", user_id="1337", user_login="cool_user", user_name="Cool_User",
            game_id="509658", game_name="Just Chatting", type="live", title="Live coding a relay",
            started_at=twitch_timestamp(), language="en",
            thumbnail_url="https://static-cdn.jtvnw.net/previews-ttv/live_user_cool_user-{width}x{height}.jpg",
        )
        user = UserData(id="1337", login="cool_user", display_name="Cool_User",
                        profile_image_url="https://static-cdn.jtvnw.net/jtv_user_pictures/cool_user.png")

        with patch.object(self.handler.auth_manager, "_request_token", new_callable=AsyncMock,
                          return_value=("tok", 3600)), \
                patch.object(self.handler.twitch_api, "get_streams", new_callable=AsyncMock, return_value=[stream]), \
                patch.object(self.handler.twitch_api, "get_channels", new_callable=AsyncMock, return_value=[CHANNEL]), \
                patch.object(self.handler.twitch_api, "get_users", new_callable=AsyncMock, return_value=[user]), \
                patch("twitchrelay.twitch_webhook_handler.execute_webhook", new_callable=AsyncMock) as mock_execute:
            response = await self.post(NOTIFICATION, "notification")
            self.assertEqual(response.status, 204)
            await self.handler.drain()

        mock_execute.assert_awaited_once()
        options, message = mock_execute.await_args.args
        self.assertEqual(options, self.handler.config.webhook)
        self.assertEqual(message.content, "Cool_User is now live on Twitch! https://www.twitch.tv/cool_user")
        self.assertEqual(message.username, "Relay")
        self.assertEqual(message.embeds[0].author.icon_url, user.profile_image_url)

    async def test_revocation_posts_display_name_and_reason(self):
        with patch.object(self.handler.auth_manager, "_request_token", new_callable=AsyncMock,
                          return_value=("tok", 3600)), \
                patch.object(self.handler.twitch_api, "get_channels", new_callable=AsyncMock,
                             return_value=[CHANNEL]) as mock_channels, \
                patch("twitchrelay.twitch_webhook_handler.execute_webhook", new_callable=AsyncMock) as mock_execute:
            response = await self.post({"subscription": subscription(status="user_removed")}, "revocation")
            self.assertEqual(response.status, 204)
            await self.handler.drain()

        mock_channels.assert_awaited_once_with("tok", ["1337"])
        message = mock_execute.await_args.args[1]
        self.assertIn("Cool_User", message.content)
        self.assertIn("user removed", message.content)

    async def test_delivery_failure_does_not_change_response(self):
        """Downstream failures are logged; Twitch already got its 204."""
        with patch.object(self.handler.auth_manager, "_request_token", new_callable=AsyncMock,
                          side_effect=TwitchAuthError("Error requesting app access token: 500")), \
                patch("twitchrelay.twitch_webhook_handler.execute_webhook", new_callable=AsyncMock) as mock_execute, \
                self.assertLogs(logger='twitchrelay.twitch_webhook_handler', level='ERROR'):
            response = await self.post(NOTIFICATION, "notification")
            self.assertEqual(response.status, 204)
            await self.handler.drain()

        mock_execute.assert_not_awaited()

    async def test_revocation_for_unknown_channel_is_logged(self):
        with patch.object(self.handler.auth_manager, "_request_token", new_callable=AsyncMock,
                          return_value=("tok", 3600)), \
                patch.object(self.handler.twitch_api, "get_channels", new_callable=AsyncMock, return_value=[]), \
                patch("twitchrelay.twitch_webhook_handler.execute_webhook", new_callable=AsyncMock) as mock_execute, \
                self.assertLogs(logger='twitchrelay.twitch_webhook_handler', level='ERROR') as cm:
            response = await self.post({"subscription": subscription(status="user_removed")}, "revocation")
            self.assertEqual(response.status, 204)
            await self.handler.drain()

        mock_execute.assert_not_awaited()
        self.assertTrue(any("Channel not found" in line for line in cm.output))

    async def test_health_check(self):
        response = await self.client.get("/health")
        self.assertEqual(response.status, 200)
        data = await response.json()
        self.assertEqual(data["status"], "ok")
        self.assertEqual(data["service"], "twitchrelay")
        self.assertEqual(data["pending_deliveries"], 0)

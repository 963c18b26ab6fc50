from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .constants import (
    STREAM_ONLINE_SUBSCRIPTION,
    TWITCH_MESSAGE_TYPE,
    ClassificationError,
    MalformedInputError,
    UnsupportedBodyError,
)


class NotificationType(str, Enum):
    Notification = "notification"
    WebhookCallbackVerification = "webhook_callback_verification"
    Revocation = "revocation"


class VerifiedRequest(BaseModel):
    """A raw inbound request together with the outcome of its signature check."""
    model_config = ConfigDict(frozen=True)

    body: bytes
    headers: Dict[str, str]
    verified: bool


class StreamOnlineCondition(BaseModel):
    broadcaster_user_id: str


class Transport(BaseModel):
    method: str
    callback: Optional[str] = None


class StreamOnlineSubscription(BaseModel):
    id: Optional[str] = None
    type: str
    version: Optional[str] = None
    status: Optional[str] = None
    cost: int = 0
    condition: StreamOnlineCondition
    transport: Optional[Transport] = None
    created_at: Optional[str] = None


class StreamOnlineEvent(BaseModel):
    id: Optional[str] = None
    broadcaster_user_id: str
    broadcaster_user_login: str
    broadcaster_user_name: str
    type: str
    started_at: str


class StreamOnlineWebhookBody(BaseModel):
    subscription: StreamOnlineSubscription

    @property
    def broadcaster_user_id(self) -> str:
        return self.subscription.condition.broadcaster_user_id


class StreamOnlineNotificationBody(StreamOnlineWebhookBody):
    event: StreamOnlineEvent


class StreamOnlineCallbackVerificationBody(StreamOnlineWebhookBody):
    challenge: str


class RevokedSubscription(StreamOnlineSubscription):
    # e.g. "user_removed", "authorization_revoked", "notification_failures_exceeded"
    status: str


class StreamOnlineRevocationBody(StreamOnlineWebhookBody):
    subscription: RevokedSubscription


AnyWebhookBody = Union[
    StreamOnlineNotificationBody,
    StreamOnlineCallbackVerificationBody,
    StreamOnlineRevocationBody,
]

_body_model_map = {
    NotificationType.Notification: StreamOnlineNotificationBody,
    NotificationType.WebhookCallbackVerification: StreamOnlineCallbackVerificationBody,
    NotificationType.Revocation: StreamOnlineRevocationBody,
}


def is_stream_online_body(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    subscription = body.get("subscription")
    return isinstance(subscription, dict) and subscription.get("type") == STREAM_ONLINE_SUBSCRIPTION


def classify_notification(headers: Mapping[str, str], body: Any) -> NotificationType:
    """
    Work out which kind of EventSub message a verified request carries.

    The subscription type is checked before the message type header, so a body for
    another subscription type is rejected whatever its header says.

    Raises:
        UnsupportedBodyError: The body is not a stream.online subscription message
        ClassificationError: The message type header is missing or unknown
    """
    if not is_stream_online_body(body):
        raise UnsupportedBodyError("Body is not a stream.online subscription message")

    message_type = headers.get(TWITCH_MESSAGE_TYPE)
    try:
        return NotificationType(message_type)
    except ValueError:
        raise ClassificationError(f"Unknown message type: {message_type!r}")


def parse_webhook_body(kind: NotificationType, body: dict) -> AnyWebhookBody:
    model = _body_model_map[kind]
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise MalformedInputError(f"Invalid {kind.value} body: {e}") from e

TWITCH_OAUTH_BASE = "https://id.twitch.tv/oauth2"
TWITCH_HELIX_BASE = "https://api.twitch.tv/helix"
TWITCH_BASE = "https://www.twitch.tv"

# EventSub request headers
TWITCH_MESSAGE_ID = "Twitch-Eventsub-Message-Id"
TWITCH_MESSAGE_TIMESTAMP = "Twitch-Eventsub-Message-Timestamp"
TWITCH_MESSAGE_SIGNATURE = "Twitch-Eventsub-Message-Signature"
TWITCH_MESSAGE_TYPE = "Twitch-Eventsub-Message-Type"

HMAC_PREFIX = "sha256="

STREAM_ONLINE_SUBSCRIPTION = "stream.online"

# Milliseconds
DEFAULT_AGE_WARNING = 300000

# Seconds, for every outbound request
HTTP_TIMEOUT = 10


class TwitchRelayException(Exception):
    pass


class UnsupportedBodyError(TwitchRelayException):
    """Body belongs to a subscription type the relay does not handle."""
    pass


class ClassificationError(TwitchRelayException):
    """Message type header is missing or unknown."""
    pass


class MalformedInputError(TwitchRelayException):
    """Body is not valid JSON or does not match the envelope for its kind."""
    pass


class TwitchAuthError(TwitchRelayException):
    """App access token could not be obtained or was rejected."""
    pass


class TwitchLookupError(TwitchRelayException):
    """A Helix lookup failed."""
    pass


class ChannelNotFoundError(TwitchLookupError):
    pass


class WebhookDeliveryError(TwitchRelayException):
    """Discord webhook could not be resolved or did not accept the message."""
    pass

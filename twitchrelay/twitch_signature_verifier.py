import hashlib
import hmac
import logging
import re
from datetime import datetime
from typing import Mapping, Optional

import pendulum
from pendulum.parsing.exceptions import ParserError

from .constants import (
    DEFAULT_AGE_WARNING,
    HMAC_PREFIX,
    TWITCH_MESSAGE_ID,
    TWITCH_MESSAGE_SIGNATURE,
    TWITCH_MESSAGE_TIMESTAMP,
)

logger = logging.getLogger(__name__)

# Twitch sends nanosecond fractions; datetime keeps microseconds.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_rfc3339(value: str) -> datetime:
    """
    Parse an RFC3339 timestamp as sent by Twitch, e.g. '2019-11-16T10:11:12.634234626Z'.

    Raises:
        ValueError: If the value is not a timestamp
    """
    try:
        parsed = pendulum.parse(_FRACTION_RE.sub(r"\1", value.strip()))
    except (ParserError, ValueError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid timestamp: {value!r}") from e
    if not isinstance(parsed, datetime):
        raise ValueError(f"Not a date and time: {value!r}")
    return parsed


def compute_signature(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of message id + timestamp + raw body."""
    message = message_id.encode("utf-8") + timestamp.encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify(secret: str,
           message_id: Optional[str],
           timestamp: Optional[str],
           body: bytes,
           signature: Optional[str]) -> bool:
    """
    Verify an EventSub signature.

    Args:
        secret: The subscription secret shared with Twitch
        message_id: Value of the message id header
        timestamp: Value of the message timestamp header
        body: The raw, unparsed request body
        signature: Value of the signature header, formatted as 'sha256=<hex>'

    Returns:
        True if the signature matches, False for a mismatch or any missing or malformed input
    """
    if not secret or not message_id or not timestamp or not signature:
        return False
    if not isinstance(body, (bytes, bytearray)):
        return False
    if not signature.startswith(HMAC_PREFIX):
        return False

    try:
        expected = compute_signature(secret, message_id, timestamp, bytes(body))
        received = signature[len(HMAC_PREFIX):].encode("ascii")
    except (UnicodeError, AttributeError) as e:
        logger.warning(f"Malformed signature input: {e}")
        return False

    return hmac.compare_digest(expected.encode("ascii"), received)


def check_message_age(raw_timestamp: Optional[str],
                      threshold_ms: int = DEFAULT_AGE_WARNING,
                      now: Optional[datetime] = None) -> bool:
    """
    Log a warning for messages older than threshold_ms.

    Old messages are not rejected; the check is advisory.

    Returns:
        True if the message was stale
    """
    now = now or pendulum.now("UTC")
    try:
        timestamp = parse_rfc3339(raw_timestamp or "")
    except ValueError:
        logger.warning(f"Received request with unparseable timestamp: {raw_timestamp!r}")
        return False

    age_ms = (now.timestamp() - timestamp.timestamp()) * 1000
    if age_ms > threshold_ms:
        logger.warning(
            f"[{now.isoformat()}] Received request with timestamp older than {threshold_ms} ms: '{raw_timestamp}'"
        )
        return True
    return False


class TwitchSignatureVerifier:
    """
    Verifies signatures on EventSub webhooks from Twitch.

    Twitch signs every message with HMAC-SHA256 keyed with the secret given when
    the subscription was created. The verifier recomputes the signature over the
    message id, timestamp and raw body and compares it in constant time.
    """

    def __init__(self, secret: str, age_warning_ms: int = DEFAULT_AGE_WARNING):
        self.secret = secret
        self.age_warning_ms = age_warning_ms

    def verify_request(self, headers: Mapping[str, str], body: bytes) -> bool:
        """
        Verify the signature of a webhook request.

        Args:
            headers: The request headers
            body: The raw webhook payload bytes

        Returns:
            True if the signature is valid, False otherwise
        """
        valid = verify(
            self.secret,
            headers.get(TWITCH_MESSAGE_ID),
            headers.get(TWITCH_MESSAGE_TIMESTAMP),
            body,
            headers.get(TWITCH_MESSAGE_SIGNATURE),
        )
        if not valid:
            logger.warning(f"Invalid signature for message {headers.get(TWITCH_MESSAGE_ID)!r}")
        return valid

    def check_age(self, headers: Mapping[str, str], now: Optional[datetime] = None) -> bool:
        return check_message_age(headers.get(TWITCH_MESSAGE_TIMESTAMP), self.age_warning_ms, now)

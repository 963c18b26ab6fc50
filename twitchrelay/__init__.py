import logging
import sys

from .config import RelayConfig, load_config
from .twitch_auth_manager import TwitchAuthManager
from .twitch_api import TwitchAPIClient, StreamInfo, fetch_stream_info, merge_stream_info
from .twitch_signature_verifier import TwitchSignatureVerifier, verify
from .twitch_webhook_handler import TwitchWebhookHandler

time_format = "%Y-%m-%d %I:%M.%S %p"

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
stream_handler = logging.StreamHandler(sys.stdout)

formatter = logging.Formatter(fmt='%(asctime)s - %(levelname)s - %(message)s', datefmt=time_format)
stream_handler.setFormatter(formatter)

logger.addHandler(stream_handler)

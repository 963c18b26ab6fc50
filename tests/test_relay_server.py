import logging
import unittest
from unittest.mock import MagicMock, patch

import relay_server
from twitchrelay.config import RelayConfig


class TestRelayServerMain(unittest.TestCase):

    def setUp(self):
        package_logger = logging.getLogger("twitchrelay")
        self.addCleanup(setattr, package_logger, "propagate", package_logger.propagate)
        self.addCleanup(package_logger.setLevel, package_logger.level)

    @patch("sys.argv", ["relay_server.py"])
    @patch("relay_server.load_config", side_effect=ValueError("TWITCH_CLIENT_ID is not set in environment."))
    def test_configuration_error_exits_with_1(self, mock_load):
        with patch("relay_server.TwitchWebhookHandler") as mock_handler:
            self.assertEqual(relay_server.main(), 1)
        mock_handler.assert_not_called()

    @patch("sys.argv", ["relay_server.py", "--env-file", "custom.env", "--log-events"])
    @patch("relay_server.logging.basicConfig")
    def test_starts_server(self, mock_basic_config):
        config = RelayConfig(twitch_client_id="client", twitch_secret="secret", twitch_webhook_secret="secret")
        handler = MagicMock()
        with patch("relay_server.load_config", return_value=config) as mock_load, \
                patch("relay_server.TwitchWebhookHandler", return_value=handler) as mock_handler:
            self.assertEqual(relay_server.main(), 0)

        mock_load.assert_called_once_with(env_file="custom.env")
        mock_handler.assert_called_once_with(config, log_events=True)
        handler.run_server.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()

#!/usr/bin/env python3
"""
Twitch EventSub to Discord relay.

Receives stream.online webhooks from Twitch, verifies them and posts an
announcement to a Discord webhook.

Usage:
    python relay_server.py [--env-file .env]
"""

import argparse
import logging
import sys

from twitchrelay import TwitchWebhookHandler, load_config


def main() -> int:
    parser = argparse.ArgumentParser(description="Relay Twitch stream.online webhooks to Discord")
    parser.add_argument("--env-file", default=None, help="Path to a .env file (defaults to ./.env)")
    parser.add_argument("--log-events", action="store_true", help="Log every received webhook body")
    args = parser.parse_args()

    try:
        config = load_config(env_file=args.env_file)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(level=config.log_level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    # The package logger already writes to stdout
    package_logger = logging.getLogger("twitchrelay")
    package_logger.setLevel(config.log_level)
    package_logger.propagate = False

    handler = TwitchWebhookHandler(config, log_events=args.log_events)
    handler.run_server()
    return 0


if __name__ == "__main__":
    sys.exit(main())

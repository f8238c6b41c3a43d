#!/usr/bin/env python3
"""
Device Upgrade Tool - entry point
Loads config.yaml, connects to the MQTT broker and serves the upgrade dashboard
"""

import argparse
import logging
import sys

from device_upgrade.config import load_config
from device_upgrade.dashboard import Dashboard
from device_upgrade.errors import ConfigError, ConnectError, NotConnectedError, SubscribeError, ValidationError
from device_upgrade.events import EventChannel
from device_upgrade.orchestrator import UpgradeOrchestrator
from device_upgrade.session import MqttSession


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Send firmware upgrade commands to devices over MQTT")
    parser.add_argument('--config', help="Path to config.yaml (default: search the usual locations)")
    parser.add_argument('--host', default='0.0.0.0', help="Dashboard listen address")
    parser.add_argument('--port', type=int, default=5000, help="Dashboard listen port")
    parser.add_argument('--verbose', '-v', action='store_true', help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print("=" * 60)
    print("📦 Device Upgrade Tool")
    print("=" * 60)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    channel = EventChannel()
    session = MqttSession(config, channel, reporter=channel)
    orchestrator = UpgradeOrchestrator(session, config.response_topic, channel, channel)

    try:
        session.connect()
        orchestrator.start()
    except ConnectError as e:
        # Keep serving the dashboard so the operator sees what went wrong
        channel.log(f"Failed to create MQTT client: {e}")
        channel.connection_status(False)
    except (NotConnectedError, SubscribeError, ValidationError) as e:
        # the connection can drop between CONNACK and the subscribe
        channel.log(f"Failed to subscribe to response topic: {e}")

    dashboard = Dashboard(orchestrator, channel)

    print(f"\n🌐 Dashboard server starting on http://{args.host}:{args.port}")
    print("\n⏳ Waiting for connections...\n")

    try:
        dashboard.run(host=args.host, port=args.port)
    except KeyboardInterrupt:
        print("\n\n👋 Shutting down...")
    finally:
        session.disconnect()

    return 0


if __name__ == '__main__':
    sys.exit(main())

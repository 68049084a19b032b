#!/usr/bin/env python3
"""mlsbus — runs one MLS account's channel until SIGINT/SIGTERM."""

import argparse
import logging
import signal
import sys
import threading

from mlsbus.channel import MlsChannel
from mlsbus.config import load_yaml_config, resolve_account
from mlsbus.errors import ConfigError

logger = logging.getLogger(__name__)

METRICS_INTERVAL = 10.0


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tail the MLS relay log and dispatch messages")
    parser.add_argument("--config", default=None,
                        help="Path to YAML config with a channels.mls section")
    parser.add_argument("--account", default=None,
                        help="Account id (default: default)")
    parser.add_argument("--metrics-file", default=None,
                        help="Write counters to this JSON file periodically")
    parser.add_argument("--echo", action="store_true",
                        help="Reply to every inbound message with its own text")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    return parser


def make_dispatcher(echo: bool):
    def dispatch(ctx, deliver):
        logger.info("message %s from %s: %s", ctx.message_sid, ctx.sender_name, ctx.body)
        if echo:
            deliver(ctx.body)
    return dispatch


def main(argv: list[str] | None = None) -> int:
    args = build_cli_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [MLS] %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    account = resolve_account(load_yaml_config(args.config), args.account)
    if not account.enabled:
        logger.info("[%s] MLS channel disabled in config", account.account_id)
        return 0

    channel = MlsChannel(account, make_dispatcher(args.echo))
    try:
        channel.start()
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    policy = channel.security_policy()
    logger.info("[%s] dm policy %s, %d allowed sender(s)",
                account.account_id, policy["policy"], len(policy["allow_from"]))

    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    while not shutdown.wait(METRICS_INTERVAL):
        if args.metrics_file:
            channel.metrics.save(args.metrics_file)

    channel.stop()
    if args.metrics_file:
        channel.metrics.save(args.metrics_file)
    logger.info("Stats: %s", channel.snapshot()["counters"])
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Command-line interface for the user record service."""

from __future__ import annotations
import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Sequence

from userservice.application import build_collaborators
from userservice.config import ServiceConfig, config_from_env, load_config

logger = logging.getLogger("userservice.main")

_KNOWN_COMMANDS = {"serve", "init-db", "consume"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (default: USERSERVICE_CONFIG or config/service.yaml)",
    )

    parser = argparse.ArgumentParser(description="User record service utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve", config=None)

    subparsers.add_parser("init-db", parents=[common], help="Initialise the record database")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the HTTP API (default: 8080)",
    )

    consume_parser = subparsers.add_parser("consume", parents=[common], help="Log events published by the service")
    consume_parser.add_argument(
        "--topic",
        default=None,
        help="Channel to subscribe to (default: configured event topic)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in _KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _load_config(config_path: str | None) -> ServiceConfig:
    if config_path:
        return config_from_env(base=load_config(Path(config_path).expanduser()))
    return config_from_env()


def _serve(config: ServiceConfig, *, host: str, port: int) -> None:
    from userservice.service import create_app
    import uvicorn

    logger.info("Starting user record service on http://%s:%s", host, port)
    app = create_app(config=config)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _initialise_database(config: ServiceConfig) -> None:
    collaborators = build_collaborators(config)
    collaborators.close()
    print(f"Database initialisation complete: {config.database_path}")


def _consume(config: ServiceConfig, *, topic: str | None) -> None:
    import redis

    from userservice.consumer import EventConsumer

    stop = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, terminating consumer", signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    client = redis.Redis.from_url(config.redis_url, decode_responses=True)
    consumer = EventConsumer(client, topic=topic or config.event_topic)
    print("Consumer has started. Waiting for events.")
    try:
        consumer.run(stop)
    finally:
        client.close()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    config = _load_config(args.config)

    if args.command == "serve":
        _serve(config, host=getattr(args, "host", "0.0.0.0"), port=getattr(args, "port", 8080))
    elif args.command == "init-db":
        _initialise_database(config)
    elif args.command == "consume":
        _consume(config, topic=getattr(args, "topic", None))


if __name__ == "__main__":
    main()

"""Entry point for the revbot webhook relay."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from revbot.config import load_config
from revbot.webhook import create_app

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="revbot",
        description="Relay GitLab merge request events to reviewers on Webex.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default=None,
        help="Path to config YAML (default: ~/.config/revbot/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Address to bind (overrides server.host)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind (overrides server.port)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        level=getattr(logging, args.log_level),
    )

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        logger.error("Config file not found: %s", exc)
        sys.exit(1)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logger.info("Configuration loaded successfully")

    host = args.host or config.server.host
    port = args.port or config.server.port

    app = create_app(config)

    logger.info("Starting revbot on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower(), log_config=None)


if __name__ == "__main__":
    main()

"""Command line entry point serving the relay over HTTP."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from .app import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tello-relay",
        description="Relay a Tello video stream and command channel to web clients.",
    )
    parser.add_argument("--config", help="Path to a JSON settings file")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind (default: %(default)s)")
    parser.add_argument("--port", type=int, default=3001, help="Port to bind (default: %(default)s)")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging verbosity (default: %(default)s)",
    )
    return parser


def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)

    import uvicorn

    try:
        app = create_app(args.config)
    except ValueError as exc:
        logging.getLogger(__name__).error("Invalid configuration: %s", exc)
        return 2
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m tello_relay` and the console script."""

    return run(argv)


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())

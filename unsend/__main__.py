"""Run the relay: ``python -m unsend [--host H] [--port P]``."""

import argparse
import logging

import uvicorn

from unsend.app import create_app
from unsend.config import get_settings
from unsend.logging_config import setup_logging

logger = logging.getLogger(__name__)


def main(argv=None) -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Two-party relay with recallable messages and files")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    config = uvicorn.Config(create_app(settings), host=args.host, port=args.port, log_level=args.log_level.lower())
    # Configure after uvicorn has installed its own loggers.
    config.load()
    setup_logging(args.log_level)
    logger.info("Starting unsend on http://%s:%d", args.host, args.port)
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()

import argparse
import logging

import uvicorn

from .app import create_app
from .config import Settings, load_settings


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))

    logger = logging.getLogger("frontdoor")
    logger.handlers[:] = [handler]
    logger.setLevel(level.upper())
    logger.propagate = False


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="frontdoor",
        description="Serve static files and reverse-proxy matching requests to upstreams.",
    )
    parser.add_argument("-c", "--config", help="JSON config file (default: $FRONTDOOR_CONFIG)")
    parser.add_argument("--host", help="listen address")
    parser.add_argument("-p", "--port", type=int, help="listen port")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = load_settings(args.config)

    overrides = {k: v for k, v in (("host", args.host), ("port", args.port), ("log_level", args.log_level))
                 if v is not None}
    if overrides:
        settings = Settings.model_validate({**settings.model_dump(), **overrides})

    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()

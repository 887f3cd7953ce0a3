import argparse
import logging
from aiohttp import web
from .app import create_app
from .settings import load_proxy_config


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="hero_proxy", description="Bandwidth-saving image proxy")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--config", default=None, help="path to a proxy_config.yaml")
    args = parser.parse_args(argv)

    config = load_proxy_config(args.config)
    configure_logging(config.log_level)

    # Client disconnects cancel the handler, which releases the origin and codec work
    web.run_app(
        create_app(config),
        host=args.host,
        port=args.port,
        handler_cancellation=True,
        access_log=None,
    )


if __name__ == "__main__":
    main()

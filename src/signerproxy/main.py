"""Main entry point - runs the signing gateway API."""

import argparse
import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from pydantic import ValidationError

from signerproxy import __version__
from signerproxy.api.app import create_app
from signerproxy.config import BACKENDS, Settings, get_settings
from signerproxy.errors import ConfigError

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    log_level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="signer-proxy",
        description="JSON-RPC signing gateway for keys held in an HSM or KMS",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--backend", choices=BACKENDS, help="Override SIGNER_BACKEND")
    parser.add_argument("--host", help="Override API_HOST")
    parser.add_argument("--port", type=int, help="Override API_PORT")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command-line overrides applied."""
    overrides = {}
    if args.backend:
        overrides["signer_backend"] = args.backend
    if args.host:
        overrides["api_host"] = args.host
    if args.port:
        overrides["api_port"] = args.port
    try:
        settings = get_settings()
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ConfigError(f"invalid environment value for {fields.upper() or 'settings'}")
    return settings.model_copy(update=overrides) if overrides else settings


async def serve(settings: Settings) -> None:
    """Run the API server until interrupted."""
    app = create_app(settings)
    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if settings.debug else "info",
    )
    server = uvicorn.Server(config)
    logger.info(f"Starting signer proxy on {settings.api_host}:{settings.api_port}")
    await server.serve()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ConfigError as e:
        logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        logger.error(f"Invalid configuration: {e}")
        return 2
    configure_logging(settings)

    try:
        asyncio.run(serve(settings))
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""CLI to run the catcache proxy server."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import NoReturn, Optional, Sequence

import structlog
import uvicorn
from pydantic import ValidationError

from ..cache_proxy.app import create_app
from ..common.observability import SERVICE_NAME, configure_logging
from ..common.settings import CacheProxySettings


LOGGER = structlog.get_logger("catcache.cli")

_MISSING_OPTION_MESSAGES = (
    ("--host", "please specify server host"),
    ("--port", "please specify server port"),
)


class ServeArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        if "required" in message:
            for flag, friendly in _MISSING_OPTION_MESSAGES:
                if flag in message:
                    self.exit(2, f"{friendly}\n")
        super().error(message)


def build_parser() -> ServeArgumentParser:
    # -h is the host flag, so help lives on --help only
    parser = ServeArgumentParser(description="Run the catcache read-through proxy", add_help=False)
    parser.add_argument("-h", "--host", required=True, help="Address to listen on")
    parser.add_argument("-p", "--port", required=True, type=int, help="Port to listen on")
    parser.add_argument("-c", "--cache", required=True, type=Path, help="Cache directory")
    parser.add_argument("--help", action="help", help="Show this message and exit")
    return parser


def ensure_cache_dir(path: Path) -> Path:
    resolved = path.expanduser().resolve()
    if not resolved.is_dir():
        resolved.mkdir(parents=True, exist_ok=True)
        LOGGER.info("cache_directory_created", path=str(resolved))
    return resolved


def build_settings(args: argparse.Namespace) -> CacheProxySettings:
    return CacheProxySettings(host=args.host, port=args.port, storage_path=args.cache)


async def serve(settings: CacheProxySettings) -> None:
    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    serve_task = asyncio.create_task(server.serve())
    while not server.started and not serve_task.done():
        await asyncio.sleep(0.05)
    if server.started:
        LOGGER.info("server_listening", url=f"http://{settings.host}:{settings.port}")
    await serve_task


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = build_settings(args)
    except ValidationError as exc:
        parser.error(str(exc))
    configure_logging(SERVICE_NAME, settings.log_level)
    ensure_cache_dir(settings.storage_path)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()

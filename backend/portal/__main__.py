import argparse

import uvicorn

from portal import __version__
from portal.config import get_settings
from portal.logging_setup import setup_logging


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Profile portal web server")
    parser.add_argument("--version", action="store_true", help="display version and exit")
    parser.add_argument("--host", default=None, help="bind address (default: HTTP_HOST)")
    parser.add_argument("--port", type=int, default=None, help="bind port (default: HTTP_PORT)")
    args = parser.parse_args(argv)

    if args.version:
        print(f"version: {__version__}")
        return

    settings = get_settings()
    setup_logging(settings.log_level)

    uvicorn.run(
        "portal.main:create_app",
        factory=True,
        host=args.host or settings.http_host,
        port=args.port or settings.http_port,
        log_config=None,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()

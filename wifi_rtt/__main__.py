import argparse
import logging

import uvicorn

from .app import create_app
from .config import load_settings


def main() -> None:
    parser = argparse.ArgumentParser(prog="wifi-rtt", description="Wi-Fi RTT ranging radar")
    parser.add_argument("-c", "--config", help="settings file (TOML or JSON)")
    args = parser.parse_args()

    settings = load_settings(args.config)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()

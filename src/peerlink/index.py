## Main Execution Script
from peerlink.controllers import main_websocket_task
from peerlink.tools.config import load_config
from peerlink.tools.logger import *
import argparse
import asyncio
from time import sleep


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="peerlink RTC client")
    parser.add_argument(
        "-s",
        "--server",
        default=None,
        help="Signaling server URL (overrides PEERLINK_SERVER_URL)",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Set the logging level (use -l or --log-level)",
    )
    parser.add_argument(
        "-r",
        "--room",
        action="append",
        default=None,
        help="Room to join after authentication; may be repeated",
    )
    parser.add_argument(
        "-u",
        "--username",
        default=None,
        help="Username to authenticate with",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config = load_config(
        server_url=args.server,
        log_level=args.log_level,
        rooms=args.room,
        username=args.username,
    )

    set_log_level(config.log_level)
    if config.log_dir:
        configure_file_logging(config.log_dir)

    while True:
        try:
            log_info(f"Attempting to connect to server at {config.server_url}...")
            asyncio.run(main_websocket_task(config))
        except KeyboardInterrupt:
            log_warning("Keyboard interrupt received. Closing connection and exiting.")
            break
        except Exception as e:
            log_error(f"Error on websocket interface: {e}")
        log_warning("Reconnecting in 1 second...")
        sleep(1)


if __name__ == "__main__":
    main()

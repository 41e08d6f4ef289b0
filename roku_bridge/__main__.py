import argparse
import logging
import sys
from typing import List, Optional

from .config import ConfigStore
from .ecp_client import EcpClient
from .session import BridgeSession
from .stream import descriptor_from_url


def setup_logging(verbose: bool = False):
    """Configure logging for the application."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler('roku_bridge.log')
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roku-bridge",
        description="Discover Roku devices and send streams to them",
    )
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--scan-workers", type=int,
                        help="Parallel probes during the fallback IP scan")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("discover", help="List Roku devices on the network")

    info = commands.add_parser("info", help="Show device-info of a Roku")
    info.add_argument("address")

    send = commands.add_parser("send", help="Play a stream URL on a Roku")
    send.add_argument("url")
    send.add_argument("--device", help="Roku IP address; discovered if omitted")
    send.add_argument("--title")
    send.add_argument("--format", dest="fmt")
    send.add_argument("--app-id")
    send.add_argument("--poll", action="store_true",
                      help="Poll the active app instead of a fixed settle delay")
    return parser


def run(args: argparse.Namespace, session: BridgeSession) -> int:
    if args.command == "discover":
        devices = session.refresh()
        for device in devices:
            print(f"{device.display_name}\t{device.base_url}")
        return 0 if devices else 1

    if args.command == "info":
        device = session.add_manual_device(args.address)
        if device is None:
            print(session.status)
            return 1
        info = session.client.query_device_info(device)
        if info is None:
            print(f"No Roku found at {device.address}")
            return 1
        for tag, value in info.items():
            print(f"{tag}: {value}")
        return 0

    if args.command == "send":
        if args.device:
            if session.add_manual_device(args.device) is None:
                print(session.status)
                return 1
        else:
            devices = session.refresh()
            if not devices:
                print(session.status)
                return 1
            session.select_device(devices[0])

        descriptor = descriptor_from_url(args.url, title=args.title, fmt=args.fmt)
        success = session.send(descriptor, app_id=args.app_id)
        print(session.status)
        return 0 if success else 1

    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    config = ConfigStore(args.config).load()
    if args.scan_workers:
        config.scan_workers = args.scan_workers
    if getattr(args, "poll", False):
        config.poll_active_app = True

    client = EcpClient(config)
    session = BridgeSession(client=client)
    try:
        logger.info("Starting Roku Bridge")
        return run(args, session)
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)
        return 1
    finally:
        session.engine.close()
        client.close()


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""ESPEasy Provisioner command line."""

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from espeasy_provisioner.core.config import Settings, get_settings
from espeasy_provisioner.core.errors import ErrorReport
from espeasy_provisioner.core.flow import ProvisioningFlow
from espeasy_provisioner.core.network_manager import NmcliWiFiBackend
from espeasy_provisioner.core.state import AddressState, DeviceEndpoint
from espeasy_provisioner.core.transfer import FileTransferClient

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False, log_dir: Path | None = None):
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
    ]

    # Add file handler if we have write permissions
    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_dir / "espeasy-provisioner.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=3,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter(log_format))
            handlers.append(file_handler)
        except (PermissionError, OSError) as e:
            print(f"Warning: Could not create log file: {e}", file=sys.stderr)

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True,
    )


def _report_failure(report: ErrorReport) -> int:
    logger.error(f"{report.category.value}: {report.message}")
    print(f"Error: {report.message}", file=sys.stderr)
    return 1


def _on_tick(tick: int, remaining: int) -> None:
    logger.info(f"Waiting for device to join network... {remaining}s left")


async def provision(settings: Settings, ssid: str, password: str) -> int:
    flow = ProvisioningFlow(NmcliWiFiBackend(), settings=settings)
    flow.on_tick(_on_tick)

    result = await flow.run(ssid, password)
    if not result.success:
        return _report_failure(result.error)

    print(result.address)
    return 0


async def upload(settings: Settings, path: Path) -> int:
    client = FileTransferClient(AddressState(DeviceEndpoint.from_settings(settings)), settings)
    report = await client.upload_file(path)
    if report is not None:
        return _report_failure(report)

    print(f"Uploaded {path.name}")
    return 0


async def status(settings: Settings) -> int:
    client = FileTransferClient(AddressState(DeviceEndpoint.from_settings(settings)), settings)
    data, report = await client.query_status()
    if report is not None:
        return _report_failure(report)

    print(json.dumps(data, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ESPEasy device provisioning")
    parser.add_argument("--address", type=str, help="Device address (default: 192.168.4.1)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    provision_parser = commands.add_parser(
        "provision", help="Join the device Access Point and send WiFi credentials"
    )
    provision_parser.add_argument("--ssid", required=True, help="Target network SSID")
    provision_parser.add_argument("--password", default="", help="Target network password")

    for name, file_name in (
        ("upload-config", "config.dat"),
        ("upload-rules", "rules1.txt"),
        ("upload-firmware", "firmware.bin"),
    ):
        upload_parser = commands.add_parser(name, help=f"Upload {file_name} to the device")
        upload_parser.add_argument("file", type=Path, help=f"Local file, named {file_name}")
        upload_parser.set_defaults(expected_name=file_name)

    commands.add_parser("status", help="Print the device JSON status")
    return parser


async def run(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "provision":
        return await provision(settings, args.ssid, args.password)
    if args.command == "status":
        return await status(settings)

    if args.file.name != args.expected_name:
        print(f"Error: {args.command} expects a file named {args.expected_name}", file=sys.stderr)
        return 2
    return await upload(settings, args.file)


def main():
    parser = build_parser()
    args = parser.parse_args()
    settings = get_settings()

    if args.debug:
        settings.debug = True
    if args.address:
        settings.device_address = args.address

    setup_logging(debug=settings.debug, log_dir=settings.log_dir)

    try:
        exit_code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

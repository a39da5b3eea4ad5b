from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from .monitor import TemperatureMonitor, run
from .spp_receiver import DEFAULT_BAUDRATE, MOCK_ADDRESS_PREFIX

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="esp32-spp-thermometer",
        description="Receive 'temperature,voltage' records from an ESP32 over Bluetooth SPP "
        "and show them on a live dashboard, or print them to standard output.",
    )
    parser.add_argument(
        "--address",
        help="Device to connect to on startup: serial port of the paired SPP device "
        "(e.g. /dev/rfcomm0, COM7) or a BLE address with --ble",
    )
    parser.add_argument(
        "--baudrate",
        type=int,
        default=DEFAULT_BAUDRATE,
        help=f"Serial baud rate (default: {DEFAULT_BAUDRATE})",
    )
    parser.add_argument(
        "--ble",
        action="store_true",
        help="Also scan for and connect to BLE devices streaming over Nordic UART",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=5.0,
        help="BLE scan duration in seconds",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=15.0,
        help="BLE connection timeout in seconds",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Dashboard server interface (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="Dashboard server port (default: 8050)",
    )
    parser.add_argument(
        "--update-rate",
        type=int,
        default=2,
        help="Dashboard refresh rate in frames per second (default: 2)",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Offer a simulated ESP32 device (no Bluetooth hardware required)",
    )
    parser.add_argument(
        "--console",
        action="store_true",
        help="Console mode: print each status line to standard output",
    )
    return parser


def configure_logging(log_level: str, log_file: Optional[str] = None) -> None:
    # Console mode writes data to stdout, so logs go to stderr or a file
    level = getattr(logging, str(log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    address = args.address
    if args.mock and address is None:
        address = f"{MOCK_ADDRESS_PREFIX}esp32"

    if args.console:
        if address is None:
            logger.error("❌ --console requires --address (or --mock)")
            raise SystemExit(2)
        code = run(
            address,
            baudrate=args.baudrate,
            enable_ble=args.ble,
            mock=args.mock,
            scan_timeout=args.scan_timeout,
            connect_timeout=args.connect_timeout,
        )
        raise SystemExit(code)

    # Default: dashboard mode
    from .dashboard import create_app

    logger.info("🔧 ESP32 SPP Thermometer - Dashboard")
    logger.info("=" * 50)
    logger.info(f"🔍 Open http://{args.host}:{args.port} in your browser")
    logger.info("💡 Pair the ESP32 in your OS Bluetooth settings before scanning")
    logger.info("=" * 50)

    monitor = TemperatureMonitor(
        enable_ble=args.ble,
        enable_mock=args.mock,
        baudrate=args.baudrate,
        scan_timeout=args.scan_timeout,
        connect_timeout=args.connect_timeout,
    )
    if not monitor.initialize():
        logger.error("❌ No Bluetooth transport available; the dashboard will be read-only")

    monitor.scan()
    if address:
        monitor.connect(address)

    try:
        app = create_app(monitor, update_rate=args.update_rate)
        app.run(host=args.host, port=args.port)
    except KeyboardInterrupt:
        logger.info("🛑 Shutting down dashboard...")
    except Exception as e:
        logger.error(f"❌ Failed to start dashboard: {e}")
        raise SystemExit(1)
    finally:
        monitor.shutdown()
        logger.info("🏁 Dashboard stopped")

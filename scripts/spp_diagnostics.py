#!/usr/bin/env python3
"""
Bluetooth SPP connection diagnostics and troubleshooting tool.
"""

import argparse
import logging
import os
import platform
import subprocess
import sys
import time

# Add the package to the path (from scripts/ to src/)
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from esp32_spp_thermometer.spp_receiver import (  # noqa: E402
    DEFAULT_BAUDRATE,
    DeviceInfo,
    RawText,
    TransportError,
    create_transport,
    infer_device_kind,
    list_serial_devices,
    parse_chunk,
    scan_ble_devices,
)

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

SPP_PORT_HINTS = ("rfcomm", "bluetooth", "spp", "esp32")


def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and powered."""
    logger.info("🔵 Checking Bluetooth status...")

    system = platform.system().lower()
    if system == "darwin":
        command, marker = ["system_profiler", "SPBluetoothDataType"], "State: On"
    elif system == "linux":
        command, marker = ["bluetoothctl", "show"], "Powered: yes"
    else:
        logger.warning(f"⚠️ Bluetooth status check not implemented for {system}")
        return True

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"⚠️ Could not check Bluetooth status on {system}: {e}")
        return True

    if marker in result.stdout:
        logger.info("✅ Bluetooth is powered on")
        return True
    logger.error("❌ Bluetooth appears to be powered off")
    return False


def list_ports() -> list[DeviceInfo]:
    """List serial ports and flag the ones likely bound to an SPP device."""
    logger.info("📡 Listing serial ports...")
    devices = list_serial_devices()
    if not devices:
        logger.error("❌ No serial ports found")
        logger.info("💡 Troubleshooting:")
        logger.info("   - Pair the ESP32 in your OS Bluetooth settings")
        logger.info("   - Linux: bind it with 'sudo rfcomm bind 0 <MAC> 1'")
        logger.info("   - Windows: check 'More Bluetooth options' > COM Ports")
        return devices

    for device in devices:
        logger.info(f"   📱 {device.label}")
        text = f"{device.name or ''} {device.address}".lower()
        if any(hint in text for hint in SPP_PORT_HINTS):
            logger.info("      🎯 Looks like a Bluetooth serial port")
    return devices


def scan_ble(duration: float) -> None:
    logger.info(f"📡 Scanning for BLE devices for {duration}s...")
    try:
        devices = scan_ble_devices(duration)
    except TransportError as e:
        logger.error(f"❌ Error during BLE scan: {e}")
        return
    logger.info(f"✅ Found {len(devices)} BLE device(s)")
    for device in devices:
        logger.info(f"   📱 {device.label}")


def test_connection(address: str, baudrate: int, chunks: int = 5) -> bool:
    """Connect to a device and parse a few chunks."""
    logger.info(f"\n🔌 Testing connection to {address}...")
    device = DeviceInfo(name=None, address=address, kind=infer_device_kind(address))
    transport = create_transport(device, baudrate=baudrate)

    try:
        transport.open()
    except TransportError as e:
        logger.error(f"❌ Connection test failed: {e}")
        return False

    try:
        logger.info("✅ Connected, waiting for data...")
        start = time.time()
        for count in range(1, chunks + 1):
            data = transport.read()
            if not data:
                logger.warning("⚠️ Stream ended")
                return False
            result = parse_chunk(data.decode("utf-8", errors="replace"))
            if isinstance(result, RawText):
                logger.warning(f"⚠️ Chunk {count}: unparsed {result.text!r}")
            else:
                logger.info(f"📈 Chunk {count}: {result.format_status()}")
        logger.info(f"✅ Received {chunks} chunks in {time.time() - start:.1f}s")
        return True
    except TransportError as e:
        logger.error(f"❌ Error receiving data: {e}")
        return False
    finally:
        transport.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="ESP32 SPP diagnostics")
    parser.add_argument("--address", help="Serial port or BLE address to test")
    parser.add_argument("--baudrate", type=int, default=DEFAULT_BAUDRATE)
    parser.add_argument("--ble", action="store_true", help="Also scan for BLE devices")
    parser.add_argument("--scan-timeout", type=float, default=10.0)
    args = parser.parse_args()

    logger.info("🔧 ESP32 SPP Thermometer Diagnostics")
    logger.info("=" * 40)

    if not check_bluetooth_status():
        logger.error("\n❌ Bluetooth issues detected. Please enable Bluetooth and try again.")
        sys.exit(1)

    list_ports()
    if args.ble:
        scan_ble(args.scan_timeout)
    if args.address:
        test_connection(args.address, args.baudrate)

    logger.info("\n🏁 Diagnostics complete")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("\n👋 Diagnostics cancelled by user")

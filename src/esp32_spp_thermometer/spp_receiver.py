"""Serial (SPP) temperature receiver for ESP32 sensor boards.

This module contains everything between the radio and the observable state:
the record parser, the rolling sample history, the transports that deliver raw
byte chunks, and device discovery.

The ESP32 firmware writes ``"<temperature>,<voltage>"`` text records to a
Bluetooth Serial Port Profile (SPP) link. Once the board is paired with the
host, the operating system exposes the link as a serial port (``/dev/rfcomm0``
on Linux, ``COMn`` on Windows, ``/dev/cu.*`` on macOS) and :class:`SerialTransport`
reads from it. Boards running BLE firmware stream the same text over the Nordic
UART Service and are read by :class:`BleUartTransport`.

Core Features:
- **Chunk parsing**: Each read result is parsed on its own, without line framing
- **Rolling history**: Fixed-size FIFO of the most recent temperature samples
- **Pluggable transports**: Serial port, BLE UART and mock transports share one
  blocking ``read()`` interface
- **Device discovery**: Serial port enumeration and optional BLE scanning

Requirements:
- pyserial: Serial port access and port enumeration
- bleak: Cross-platform BLE library for the BLE UART transport
"""

from __future__ import annotations

import asyncio
import logging
import math
import queue
import random
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Optional, Union

import serial  # type: ignore
from serial.tools import list_ports  # type: ignore
from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError


# Standard UUID for SPP (Serial Port Profile) devices
SPP_UUID = "00001101-0000-1000-8000-00805f9b34fb"

# Nordic UART Service (NUS) UUID constants
NUS_SERVICE = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_CHAR = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # Notify (device to client)
NUS_RX_CHAR = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # Write (client to device, unused)

DEFAULT_BAUDRATE = 115200
READ_CHUNK_SIZE = 1024
MAX_HISTORY = 20

MOCK_ADDRESS_PREFIX = "mock://"

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Base class for errors raised by transports and device discovery."""


class TransportUnavailableError(TransportError):
    """The radio or serial subsystem behind a transport is not usable."""


class ConnectionFailedError(TransportError):
    """Opening the connection to a device failed."""


class TransportReadError(TransportError):
    """An I/O error occurred while reading from an open transport."""


def now_millis() -> int:
    """Return the wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TemperatureSample:
    """One temperature point of the rolling history.

    Attributes:
        value: Temperature in degrees Celsius.
        timestamp: Reception time in milliseconds since the epoch.
    """

    value: float
    timestamp: int


@dataclass(frozen=True)
class RawText:
    """A chunk that could not be parsed, kept for verbatim display."""

    text: str


def _parse_finite(field: str) -> float:
    # float() also takes "nan", "inf" and "1_000"; the firmware prints "nan" on
    # a failed sensor read
    if "_" in field:
        raise ValueError(f"Invalid number: '{field}'")
    value = float(field)
    if not math.isfinite(value):
        raise ValueError(f"Non-finite number: '{field}'")
    return value


@dataclass(frozen=True)
class TemperatureReading:
    """A parsed ``temperature,voltage`` record.

    Only the temperature ends up in the history; the voltage is shown in the
    status line and then discarded.
    """

    temperature: float
    voltage: float
    timestamp: int

    @staticmethod
    def parse_csv(line: str, timestamp: Optional[int] = None) -> "TemperatureReading":
        """Parse a ``"<temperature>,<voltage>"`` record.

        Args:
            line: Record text. Surrounding whitespace is ignored.
            timestamp: Reception time in epoch milliseconds. Defaults to now.

        Returns:
            TemperatureReading: The parsed record.

        Raises:
            ValueError: If the record does not have exactly 2 comma-separated
                fields, or if either field is not a finite decimal number.
        """
        parts = line.strip().split(",")
        if len(parts) != 2:
            raise ValueError(f"Unexpected CSV fields count: {len(parts)} in '{line}'")

        temperature = _parse_finite(parts[0])
        voltage = _parse_finite(parts[1])
        return TemperatureReading(
            temperature=temperature,
            voltage=voltage,
            timestamp=now_millis() if timestamp is None else timestamp,
        )

    def to_sample(self) -> TemperatureSample:
        return TemperatureSample(value=self.temperature, timestamp=self.timestamp)

    def format_status(self) -> str:
        return f"Temperature: {self.temperature}°C | Voltage: {self.voltage} V"


ParseResult = Union[TemperatureReading, RawText]


def parse_chunk(chunk: str, clock: Callable[[], int] = now_millis) -> ParseResult:
    """Parse one received chunk into a reading, falling back to raw text.

    A chunk is whatever a single transport read returned. It may hold a partial
    record or several concatenated records; such chunks are not split or
    buffered, they simply fail to parse and are reported as raw text.

    Args:
        chunk: Decoded chunk text.
        clock: Source of the sample timestamp in epoch milliseconds.

    Returns:
        TemperatureReading if the chunk is exactly one ``<float>,<float>``
        record, otherwise RawText holding the trimmed chunk.
    """
    text = chunk.strip()
    try:
        return TemperatureReading.parse_csv(text, timestamp=clock())
    except ValueError as ex:
        logger.debug("Chunk kept as raw text: %r (%s)", text, ex)
        return RawText(text)


class SampleHistory:
    """Thread-safe rolling buffer of the most recent temperature samples.

    Appending to a full history evicts the oldest sample. Readers only ever get
    tuple snapshots, never the live deque.
    """

    def __init__(self, max_size: int = MAX_HISTORY):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._buffer: deque[TemperatureSample] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def append(self, sample: TemperatureSample) -> tuple[TemperatureSample, ...]:
        """Append a sample and return the resulting snapshot."""
        with self._lock:
            self._buffer.append(sample)
            return tuple(self._buffer)

    def snapshot(self) -> tuple[TemperatureSample, ...]:
        with self._lock:
            return tuple(self._buffer)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


@dataclass(frozen=True)
class DeviceInfo:
    """A device that can be passed to ``connect()``.

    Attributes:
        name: Human readable name, if the platform reports one.
        address: Serial port path, BLE address or mock URL.
        kind: Transport family: ``"serial"``, ``"ble"`` or ``"mock"``.
    """

    name: Optional[str]
    address: str
    kind: str = "serial"

    @property
    def label(self) -> str:
        return f"{self.name or 'Unknown device'} ({self.address})"


class Transport(ABC):
    """Abstract byte stream delivered by a connected device.

    Implementations must make ``read()`` return ``b""`` (end of stream) or raise
    :class:`TransportReadError` promptly when ``close()`` is called from another
    thread, since closing is the only way to cancel a blocked read.
    """

    @abstractmethod
    def open(self) -> None:
        """Connect to the device.

        Raises:
            ConnectionFailedError: If the connection cannot be established.
        """

    @abstractmethod
    def read(self, size: int = READ_CHUNK_SIZE) -> bytes:
        """Block until data is available and return up to ``size`` bytes.

        Returns:
            The received chunk, or ``b""`` once the stream has ended.

        Raises:
            TransportReadError: On I/O errors.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the connection. Idempotent and safe from any thread."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @property
    def description(self) -> str:
        return type(self).__name__


class SerialTransport(Transport):
    """Transport over the serial port bound to a paired SPP device."""

    def __init__(self, port: str, baudrate: int = DEFAULT_BAUDRATE) -> None:
        self._port = port
        self._baudrate = baudrate
        self._serial: Optional[serial.Serial] = None
        self._lock = threading.Lock()

    def open(self) -> None:
        logger.info("Opening serial port: %s (%d baud)", self._port, self._baudrate)
        try:
            # timeout=None: reads block until data arrives or the port is closed
            port = serial.Serial(self._port, self._baudrate, timeout=None)
        except (serial.SerialException, OSError, ValueError) as e:
            raise ConnectionFailedError(
                f"Could not open serial port {self._port}: {e}"
            ) from e
        with self._lock:
            self._serial = port
        logger.info("Serial port opened: %s", self._port)

    def read(self, size: int = READ_CHUNK_SIZE) -> bytes:
        port = self._serial
        if port is None or not port.is_open:
            return b""
        try:
            data = port.read(1)
            if not data:
                # cancel_read() or close() from another thread
                return b""
            waiting = port.in_waiting
            if waiting:
                data += port.read(min(waiting, size - 1))
            return data
        except (serial.SerialException, OSError, TypeError, AttributeError) as e:
            if not port.is_open:
                return b""
            raise TransportReadError(f"Serial read failed on {self._port}: {e}") from e

    def close(self) -> None:
        with self._lock:
            port, self._serial = self._serial, None
        if port is None:
            return
        try:
            if hasattr(port, "cancel_read"):
                port.cancel_read()
            port.close()
            logger.info("Serial port closed: %s", self._port)
        except (serial.SerialException, OSError) as e:
            logger.warning("Error closing serial port %s: %s", self._port, e)

    @property
    def is_open(self) -> bool:
        port = self._serial
        return port is not None and port.is_open

    @property
    def description(self) -> str:
        return f"Serial {self._port}"


class BleUartTransport(Transport):
    """Transport over the Nordic UART Service of a BLE device.

    Bleak is asyncio-based while the ingestor reads with blocking calls, so the
    transport runs a private event loop on a background thread. Notifications
    are queued as they arrive and handed out one per ``read()``, which keeps the
    "one chunk per read" behaviour of the serial transport. A ``None`` sentinel
    in the queue marks the end of the stream.
    """

    def __init__(
        self,
        address: str,
        *,
        tx_char_uuid: str = NUS_TX_CHAR,
        connect_timeout: float = 15.0,
    ) -> None:
        self._address = address
        self._tx_char_uuid = tx_char_uuid
        self._connect_timeout = connect_timeout
        self._queue: queue.Queue[Optional[bytes]] = queue.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._client: Optional[BleakClient] = None
        self._closed = threading.Event()

    def _run_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def _on_disconnect(self, _: BleakClient) -> None:
        logger.warning("BLE connection lost (callback): %s", self._address)
        self._queue.put_nowait(None)

    def _on_notify(self, _: object, data: bytearray) -> None:
        logger.debug("Notification received: %d bytes", len(data))
        self._queue.put_nowait(bytes(data))

    async def _connect(self) -> None:
        client = BleakClient(self._address, disconnected_callback=self._on_disconnect)
        await client.connect()
        self._client = client
        logger.info("Starting notification subscription: char=%s", self._tx_char_uuid)
        await client.start_notify(self._tx_char_uuid, self._on_notify)

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if client.is_connected:
                await client.stop_notify(self._tx_char_uuid)
        except BleakError as e:
            logger.debug("stop_notify failed: %s", e)
        await client.disconnect()

    def open(self) -> None:
        logger.info("BLE connection starting: %s", self._address)
        self._closed.clear()
        loop = asyncio.new_event_loop()
        self._loop = loop
        self._thread = threading.Thread(
            target=self._run_loop, args=(loop,), name="ble-uart-loop", daemon=True
        )
        self._thread.start()

        future = asyncio.run_coroutine_threadsafe(self._connect(), loop)
        try:
            future.result(timeout=self._connect_timeout)
        except (BleakError, OSError, asyncio.TimeoutError, FutureTimeoutError) as e:
            future.cancel()
            self.close()
            raise ConnectionFailedError(
                f"BLE connection to {self._address} failed: {type(e).__name__}: {e}"
            ) from e
        logger.info("BLE connection established: %s", self._address)

    def read(self, size: int = READ_CHUNK_SIZE) -> bytes:
        if self._closed.is_set():
            return b""
        data = self._queue.get()
        if data is None:
            # Keep the sentinel for any later read
            self._queue.put_nowait(None)
            return b""
        return data[:size]

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put_nowait(None)

        loop, thread = self._loop, self._thread
        self._loop = None
        self._thread = None
        if loop is None or loop.is_closed():
            return
        try:
            asyncio.run_coroutine_threadsafe(self._disconnect(), loop).result(
                timeout=5.0
            )
        except (BleakError, OSError, FutureTimeoutError) as e:
            logger.warning("Error disconnecting BLE device %s: %s", self._address, e)
        finally:
            loop.call_soon_threadsafe(loop.stop)
            if thread is not None:
                thread.join(timeout=5.0)
        logger.info("BLE connection closed: %s", self._address)

    @property
    def is_open(self) -> bool:
        client = self._client
        return (
            not self._closed.is_set() and client is not None and client.is_connected
        )

    @property
    def description(self) -> str:
        return f"BLE {self._address}"


class MockTransport(Transport):
    """Synthetic ESP32 stream for demos and development without hardware.

    Produces ``"<temperature>,<voltage>"`` chunks at a fixed interval, with a
    slow sinusoidal temperature drift around room temperature plus noise. About
    5% of chunks are garbled to exercise the raw-text fallback.
    """

    def __init__(
        self,
        update_interval: float = 1.0,
        garble_rate: float = 0.05,
        seed: Optional[int] = None,
    ) -> None:
        self._update_interval = update_interval
        self._garble_rate = garble_rate
        self._random = random.Random(seed)
        self._closed = threading.Event()
        self._opened = False
        self._start_time = time.time()

    def open(self) -> None:
        self._closed.clear()
        self._opened = True
        self._start_time = time.time()
        logger.info("🔧 Mock transport opened (interval=%.2fs)", self._update_interval)

    def _next_chunk(self) -> bytes:
        elapsed = time.time() - self._start_time
        if self._random.random() < self._garble_rate:
            return b"ESP32 ready\r\n"
        temperature = (
            27.0
            + 3.0 * math.sin(2 * math.pi * 0.02 * elapsed)
            + self._random.gauss(0, 0.3)
        )
        voltage = 0.5 + (temperature - 25.0) * 0.04 + self._random.gauss(0, 0.01)
        return f"{temperature:.2f},{voltage:.3f}\n".encode("utf-8")

    def read(self, size: int = READ_CHUNK_SIZE) -> bytes:
        if not self._opened:
            return b""
        # Event.wait returns True once close() is called
        if self._closed.wait(self._update_interval):
            return b""
        return self._next_chunk()[:size]

    def close(self) -> None:
        self._closed.set()

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed.is_set()

    @property
    def description(self) -> str:
        return "Mock ESP32"


def list_serial_devices() -> list[DeviceInfo]:
    """Enumerate serial ports, including ports bound to paired SPP devices.

    Every port is listed, like the paired-device list of a phone: the user picks
    the ESP32 entry.
    """
    devices = []
    for port in sorted(list_ports.comports(), key=lambda p: p.device):
        name = port.description if port.description not in (None, "n/a") else None
        logger.debug("Serial port found: %s (%s)", port.device, name)
        devices.append(DeviceInfo(name=name, address=port.device, kind="serial"))
    return devices


async def _scan_ble_devices(timeout: float) -> list[BLEDevice]:
    try:
        devices_adv = await BleakScanner.discover(timeout=timeout, return_adv=True)
    except BleakError as e:
        raise TransportUnavailableError(
            "BLE scanner initialization failed. Please verify:\n"
            "- Bluetooth is enabled\n"
            "- Location Services are enabled (required for BLE scanning on Windows)\n"
            "- The Bluetooth adapter and drivers are properly installed\n"
        ) from e
    logger.debug("Scan completed: %d devices found", len(devices_adv))
    return [dev for dev, _adv in devices_adv.values()]


def scan_ble_devices(timeout: float = 5.0) -> list[DeviceInfo]:
    """Scan for nearby BLE devices.

    Blocking wrapper around an asyncio scan, meant to run on a worker thread.

    Raises:
        TransportUnavailableError: If the BLE scanner cannot be started.
    """
    logger.info("BLE device discovery started: timeout=%.1fs", timeout)
    devices = asyncio.run(_scan_ble_devices(timeout))
    return [
        DeviceInfo(name=dev.name, address=dev.address, kind="ble")
        for dev in sorted(devices, key=lambda d: d.address)
    ]


def probe_ble_adapter(timeout: float = 1.0) -> None:
    """Check that BLE scanning works on this host.

    Raises:
        TransportUnavailableError: If no usable BLE adapter is present.
    """
    scan_ble_devices(timeout)


def infer_device_kind(address: str) -> str:
    """Guess the transport family from an address with no scan result."""
    if address.startswith(MOCK_ADDRESS_PREFIX):
        return "mock"
    if address.startswith("/") or address.upper().startswith("COM"):
        return "serial"
    return "ble"


def create_transport(
    device: DeviceInfo,
    *,
    baudrate: int = DEFAULT_BAUDRATE,
    connect_timeout: float = 15.0,
    mock_interval: float = 1.0,
) -> Transport:
    """Build the transport matching a device's kind."""
    if device.kind == "mock":
        return MockTransport(update_interval=mock_interval)
    if device.kind == "ble":
        return BleUartTransport(device.address, connect_timeout=connect_timeout)
    if device.kind == "serial":
        return SerialTransport(device.address, baudrate=baudrate)
    raise ValueError(f"Unknown device kind: {device.kind!r}")

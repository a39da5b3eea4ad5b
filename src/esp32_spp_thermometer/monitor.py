"""Observable monitor state, the read loop, and the command controller.

The pieces fit together like this:

- :class:`MonitorState` holds an immutable :class:`MonitorSnapshot` and
  publishes every new snapshot to its subscribers. It is the only shared state;
  the dashboard, the console printer and the tests all read from it.
- :class:`StreamIngestor` owns the single background read thread. It turns each
  chunk read from a transport into a status line and, when the chunk parses, a
  new history sample.
- :class:`TemperatureMonitor` accepts the ``scan``/``connect``/``disconnect``
  commands, runs them on a single command worker and drives the ingestor.
"""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from .spp_receiver import (
    DEFAULT_BAUDRATE,
    MAX_HISTORY,
    MOCK_ADDRESS_PREFIX,
    READ_CHUNK_SIZE,
    DeviceInfo,
    RawText,
    SampleHistory,
    TemperatureSample,
    Transport,
    TransportError,
    create_transport,
    infer_device_kind,
    list_serial_devices,
    now_millis,
    parse_chunk,
    probe_ble_adapter,
    scan_ble_devices,
)

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class MonitorSnapshot:
    """Immutable view of everything the front ends display.

    Attributes:
        connection_state: Current link state.
        latest_status: Formatted reading or raw text of the last chunk.
        history: Most recent temperature samples, oldest first.
        available_devices: Result of the last scan.
        is_scanning: True while a scan command is running.
        adapter_available: False if no transport backend could be initialized.
        connected_address: Address of the current, pending or last connection.
            Cleared only when a connection attempt fails.
        chunks_received: Number of chunks read since startup.
    """

    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    latest_status: str = ""
    history: tuple[TemperatureSample, ...] = ()
    available_devices: tuple[DeviceInfo, ...] = ()
    is_scanning: bool = False
    adapter_available: bool = True
    connected_address: Optional[str] = None
    chunks_received: int = 0

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED


Subscriber = Callable[[MonitorSnapshot], None]


class MonitorState:
    """Single-writer, multi-reader store for the monitor snapshot.

    Each ``update()`` builds a new snapshot and swaps it in under a short lock,
    so readers always see a consistent record without locking. Subscribers are
    called on the writer's thread, after the swap and outside the lock.
    """

    def __init__(self, initial: Optional[MonitorSnapshot] = None):
        self._snapshot = initial or MonitorSnapshot()
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    @property
    def snapshot(self) -> MonitorSnapshot:
        return self._snapshot

    def update(self, **changes: Any) -> MonitorSnapshot:
        with self._lock:
            self._snapshot = replace(self._snapshot, **changes)
            snapshot = self._snapshot
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("State subscriber %r failed", callback)
        return snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for new snapshots.

        Returns:
            A function that removes the subscription. Calling it twice is fine.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe


class StreamIngestor:
    """Background read loop turning transport chunks into samples.

    The loop reads one chunk at a time, decodes it, and parses it with
    :func:`parse_chunk`. Parsed readings update both the status line and the
    rolling history; anything else is shown verbatim in the status line and the
    loop carries on. The loop ends on end of stream, a read error, a
    ``stop()`` request, or when the connection state leaves CONNECTED. Ending on
    end of stream or a read error marks the connection DISCONNECTED and closes
    the transport.

    Attributes:
        history: Rolling sample buffer. Only this class appends to it.
    """

    def __init__(
        self,
        state: MonitorState,
        *,
        history_size: int = MAX_HISTORY,
        read_size: int = READ_CHUNK_SIZE,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self._state = state
        self.history = SampleHistory(max_size=history_size)
        self._read_size = read_size
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._chunk_count = 0

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self, transport: Transport) -> None:
        """Start reading ``transport`` on a new background thread.

        Raises:
            RuntimeError: If a read loop is already running.
        """
        if self.is_running:
            raise RuntimeError("Read loop already running")
        self._stop_event.clear()
        self._chunk_count = 0
        self._thread = threading.Thread(
            target=self._read_loop,
            args=(transport,),
            name="spp-read-loop",
            daemon=True,
        )
        self._thread.start()
        logger.info("▶️ Read loop started: %s", transport.description)

    def stop(self) -> None:
        """Ask the loop to exit after the current read. Idempotent."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the read thread to finish.

        Returns:
            True if the loop is no longer running.
        """
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return not self.is_running

    def _should_continue(self) -> bool:
        return (
            not self._stop_event.is_set()
            and self._state.snapshot.connection_state is ConnectionState.CONNECTED
        )

    def _read_loop(self, transport: Transport) -> None:
        reason = "stopped"
        try:
            while self._should_continue():
                data = transport.read(self._read_size)
                if self._stop_event.is_set():
                    break
                if not data:
                    reason = "end of stream"
                    break
                self.ingest_chunk(data)
        except TransportError as e:
            reason = f"read error: {e}"
            logger.warning("🔌 Read failed on %s: %s", transport.description, e)
        except Exception as e:
            reason = f"unexpected error: {type(e).__name__}"
            logger.exception("💥 Read loop crashed on %s", transport.description)
        finally:
            if reason != "stopped":
                self._state.update(connection_state=ConnectionState.DISCONNECTED)
                transport.close()
            logger.info(
                "🏁 Read loop finished (%s) after %d chunks", reason, self._chunk_count
            )

    def ingest_chunk(self, data: bytes) -> None:
        """Parse one chunk and publish the resulting status and history."""
        self._chunk_count += 1
        text = data.decode("utf-8", errors="replace")
        result = parse_chunk(text, clock=self._clock)
        received = self._state.snapshot.chunks_received + 1

        if isinstance(result, RawText):
            self._state.update(latest_status=result.text, chunks_received=received)
            return

        history = self.history.append(result.to_sample())
        self._state.update(
            latest_status=result.format_status(),
            history=history,
            chunks_received=received,
        )
        logger.debug("Sample %d: %.2f°C", self._chunk_count, result.temperature)


@dataclass
class _Backends:
    serial: bool = True
    ble: bool = False
    mock: bool = False
    disabled: set[str] = field(default_factory=set)

    def enabled(self, kind: str) -> bool:
        return getattr(self, kind) and kind not in self.disabled


class TemperatureMonitor:
    """Command surface for scanning, connecting and disconnecting.

    Commands return immediately with a :class:`~concurrent.futures.Future`;
    the work runs on a single command worker thread so commands never overlap
    and the caller's thread never blocks on the radio. Results are also
    published through :attr:`state`.

    Transport failures never escape as exceptions: a failed connect resolves to
    False and leaves the state DISCONNECTED.
    """

    def __init__(
        self,
        state: Optional[MonitorState] = None,
        *,
        enable_serial: bool = True,
        enable_ble: bool = False,
        enable_mock: bool = False,
        baudrate: int = DEFAULT_BAUDRATE,
        scan_timeout: float = 5.0,
        connect_timeout: float = 15.0,
        mock_interval: float = 1.0,
        history_size: int = MAX_HISTORY,
        transport_factory: Optional[Callable[[DeviceInfo], Transport]] = None,
    ) -> None:
        self.state = state or MonitorState()
        self.ingestor = StreamIngestor(self.state, history_size=history_size)
        self._backends = _Backends(serial=enable_serial, ble=enable_ble, mock=enable_mock)
        self._baudrate = baudrate
        self._scan_timeout = scan_timeout
        self._connect_timeout = connect_timeout
        self._mock_interval = mock_interval
        self._transport_factory = transport_factory or self._default_transport
        self._transport: Optional[Transport] = None
        self._closing = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="monitor-command"
        )

    def __enter__(self) -> "TemperatureMonitor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _default_transport(self, device: DeviceInfo) -> Transport:
        return create_transport(
            device,
            baudrate=self._baudrate,
            connect_timeout=self._connect_timeout,
            mock_interval=self._mock_interval,
        )

    def initialize(self) -> bool:
        """Check which transport backends work on this host.

        Runs synchronously, once, at startup. A backend that fails its probe is
        disabled for the rest of the session. Only BLE has a probe: the serial
        backend always counts as usable, because a paired SPP port may be bound
        after startup, so with serial enabled this returns True and a missing
        port only shows up as a failed ``connect()``.

        Returns:
            True if at least one backend is usable.
        """
        if self._backends.ble:
            try:
                probe_ble_adapter()
            except TransportError as e:
                logger.warning("⚠️ BLE disabled: %s", e)
                self._backends.disabled.add("ble")

        available = any(
            self._backends.enabled(kind) for kind in ("serial", "ble", "mock")
        )
        if not available:
            logger.error("❌ No usable transport: Bluetooth is not available")
        self.state.update(adapter_available=available)
        return available

    def scan(self) -> "Future[list[DeviceInfo]]":
        return self._executor.submit(self._scan)

    def connect(self, address: str) -> "Future[bool]":
        return self._executor.submit(self._connect, address)

    def disconnect(self) -> "Future[None]":
        return self._executor.submit(self._disconnect)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Disconnect and stop the command worker.

        Waits up to ``timeout`` seconds for commands still in flight. A connect
        that finishes after that closes its transport instead of starting the
        read loop.
        """
        self._closing.set()
        try:
            self.disconnect().result(timeout=timeout)
        except RuntimeError:
            # Executor already shut down
            pass
        except FutureTimeoutError:
            logger.warning("⚠️ Pending command did not finish within %.1fs", timeout)
            self._executor.shutdown(wait=False, cancel_futures=True)
            return
        self._executor.shutdown(wait=True)

    def _scan(self) -> list[DeviceInfo]:
        self.state.update(is_scanning=True)
        devices: list[DeviceInfo] = []
        try:
            if self._backends.enabled("mock"):
                devices.append(
                    DeviceInfo(
                        name="ESP32 Mock", address=f"{MOCK_ADDRESS_PREFIX}esp32", kind="mock"
                    )
                )
            if self._backends.enabled("serial"):
                devices.extend(list_serial_devices())
            if self._backends.enabled("ble"):
                try:
                    devices.extend(scan_ble_devices(self._scan_timeout))
                except TransportError as e:
                    logger.warning("⚠️ BLE scan failed: %s", e)
            logger.info("🔍 Scan finished: %d device(s)", len(devices))
        except Exception:
            logger.exception("❌ Device scan failed")
        finally:
            self.state.update(available_devices=tuple(devices), is_scanning=False)
        return devices

    def _resolve_device(self, address: str) -> DeviceInfo:
        for device in self.state.snapshot.available_devices:
            if device.address == address:
                return device
        return DeviceInfo(name=None, address=address, kind=infer_device_kind(address))

    def _connect(self, address: str) -> bool:
        if self._transport is not None or self.ingestor.is_running:
            self._disconnect()

        device = self._resolve_device(address)
        self.state.update(
            connection_state=ConnectionState.CONNECTING, connected_address=address
        )
        logger.info("🔄 Connecting to %s", device.label)

        transport: Optional[Transport] = None
        try:
            transport = self._transport_factory(device)
            transport.open()
        except (TransportError, ValueError, OSError) as e:
            logger.error("❌ Connection to %s failed: %s", address, e)
            if transport is not None:
                transport.close()
            self.state.update(
                connection_state=ConnectionState.DISCONNECTED, connected_address=None
            )
            return False

        if self._closing.is_set():
            logger.info("🛑 Shutting down, dropping connection to %s", device.label)
            transport.close()
            self.state.update(connection_state=ConnectionState.DISCONNECTED)
            return False

        self._transport = transport
        self.ingestor.history.clear()
        self.state.update(connection_state=ConnectionState.CONNECTED, history=())
        self.ingestor.start(transport)
        logger.info("✅ Connected to %s", device.label)
        return True

    def _disconnect(self) -> None:
        transport, self._transport = self._transport, None
        self.state.update(connection_state=ConnectionState.DISCONNECTED)
        self.ingestor.stop()
        if transport is not None:
            # Closing unblocks a pending read
            transport.close()
        if not self.ingestor.join(timeout=5.0):
            logger.warning("⚠️ Read loop did not stop within 5s")
        if transport is not None:
            logger.info("🔌 Disconnected from %s", transport.description)


def print_stream(monitor: TemperatureMonitor, address: str) -> bool:
    """Connect and print every status line to standard output.

    Blocks until the connection ends. Status lines go to stdout, one per chunk,
    so they can be piped while logs stay on stderr.

    Returns:
        True if the connection was established, False if it failed.
    """
    finished = threading.Event()
    last_printed = monitor.state.snapshot.chunks_received

    def on_change(snapshot: MonitorSnapshot) -> None:
        nonlocal last_printed
        if snapshot.chunks_received != last_printed:
            last_printed = snapshot.chunks_received
            print(snapshot.latest_status, flush=True)
        if snapshot.connection_state is ConnectionState.DISCONNECTED:
            finished.set()

    unsubscribe = monitor.state.subscribe(on_change)
    try:
        if not monitor.connect(address).result():
            return False
        # Connect resolved CONNECTED; wait for the read loop to end it
        while not finished.wait(0.5):
            pass
        return True
    finally:
        unsubscribe()


def run(
    address: str,
    *,
    baudrate: int = DEFAULT_BAUDRATE,
    enable_ble: bool = False,
    mock: bool = False,
    scan_timeout: float = 5.0,
    connect_timeout: float = 15.0,
) -> int:
    """Command-line wrapper for console mode.

    Returns:
        int: Exit code following Unix conventions:
            0: The device closed the stream or the link dropped
            1: Connection failure or no usable transport
            130: Keyboard interrupt (SIGINT/Ctrl+C)
    """
    monitor = TemperatureMonitor(
        enable_ble=enable_ble,
        enable_mock=mock,
        baudrate=baudrate,
        scan_timeout=scan_timeout,
        connect_timeout=connect_timeout,
    )
    try:
        if not monitor.initialize():
            return 1
        return 0 if print_stream(monitor, address) else 1
    except KeyboardInterrupt:
        # SIGINT: Return 130 by convention
        return 130
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
    finally:
        monitor.shutdown()

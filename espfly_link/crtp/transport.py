from __future__ import annotations

import logging
import queue
import socket
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from .events import EventStream, HistoryStream
from .protocol import NULL_PACKET, ChecksumError, CrtpPort, Packet, decode_packet
from .telemetry import BatteryInfo, parse_battery_info, parse_console_message

LOGGER = logging.getLogger(__name__)

DEFAULT_DEVICE_HOST = "192.168.43.42"
DEFAULT_DEVICE_PORT = 2390
DEFAULT_LOCAL_PORT = 2399
DEFAULT_RECV_TIMEOUT_S = 0.25
DEFAULT_MAX_QUEUE = 256
RECEIVE_BUFFER_SIZE = 1024
CONSOLE_HISTORY = 100

_STOP = object()

PortHandler = Callable[[Packet], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(slots=True)
class LinkStats:
    tx_packets_ok: int = 0
    tx_errors: int = 0
    tx_queue_drops: int = 0
    rx_packets_ok: int = 0
    rx_checksum_errors: int = 0
    rx_dropped: int = 0


class UdpLink:
    """Connection-like session over a connectionless UDP socket.

    One thread drains the outbound queue onto the socket, another reads
    datagrams, validates them and publishes battery and console events.
    Both are owned by the session and torn down by ``disconnect``.
    """

    def __init__(
        self,
        remote_host: str = DEFAULT_DEVICE_HOST,
        remote_port: int = DEFAULT_DEVICE_PORT,
        local_port: int = DEFAULT_LOCAL_PORT,
        *,
        local_host: str = "0.0.0.0",
        recv_timeout_s: float = DEFAULT_RECV_TIMEOUT_S,
        max_queue: int = DEFAULT_MAX_QUEUE,
        console_history: int = CONSOLE_HISTORY,
    ) -> None:
        if recv_timeout_s <= 0:
            raise ValueError("recv_timeout_s must be > 0")
        if max_queue <= 0:
            raise ValueError("max_queue must be > 0")

        self.remote_host = remote_host
        self.remote_port = int(remote_port)
        self.local_host = local_host
        self.local_port = int(local_port)
        self.recv_timeout_s = float(recv_timeout_s)
        self.max_queue = int(max_queue)

        self.connection_state: EventStream[ConnectionState] = EventStream(
            "connection_state", ConnectionState.DISCONNECTED
        )
        self.connection_message: EventStream[str] = EventStream("connection_message")
        self.battery: EventStream[BatteryInfo] = EventStream("battery")
        self.console: HistoryStream[str] = HistoryStream("console", maxlen=console_history)

        self._state = ConnectionState.DISCONNECTED
        self._lifecycle_lock = threading.RLock()

        self._queue: queue.Queue = queue.Queue(maxsize=self.max_queue)
        self._sock: Optional[socket.socket] = None
        self._remote_addr: Optional[Tuple[str, int]] = None
        self._stop_event: Optional[threading.Event] = None
        self._tx_thread: Optional[threading.Thread] = None
        self._rx_thread: Optional[threading.Thread] = None

        self._stats = LinkStats()
        self._stats_lock = threading.Lock()

        self._port_handlers: Dict[CrtpPort, PortHandler] = {
            CrtpPort.PLATFORM: self._on_platform_packet,
            CrtpPort.CONSOLE: self._on_console_packet,
        }

    def __enter__(self) -> "UdpLink":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        with self._lifecycle_lock:
            if self._sock is None:
                return None
            return self._sock.getsockname()

    def pending(self) -> int:
        return self._queue.qsize()

    def get_stats(self) -> LinkStats:
        with self._stats_lock:
            return replace(self._stats)

    def register_port_handler(self, port: CrtpPort, handler: PortHandler) -> None:
        self._port_handlers[CrtpPort(port)] = handler

    def connect(self) -> bool:
        with self._lifecycle_lock:
            if self._state is ConnectionState.CONNECTED:
                LOGGER.warning("Already connected to %s:%d", self.remote_host, self.remote_port)
                return True

            self._set_state(ConnectionState.CONNECTING)
            try:
                self._open_session()
            except (OSError, OverflowError, RuntimeError, TypeError, ValueError) as exc:
                LOGGER.error("Connect to %s:%d failed: %s", self.remote_host, self.remote_port, exc)
                self._teardown()
                self._set_state(ConnectionState.DISCONNECTED)
                self.connection_message.emit(f"Connection failed: {exc}")
                return False

            self._set_state(ConnectionState.CONNECTED)
            self.connection_message.emit(f"Connected to {self.remote_host}:{self.remote_port}")
            LOGGER.info(
                "Connected to %s:%d (local port %d)",
                self.remote_host,
                self.remote_port,
                self._sock.getsockname()[1],
            )
            return True

    def disconnect(self) -> None:
        with self._lifecycle_lock:
            LOGGER.debug("Disconnecting...")
            self._teardown()
            self._set_state(ConnectionState.DISCONNECTED)
            self.connection_message.emit("Disconnected")
            LOGGER.info("Disconnected")

    def release(self) -> None:
        self.disconnect()

    def send(self, data: bytes) -> bool:
        if self._state is not ConnectionState.CONNECTED:
            LOGGER.debug("Not connected, cannot send %d bytes", len(data))
            return False
        self._enqueue(self._queue, bytes(data))
        return True

    def _open_session(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._sock = sock
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.settimeout(self.recv_timeout_s)
        sock.bind((self.local_host, self.local_port))
        LOGGER.debug("Socket bound to %s:%d", *sock.getsockname()[:2])

        infos = socket.getaddrinfo(self.remote_host, self.remote_port, socket.AF_INET, socket.SOCK_DGRAM)
        self._remote_addr = infos[0][4][:2]

        stop_event = threading.Event()
        out_queue: queue.Queue = queue.Queue(maxsize=self.max_queue)
        self._stop_event = stop_event
        self._queue = out_queue

        self._rx_thread = threading.Thread(
            target=self._receive_loop, args=(sock, stop_event), name="espfly-udp-rx", daemon=True
        )
        self._tx_thread = threading.Thread(
            target=self._send_loop,
            args=(sock, self._remote_addr, out_queue, stop_event),
            name="espfly-udp-tx",
            daemon=True,
        )
        self._rx_thread.start()
        self._tx_thread.start()

        self._enqueue(out_queue, NULL_PACKET)

    def _teardown(self) -> None:
        # Reject sends before the queue is drained; the state event is emitted by the caller.
        self._state = ConnectionState.DISCONNECTED
        if self._stop_event is not None:
            self._stop_event.set()

        try:
            self._queue.put_nowait(_STOP)
        except queue.Full:
            # A non-empty queue already wakes the send loop, which re-checks the stop event.
            pass

        current = threading.current_thread()
        for thread in (self._tx_thread, self._rx_thread):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=self.recv_timeout_s + 1.0)

        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None

        self._drain(self._queue)
        self._remote_addr = None
        self._stop_event = None
        self._tx_thread = None
        self._rx_thread = None

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        self.connection_state.emit(state)

    def _enqueue(self, out_queue: queue.Queue, item) -> None:
        while True:
            try:
                out_queue.put_nowait(item)
                return
            except queue.Full:
                pass
            try:
                out_queue.get_nowait()
            except queue.Empty:
                continue
            with self._stats_lock:
                self._stats.tx_queue_drops += 1
            LOGGER.warning("Outbound queue full, dropped oldest packet")

    @staticmethod
    def _drain(out_queue: queue.Queue) -> None:
        while True:
            try:
                out_queue.get_nowait()
            except queue.Empty:
                return

    def _send_loop(
        self,
        sock: socket.socket,
        remote_addr: Tuple[str, int],
        out_queue: queue.Queue,
        stop_event: threading.Event,
    ) -> None:
        LOGGER.debug("Send loop started")
        while not stop_event.is_set():
            data = out_queue.get()
            if data is _STOP or stop_event.is_set():
                break

            try:
                sock.sendto(data, remote_addr)
            except OSError as exc:
                if stop_event.is_set():
                    break
                with self._stats_lock:
                    self._stats.tx_errors += 1
                LOGGER.error("Send error: %s", exc)
                continue

            with self._stats_lock:
                self._stats.tx_packets_ok += 1
            if LOGGER.isEnabledFor(logging.DEBUG):
                LOGGER.debug("TX %d bytes: %s", len(data), data.hex(" "))
        LOGGER.debug("Send loop stopped")

    def _receive_loop(self, sock: socket.socket, stop_event: threading.Event) -> None:
        LOGGER.debug("Receive loop started")
        while not stop_event.is_set():
            try:
                data, _addr = sock.recvfrom(RECEIVE_BUFFER_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if stop_event.is_set():
                    break
                LOGGER.error("Receive error: %s", exc)
                stop_event.wait(self.recv_timeout_s)
                continue

            self._handle_datagram(data)
        LOGGER.debug("Receive loop stopped")

    def _handle_datagram(self, data: bytes) -> None:
        if LOGGER.isEnabledFor(logging.DEBUG):
            LOGGER.debug("RX %d bytes: %s", len(data), data.hex(" "))

        try:
            packet = decode_packet(data)
        except ChecksumError as exc:
            with self._stats_lock:
                self._stats.rx_checksum_errors += 1
            LOGGER.debug("Dropping datagram: %s", exc)
            return

        with self._stats_lock:
            self._stats.rx_packets_ok += 1
        self._dispatch(packet)

    def _dispatch(self, packet: Packet) -> None:
        handler = None
        if packet.known_port:
            handler = self._port_handlers.get(CrtpPort(packet.port))

        if handler is None:
            LOGGER.debug("Unhandled packet port=%d channel=%d", packet.port, packet.channel)
            return

        try:
            handler(packet)
        except Exception:
            with self._stats_lock:
                self._stats.rx_dropped += 1
            LOGGER.exception("Handler for port %d failed", packet.port)

    def _on_platform_packet(self, packet: Packet) -> None:
        battery = parse_battery_info(packet.payload)
        if battery is None:
            with self._stats_lock:
                self._stats.rx_dropped += 1
            LOGGER.debug("Short battery payload (%d bytes)", len(packet.payload))
            return

        LOGGER.debug("Battery: %d%%, %.2fV", battery.level, battery.voltage)
        self.battery.emit(battery)

    def _on_console_packet(self, packet: Packet) -> None:
        message = parse_console_message(packet.payload)
        if not message:
            return
        LOGGER.debug("Console: %s", message)
        self.console.emit(message)

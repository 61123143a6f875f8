import queue
import socket
import struct
import threading

from conftest import free_udp_port, wait_for

from espfly_link.crtp.protocol import NULL_PACKET, CrtpPort, encode_packet
from espfly_link.crtp.telemetry import BatteryState
from espfly_link.crtp.transport import ConnectionState, UdpLink


def link_threads():
    return [t for t in threading.enumerate() if t.name.startswith("espfly-udp") and t.is_alive()]


def test_send_while_disconnected_is_rejected(link) -> None:
    assert link.send(b"\x30\x30") is False
    assert link.pending() == 0
    assert link.state is ConnectionState.DISCONNECTED


def test_connect_sends_null_packet_first(link, peer) -> None:
    assert link.connect() is True
    assert link.is_connected

    data, _addr = peer.recvfrom(1024)
    assert data == NULL_PACKET


def test_send_is_fifo_after_null_packet(link, peer) -> None:
    link.connect()
    frames = [encode_packet(CrtpPort.COMMANDER, 0, bytes([index])) for index in range(5)]
    for frame in frames:
        assert link.send(frame) is True

    received = [peer.recvfrom(1024)[0] for _ in range(6)]
    assert received == [NULL_PACKET] + frames
    assert wait_for(lambda: link.get_stats().tx_packets_ok == 6)


def test_connect_emits_state_and_message(link) -> None:
    states = []
    messages = []
    link.connection_state.subscribe(states.append)
    link.connection_message.subscribe(messages.append)

    link.connect()

    assert states == [ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert messages == [f"Connected to 127.0.0.1:{link.remote_port}"]


def test_connect_when_connected_is_noop(link, peer) -> None:
    link.connect()
    assert link.connect() is True

    assert peer.recvfrom(1024)[0] == NULL_PACKET
    peer.settimeout(0.2)
    try:
        extra = peer.recvfrom(1024)[0]
    except socket.timeout:
        extra = None
    assert extra is None
    assert len(link_threads()) == 2


def test_inbound_battery_is_published(link, peer) -> None:
    link.connect()
    payload = struct.pack("<fHBB", 3.85, 3850, 72, 0)
    peer.sendto(encode_packet(CrtpPort.PLATFORM, 0, payload), link.local_address)

    assert wait_for(lambda: link.battery.value is not None)
    battery = link.battery.value
    assert battery.voltage_mv == 3850
    assert battery.level == 72
    assert battery.state is BatteryState.NORMAL


def test_inbound_console_is_published(link, peer) -> None:
    lines = []
    link.console.subscribe(lines.append)
    link.connect()
    peer.sendto(encode_packet(CrtpPort.CONSOLE, 0, b"hello\x00\x00"), link.local_address)

    assert wait_for(lambda: lines == ["hello"])
    assert link.console.history() == ["hello"]


def test_bad_checksum_is_dropped_silently(link, peer) -> None:
    link.connect()
    frame = bytearray(encode_packet(CrtpPort.CONSOLE, 0, b"corrupt"))
    frame[-1] ^= 0xFF
    peer.sendto(bytes(frame), link.local_address)
    peer.sendto(encode_packet(CrtpPort.CONSOLE, 0, b"fine"), link.local_address)

    assert wait_for(lambda: link.console.history() == ["fine"])
    stats = link.get_stats()
    assert stats.rx_checksum_errors == 1
    assert stats.rx_packets_ok == 1
    assert link.is_connected


def test_other_ports_are_not_forwarded(link, peer) -> None:
    link.connect()
    peer.sendto(encode_packet(CrtpPort.LOG, 1, b"\x01\x02"), link.local_address)
    peer.sendto(encode_packet(0x01, 0, b"\x01"), link.local_address)

    assert wait_for(lambda: link.get_stats().rx_packets_ok == 2)
    assert link.battery.value is None
    assert link.console.history() == []


def test_short_battery_payload_is_counted_as_dropped(link, peer) -> None:
    link.connect()
    peer.sendto(encode_packet(CrtpPort.PLATFORM, 0, b"\x00\x01\x02"), link.local_address)

    assert wait_for(lambda: link.get_stats().rx_dropped == 1)
    assert link.battery.value is None


def test_registered_port_handler_receives_packets(link, peer) -> None:
    seen = []
    link.register_port_handler(CrtpPort.LOG, seen.append)
    link.connect()
    peer.sendto(encode_packet(CrtpPort.LOG, 2, b"\x07"), link.local_address)

    assert wait_for(lambda: len(seen) == 1)
    assert seen[0].channel == 2
    assert seen[0].payload == b"\x07"


def test_disconnect_stops_loops_and_closes_socket(link) -> None:
    link.connect()
    assert len(link_threads()) == 2

    link.disconnect()

    assert link.state is ConnectionState.DISCONNECTED
    assert link.local_address is None
    assert link_threads() == []
    assert link.send(b"\x00\x00") is False
    assert link.pending() == 0


def test_disconnect_when_disconnected_is_safe(link) -> None:
    messages = []
    link.connection_message.subscribe(messages.append)

    link.disconnect()
    link.disconnect()

    assert link.state is ConnectionState.DISCONNECTED
    assert messages == ["Disconnected", "Disconnected"]


def test_reconnect_on_same_local_port(peer) -> None:
    local_port = free_udp_port()
    link = UdpLink("127.0.0.1", peer.getsockname()[1], local_port, local_host="127.0.0.1", recv_timeout_s=0.05)
    try:
        assert link.connect() is True
        assert peer.recvfrom(1024)[0] == NULL_PACKET

        link.disconnect()
        assert link.connect() is True

        assert peer.recvfrom(1024)[0] == NULL_PACKET
        assert link.local_address[1] == local_port
        assert len(link_threads()) == 2

        peer.sendto(encode_packet(CrtpPort.CONSOLE, 0, b"again"), ("127.0.0.1", local_port))
        assert wait_for(lambda: link.console.history() == ["again"])
    finally:
        link.release()


def test_bind_failure_rolls_back_and_allows_retry(peer) -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    local_port = blocker.getsockname()[1]
    link = UdpLink("127.0.0.1", peer.getsockname()[1], local_port, local_host="127.0.0.1", recv_timeout_s=0.05)
    messages = []
    link.connection_message.subscribe(messages.append)
    try:
        assert link.connect() is False
        assert link.state is ConnectionState.DISCONNECTED
        assert link.local_address is None
        assert link_threads() == []
        assert messages[-1].startswith("Connection failed")

        blocker.close()
        assert link.connect() is True
        assert peer.recvfrom(1024)[0] == NULL_PACKET
    finally:
        blocker.close()
        link.release()


def test_full_queue_drops_oldest(link) -> None:
    out_queue = queue.Queue(maxsize=2)
    link._enqueue(out_queue, b"a")
    link._enqueue(out_queue, b"b")
    link._enqueue(out_queue, b"c")

    assert [out_queue.get_nowait(), out_queue.get_nowait()] == [b"b", b"c"]
    assert link.get_stats().tx_queue_drops == 1


def test_context_manager_disconnects(peer) -> None:
    with UdpLink("127.0.0.1", peer.getsockname()[1], 0, local_host="127.0.0.1", recv_timeout_s=0.05) as link:
        assert link.connect() is True
    assert link.state is ConnectionState.DISCONNECTED
    assert link_threads() == []


def test_out_of_range_local_port_rolls_back(peer) -> None:
    link = UdpLink("127.0.0.1", peer.getsockname()[1], 70000, local_host="127.0.0.1", recv_timeout_s=0.05)
    messages = []
    link.connection_message.subscribe(messages.append)
    try:
        assert link.connect() is False
        assert link.state is ConnectionState.DISCONNECTED
        assert link.local_address is None
        assert link_threads() == []
        assert messages[-1].startswith("Connection failed")
    finally:
        link.release()


def test_unresolvable_host_rolls_back(link, monkeypatch) -> None:
    def fail_lookup(*args, **kwargs):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    monkeypatch.setattr(socket, "getaddrinfo", fail_lookup)
    states = []
    link.connection_state.subscribe(states.append, replay=False)

    assert link.connect() is False
    assert states == [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED]
    assert link.local_address is None
    assert link_threads() == []


def test_send_error_is_counted_and_loop_continues(link, peer) -> None:
    link.connect()
    assert peer.recvfrom(1024)[0] == NULL_PACKET

    # Larger than any UDP datagram, so sendto fails with EMSGSIZE.
    assert link.send(bytes(70000)) is True
    frame = encode_packet(CrtpPort.COMMANDER, 0, b"\x01")
    assert link.send(frame) is True

    assert peer.recvfrom(1024)[0] == frame
    assert wait_for(lambda: link.get_stats().tx_errors == 1)
    assert link.is_connected


def test_raising_port_handler_does_not_stop_receive_loop(link, peer) -> None:
    def broken(_packet) -> None:
        raise RuntimeError("handler failed")

    link.register_port_handler(CrtpPort.LOG, broken)
    link.connect()
    peer.sendto(encode_packet(CrtpPort.LOG, 0, b"\x01"), link.local_address)
    peer.sendto(encode_packet(CrtpPort.CONSOLE, 0, b"still here"), link.local_address)

    assert wait_for(lambda: link.console.history() == ["still here"])
    assert link.get_stats().rx_dropped == 1
    assert len(link_threads()) == 2


def test_send_during_teardown_is_rejected(link) -> None:
    link.connect()
    results = []
    drain = link._drain

    def send_then_drain(out_queue) -> None:
        results.append(link.send(b"\x30\x00\x30"))
        drain(out_queue)

    link._drain = send_then_drain
    link.disconnect()

    assert results == [False]
    assert link.pending() == 0

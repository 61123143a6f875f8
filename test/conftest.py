import socket
import time

import pytest

from espfly_link.crtp.transport import UdpLink


def wait_for(predicate, timeout_s: float = 2.0, interval_s: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval_s)
    return predicate()


def free_udp_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def peer():
    """Stands in for the flight controller: a plain UDP socket on loopback."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


@pytest.fixture
def link(peer):
    udp_link = UdpLink(
        "127.0.0.1",
        peer.getsockname()[1],
        0,
        local_host="127.0.0.1",
        recv_timeout_s=0.05,
    )
    yield udp_link
    udp_link.release()

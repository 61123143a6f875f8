from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

MAX_PAYLOAD_SIZE = 30
MIN_FRAME_SIZE = 2

# Sent once per connect to prime the device's link detection. Not a valid frame.
NULL_PACKET = b"\xff\xff"


class CrtpPort(IntEnum):
    CONSOLE = 0x00
    PARAM = 0x02
    COMMANDER = 0x03
    MEM = 0x04
    LOG = 0x05
    LOCALIZATION = 0x06
    SETPOINT_GENERIC = 0x07
    SETPOINT_HL = 0x08
    PLATFORM = 0x0D
    LINK = 0x0F


class ChecksumError(ValueError):
    """Raised when an inbound datagram fails the additive checksum."""


def checksum8(data: bytes) -> int:
    return sum(data) & 0xFF


def make_header(port: int, channel: int) -> int:
    if not 0 <= int(port) <= 0x0F:
        raise ValueError(f"CRTP port out of range: {port}")
    if not 0 <= int(channel) <= 0x03:
        raise ValueError(f"CRTP channel out of range: {channel}")
    return ((int(port) & 0x0F) << 4) | (int(channel) & 0x03)


def encode_packet(port: int, channel: int, payload: bytes = b"") -> bytes:
    payload = bytes(payload)
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(f"CRTP payload too long: {len(payload)} > {MAX_PAYLOAD_SIZE}")

    frame = bytearray(1 + len(payload) + 1)
    frame[0] = make_header(port, channel)
    frame[1:-1] = payload
    frame[-1] = checksum8(frame[:-1])
    return bytes(frame)


@dataclass(frozen=True, slots=True)
class Packet:
    port: int
    channel: int = 0
    payload: bytes = b""

    @property
    def header(self) -> int:
        return make_header(self.port, self.channel)

    @property
    def known_port(self) -> bool:
        return self.port in CrtpPort._value2member_map_

    def encode(self) -> bytes:
        return encode_packet(self.port, self.channel, self.payload)


def decode_packet(data: bytes) -> Packet:
    if len(data) < MIN_FRAME_SIZE:
        raise ChecksumError(f"CRTP frame too short: {len(data)}")

    expected = checksum8(data[:-1])
    if data[-1] != expected:
        raise ChecksumError(
            f"Invalid CRTP checksum: got 0x{data[-1]:02X}, expected 0x{expected:02X}"
        )

    header = data[0]
    return Packet(
        port=(header >> 4) & 0x0F,
        channel=header & 0x03,
        payload=bytes(data[1:-1]),
    )

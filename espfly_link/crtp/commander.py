from __future__ import annotations

import struct
from enum import IntEnum

from .controller import (
    THRUST_HOVER,
    Axis,
    CommandState,
    LoopKind,
    PidParams,
    clamp_angle,
    clamp_thrust,
    clamp_yaw_rate,
)
from .protocol import CrtpPort, checksum8, encode_packet

COMMANDER_CHANNEL = 0
SETPOINT_PAYLOAD = struct.Struct("<fffH")

CONFIG_HEADER = 0xAA
CONFIG_MAX_DATA = 62
WIFI_SSID_MAX = 32

PID_PAYLOAD = struct.Struct("<BfffB")
# Mirrors the firmware's unpacked FlightConfig struct, trailing padding included.
FLIGHT_PARAMS_PAYLOAD = struct.Struct("<ffB3x")


class ConfigCommand(IntEnum):
    WIFI_SSID = 0x01
    WIFI_PASSWORD = 0x02
    FLIGHT_PARAMS = 0x03
    PID_PARAMS = 0x04
    DEVICE_NAME = 0x05
    GENERAL_CONFIG = 0x06
    PID_QUERY = 0x84
    TEST = 0xFF


def setpoint_packet(roll_deg: float, pitch_deg: float, yaw_rate_dps: float, thrust: int) -> bytes:
    """Encode a flight command; out-of-range values saturate instead of failing.

    Pitch is sent negated: the device treats stick-forward as negative pitch.
    """
    payload = SETPOINT_PAYLOAD.pack(
        clamp_angle(roll_deg),
        -clamp_angle(pitch_deg),
        clamp_yaw_rate(yaw_rate_dps),
        clamp_thrust(thrust),
    )
    return encode_packet(CrtpPort.COMMANDER, COMMANDER_CHANNEL, payload)


def encode_command_state(state: CommandState) -> bytes:
    return setpoint_packet(state.roll_deg, state.pitch_deg, state.yaw_rate_dps, state.thrust)


def stop_packet() -> bytes:
    return setpoint_packet(0.0, 0.0, 0.0, 0)


def hover_packet(thrust: int = THRUST_HOVER) -> bytes:
    return setpoint_packet(0.0, 0.0, 0.0, thrust)


def config_packet(cmd_type: int, data: bytes = b"") -> bytes:
    body = bytearray((CONFIG_HEADER, int(cmd_type) & 0xFF))
    body.extend(bytes(data)[:CONFIG_MAX_DATA])
    body.append(checksum8(body))
    return bytes(body)


def pid_config_packet(axis: Axis, params: PidParams, is_rate_loop: bool) -> bytes:
    payload = PID_PAYLOAD.pack(
        int(Axis(axis)),
        float(params.kp),
        float(params.ki),
        float(params.kd),
        1 if is_rate_loop else 0,
    )
    return config_packet(ConfigCommand.PID_PARAMS, payload)


def pid_packet_for(axis: Axis, loop: LoopKind, params: PidParams) -> bytes:
    return pid_config_packet(axis, params, is_rate_loop=LoopKind(loop) == LoopKind.RATE)


def pid_query_packet() -> bytes:
    """The device answers a query with console text, one line per loop and axis."""
    return config_packet(ConfigCommand.PID_QUERY)


def diagnostic_packet(message: str) -> bytes:
    return config_packet(ConfigCommand.TEST, message.encode("utf-8")[:CONFIG_MAX_DATA])


def wifi_ssid_packet(ssid: str) -> bytes:
    return config_packet(ConfigCommand.WIFI_SSID, ssid.encode("utf-8")[:WIFI_SSID_MAX])


def wifi_password_packet(password: str) -> bytes:
    return config_packet(ConfigCommand.WIFI_PASSWORD, password.encode("utf-8"))


def device_name_packet(name: str) -> bytes:
    return config_packet(ConfigCommand.DEVICE_NAME, name.encode("utf-8"))


def flight_params_packet(max_speed: float, max_altitude: float, flight_mode: int) -> bytes:
    payload = FLIGHT_PARAMS_PAYLOAD.pack(float(max_speed), float(max_altitude), int(flight_mode) & 0xFF)
    return config_packet(ConfigCommand.FLIGHT_PARAMS, payload)


def general_config_packet(data: bytes) -> bytes:
    return config_packet(ConfigCommand.GENERAL_CONFIG, data)

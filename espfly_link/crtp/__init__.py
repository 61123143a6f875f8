from .commander import hover_packet, setpoint_packet, stop_packet
from .controller import CommandState, PidParams, PidSettings
from .dispatcher import ControlDispatcher
from .protocol import NULL_PACKET, ChecksumError, CrtpPort, Packet, decode_packet, encode_packet
from .telemetry import BatteryInfo, BatteryState
from .transport import ConnectionState, UdpLink

__all__ = [
    "BatteryInfo",
    "BatteryState",
    "ChecksumError",
    "CommandState",
    "ConnectionState",
    "ControlDispatcher",
    "CrtpPort",
    "NULL_PACKET",
    "Packet",
    "PidParams",
    "PidSettings",
    "UdpLink",
    "decode_packet",
    "encode_packet",
    "hover_packet",
    "setpoint_packet",
    "stop_packet",
]

from __future__ import annotations

import struct
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

BATTERY_PAYLOAD = struct.Struct("<fHBB")


class BatteryState(IntEnum):
    NORMAL = 0
    CHARGING = 1
    CHARGED = 2
    LOW = 3
    SHUTDOWN = 4


@dataclass(slots=True)
class BatteryInfo:
    voltage: float
    voltage_mv: int
    level: int
    raw_state: int
    rx_monotonic_s: float = field(default=0.0, compare=False)

    @property
    def state(self) -> Optional[BatteryState]:
        try:
            return BatteryState(self.raw_state)
        except ValueError:
            return None

    @property
    def low(self) -> bool:
        return self.state in (BatteryState.LOW, BatteryState.SHUTDOWN)

    def as_dict(self) -> dict:
        state = self.state
        return {
            "voltage": self.voltage,
            "voltage_mv": self.voltage_mv,
            "level": self.level,
            "state": state.name if state is not None else None,
            "raw_state": self.raw_state,
            "rx_monotonic_s": self.rx_monotonic_s,
        }


def parse_battery_info(payload: bytes, rx_monotonic_s: Optional[float] = None) -> Optional[BatteryInfo]:
    if len(payload) < BATTERY_PAYLOAD.size:
        return None

    voltage, voltage_mv, level, raw_state = BATTERY_PAYLOAD.unpack_from(payload)
    return BatteryInfo(
        voltage=voltage,
        voltage_mv=voltage_mv,
        level=level,
        raw_state=raw_state,
        rx_monotonic_s=time.monotonic() if rx_monotonic_s is None else rx_monotonic_s,
    )


def parse_console_message(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace").strip("\x00")

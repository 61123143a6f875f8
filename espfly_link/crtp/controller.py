from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import IntEnum


MAX_ANGLE_DEG = 30.0
MAX_YAW_RATE_DPS = 180.0
THRUST_MIN = 0
THRUST_MAX = 60000
THRUST_HOVER = 35000


def _clamp(value: float, low: float, high: float) -> float:
    # NaN would otherwise saturate to the upper bound.
    if math.isnan(value):
        value = 0.0
    return max(low, min(high, value))


def clamp_angle(value: float) -> float:
    return _clamp(float(value), -MAX_ANGLE_DEG, MAX_ANGLE_DEG)


def clamp_yaw_rate(value: float) -> float:
    return _clamp(float(value), -MAX_YAW_RATE_DPS, MAX_YAW_RATE_DPS)


def clamp_thrust(value: int) -> int:
    return int(_clamp(float(value), THRUST_MIN, THRUST_MAX))


@dataclass(slots=True)
class CommandState:
    """Latest commanded attitude and thrust, in device units."""

    roll_deg: float = 0.0
    pitch_deg: float = 0.0
    yaw_rate_dps: float = 0.0
    thrust: int = 0

    def set_roll_deg(self, value: float) -> float:
        self.roll_deg = clamp_angle(value)
        return self.roll_deg

    def set_pitch_deg(self, value: float) -> float:
        self.pitch_deg = clamp_angle(value)
        return self.pitch_deg

    def set_yaw_rate_dps(self, value: float) -> float:
        self.yaw_rate_dps = clamp_yaw_rate(value)
        return self.yaw_rate_dps

    def set_thrust(self, value: int) -> int:
        self.thrust = clamp_thrust(value)
        return self.thrust

    def safe_reset(self) -> None:
        self.roll_deg = 0.0
        self.pitch_deg = 0.0
        self.yaw_rate_dps = 0.0
        self.thrust = 0

    def to_dict(self) -> dict:
        return {
            "roll_deg": self.roll_deg,
            "pitch_deg": self.pitch_deg,
            "yaw_rate_dps": self.yaw_rate_dps,
            "thrust": self.thrust,
        }


class Axis(IntEnum):
    ROLL = 0
    PITCH = 1
    YAW = 2


class LoopKind(IntEnum):
    ATTITUDE = 0
    RATE = 1


@dataclass(frozen=True, slots=True)
class PidParams:
    kp: float = 0.0
    ki: float = 0.0
    kd: float = 0.0


# Defaults match the values compiled into the flight firmware.
@dataclass(slots=True)
class PidSettings:
    rate_roll: PidParams = field(default_factory=lambda: PidParams(250.0, 500.0, 2.5))
    rate_pitch: PidParams = field(default_factory=lambda: PidParams(250.0, 500.0, 2.5))
    rate_yaw: PidParams = field(default_factory=lambda: PidParams(120.0, 16.7, 0.0))
    attitude_roll: PidParams = field(default_factory=lambda: PidParams(5.9, 2.9, 0.0))
    attitude_pitch: PidParams = field(default_factory=lambda: PidParams(5.9, 2.9, 0.0))
    attitude_yaw: PidParams = field(default_factory=lambda: PidParams(6.0, 1.0, 0.35))

    def get(self, axis: Axis, loop: LoopKind) -> PidParams:
        return getattr(self, _settings_key(axis, loop))

    def set(self, axis: Axis, loop: LoopKind, params: PidParams) -> None:
        setattr(self, _settings_key(axis, loop), params)

    def items(self) -> list:
        """Rate loop first, then attitude, each in roll/pitch/yaw order."""
        out = []
        for loop in (LoopKind.RATE, LoopKind.ATTITUDE):
            for axis in Axis:
                out.append((axis, loop, self.get(axis, loop)))
        return out


def _settings_key(axis: Axis, loop: LoopKind) -> str:
    prefix = "rate" if LoopKind(loop) == LoopKind.RATE else "attitude"
    return f"{prefix}_{Axis(axis).name.lower()}"

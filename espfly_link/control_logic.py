from __future__ import annotations

import math
from typing import Tuple

from .crtp.controller import MAX_ANGLE_DEG, MAX_YAW_RATE_DPS, THRUST_MAX


def clamp(value: float, low: float, high: float) -> float:
    if math.isnan(value):
        return max(low, min(high, 0.0))
    return max(low, min(high, value))


def thrust_from_stick(y: float) -> int:
    """Throttle stick: centre is zero, up maps to 0..THRUST_MAX, down is ignored."""
    position = clamp(float(y), 0.0, 1.0)
    return int(position * THRUST_MAX)


def attitude_from_stick(x: float, y: float) -> Tuple[float, float]:
    roll_deg = clamp(float(x), -1.0, 1.0) * MAX_ANGLE_DEG
    pitch_deg = clamp(float(y), -1.0, 1.0) * MAX_ANGLE_DEG
    return roll_deg, pitch_deg


def yaw_rate_from_stick(x: float) -> float:
    return clamp(float(x), -1.0, 1.0) * MAX_YAW_RATE_DPS

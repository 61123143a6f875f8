import pytest

from espfly_link.control_logic import (
    attitude_from_stick,
    thrust_from_stick,
    yaw_rate_from_stick,
)


def test_thrust_from_stick_scales_and_snaps_negative_to_zero() -> None:
    assert thrust_from_stick(0.0) == 0
    assert thrust_from_stick(0.5) == 30000
    assert thrust_from_stick(1.0) == 60000
    assert thrust_from_stick(-0.4) == 0
    assert thrust_from_stick(3.0) == 60000


def test_attitude_from_stick_maps_to_max_angle() -> None:
    roll, pitch = attitude_from_stick(1.0, -0.5)

    assert roll == 30.0
    assert pitch == -15.0


def test_attitude_from_stick_clamps_out_of_range() -> None:
    assert attitude_from_stick(-2.0, 2.0) == (-30.0, 30.0)


def test_yaw_rate_from_stick() -> None:
    assert yaw_rate_from_stick(0.25) == pytest.approx(45.0)
    assert yaw_rate_from_stick(-1.5) == -180.0


def test_nan_sticks_map_to_neutral() -> None:
    nan = float("nan")

    assert thrust_from_stick(nan) == 0
    assert attitude_from_stick(nan, nan) == (0.0, 0.0)
    assert yaw_rate_from_stick(nan) == 0.0

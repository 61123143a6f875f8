from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from ..control_logic import attitude_from_stick, thrust_from_stick
from .commander import (
    diagnostic_packet,
    encode_command_state,
    pid_packet_for,
    pid_query_packet,
    stop_packet,
)
from .controller import Axis, CommandState, LoopKind, PidParams, PidSettings
from .transport import ConnectionState, UdpLink

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTROL_HZ = 50.0
ESTOP_REPEATS = 3
ESTOP_SPACING_S = 0.01
PID_SPACING_S = 0.05


class ControlDispatcher:
    """Streams the latest command frame to the link at a fixed rate.

    The frame is sent on every tick whether or not it changed, so the
    device's failsafe timer keeps being fed while the link is up.
    """

    def __init__(self, link: UdpLink, *, control_hz: float = DEFAULT_CONTROL_HZ) -> None:
        if control_hz <= 0:
            raise ValueError("control_hz must be > 0")

        self.link = link
        self.control_hz = float(control_hz)
        self.period_s = 1.0 / self.control_hz

        self._state = CommandState()
        self._state_lock = threading.Lock()

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ticks_sent = 0

        self._unsubscribe = link.connection_state.subscribe(self._on_connection_state)

    @property
    def running(self) -> bool:
        with self._tick_lock:
            return self._thread is not None and self._thread.is_alive()

    @property
    def ticks_sent(self) -> int:
        return self._ticks_sent

    def close(self) -> None:
        self._unsubscribe()
        self.stop()

    def start(self) -> None:
        with self._tick_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._control_loop,
                args=(self._stop_event,),
                name="espfly-control",
                daemon=True,
            )
            self._thread.start()
        LOGGER.debug("Control loop started at %.1f Hz", self.control_hz)

    def stop(self) -> None:
        with self._tick_lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
            LOGGER.debug("Control loop stopped")

    def snapshot(self) -> CommandState:
        with self._state_lock:
            return CommandState(**self._state.to_dict())

    def update_frame(
        self,
        roll_deg: Optional[float] = None,
        pitch_deg: Optional[float] = None,
        yaw_rate_dps: Optional[float] = None,
        thrust: Optional[int] = None,
    ) -> CommandState:
        with self._state_lock:
            if roll_deg is not None:
                self._state.set_roll_deg(roll_deg)
            if pitch_deg is not None:
                self._state.set_pitch_deg(pitch_deg)
            if yaw_rate_dps is not None:
                self._state.set_yaw_rate_dps(yaw_rate_dps)
            if thrust is not None:
                self._state.set_thrust(thrust)
            return CommandState(**self._state.to_dict())

    def set_thrust(self, value: int) -> int:
        return self.update_frame(thrust=value).thrust

    def set_attitude(self, roll_deg: float, pitch_deg: float) -> CommandState:
        return self.update_frame(roll_deg=roll_deg, pitch_deg=pitch_deg)

    def set_yaw_rate(self, value: float) -> float:
        return self.update_frame(yaw_rate_dps=value).yaw_rate_dps

    def update_throttle_stick(self, y: float) -> int:
        return self.set_thrust(thrust_from_stick(y))

    def update_attitude_stick(self, x: float, y: float) -> CommandState:
        roll_deg, pitch_deg = attitude_from_stick(x, y)
        return self.set_attitude(roll_deg, pitch_deg)

    def emergency_stop(self, repeats: int = ESTOP_REPEATS, spacing_s: float = ESTOP_SPACING_S) -> int:
        """Halt periodic sending, zero the frame and burst stop commands.

        Returns how many stop packets the link accepted.
        """
        self.stop()
        with self._state_lock:
            self._state.safe_reset()

        accepted = 0
        packet = stop_packet()
        for index in range(max(0, int(repeats))):
            if self.link.send(packet):
                accepted += 1
            if index < repeats - 1:
                time.sleep(spacing_s)
        LOGGER.warning("Emergency stop: %d stop packets queued", accepted)
        return accepted

    def send_pid(self, axis: Axis, loop: LoopKind, params: PidParams) -> bool:
        return self.link.send(pid_packet_for(axis, loop, params))

    def send_all_pid(self, settings: PidSettings, spacing_s: float = PID_SPACING_S) -> int:
        sent = 0
        items = settings.items()
        for index, (axis, loop, params) in enumerate(items):
            if self.send_pid(axis, loop, params):
                sent += 1
            if index < len(items) - 1:
                time.sleep(spacing_s)
        return sent

    def query_pid(self) -> bool:
        return self.link.send(pid_query_packet())

    def send_test_message(self, text: str) -> bool:
        return self.link.send(diagnostic_packet(text))

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            self.start()
        elif state is ConnectionState.DISCONNECTED:
            self.stop()

    def _control_loop(self, stop_event: threading.Event) -> None:
        next_tick = time.monotonic()
        while not stop_event.is_set():
            if not self.link.is_connected:
                break
            frame = encode_command_state(self.snapshot())
            if self.link.send(frame):
                self._ticks_sent += 1
            next_tick += self.period_s
            wait_s = max(0.0, next_tick - time.monotonic())
            stop_event.wait(wait_s)

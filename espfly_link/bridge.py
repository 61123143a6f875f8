from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import threading
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

from .control_logic import yaw_rate_from_stick
from .crtp.controller import Axis, LoopKind, PidParams, PidSettings
from .crtp.dispatcher import ControlDispatcher
from .crtp.telemetry import BatteryInfo
from .crtp.transport import ConnectionState, UdpLink

LOGGER = logging.getLogger(__name__)


class LinkBridge:
    """WebSocket front end for a UDP link.

    Clients send JSON objects with control fields and get the resulting
    state back; link events are pushed to every client as they happen.
    """

    def __init__(
        self,
        link: UdpLink,
        dispatcher: ControlDispatcher,
        *,
        host: str = "127.0.0.1",
        port: int = 8765,
        pid_settings: Optional[PidSettings] = None,
    ) -> None:
        self.link = link
        self.dispatcher = dispatcher
        self.host = host
        self.port = int(port)
        self.pid_settings = pid_settings or PidSettings()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._server = None
        self._started = threading.Event()
        self._clients: Set[Any] = set()
        self._unsubscribers: List[Callable[[], None]] = []

    def start(self) -> None:
        if self._thread is not None:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._thread_main, daemon=True, name="espfly-ws")
        self._thread.start()
        self._started.wait(timeout=2.0)

        self._unsubscribers = [
            self.link.connection_state.subscribe(self._on_connection_state, replay=False),
            self.link.connection_message.subscribe(self._on_connection_message, replay=False),
            self.link.battery.subscribe(self._on_battery, replay=False),
            self.link.console.subscribe(self._on_console, replay=False),
        ]

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        if self._loop is None:
            return

        if self._server is not None:
            async def _close_ws() -> None:
                self._server.close()
                await self._server.wait_closed()

            fut = asyncio.run_coroutine_threadsafe(_close_ws(), self._loop)
            try:
                fut.result(timeout=1.0)
            except (concurrent.futures.TimeoutError, OSError) as exc:
                LOGGER.warning("WebSocket server did not close cleanly: %s", exc)

        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self._loop.close()
        self._loop = None
        self._thread = None
        self._server = None
        self._started.clear()

    def _thread_main(self) -> None:
        assert self._loop is not None
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._serve())
        except OSError as exc:
            LOGGER.error("WebSocket server failed to start on %s:%d: %s", self.host, self.port, exc)
            self._started.set()
            return
        self._started.set()
        self._loop.run_forever()

    async def _serve(self) -> None:
        self._server = await websockets.serve(self._handler, self.host, self.port)
        LOGGER.info("WebSocket bridge listening on ws://%s:%d", self.host, self.port)

    async def _handler(self, websocket) -> None:
        self._clients.add(websocket)
        try:
            await websocket.send(json.dumps({"ok": True, "state": self.snapshot()}, ensure_ascii=True))
            async for raw in websocket:
                loop = asyncio.get_running_loop()
                response = await loop.run_in_executor(None, self.handle_message, raw)
                await websocket.send(json.dumps(response, ensure_ascii=True))
        except websockets.ConnectionClosed:
            LOGGER.debug("WebSocket client went away")
        finally:
            self._clients.discard(websocket)

    def _publish(self, event: str, data: Any) -> None:
        if self._loop is None or not self._clients:
            return
        message = json.dumps({"event": event, "data": data}, ensure_ascii=True)
        self._loop.call_soon_threadsafe(self._broadcast, message)

    def _broadcast(self, message: str) -> None:
        websockets.broadcast(set(self._clients), message)

    def _on_connection_state(self, state: ConnectionState) -> None:
        self._publish("connection_state", state.value)

    def _on_connection_message(self, message: str) -> None:
        self._publish("connection_message", message)

    def _on_battery(self, battery: BatteryInfo) -> None:
        self._publish("battery", battery.as_dict())

    def _on_console(self, line: str) -> None:
        self._publish("console", line)

    def snapshot(self) -> Dict[str, Any]:
        battery = self.link.battery.value
        return {
            "connection": self.link.state.value,
            "command": self.dispatcher.snapshot().to_dict(),
            "battery": battery.as_dict() if battery is not None else None,
            "stats": asdict(self.link.get_stats()),
        }

    def handle_message(self, raw: str) -> Dict[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            return {"ok": False, "error": f"invalid_json: {exc}"}

        if not isinstance(data, dict):
            return {"ok": False, "error": "payload must be object"}

        try:
            result: Dict[str, Any] = {}

            if "connect" in data:
                if _parse_bool(data["connect"], "connect"):
                    result["connected"] = self.link.connect()
                else:
                    self.link.disconnect()

            if data.get("estop") is True:
                result["stop_packets"] = self.dispatcher.emergency_stop()

            if data.get("resume") is True:
                if not self.link.is_connected:
                    raise ValueError("not connected")
                self.dispatcher.start()
                result["resumed"] = True

            if "throttle" in data:
                self.dispatcher.update_throttle_stick(float(data["throttle"]))

            if "stick" in data:
                stick = data["stick"]
                if not isinstance(stick, dict):
                    raise ValueError("'stick' must be an object with x and y")
                self.dispatcher.update_attitude_stick(float(stick.get("x", 0.0)), float(stick.get("y", 0.0)))

            if "yaw" in data:
                self.dispatcher.set_yaw_rate(yaw_rate_from_stick(float(data["yaw"])))

            if "pid" in data:
                axis, loop, params = _parse_pid(data["pid"])
                self.pid_settings.set(axis, loop, params)
                result["pid_sent"] = self.dispatcher.send_pid(axis, loop, params)

            if data.get("pid_all") is True:
                result["pid_sent"] = self.dispatcher.send_all_pid(self.pid_settings)

            if data.get("pid_query") is True:
                result["pid_query_sent"] = self.dispatcher.query_pid()

            if "test" in data:
                result["test_sent"] = self.dispatcher.send_test_message(str(data["test"]))

            return {"ok": True, "result": result, "state": self.snapshot()}

        except (TypeError, ValueError, KeyError) as exc:
            return {"ok": False, "error": str(exc)}


def _parse_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"'{field_name}' must be boolean")


def _parse_pid(value: Any):
    if not isinstance(value, dict):
        raise ValueError("'pid' must be an object")
    axis = Axis[str(value["axis"]).upper()]
    loop = LoopKind[str(value.get("loop", "rate")).upper()]
    params = PidParams(
        kp=float(value.get("kp", 0.0)),
        ki=float(value.get("ki", 0.0)),
        kd=float(value.get("kd", 0.0)),
    )
    return axis, loop, params

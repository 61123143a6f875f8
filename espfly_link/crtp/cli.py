from __future__ import annotations

import argparse
import json
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..bridge import LinkBridge
from ..config import load_config
from ..logging import configure_logging, set_packet_trace
from .controller import THRUST_HOVER, Axis, LoopKind, PidParams, PidSettings
from .dispatcher import ControlDispatcher
from .telemetry import BatteryInfo
from .transport import UdpLink

STOP_FLUSH_S = 0.05

HELP_TEXT = """Commands:
  help
  status
  connect
  disconnect
  thrust <0..60000>
  throttle <0..1>
  stick <x -1..1> <y -1..1>
  yaw <deg/s>
  hover [thrust]
  estop
  resume
  pid roll|pitch|yaw rate|attitude <kp> <ki> <kd>
  pidall
  pidquery
  test <text>
  battery
  console [lines]
  watch on|off
  log on|off
  quit
"""


class SessionLogger:
    def __init__(self, path: Optional[str]) -> None:
        self._path = Path(path).expanduser() if path else None
        self._file = None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")

    def write(self, event: str, command: str, battery: Optional[dict], extra: Optional[dict] = None) -> None:
        if self._file is None:
            return
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "command": command,
            "battery": battery,
            "extra": extra or {},
        }
        self._file.write(json.dumps(payload, ensure_ascii=True) + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def _parse_on_off(raw: str) -> bool:
    if raw == "on":
        return True
    if raw == "off":
        return False
    raise ValueError("expected 'on' or 'off'")


def _parse_pid_args(parts: List[str]):
    if len(parts) != 6:
        raise ValueError("usage: pid roll|pitch|yaw rate|attitude <kp> <ki> <kd>")
    try:
        axis = Axis[parts[1].upper()]
        loop = LoopKind[parts[2].upper()]
    except KeyError as exc:
        raise ValueError(f"unknown axis or loop: {exc}") from exc
    return axis, loop, PidParams(float(parts[3]), float(parts[4]), float(parts[5]))


def _format_battery(battery: Optional[BatteryInfo]) -> str:
    if battery is None:
        return "battery: N/A"
    state = battery.state.name if battery.state is not None else f"0x{battery.raw_state:02X}"
    return (
        "battery: "
        f"level={battery.level}% "
        f"voltage={battery.voltage:.2f}V "
        f"({battery.voltage_mv}mV) "
        f"state={state}"
    )


def _format_command(dispatcher: ControlDispatcher) -> str:
    state = dispatcher.snapshot()
    return (
        "command: "
        f"roll={state.roll_deg:.1f}deg "
        f"pitch={state.pitch_deg:.1f}deg "
        f"yaw={state.yaw_rate_dps:.1f}deg/s "
        f"thrust={state.thrust}"
    )


def _watch_loop(
    link: UdpLink, dispatcher: ControlDispatcher, stop_event: threading.Event, enabled_ref: dict, period_s: float
) -> None:
    while not stop_event.is_set():
        if enabled_ref.get("watch", False):
            print(f"{_format_command(dispatcher)} | {_format_battery(link.battery.value)}")
        stop_event.wait(period_s)


def run_cli(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config).expanduser() if args.config else None)
    configure_logging(args.log_level or config.logging.level, log_path=config.logging.path)

    link = UdpLink(
        remote_host=args.host or config.link.remote_host,
        remote_port=args.port if args.port is not None else config.link.remote_port,
        local_port=args.local_port if args.local_port is not None else config.link.local_port,
        recv_timeout_s=config.link.recv_timeout_s,
        max_queue=config.link.max_queue,
    )
    dispatcher = ControlDispatcher(
        link, control_hz=args.control_hz if args.control_hz is not None else config.link.control_hz
    )
    pid_settings = PidSettings()
    logger = SessionLogger(args.session_log)

    bridge = None
    if args.ws or config.bridge.enabled:
        bridge = LinkBridge(
            link,
            dispatcher,
            host=args.ws_host or config.bridge.host,
            port=args.ws_port if args.ws_port is not None else config.bridge.port,
            pid_settings=pid_settings,
        )
        bridge.start()

    link.connection_message.subscribe(lambda message: print(f"[link] {message}"), replay=False)
    link.console.subscribe(lambda line: print(f"[console] {line}"), replay=False)

    watch_state = {"watch": False}
    watch_stop = threading.Event()
    watch_thread = threading.Thread(
        target=_watch_loop,
        args=(link, dispatcher, watch_stop, watch_state, 1.0 / max(0.1, float(args.telemetry_print_hz))),
        daemon=True,
        name="espfly-watch",
    )

    try:
        watch_thread.start()
        print(f"espfly-link ready ({link.remote_host}:{link.remote_port}). Type 'help' for commands.")

        while True:
            try:
                raw = input("espfly> ").strip()
            except EOFError:
                raw = "quit"

            if not raw:
                continue

            parts = raw.split()
            cmd = parts[0].lower()

            try:
                if cmd == "help":
                    print(HELP_TEXT, end="")

                elif cmd == "status":
                    stats = link.get_stats()
                    print(f"link: {link.state.value} -> {link.remote_host}:{link.remote_port}")
                    print(_format_command(dispatcher))
                    print(_format_battery(link.battery.value))
                    print(
                        "stats: "
                        f"tx_ok={stats.tx_packets_ok} tx_err={stats.tx_errors} "
                        f"tx_drop={stats.tx_queue_drops} rx_ok={stats.rx_packets_ok} "
                        f"rx_crc={stats.rx_checksum_errors} rx_drop={stats.rx_dropped}"
                    )

                elif cmd == "connect":
                    if not link.connect():
                        print("connect failed")

                elif cmd == "disconnect":
                    link.disconnect()

                elif cmd == "thrust":
                    if len(parts) != 2:
                        raise ValueError("usage: thrust <0..60000>")
                    print(f"thrust={dispatcher.set_thrust(int(parts[1]))}")

                elif cmd == "throttle":
                    if len(parts) != 2:
                        raise ValueError("usage: throttle <0..1>")
                    print(f"thrust={dispatcher.update_throttle_stick(float(parts[1]))}")

                elif cmd == "stick":
                    if len(parts) != 3:
                        raise ValueError("usage: stick <x> <y>")
                    state = dispatcher.update_attitude_stick(float(parts[1]), float(parts[2]))
                    print(f"roll={state.roll_deg:.1f}deg pitch={state.pitch_deg:.1f}deg")

                elif cmd == "yaw":
                    if len(parts) != 2:
                        raise ValueError("usage: yaw <deg/s>")
                    print(f"yaw={dispatcher.set_yaw_rate(float(parts[1])):.1f}deg/s")

                elif cmd == "hover":
                    if len(parts) > 2:
                        raise ValueError("usage: hover [thrust]")
                    thrust = int(parts[1]) if len(parts) == 2 else THRUST_HOVER
                    state = dispatcher.update_frame(0.0, 0.0, 0.0, thrust)
                    print(f"hover thrust={state.thrust}")

                elif cmd == "estop":
                    accepted = dispatcher.emergency_stop()
                    print(f"estop sent ({accepted} stop packets)")

                elif cmd == "resume":
                    if not link.is_connected:
                        raise ValueError("not connected")
                    dispatcher.start()
                    print("command stream resumed")

                elif cmd == "pid":
                    axis, loop, params = _parse_pid_args(parts)
                    pid_settings.set(axis, loop, params)
                    if not dispatcher.send_pid(axis, loop, params):
                        print("not connected, PID stored locally only")

                elif cmd == "pidall":
                    print(f"pid packets sent={dispatcher.send_all_pid(pid_settings)}")

                elif cmd == "pidquery":
                    if not dispatcher.query_pid():
                        print("not connected")

                elif cmd == "test":
                    if len(parts) < 2:
                        raise ValueError("usage: test <text>")
                    if not dispatcher.send_test_message(raw.split(None, 1)[1]):
                        print("not connected")

                elif cmd == "battery":
                    print(_format_battery(link.battery.value))

                elif cmd == "console":
                    count = int(parts[1]) if len(parts) == 2 else 20
                    if count <= 0:
                        raise ValueError("usage: console [lines > 0]")
                    for line in link.console.history()[-count:]:
                        print(line)

                elif cmd == "watch":
                    if len(parts) != 2:
                        raise ValueError("usage: watch on|off")
                    watch_state["watch"] = _parse_on_off(parts[1].lower())
                    print(f"watch={'on' if watch_state['watch'] else 'off'}")

                elif cmd == "log":
                    if len(parts) != 2:
                        raise ValueError("usage: log on|off")
                    enabled = _parse_on_off(parts[1].lower())
                    set_packet_trace(enabled)
                    print(f"log={'on' if enabled else 'off'}")

                elif cmd == "quit":
                    print("exiting...")
                    battery = link.battery.value
                    logger.write(
                        event="command",
                        command=raw,
                        battery=battery.as_dict() if battery is not None else None,
                    )
                    break

                else:
                    print("unknown command. try: help")

                battery = link.battery.value
                logger.write(
                    event="command",
                    command=raw,
                    battery=battery.as_dict() if battery is not None else None,
                    extra={"desired": dispatcher.snapshot().to_dict(), "link": link.state.value},
                )

            except ValueError as exc:
                print(f"error: {exc}")

    except KeyboardInterrupt:
        print("\ninterrupted by user")

    finally:
        watch_stop.set()
        watch_thread.join(timeout=1.0)
        if link.is_connected:
            dispatcher.emergency_stop()
            # Give the send loop a moment to flush the stop burst before teardown drops the queue.
            time.sleep(STOP_FLUSH_S)
        if bridge is not None:
            bridge.stop()
        dispatcher.close()
        link.release()
        logger.close()

    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="UDP control link for ESP-FLY flight controllers")
    parser.add_argument("--config", default=None, help="Path to an INI config file")
    parser.add_argument("--host", default=None, help="Device address (default: 192.168.43.42)")
    parser.add_argument("--port", type=int, default=None, help="Device UDP port (default: 2390)")
    parser.add_argument("--local-port", type=int, default=None, help="Local UDP port to bind (default: 2399)")
    parser.add_argument("--control-hz", type=float, default=None, help="Command stream rate (default: 50)")
    parser.add_argument(
        "--telemetry-print-hz",
        type=float,
        default=2.0,
        help="Print rate for 'watch on' (default: 2)",
    )
    parser.add_argument("--log-level", default=None, help="Log level name (default: INFO)")
    parser.add_argument("--session-log", default=None, help="Optional path for a JSONL session log")
    parser.add_argument("--ws", action="store_true", help="Start the WebSocket bridge")
    parser.add_argument("--ws-host", default=None, help="WebSocket bridge host (default: 127.0.0.1)")
    parser.add_argument("--ws-port", type=int, default=None, help="WebSocket bridge port (default: 8765)")
    return parser

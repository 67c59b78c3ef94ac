#!/usr/bin/env python3
"""
spbridge - Drive a Sonic Pi server over OSC, controlled over D-Bus

Usage:
    spbridge serve [--root <path>]     Boot Sonic Pi and serve until shut down
    spbridge status                    Show session status
    spbridge run <code>                Run code (or -f <file>)
    spbridge stop                      Stop all running jobs
    spbridge volume <0-200>            Set main volume (percent)
    spbridge load                      Load all workspaces
    spbridge save <n>=<file> ...       Save files into workspaces
    spbridge poll                      Show recent server events
    spbridge wait [--timeout <secs>]   Wait for server events
    spbridge shutdown                  Shut the server down

Options:
    -r, --root PATH       Sonic Pi root (default: $SONIC_PI_ROOT)
    --settings FILE       JSON file with user preferences
    -j, --json            Output raw JSON
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path

import anyio

from rich.console import Console
from rich.panel import Panel
from rich import box

from sdbus import (
    DbusInterfaceCommonAsync,
    dbus_method_async,
    dbus_property_async,
    request_default_bus_name_async,
)

from spbridge_boot import Timing
from spbridge_osc import BridgeError, log
from spbridge_protocol import EventBus, EventLog
from spbridge_session import ConfigError, Session, Settings

# ============================================================================
# Constants
# ============================================================================

DBUS_NAME = "org.sonicpi.Bridge"
DBUS_PATH = "/org/sonicpi/Bridge"
ROOT_ENV = "SONIC_PI_ROOT"
DEFAULT_TAIL = 24

console = Console()


def error(msg: str):
    """Print error and exit."""
    console.print(f"[red]error:[/red] {msg}")
    sys.exit(1)


def format_event(data: dict) -> str:
    """Render an event dict (Event.to_dict()) as rich markup."""
    kind = data.get("kind")
    if kind == "log":
        payload = " ".join(str(p) for p in data.get("payload", []))
        style = "red" if data.get("type") == "error" else "dim"
        return f"[{style}]{data.get('type')}[/{style}] {payload}"
    if kind == "runtime_error":
        return (f"[bold red]runtime error[/bold red] job {data.get('job_id')} "
                f"line {data.get('line_number')}: {data.get('message')}")
    if kind == "syntax_error":
        return (f"[bold red]syntax error[/bold red] job {data.get('job_id')} "
                f"{data.get('line_number_string')}: {data.get('message')}")
    if kind == "boot_error":
        return f"[bold red]boot error[/bold red] {data.get('message')}"
    if kind == "exited":
        return "[yellow]server exited[/yellow]"
    if kind == "ack":
        return f"[dim]ack {data.get('id')}[/dim]"
    return f"[dim]{json.dumps(data)}[/dim]"


def parse_workspaces(text: str) -> dict[int, str]:
    """Parse {"<index>": "<code>", ...} into workspace index and code."""
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    workspaces = {}
    for key, code in data.items():
        if not isinstance(code, str):
            raise ValueError(f"workspace {key}: code must be a string")
        workspaces[int(key)] = code
    return workspaces


# ============================================================================
# D-Bus Service - Exposes the session's command API
# ============================================================================

class BridgeService(DbusInterfaceCommonAsync, interface_name=DBUS_NAME):
    """D-Bus interface for a running Sonic Pi session."""

    def __init__(self, session: Session, events: EventLog, stop: anyio.Event):
        super().__init__()
        self.session = session
        self.events = events
        self._stop = stop

    async def _call(self, coro) -> str:
        try:
            return json.dumps({"result": await coro})
        except BridgeError as e:
            return json.dumps({"error": str(e)})

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @dbus_property_async(property_signature="s")
    def status(self) -> str:
        return json.dumps(self.session.status)

    # -------------------------------------------------------------------------
    # Methods - Commands
    # -------------------------------------------------------------------------

    @dbus_method_async(input_signature="s", result_signature="s")
    async def run_code(self, code: str) -> str:
        return await self._call(self.session.run_code(code))

    @dbus_method_async(input_signature="ss", result_signature="s")
    async def save_and_run_buffer(self, buffer: str, code: str) -> str:
        return await self._call(self.session.save_and_run_buffer(buffer, code))

    @dbus_method_async(result_signature="s")
    async def stop_all_jobs(self) -> str:
        return await self._call(self.session.stop_all_jobs())

    @dbus_method_async(input_signature="ii", result_signature="s")
    async def set_volume(self, vol: int, silent: int) -> str:
        return await self._call(self.session.set_volume(vol, silent))

    @dbus_method_async(result_signature="s")
    async def load_workspaces(self) -> str:
        return await self._call(self.session.load_workspaces())

    @dbus_method_async(input_signature="s", result_signature="s")
    async def save_workspaces(self, workspaces_json: str) -> str:
        try:
            workspaces = parse_workspaces(workspaces_json)
        except ValueError as e:
            return json.dumps({"error": f"bad workspaces: {e}"})
        return await self._call(self.session.save_workspaces(workspaces))

    @dbus_method_async(result_signature="s")
    async def shutdown(self) -> str:
        self._stop.set()
        return json.dumps({"shutdown": True})

    # -------------------------------------------------------------------------
    # Methods - Event Access
    # -------------------------------------------------------------------------

    @dbus_method_async(input_signature="i", result_signature="s")
    async def poll_events(self, since: int) -> str:
        events, cursor = await self.events.poll(since)
        return json.dumps({
            "events": [e.to_dict() for e in events],
            "cursor": cursor,
            "status": self.session.status,
        })

    @dbus_method_async(input_signature="id", result_signature="s")
    async def wait_events(self, since: int, timeout: float) -> str:
        events, cursor, timed_out = await self.events.wait(since, timeout)
        return json.dumps({
            "events": [e.to_dict() for e in events],
            "cursor": cursor,
            "timed_out": timed_out,
        })


# ============================================================================
# Server Entry Point
# ============================================================================

async def _watch_signals(stop: anyio.Event, scope: anyio.CancelScope):
    with scope, anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            log("INF", {"message": "shutdown requested", "signal": signum})
            stop.set()
            return


async def run_server(root: str, settings: Settings, timing: Timing | None = None) -> int:
    """Boot Sonic Pi and serve its session over D-Bus until asked to stop."""
    async with anyio.create_task_group() as tg:
        events = EventLog()
        bus = EventBus()
        bus.subscribe(events.append)
        bus.subscribe(lambda event: console.print(format_event(event.to_dict())),
                      kinds=["log", "runtime_error", "syntax_error", "boot_error", "exited"])

        stop = anyio.Event()
        bus.subscribe(lambda event: stop.set(), kinds=["exited", "boot_error"])

        session = Session(tg, settings, timing, bus=bus)
        service = BridgeService(session, events, stop)

        await request_default_bus_name_async(DBUS_NAME)
        service.export_to_dbus(DBUS_PATH)

        result = await session.init(root)
        if not result.success:
            console.print(f"[red]error:[/red] {result.error_message}")
            return 1

        print("=" * 60, file=sys.stderr)
        print("SONIC PI BRIDGE STARTED", file=sys.stderr)
        print(f"  Root:     {session.paths.root}", file=sys.stderr)
        print(f"  Daemon:   pid {session.supervisor.pid}", file=sys.stderr)
        for name, port in session.ports.to_dict().items():
            print(f"  {name + ':':<22}{port}", file=sys.stderr)
        print(f"  D-Bus:    {DBUS_NAME}", file=sys.stderr)
        print(f"  Log:      {session.paths.daemon_log}", file=sys.stderr)
        print("=" * 60, file=sys.stderr, flush=True)

        watcher = anyio.CancelScope()
        tg.start_soon(_watch_signals, stop, watcher)
        await stop.wait()
        watcher.cancel()
        # Escalation, if any, finishes before the task group exits
        await session.shutdown()
    return 0


# ============================================================================
# CLI
# ============================================================================

def get_service_proxy() -> BridgeService:
    """Get D-Bus proxy for the running bridge."""
    return BridgeService.new_proxy(DBUS_NAME, DBUS_PATH)


def print_result(raw: str, as_json: bool, ok: str):
    data = json.loads(raw)
    if as_json:
        console.print_json(raw)
    elif "error" in data:
        error(data["error"])
    elif data.get("result") is False:
        error("message could not be delivered")
    else:
        console.print(ok)


async def cmd_status(as_json: bool):
    """Show session status."""
    try:
        status = json.loads(await get_service_proxy().status)
    except Exception:
        console.print("[dim]no bridge running[/dim]")
        console.print("[dim]spbridge serve --root <path>[/dim]")
        return
    if as_json:
        console.print_json(data=status)
        return

    state = status.get("state")
    colour = "green" if state == "running" else "red"
    lines = [f"[{colour}]{state}[/{colour}]  pid {status.get('pid')}"]
    for name, port in (status.get("ports") or {}).items():
        lines.append(f"[dim]{name}[/dim] {port}")
    console.print(Panel("\n".join(lines), title="sonic pi", box=box.ROUNDED, expand=False))


async def cmd_events(as_json: bool, wait: bool, timeout: float):
    proxy = get_service_proxy()
    if wait:
        data = json.loads(await proxy.wait_events(0, timeout))
    else:
        data = json.loads(await proxy.poll_events(0))
    if as_json:
        console.print_json(data=data)
        return
    for e in data.get("events", [])[-DEFAULT_TAIL:]:
        console.print(format_event(e["data"]))
    if wait and data.get("timed_out"):
        console.print("[dim]timed out[/dim]")


async def cmd_client(cmd: str, args: argparse.Namespace):
    proxy = get_service_proxy()

    if cmd == "run":
        if args.file:
            code = Path(args.file).read_text()
        elif args.args:
            code = " ".join(args.args)
        else:
            code = sys.stdin.read()
        print_result(await proxy.run_code(code), args.json, "[green]sent[/green]")

    elif cmd == "stop":
        print_result(await proxy.stop_all_jobs(), args.json, "[red]stopped[/red] all jobs")

    elif cmd == "volume":
        if not args.args:
            error("volume <0-200>")
        try:
            vol = int(args.args[0])
        except ValueError:
            error(f"not a number: {args.args[0]}")
        print_result(await proxy.set_volume(vol, int(args.silent)), args.json, f"volume {vol}%")

    elif cmd == "load":
        print_result(await proxy.load_workspaces(), args.json, "[green]loading[/green] workspaces")

    elif cmd == "save":
        workspaces = {}
        for item in args.args:
            index, sep, path = item.partition("=")
            if not sep or not index.isdigit():
                error(f"expected <n>=<file>, got {item}")
            workspaces[index] = Path(path).read_text()
        print_result(await proxy.save_workspaces(json.dumps(workspaces)), args.json,
                     f"[green]saved[/green] {len(workspaces)} workspace(s)")

    elif cmd == "shutdown":
        print_result(await proxy.shutdown(), args.json, "[red]shutting down[/red]")

    else:
        error(f"unknown command: {cmd}")


def load_settings(path: str | None) -> Settings:
    if not path:
        return Settings()
    try:
        return Settings.load(path)
    except (OSError, json.JSONDecodeError, ConfigError, TypeError) as e:
        error(f"cannot read settings {path}: {e}")


def main():
    parser = argparse.ArgumentParser(description="Drive a Sonic Pi server over OSC")
    parser.add_argument("-r", "--root", default=os.environ.get(ROOT_ENV), help="Sonic Pi root")
    parser.add_argument("--settings", help="JSON file with user preferences")
    parser.add_argument("--legacy-fallthrough", action="store_true",
                        help="Also emit an ack event after /exited, like older clients")
    parser.add_argument("-j", "--json", action="store_true", help="JSON output")
    parser.add_argument("-f", "--file", help="Read code from file (run)")
    parser.add_argument("--silent", action="store_true", help="Silent volume change")
    parser.add_argument("--timeout", type=float, default=30.0, help="Wait timeout (seconds)")
    parser.add_argument("command", nargs="?", help="Command")
    parser.add_argument("args", nargs="*", help="Arguments")

    args = parser.parse_args()

    if not args.command:
        asyncio.run(cmd_status(args.json))
        return

    cmd = args.command.lower()

    if cmd == "serve":
        if not args.root:
            error(f"no root path: pass --root or set {ROOT_ENV}")
        settings = load_settings(args.settings)
        if args.legacy_fallthrough:
            settings.legacy_fallthrough = True
        sys.exit(asyncio.run(run_server(args.root, settings)))

    if cmd == "status":
        asyncio.run(cmd_status(args.json))
    elif cmd in ("poll", "wait"):
        asyncio.run(cmd_events(args.json, cmd == "wait", args.timeout))
    else:
        asyncio.run(cmd_client(cmd, args))


if __name__ == "__main__":
    main()

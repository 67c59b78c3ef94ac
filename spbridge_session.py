"""
spbridge session: boot, talk to and shut down one Sonic Pi server.

    async with anyio.create_task_group() as tg:
        session = Session(tg)
        result = await session.init("/opt/sonic-pi")
        if result.success:
            await session.run_code("play 60")
            await session.shutdown()

A Session is an ordinary object; create as many as you like. Its state only
moves forward (uninitialized → starting → running → shutting_down →
stopped), except that a failed boot drops back to uninitialized.
"""

from __future__ import annotations

import enum
import json
import os
import shutil
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Awaitable, Callable, Mapping

import anyio
import anyio.abc

from spbridge_boot import (
    BootInfo,
    HandshakeError,
    HandshakeReader,
    PortSet,
    ProcessSupervisor,
    Timing,
)
from spbridge_osc import (
    LOCALHOST,
    BridgeError,
    OscChannel,
    TransportError,
    log,
    open_channel,
)
from spbridge_protocol import (
    BufferNewlineAndIndent,
    Command,
    EventBus,
    KeepAlive,
    LoadBuffer,
    MixerAmp,
    ProtocolDispatcher,
    RunCode,
    SaveAndRunBuffer,
    SaveBuffer,
    StopAllJobs,
)


# ============================================================================
# Constants
# ============================================================================

MAX_WORKSPACES = 10
NUMBER_NAMES = (
    "zero", "one", "two", "three", "four",
    "five", "six", "seven", "eight", "nine", "ten",
)
NOSAVE = "#__nosave__ set by user preferences."


def workspace_name(index: int) -> str:
    return f"workspace_{NUMBER_NAMES[index]}"


class ConfigError(BridgeError):
    """The application root or one of its scripts could not be found."""


class NotRunningError(BridgeError):
    """A command was issued while the session is not running."""


class RangeError(BridgeError, ValueError):
    """A command argument is outside its valid range."""


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Result:
    """Outcome of Session.init."""
    success: bool
    error_message: str | None = None

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True}
        return {"success": False, "error_message": self.error_message}


# ============================================================================
# Configuration
# ============================================================================

@dataclass(frozen=True)
class Paths:
    root: Path
    ruby: str
    boot_daemon: Path
    user: Path
    log_dir: Path

    @property
    def daemon_log(self) -> Path:
        return self.log_dir / "daemon.log"


def _exists(path: Path) -> bool:
    try:
        return path.exists()
    except OSError as e:
        raise ConfigError(f"Cannot access {path}: {e}") from e


def resolve_paths(root: str | os.PathLike, user_path: str | os.PathLike | None = None) -> Paths:
    """Locate the interpreter and boot daemon under a Sonic Pi root."""
    root_path = Path(os.path.normpath(root))
    if not _exists(root_path):
        raise ConfigError(f"Could not find root path: {root}")

    ruby_name = "ruby.exe" if sys.platform == "win32" else "ruby"
    bundled = root_path / "app" / "server" / "native" / "ruby" / "bin" / ruby_name
    ruby = str(bundled) if _exists(bundled) else (shutil.which("ruby") or "ruby")

    boot_daemon = root_path / "app" / "server" / "ruby" / "bin" / "daemon.rb"
    if not _exists(boot_daemon):
        raise ConfigError(f"Could not find boot daemon script path: {boot_daemon}")

    if user_path is not None:
        user = Path(user_path)
    else:
        try:
            user = Path.home() / ".sonic-pi"
        except (RuntimeError, KeyError) as e:
            raise ConfigError(f"Could not find home directory: {e}") from e
    return Paths(root_path, ruby, boot_daemon, user, user / "log")


def ensure_log_dir(paths: Paths) -> bool:
    """Create the log directory and check it is writable."""
    try:
        paths.log_dir.mkdir(parents=True, exist_ok=True)
        probe = paths.log_dir / ".writeTest"
        probe.write_text("test")
        probe.unlink()
        return True
    except OSError as e:
        log("ERR", {"error": f"Home directory not writable: {e}"})
        return False


@dataclass
class Settings:
    """User preferences applied to code before it is run."""
    log_synths: bool = True
    log_cues: bool = True
    enable_external_synths: bool = False
    enforce_timing_guarantees: bool = False
    check_args: bool = False
    default_midi_channel: int = -1  # negative means any channel
    legacy_fallthrough: bool = False

    @classmethod
    def from_dict(cls, data: Mapping) -> Settings:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: str | os.PathLike) -> Settings:
        """Read settings from a JSON file. Unknown keys are ignored."""
        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigError(f"settings file must hold a JSON object: {path}")
        return cls.from_dict(data)

    def preprocess(self, code: str) -> str:
        """Prefix code with the lines that enact these preferences."""
        lines = []
        if not self.log_synths:
            lines.append(f"use_debug false {NOSAVE}")
        if not self.log_cues:
            lines.append(f"use_cue_logging false {NOSAVE}")
        if self.check_args:
            lines.append(f"use_arg_checks true {NOSAVE}")
        if self.enable_external_synths:
            lines.append(f"use_external_synths true {NOSAVE}")
        if self.enforce_timing_guarantees:
            lines.append(f"use_timing_guarantees true {NOSAVE}")
        channel = "*" if self.default_midi_channel < 0 else str(self.default_midi_channel)
        lines.append(f'use_midi_defaults channel: "{channel}" {NOSAVE}')
        return "\n".join(lines) + "\n" + code


ChannelFactory = Callable[..., Awaitable[OscChannel]]


# ============================================================================
# Session
# ============================================================================

class Session:
    """One boot daemon, its channels and heartbeat, and the command API."""

    def __init__(
        self,
        task_group: anyio.abc.TaskGroup,
        settings: Settings | None = None,
        timing: Timing | None = None,
        *,
        bus: EventBus | None = None,
        user_path: str | os.PathLike | None = None,
        channel_factory: ChannelFactory = open_channel,
    ):
        self._tg = task_group
        self.settings = settings or Settings()
        self.timing = timing or Timing()
        self.bus = bus or EventBus()
        self._user_path = user_path
        self._open_channel = channel_factory

        self.supervisor = ProcessSupervisor(task_group, self.timing)
        self.state = SessionState.UNINITIALIZED
        self.paths: Paths | None = None
        self.token: int | None = None
        self.ports: PortSet | None = None

        self._reader: HandshakeReader | None = None
        self._log_sink: anyio.AsyncFile | None = None
        self._outbound: OscChannel | None = None
        self._inbound: OscChannel | None = None
        self._daemon: OscChannel | None = None
        self._dispatcher: ProtocolDispatcher | None = None
        self._heartbeat_scope: anyio.CancelScope | None = None
        self.heartbeats = 0

    @property
    def running(self) -> bool:
        return self.state is SessionState.RUNNING

    @property
    def status(self) -> dict:
        return {
            "state": self.state.value,
            "token": self.token is not None,
            "ports": self.ports.to_dict() if self.ports else None,
            "pid": self.supervisor.pid,
            "alive": self.supervisor.alive,
            "heartbeats": self.heartbeats,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _startup_error(self, message: str) -> Result:
        log("ERR", {"error": f"Failed to start Sonic Pi server: {message}"})
        return Result(False, message)

    async def init(self, root: str | os.PathLike) -> Result:
        """Boot the server. Never raises; failures come back as a Result."""
        if self.state is SessionState.STOPPED:
            return self._startup_error("Session has been shut down; create a new one")
        if self.state is not SessionState.UNINITIALIZED:
            return self._startup_error("Sonic Pi server is already running")

        try:
            self.paths = resolve_paths(root, self._user_path)
        except ConfigError as e:
            return self._startup_error(str(e))

        self.state = SessionState.STARTING
        log("INF", {"message": "Welcome to Sonic Pi", "root": str(self.paths.root)})
        try:
            info = await self._boot()
        except HandshakeError as e:
            return await self._abort_startup(str(e))
        if self.state is not SessionState.STARTING:
            return await self._abort_startup("shut down during startup")

        self.token = info.token
        self.ports = info.ports
        try:
            await self._connect(info)
        except TransportError as e:
            return await self._abort_startup(str(e))
        if self.state is not SessionState.STARTING:
            return await self._abort_startup("shut down during startup")

        self.state = SessionState.RUNNING
        log("INF", {"message": "Init SonicPi Succeeded...", "ports": info.ports.to_dict()})
        return Result(True)

    async def _boot(self) -> BootInfo:
        if ensure_log_dir(self.paths):
            try:
                self._log_sink = await anyio.open_file(self.paths.daemon_log, "wb")
            except OSError as e:
                log("ERR", {"error": str(e), "context": "daemon log"})
        self._reader = HandshakeReader(
            self.supervisor,
            self._tg,
            log_sink=self._log_sink,
            timeout=self.timing.handshake_timeout,
        )
        return await self._reader.start(self.paths.ruby, [str(self.paths.boot_daemon)])

    async def _connect(self, info: BootInfo):
        ports = info.ports
        self._outbound = await self._open_channel(remote=(LOCALHOST, ports.gui_send_to_spider))
        self._inbound = await self._open_channel(local=(LOCALHOST, ports.gui_listen_to_spider))
        self._daemon = await self._open_channel(remote=(LOCALHOST, ports.daemon))

        self._dispatcher = ProtocolDispatcher(
            self._inbound,
            self._outbound,
            self.bus,
            legacy_fallthrough=self.settings.legacy_fallthrough,
        )
        self._tg.start_soon(self._dispatcher.run)

        self._heartbeat_scope = anyio.CancelScope()
        self._tg.start_soon(self._heartbeat, self._heartbeat_scope)

    async def _heartbeat(self, scope: anyio.CancelScope):
        """Tell the daemon we are still here until cancelled."""
        with scope:
            while True:
                await anyio.sleep(self.timing.heartbeat_interval)
                try:
                    await self._daemon.send_message(KeepAlive(self.token).to_message())
                    self.heartbeats += 1
                except TransportError as e:
                    log("ERR", {"error": str(e), "context": "heartbeat"})

    async def shutdown(self):
        """Stop the server and release channels. Safe to call repeatedly."""
        if self.state not in (SessionState.STARTING, SessionState.RUNNING):
            return
        self.state = SessionState.SHUTTING_DOWN
        await self._release()
        self.token = None
        self.state = SessionState.STOPPED
        log("INF", {"message": "session stopped"})

    async def _abort_startup(self, message: str) -> Result:
        """Undo a failed or interrupted init.

        A session still starting goes back to uninitialized. One that was
        shut down meanwhile keeps its state; whatever the boot opened after
        that is released here.
        """
        result = self._startup_error(message)
        if self.state is SessionState.STARTING:
            await self.shutdown()
            self.state = SessionState.UNINITIALIZED
        else:
            await self._release()
            self.token = None
        return result

    async def _release(self):
        await self.supervisor.terminate(self._outbound, self.token)

        if self._heartbeat_scope is not None:
            self._heartbeat_scope.cancel()
            self._heartbeat_scope = None

        for channel in (self._inbound, self._outbound, self._daemon):
            if channel is not None:
                await channel.aclose()
        self._inbound = self._outbound = self._daemon = None
        self._dispatcher = None

        if self._log_sink is not None and not (self._reader and self._reader.pumping):
            await self._log_sink.aclose()
        self._log_sink = None
        self._reader = None

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _require_running(self, name: str):
        if not self.running:
            err = NotRunningError(f"{name}: Sonic Pi server is not running ({self.state.value})")
            log("ERR", {"error": str(err)})
            raise err

    async def _send(self, command: Command) -> bool:
        message = command.to_message()
        try:
            await self._outbound.send_message(message)
        except TransportError as e:
            log("ERR", {"error": str(e), "context": "send"})
            return False
        log(">>>", message.to_dict())
        return True

    async def run_code(self, code: str) -> bool:
        self._require_running("run_code")
        return await self._send(RunCode(self.token, self.settings.preprocess(code)))

    async def save_and_run_buffer(self, buffer: str, code: str) -> bool:
        self._require_running("save_and_run_buffer")
        code = self.settings.preprocess(code)
        return await self._send(SaveAndRunBuffer(self.token, buffer, code, buffer))

    async def buffer_new_line_and_indent(
        self, line: int, index: int, first_line: int, code: str, file_name: str
    ) -> bool:
        self._require_running("buffer_new_line_and_indent")
        return await self._send(
            BufferNewlineAndIndent(self.token, file_name, code, line, index, first_line)
        )

    async def stop_all_jobs(self) -> bool:
        self._require_running("stop_all_jobs")
        return await self._send(StopAllJobs(self.token))

    async def set_volume(self, vol: float, silent: int = 0) -> bool:
        """Set the main volume as a percentage from 0 to 200."""
        if not 0 <= vol <= 200:
            err = RangeError(
                "Volume outside of valid range - `vol` must be between 0 and 200 inclusive"
            )
            log("ERR", {"error": str(err), "vol": vol})
            raise err
        self._require_running("set_volume")
        log("INF", {"message": f"Changing volume to {vol}%"})
        return await self._send(MixerAmp(self.token, vol / 100, silent))

    async def load_workspaces(self) -> int:
        """Ask the server to load every workspace. Returns how many requests went out."""
        self._require_running("load_workspaces")
        sent = 0
        for i in range(MAX_WORKSPACES):
            sent += await self._send(LoadBuffer(self.token, workspace_name(i)))
        return sent

    async def save_workspaces(self, workspaces: Mapping[int, str]) -> int:
        """Save the given workspaces, keyed by index."""
        self._require_running("save_workspaces")
        sent = 0
        for i in range(MAX_WORKSPACES):
            if i in workspaces:
                sent += await self._send(SaveBuffer(self.token, workspace_name(i), workspaces[i]))
        return sent

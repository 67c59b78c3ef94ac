"""
spbridge boot: spawn the Sonic Pi boot daemon, read its handshake, stop it.

The daemon announces itself with a single line on stdout: seven port numbers
followed by the session token, separated by whitespace. Everything it prints
afterwards belongs in the daemon log, not to us.

Shutdown is polite first (/exit), then escalates on a fixed schedule:
SIGSTOP, SIGTERM, SIGKILL at roughly 1s, 2s and 3s after the request. Every
stage fires even if the process is already gone; the daemon holds on to a
socket after exit, so its liveness is not a reliable signal.
"""

from __future__ import annotations

import signal
import subprocess
from dataclasses import astuple, dataclass, field, fields

import anyio
import anyio.abc

from spbridge_osc import BridgeError, OscChannel, TransportError, log
from spbridge_protocol import Exit


# ============================================================================
# Constants
# ============================================================================

def _signal(name: str, fallback: int) -> int:
    return getattr(signal, name, fallback)


DEFAULT_ESCALATION = (
    (1.0, _signal("SIGSTOP", 19)),
    (2.0, _signal("SIGTERM", 15)),
    (3.0, _signal("SIGKILL", 9)),
)


@dataclass(frozen=True)
class Timing:
    """Timers for the session lifecycle, in seconds."""
    grace: float = 1.0
    escalation: tuple[tuple[float, int], ...] = DEFAULT_ESCALATION
    heartbeat_interval: float = 4.0
    handshake_timeout: float = 30.0


class HandshakeError(BridgeError):
    """The boot daemon did not produce a usable handshake."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message if cause is None else f"{message}: {cause}")
        self.reason = message
        self.cause = cause


# ============================================================================
# Handshake parsing
# ============================================================================

@dataclass(frozen=True)
class PortSet:
    """Ports allocated by the daemon, in handshake order."""
    daemon: int
    gui_listen_to_spider: int
    gui_send_to_spider: int
    scsynth: int
    tau_osc_cues: int
    tau: int
    phx_http: int

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


PORT_COUNT = len(fields(PortSet))


@dataclass(frozen=True)
class BootInfo:
    token: int
    ports: PortSet


def parse_handshake(text: str) -> BootInfo:
    """Parse '<7 ports> <token>' into a BootInfo."""
    parts = text.split()
    if not parts:
        raise HandshakeError("malformed output")
    token_text, port_texts = parts[-1], parts[:-1]

    if len(port_texts) != PORT_COUNT:
        raise HandshakeError("malformed output")
    try:
        ports = PortSet(*(int(p) for p in port_texts))
    except ValueError:
        raise HandshakeError("malformed output") from None

    try:
        token = int(token_text)
    except ValueError:
        raise HandshakeError("token missing") from None
    return BootInfo(token, ports)


# ============================================================================
# Process Supervisor
# ============================================================================

class ProcessSupervisor:
    """Sole owner of the daemon process handle."""

    def __init__(self, task_group: anyio.abc.TaskGroup, timing: Timing | None = None):
        self._tg = task_group
        self.timing = timing or Timing()
        self._process: anyio.abc.Process | None = None
        self._terminating: anyio.abc.Process | None = None
        self.signals_sent: list[int] = []

    @property
    def process(self) -> anyio.abc.Process | None:
        return self._process

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def spawn(self, command: list[str]) -> anyio.abc.Process:
        """Start the daemon with piped output."""
        log("INF", {"message": "launching boot daemon", "command": command})
        self._process = await anyio.open_process(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        log("INF", {"message": "boot daemon started", "pid": self._process.pid})
        return self._process

    async def terminate(self, channel: OscChannel | None, token: int | None) -> None:
        """Ask the daemon to exit, escalating in the background if it lingers."""
        process = self._process
        if process is None:
            log("INF", {"message": "Server process is not running."})
            return
        if self._terminating is process:
            return
        self._terminating = process

        started = anyio.current_time()
        if channel is not None and token is not None:
            try:
                await channel.send_message(Exit(token).to_message())
            except TransportError as e:
                log("ERR", {"error": str(e), "context": "exit"})

        with anyio.move_on_after(self.timing.grace):
            await process.wait()

        if process.returncode is not None:
            log("INF", {"message": "Server process gone", "exit_code": process.returncode})
            self._release(process)
            return

        log("INF", {"message": "server still alive, escalating", "pid": process.pid})
        self._tg.start_soon(self._escalate, process, started)

    async def _escalate(self, process: anyio.abc.Process, started: float):
        for delay, signum in self.timing.escalation:
            await anyio.sleep(max(0.0, started + delay - anyio.current_time()))
            self._send_signal(process, signum)
        with anyio.move_on_after(self.timing.grace):
            await process.wait()
        log("INF", {"message": "Server process gone", "exit_code": process.returncode})
        self._release(process)

    def _release(self, process: anyio.abc.Process):
        if self._process is process:
            self._process = None
        if self._terminating is process:
            self._terminating = None

    def _send_signal(self, process: anyio.abc.Process, signum: int):
        self.signals_sent.append(signum)
        entry = {"pid": process.pid, "signal": signal_name(signum)}
        try:
            process.send_signal(signum)
        except (ProcessLookupError, OSError) as e:
            entry["error"] = str(e)
        log("SIG", entry)


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


# ============================================================================
# Handshake Reader
# ============================================================================

@dataclass
class HandshakeReader:
    """Spawn the daemon and read the one-shot handshake from its stdout."""
    supervisor: ProcessSupervisor
    task_group: anyio.abc.TaskGroup
    log_sink: anyio.AsyncFile | None = None
    timeout: float = 30.0
    _pumps: int = field(default=0, init=False)

    @property
    def pumping(self) -> bool:
        """True while daemon output is still being copied to the sink."""
        return self._pumps > 0

    async def start(self, executable: str, args: list[str]) -> BootInfo:
        try:
            process = await self.supervisor.spawn([executable, *args])
        except OSError as e:
            raise HandshakeError("process error", e) from e

        try:
            with anyio.fail_after(self.timeout):
                chunk = await process.stdout.receive()
        except TimeoutError as e:
            raise HandshakeError("process error", e) from e
        except (anyio.EndOfStream, anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise HandshakeError(
                "process error",
                RuntimeError(f"daemon exited before handshake (code {process.returncode})"),
            ) from e

        text = chunk.decode("utf-8", errors="replace")
        log("INF", {"message": "received handshake", "chunk": text.strip()})

        # Later output goes to the sink whether or not the handshake parses
        self._pumps = 2
        self.task_group.start_soon(self._pump, process.stdout, "stdout")
        self.task_group.start_soon(self._pump, process.stderr, "stderr")

        info = parse_handshake(text)
        log("INF", {"token": info.token, "ports": list(astuple(info.ports))})
        return info

    async def _pump(self, stream: anyio.abc.ByteReceiveStream, name: str):
        """Copy a process stream into the log sink until it closes."""
        try:
            async for chunk in stream:
                if self.log_sink is not None:
                    await self.log_sink.write(chunk)
                    await self.log_sink.flush()
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass
        except Exception as e:
            log("ERR", {"error": str(e), "context": name})
        finally:
            self._pumps -= 1
            if self._pumps == 0 and self.log_sink is not None:
                with anyio.CancelScope(shield=True):
                    await self.log_sink.aclose()

"""
spbridge protocol: the Sonic Pi OSC vocabulary and the inbound dispatcher.

Outbound commands are fixed-arity records whose field order is wire order.
Inbound messages are classified by address into typed events and published
on an EventBus. Every inbound message is answered with a bare /ack, whatever
its address, as a keep-alive signal to the server.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import asdict, astuple, dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Iterable, Union

import anyio

from spbridge_osc import Message, OscChannel, TransportError, log


# ============================================================================
# Outbound commands
# ============================================================================

@dataclass(frozen=True)
class Command:
    """An outbound message; subclasses declare the address and wire fields."""
    address: ClassVar[str]

    def to_message(self) -> Message:
        return Message(self.address, astuple(self))


@dataclass(frozen=True)
class Exit(Command):
    address = "/exit"
    token: int


@dataclass(frozen=True)
class MixerAmp(Command):
    address = "/mixer-amp"
    token: int
    amp: float
    silent: int = 0


@dataclass(frozen=True)
class RunCode(Command):
    address = "/run-code"
    token: int
    code: str


@dataclass(frozen=True)
class SaveAndRunBuffer(Command):
    address = "/save-and-run-buffer"
    token: int
    buffer: str
    code: str
    workspace: str


@dataclass(frozen=True)
class BufferNewlineAndIndent(Command):
    address = "/buffer-newline-and-indent"
    token: int
    file_name: str
    code: str
    line: int
    index: int
    first_line: int


@dataclass(frozen=True)
class LoadBuffer(Command):
    address = "/load-buffer"
    token: int
    workspace: str


@dataclass(frozen=True)
class SaveBuffer(Command):
    address = "/save-buffer"
    token: int
    workspace: str
    code: str


@dataclass(frozen=True)
class StopAllJobs(Command):
    address = "/stop-all-jobs"
    token: int


@dataclass(frozen=True)
class KeepAlive(Command):
    address = "/daemon/keep-alive"
    token: int


@dataclass(frozen=True)
class Ack(Command):
    address = "/ack"


# ============================================================================
# Inbound events
# ============================================================================

@dataclass(frozen=True)
class Event:
    kind: ClassVar[str]

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True)
class LogEvent(Event):
    kind = "log"
    type: str
    payload: tuple


@dataclass(frozen=True)
class BootErrorEvent(Event):
    kind = "boot_error"
    message: str | None


@dataclass(frozen=True)
class RuntimeErrorEvent(Event):
    kind = "runtime_error"
    job_id: int | None
    message: str | None
    backtrace: str | None
    line_number: int | None


@dataclass(frozen=True)
class SyntaxErrorEvent(Event):
    kind = "syntax_error"
    job_id: int | None
    message: str | None
    line_string: str | None
    line_number: int | None
    line_number_string: str | None


@dataclass(frozen=True)
class ExitedEvent(Event):
    kind = "exited"


@dataclass(frozen=True)
class AckEvent(Event):
    kind = "ack"
    id: Any = None


EVENT_KINDS = ("log", "boot_error", "runtime_error", "syntax_error", "exited", "ack")

LOG_TYPES = {
    "/log/info": "info",
    "/log/error": "error",
    "/log/multi_message": "multi_message",
}


def _arg(args: tuple, i: int):
    return args[i] if i < len(args) else None


def _int(value) -> int | None:
    """Integer coercion that yields None for anything non-numeric."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def classify(message: Message, legacy_fallthrough: bool = False) -> list[Event]:
    """Map an inbound message to the events it produces.

    Unknown addresses produce no events. With legacy_fallthrough, /exited is
    followed by an ack event with no id, as older clients observed.
    """
    address, args = message.address, message.args

    if address in LOG_TYPES:
        return [LogEvent(LOG_TYPES[address], args)]

    if address == "/exited-with-boot-error":
        return [BootErrorEvent(_arg(args, 0))]

    if address == "/error":
        return [RuntimeErrorEvent(
            job_id=_int(_arg(args, 0)),
            message=_arg(args, 1),
            backtrace=_arg(args, 2),
            line_number=_int(_arg(args, 3)),
        )]

    if address == "/syntax_error":
        return [SyntaxErrorEvent(
            job_id=_int(_arg(args, 0)),
            message=_arg(args, 1),
            line_string=_arg(args, 2),
            line_number=_int(_arg(args, 3)),
            line_number_string=_arg(args, 4),
        )]

    if address == "/exited":
        if legacy_fallthrough:
            return [ExitedEvent(), AckEvent(None)]
        return [ExitedEvent()]

    if address == "/ack":
        return [AckEvent(_arg(args, 0))]

    return []


# ============================================================================
# EventBus - typed publish/subscribe
# ============================================================================

Subscriber = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass(eq=False)
class Subscription:
    callback: Subscriber
    kinds: frozenset[str] | None
    _bus: EventBus | None = field(default=None, repr=False)

    def wants(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def cancel(self):
        if self._bus is not None:
            self._bus._remove(self)
            self._bus = None


class EventBus:
    """Fan events out to subscribers. A failing subscriber never stops the others."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []

    def subscribe(self, callback: Subscriber, kinds: Iterable[str] | None = None) -> Subscription:
        """Register a plain or async callback, optionally for some event kinds only."""
        wanted = None
        if kinds is not None:
            wanted = frozenset(kinds)
            unknown = wanted - set(EVENT_KINDS)
            if unknown:
                raise ValueError(f"unknown event kinds: {sorted(unknown)}")
        sub = Subscription(callback, wanted, self)
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def publish(self, event: Event) -> None:
        for sub in list(self._subscriptions):
            if not sub.wants(event):
                continue
            try:
                result = sub.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log("ERR", {"error": str(e), "context": "subscriber", "event": event.kind})


# ============================================================================
# EventLog - Append-only event log with cursor-based streaming
# ============================================================================

@dataclass
class LoggedEvent:
    """A single event in the log."""
    seq: int
    event: Event
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "kind": self.event.kind,
            "data": self.event.to_dict(),
            "timestamp": self.timestamp,
        }


class EventLog:
    """Append-only event log with cursor-based access and async waiting.

    Subscribe it to a bus with ``bus.subscribe(event_log.append)``.
    """

    def __init__(self, limit: int | None = 10000):
        self._events: list[LoggedEvent] = []
        self._cursor = 0
        self._limit = limit
        self._lock = anyio.Lock()
        self._condition = anyio.Condition(self._lock)

    @property
    def cursor(self) -> int:
        """Current end-of-log position."""
        return self._cursor

    @property
    def _offset(self) -> int:
        return self._cursor - len(self._events)

    def _since(self, since: int) -> list[LoggedEvent]:
        return self._events[max(since - self._offset, 0):]

    async def append(self, event: Event) -> int:
        """Append event and notify waiters. Returns event sequence number."""
        async with self._condition:
            entry = LoggedEvent(seq=self._cursor, event=event)
            self._events.append(entry)
            self._cursor += 1
            if self._limit is not None and len(self._events) > self._limit:
                del self._events[:len(self._events) - self._limit]
            self._condition.notify_all()
            return entry.seq

    async def poll(self, since: int = 0) -> tuple[list[LoggedEvent], int]:
        """Get events since cursor. Returns (events, new_cursor)."""
        async with self._lock:
            return self._since(since), self._cursor

    async def wait(self, since: int, timeout: float) -> tuple[list[LoggedEvent], int, bool]:
        """Wait for events after cursor. Returns (events, new_cursor, timed_out)."""
        try:
            with anyio.fail_after(timeout):
                async with self._condition:
                    while self._cursor <= since:
                        await self._condition.wait()
                    return self._since(since), self._cursor, False
        except TimeoutError:
            async with self._lock:
                return self._since(since), self._cursor, True

    def tail(self, n: int = 24) -> list[LoggedEvent]:
        return self._events[-n:] if self._events else []


# ============================================================================
# Dispatcher
# ============================================================================

class ProtocolDispatcher:
    """Consume an inbound channel, publish typed events, ack every message."""

    def __init__(
        self,
        inbound: OscChannel,
        outbound: OscChannel,
        bus: EventBus,
        legacy_fallthrough: bool = False,
    ):
        self.inbound = inbound
        self.outbound = outbound
        self.bus = bus
        self.legacy_fallthrough = legacy_fallthrough
        self.received = 0

    async def run(self):
        """Dispatch until the inbound channel is closed."""
        try:
            async for message in self.inbound.receive():
                await self.handle(message)
        except TransportError as e:
            log("ERR", {"error": str(e), "context": "dispatch"})
        log("INF", {"message": "inbound channel closed", "received": self.received})

    async def handle(self, message: Message):
        self.received += 1
        log("<<<", message.to_dict())
        try:
            for event in classify(message, self.legacy_fallthrough):
                await self.bus.publish(event)
        except Exception as e:
            log("ERR", {"error": str(e), "context": "classify", "address": message.address})
        finally:
            await self._ack()

    async def _ack(self):
        try:
            await self.outbound.send_message(Ack().to_message())
        except TransportError as e:
            log("ERR", {"error": str(e), "context": "ack"})

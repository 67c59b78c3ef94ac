"""
spbridge OSC: connectionless message channels to the Sonic Pi server.

A channel wraps one UDP socket. Outbound datagrams go to the channel's remote
endpoint; inbound datagrams are decoded lazily as they arrive.

    channel = await open_channel(remote=(LOCALHOST, 4557))
    await channel.send("/run-code", token, "play 60")

    inbox = await open_channel(local=(LOCALHOST, 4558))
    async for message in inbox.receive():
        ...

Delivery is best-effort: no buffering, retries, sequence numbers or ordering.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import AsyncIterator, Union

import anyio
import anyio.abc
from pythonosc.osc_message_builder import BuildError, OscMessageBuilder
from pythonosc.osc_packet import OscPacket, ParseError


# ============================================================================
# Constants
# ============================================================================

LOCALHOST = "127.0.0.1"
MAX_DATAGRAM = 65507

Arg = Union[int, float, str]


def log(tag: str, msg: dict):
    """Log to stderr as one compact JSON line."""
    compact = json.dumps(msg, separators=(",", ":"), default=str)
    print(f"[{tag}] {compact}", file=sys.stderr, flush=True)


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class TransportError(BridgeError):
    """A channel could not deliver or receive a message."""


# ============================================================================
# Message - address plus ordered arguments
# ============================================================================

@dataclass(frozen=True)
class Message:
    """A single OSC message."""
    address: str
    args: tuple[Arg, ...] = ()

    def __post_init__(self):
        if not self.address.startswith("/"):
            raise ValueError(f"OSC address must start with '/': {self.address!r}")

    def encode(self) -> bytes:
        builder = OscMessageBuilder(address=self.address)
        for arg in self.args:
            if isinstance(arg, float):
                # doubles keep volume multipliers exact
                builder.add_arg(arg, OscMessageBuilder.ARG_TYPE_DOUBLE)
            else:
                builder.add_arg(arg)
        return builder.build().dgram

    def to_dict(self) -> dict:
        return {"address": self.address, "args": list(self.args)}


def decode(data: bytes) -> list[Message]:
    """Decode a datagram into messages. Bundles are flattened in order."""
    packet = OscPacket(data)
    return [
        Message(timed.message.address, tuple(timed.message.params))
        for timed in packet.messages
    ]


# ============================================================================
# Channel
# ============================================================================

class OscChannel:
    """Duplex OSC channel over a single UDP socket."""

    def __init__(self, sock: anyio.abc.UDPSocket, remote: tuple[str, int] | None = None):
        self._sock = sock
        self.remote = remote
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def local_port(self) -> int:
        return self._sock.extra(anyio.abc.SocketAttribute.local_port)

    async def send(self, address: str, *args: Arg) -> None:
        """Encode and transmit one message to the remote endpoint."""
        await self.send_message(Message(address, tuple(args)))

    async def send_message(self, message: Message) -> None:
        if self._closed:
            raise TransportError(f"channel closed, dropped {message.address}")
        if self.remote is None:
            raise TransportError(f"channel has no remote endpoint, dropped {message.address}")
        try:
            data = message.encode()
        except BuildError as e:
            raise TransportError(f"cannot encode {message.address}: {e}") from e
        host, port = self.remote
        try:
            await self._sock.sendto(data, host, port)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError) as e:
            raise TransportError(f"send {message.address} to {host}:{port} failed: {e}") from e

    async def receive(self) -> AsyncIterator[Message]:
        """Yield inbound messages until the channel is closed."""
        while not self._closed:
            try:
                data, _ = await self._sock.receive()
            except (anyio.ClosedResourceError, anyio.EndOfStream):
                return
            except anyio.BrokenResourceError as e:
                if self._closed:
                    return
                raise TransportError(f"receive failed: {e}") from e
            except OSError as e:
                # ICMP errors from earlier sends surface here on some platforms
                log("ERR", {"error": str(e), "context": "receive"})
                continue
            try:
                messages = decode(data)
            except ParseError as e:
                log("ERR", {"error": str(e), "context": "decode", "size": len(data)})
                continue
            for message in messages:
                yield message

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._sock.aclose()

    async def __aenter__(self) -> OscChannel:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


async def open_channel(
    *,
    remote: tuple[str, int] | None = None,
    local: tuple[str, int] | None = None,
) -> OscChannel:
    """Open a UDP channel.

    Args:
        remote: Where send() delivers to (None for a receive-only channel)
        local: Address to bind; an ephemeral localhost port when omitted
    """
    local_host, local_port = local or (LOCALHOST, 0)
    try:
        sock = await anyio.create_udp_socket(local_host=local_host, local_port=local_port)
    except OSError as e:
        raise TransportError(f"cannot bind {local_host}:{local_port}: {e}") from e
    return OscChannel(sock, remote)

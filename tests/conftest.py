"""
Pytest configuration and fixtures for spbridge tests.
"""
import os
import stat
import sys
from pathlib import Path

import anyio
import pytest

from spbridge_osc import Message, TransportError

HANDSHAKE = "1000 2001 2002 3000 4000 4001 5000 77"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeChannel:
    """In-memory stand-in for OscChannel that records what was sent."""

    def __init__(self, remote=None, local=None):
        self.remote = remote
        self.local = local
        self.sent: list[Message] = []
        self.fail = False
        self._send, self._recv = anyio.create_memory_object_stream(100)
        self._closed = False

    @property
    def closed(self):
        return self._closed

    async def send(self, address, *args):
        await self.send_message(Message(address, tuple(args)))

    async def send_message(self, message):
        if self._closed or self.fail:
            raise TransportError(f"dropped {message.address}")
        self.sent.append(message)

    async def inject(self, address, *args):
        await self._send.send(Message(address, tuple(args)))

    async def receive(self):
        async with self._recv:
            async for message in self._recv:
                yield message

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        await self._send.aclose()

    def addresses(self):
        return [m.address for m in self.sent]


class ChannelFactory:
    """Hands out FakeChannels and remembers them by role."""

    def __init__(self):
        self.channels: list[FakeChannel] = []

    async def __call__(self, *, remote=None, local=None):
        channel = FakeChannel(remote, local)
        self.channels.append(channel)
        return channel

    def by_remote_port(self, port):
        return next(c for c in self.channels if c.remote and c.remote[1] == port)

    def by_local_port(self, port):
        return next(c for c in self.channels if c.local and c.local[1] == port)


@pytest.fixture
def channels():
    return ChannelFactory()


def write_daemon(path: Path, body: str):
    """Write an executable standing in for the ruby interpreter.

    The shell wrapper runs the Python body next to it, keeping the shebang
    short whatever the interpreter path is.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    impl = path.with_name(path.name + "_impl.py")
    impl.write_text(body)
    path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{impl}" "$@"\n')
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


@pytest.fixture
def sonic_pi_root(tmp_path):
    """A fake Sonic Pi install whose 'ruby' prints a handshake and idles."""
    root = tmp_path / "sonic-pi"
    (root / "app" / "server" / "ruby" / "bin").mkdir(parents=True)
    (root / "app" / "server" / "ruby" / "bin" / "daemon.rb").write_text("# daemon\n")
    write_daemon(
        root / "app" / "server" / "native" / "ruby" / "bin" / "ruby",
        "import sys, time\n"
        f"sys.stdout.write({HANDSHAKE!r})\n"
        "sys.stdout.flush()\n"
        "time.sleep(0.2)\n"
        "print('daemon log line')\n"
        "sys.stdout.flush()\n"
        "time.sleep(60)\n",
    )
    return root


posix_only = pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals and shebangs")

"""Shared test doubles and socket helpers."""

import asyncio
import os
import sys
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from tera_proxy.directory import DirectoryClient, ServerAddress
from tera_proxy.errors import DiscoveryFetchError, ListenerBindError


class FakeDirectory(DirectoryClient):
    """In-memory directory client; records what it saw when it started answering."""

    def __init__(
        self,
        roster: Optional[Dict[str, ServerAddress]] = None,
        *,
        host: str = "sls.example.com",
        address: Optional[str] = "203.0.113.10",
        fail: Optional[str] = None,
        block: Optional[asyncio.Event] = None,
        stall_close: bool = False,
    ):
        self.roster = dict(roster or {})
        self.host = host
        self.address = address
        self.fail = fail
        self.block = block
        self.stall_close = stall_close
        self.override_table: Dict[str, ServerAddress] = {}
        self.listening_on: Optional[str] = None
        self.overrides_at_listen: Optional[Dict[str, ServerAddress]] = None
        self.closed = False

    async def resolve(self):
        pass

    async def fetch(self):
        if self.block is not None:
            await self.block.wait()
        if self.fail:
            raise DiscoveryFetchError(self.fail)
        return dict(self.roster)

    async def listen(self, host):
        self.listening_on = host
        self.overrides_at_listen = dict(self.override_table)

    async def close(self):
        if self.stall_close:
            await asyncio.Event().wait()
        self.closed = True


class FakeListener:
    """Stands in for GameListener without binding a socket."""

    def __init__(self, binding, engine, region="", fail=False, on_start=None):
        self.binding = binding
        self.engine = engine
        self.region = region
        self.fail = fail
        self.on_start = on_start
        self.state = "binding"

    async def start(self):
        if self.on_start is not None:
            self.on_start(self)
        if self.fail:
            self.state = "closed"
            raise ListenerBindError(self.binding.listen_host, self.binding.listen_port, "address in use")
        self.state = "listening"

    async def close(self):
        self.state = "closed"


class ListenerRecorder:
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.created: List[FakeListener] = []

    def __call__(self, binding, engine, region=""):
        listener = FakeListener(binding, engine, region, fail=binding.id in self.fail_ids)
        self.created.append(listener)
        return listener


async def start_echo_server(host="127.0.0.1"):
    async def _echo(reader, writer):
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(_echo, host=host, port=0)
    return server, server.sockets[0].getsockname()[1]


def free_port(host="127.0.0.1"):
    import socket

    with socket.socket() as s:
        s.bind((host, 0))
        return s.getsockname()[1]


@pytest.fixture
def hosts_file(tmp_path):
    path = tmp_path / "hosts"
    path.write_text("# static table\n127.0.0.1 localhost\n::1 localhost ip6-localhost\n", encoding="utf-8")
    return path

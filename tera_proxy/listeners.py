from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional, Set

from .errors import ListenerBindError
from .util import CHUNK_SIZE, close_writer, peer_addr, set_nodelay

if TYPE_CHECKING:
    from .dispatch import DispatchEngine
    from .provision import ServerBinding

log = logging.getLogger("tera-proxy.listeners")


class TcpListener:
    """
    A local listening socket: binding -> listening -> closed.

    Each accepted connection runs in its own task; closing the listener stops
    accepting and abandons whatever is still connected.
    """

    def __init__(self, host: str, port: int, name: str) -> None:
        self.host = host
        self.port = port
        self.name = name
        self.state = "binding"
        self._server: Optional[asyncio.base_events.Server] = None
        self._active: Set[asyncio.Task] = set()

    @property
    def address(self) -> str:
        if self._server and self._server.sockets:
            sockname = self._server.sockets[0].getsockname()
            return f"{sockname[0]}:{sockname[1]}"
        return f"{self.host}:{self.port}"

    @property
    def connections(self) -> int:
        return len(self._active)

    async def start(self) -> None:
        if self.state != "binding":
            raise RuntimeError(f"{self.name} listener already {self.state}")
        try:
            server = await asyncio.start_server(self._on_connect, host=self.host, port=self.port)
        except OSError as e:
            self.state = "closed"
            raise ListenerBindError(self.host, self.port, e.strerror or str(e)) from e
        if self.state == "closed":
            # closed while binding
            server.close()
            return
        self._server = server
        self.state = "listening"
        log.info("%s listening on %s", self.name, self.address)

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if self.state != "listening":
            await close_writer(writer)
            return
        if task is not None:
            self._active.add(task)
        set_nodelay(writer)
        try:
            await self.serve(reader, writer)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("%s: error handling %s: %r", self.name, peer_addr(writer), e)
        finally:
            if task is not None:
                self._active.discard(task)
            await close_writer(writer)

    async def serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        if self.state == "closed":
            return
        self.state = "closed"
        if self._server is None:
            return

        self._server.close()
        for t in list(self._active):
            t.cancel()
        if self._active:
            try:
                await asyncio.wait_for(asyncio.gather(*self._active, return_exceptions=True), timeout=0.5)
            except (asyncio.TimeoutError, Exception):
                pass
        try:
            await asyncio.wait_for(self._server.wait_closed(), timeout=0.5)
        except (asyncio.TimeoutError, Exception):
            pass
        log.debug("%s closed (%s)", self.name, self.address)


class GameListener(TcpListener):
    def __init__(self, binding: "ServerBinding", engine: "DispatchEngine", region: str = "") -> None:
        super().__init__(binding.listen_host, binding.listen_port, f"[{region}] game proxy {binding.id}")
        self.binding = binding
        self.engine = engine

    async def serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await self.engine.bridge(reader, writer, self.binding.connect_host, self.binding.connect_port)


async def _relay(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, side: str) -> None:
    try:
        while True:
            data = await reader.read(CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        # half-close; the other direction may still be sending
        if writer.can_write_eof():
            writer.write_eof()
            return
    except (ConnectionError, OSError) as e:
        log.warning("error from %s proxied https connection: %r", side, e)
    await close_writer(writer)


class PassthroughListener(TcpListener):
    """Raw byte relay to `upstream_host:upstream_port`; nothing is inspected."""

    def __init__(self, host: str, port: int, upstream_host: str, upstream_port: int, region: str = "") -> None:
        super().__init__(host, port, f"[{region}] https proxy")
        self.upstream_host = upstream_host
        self.upstream_port = upstream_port

    async def serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            up_reader, up_writer = await asyncio.open_connection(self.upstream_host, self.upstream_port)
        except OSError as e:
            log.warning("error from outgoing proxied https connection to %s:%d: %r",
                        self.upstream_host, self.upstream_port, e)
            return
        try:
            await asyncio.gather(
                _relay(reader, up_writer, "incoming"),
                _relay(up_reader, writer, "outgoing"),
            )
        finally:
            await close_writer(up_writer)

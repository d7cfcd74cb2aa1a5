"""
dispatch.py

Bridges an accepted client connection to its upstream game server.

Inspection modules are plain Python files (or packages) in the module
directory, preloaded once at startup. A module exposes

    def setup(connection) -> handler | None

and the handler may define any of

    on_client_data(data: bytes) -> bytes | None
    on_server_data(data: bytes) -> bytes | None
    on_close() -> None

A hook returning bytes replaces the chunk; returning None forwards it as is.
Chunks are whatever the socket delivered: no framing, no decoding.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import os
from types import ModuleType
from typing import Any, Dict, List, Optional, Tuple

from .errors import ModuleDirError, ModulePreloadError
from .util import CHUNK_SIZE, TRACE, close_writer, peer_addr, set_nodelay

log = logging.getLogger("tera-proxy.dispatch")

DEFAULT_MODULE_DIR = "mods"


# =============================================================================
# Module preload
# =============================================================================

def list_modules(directory: str) -> List[str]:
    try:
        entries = sorted(os.listdir(directory))
    except OSError as e:
        raise ModuleDirError(f'error reading module directory "{directory}": {e}') from e

    names = []
    for entry in entries:
        if entry.startswith((".", "_")):
            continue
        full = os.path.join(directory, entry)
        if entry.endswith(".py") and os.path.isfile(full):
            names.append(entry[:-3])
        elif os.path.isfile(os.path.join(full, "__init__.py")):
            names.append(entry)
    return names


def load_module(directory: str, name: str) -> ModuleType:
    package = os.path.join(directory, name)
    if os.path.isdir(package):
        path = os.path.join(package, "__init__.py")
        spec = importlib.util.spec_from_file_location(
            f"tera_proxy_mods.{name}", path, submodule_search_locations=[package]
        )
    else:
        path = os.path.join(directory, f"{name}.py")
        spec = importlib.util.spec_from_file_location(f"tera_proxy_mods.{name}", path)

    if spec is None or spec.loader is None:
        raise ModulePreloadError(name, f"no loader for {path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise ModulePreloadError(name, repr(e)) from e
    return module


def preload_modules(directory: str) -> Dict[str, ModuleType]:
    """Load every module in `directory`. Raises ModuleDirError if it cannot be listed."""
    names = list_modules(directory)
    log.info("preloading modules %s", names)

    modules: Dict[str, ModuleType] = {}
    for name in names:
        log.log(TRACE, "preload %s", name)
        try:
            modules[name] = load_module(directory, name)
        except ModulePreloadError as e:
            log.error("%s", e)
    return modules


# =============================================================================
# Connection
# =============================================================================

class Connection:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str,
        port: int,
    ) -> None:
        self.client_reader = reader
        self.client_writer = writer
        self.host = host
        self.port = port
        self.server_writer: Optional[asyncio.StreamWriter] = None
        self.handlers: List[Tuple[str, Any]] = []

    def describe(self) -> str:
        to = peer_addr(self.server_writer) if self.server_writer else f"{self.host}:{self.port}"
        return f"from={peer_addr(self.client_writer)} to={to}"

    def load(self, name: str, module: ModuleType) -> None:
        setup = getattr(module, "setup", None)
        if not callable(setup):
            log.debug("module %s has no setup(); skipping", name)
            return
        try:
            handler = setup(self)
        except Exception as e:
            log.error("module %s failed to set up connection %s: %r", name, self.describe(), e)
            return
        if handler is not None:
            self.handlers.append((name, handler))

    def _apply(self, hook: str, data: bytes) -> bytes:
        for name, handler in self.handlers:
            fn = getattr(handler, hook, None)
            if fn is None:
                continue
            try:
                out = fn(data)
            except Exception as e:
                log.error("module %s %s raised: %r", name, hook, e)
                continue
            if out is not None:
                data = out
        return data

    async def _pump(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        hook: str,
        side: str,
    ) -> None:
        try:
            while True:
                data = await reader.read(CHUNK_SIZE)
                if not data:
                    return
                data = self._apply(hook, data)
                if data:
                    writer.write(data)
                    await writer.drain()
        except (ConnectionError, OSError) as e:
            log.error("error in %s socket %s: %r", side, self.describe(), e)

    async def run(self) -> None:
        try:
            up_reader, up_writer = await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            log.error("error in server socket %s: %r", self.describe(), e)
            await close_writer(self.client_writer)
            self._closed()
            return

        self.server_writer = up_writer
        set_nodelay(up_writer)
        log.info("routing connection %s", self.describe())

        tasks = [
            asyncio.create_task(self._pump(self.client_reader, up_writer, "on_client_data", "client")),
            asyncio.create_task(self._pump(up_reader, self.client_writer, "on_server_data", "server")),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                t.cancel()
            await close_writer(up_writer)
            await close_writer(self.client_writer)
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("disconnected %s", self.describe())
            self._closed()

    def _closed(self) -> None:
        for name, handler in self.handlers:
            fn = getattr(handler, "on_close", None)
            if fn is None:
                continue
            try:
                fn()
            except Exception as e:
                log.error("module %s on_close raised: %r", name, e)


class DispatchEngine:
    def __init__(self, modules: Optional[Dict[str, ModuleType]] = None) -> None:
        self.modules: Dict[str, ModuleType] = dict(modules or {})

    @classmethod
    def from_directory(cls, directory: str) -> "DispatchEngine":
        return cls(preload_modules(directory))

    async def bridge(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str,
        port: int,
    ) -> None:
        conn = Connection(reader, writer, host, port)
        for name, module in self.modules.items():
            conn.load(name, module)
        await conn.run()

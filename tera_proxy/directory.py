"""
Directory clients: where the upstream server roster comes from.

A directory client fetches the live roster for one region and, once started,
serves that roster locally with the addresses in its `override_table`
substituted, so a game client that was redirected to us by the hosts file
is told to connect to our listeners instead of the real servers.

Clients are built from a region's locator through `create_directory`, which
picks a constructor from `DIRECTORY_TYPES` by the locator's `type` key.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlsplit

import aiohttp
from aiohttp import web

from .errors import ConfigError, DiscoveryFetchError, ListenerBindError
from .util import is_ip

log = logging.getLogger("tera-proxy.directory")


@dataclass(frozen=True)
class ServerAddress:
    ip: str
    port: int


Roster = Dict[str, ServerAddress]


class DirectoryClient:
    """Capability interface every directory client implements."""

    host: str
    address: Optional[str]
    override_table: Dict[str, ServerAddress]

    async def resolve(self) -> None:
        raise NotImplementedError

    async def fetch(self) -> Roster:
        raise NotImplementedError

    async def listen(self, host: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


# =============================================================================
# Server list documents
# =============================================================================

def parse_server_list(data: bytes) -> Roster:
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise DiscoveryFetchError(f"bad server list: {e}") from e

    roster: Roster = {}
    for server in root.iter("server"):
        sid = (server.findtext("id") or "").strip()
        ip = (server.findtext("ip") or "").strip()
        port = (server.findtext("port") or "").strip()
        if not sid or not ip or not port.isdigit():
            log.debug("ignoring incomplete server entry id=%r ip=%r port=%r", sid, ip, port)
            continue
        roster[sid] = ServerAddress(ip=ip, port=int(port))
    return roster


def rewrite_server_list(data: bytes, overrides: Dict[str, ServerAddress]) -> bytes:
    root = ET.fromstring(data)
    for server in root.iter("server"):
        sid = (server.findtext("id") or "").strip()
        target = overrides.get(sid)
        if target is None:
            continue
        ip_el = server.find("ip")
        port_el = server.find("port")
        if ip_el is not None:
            ip_el.text = target.ip
        if port_el is not None:
            port_el.text = str(target.port)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


# =============================================================================
# SLS (HTTP server list) client
# =============================================================================

class SlsDirectory(DirectoryClient):
    def __init__(
        self,
        hostname: str,
        port: int = 80,
        paths: Sequence[str] = ("/",),
        *,
        timeout: float = 10.0,
    ) -> None:
        if not hostname:
            raise ConfigError("sls locator has no hostname")
        self.host = hostname
        self.port = int(port)
        self.paths: List[str] = list(paths) or ["/"]
        self.timeout = timeout
        self.address: Optional[str] = hostname if is_ip(hostname) else None
        self.override_table: Dict[str, ServerAddress] = {}

        self._session: Optional[aiohttp.ClientSession] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @classmethod
    def from_locator(cls, locator: Any) -> "SlsDirectory":
        if isinstance(locator, str):
            parts = urlsplit(locator)
            if parts.scheme not in ("", "http"):
                raise ConfigError(f"unsupported sls url scheme in {locator!r}")
            path = parts.path or "/"
            if parts.query:
                path += "?" + parts.query
            return cls(parts.hostname or "", parts.port or 80, [path])

        if isinstance(locator, dict):
            paths = locator.get("pathname") or "/"
            if isinstance(paths, str):
                paths = [paths]
            return cls(str(locator.get("hostname") or ""), int(locator.get("port") or 80), list(paths))

        raise ConfigError(f"invalid sls locator {locator!r}")

    def __repr__(self) -> str:
        return f"SlsDirectory({self.host}:{self.port}{self.paths})"

    @property
    def listen_address(self) -> Optional[str]:
        if self._runner is None or not self._runner.addresses:
            return None
        addr = self._runner.addresses[0]
        return f"{addr[0]}:{addr[1]}"

    async def resolve(self) -> None:
        """Look up the real address; must happen before the hosts file points the name at us."""
        if self.address is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(self.host, self.port, family=socket.AF_INET, type=socket.SOCK_STREAM)
        except OSError as e:
            raise DiscoveryFetchError(f"cannot resolve {self.host}: {e}") from e
        if not infos:
            raise DiscoveryFetchError(f"cannot resolve {self.host}: no addresses")

        self.address = infos[0][4][0]
        if ipaddress.ip_address(self.address).is_loopback:
            log.warning(
                "%s resolves to %s; the hosts file may still hold an override from an earlier run",
                self.host, self.address,
            )
        log.debug("resolved %s to %s", self.host, self.address)

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _get(self, path: str) -> bytes:
        if self.address is None:
            await self.resolve()

        url = f"http://{self.address}:{self.port}{path}"
        host_header = self.host if self.port == 80 else f"{self.host}:{self.port}"
        try:
            async with self._client().get(url, headers={"Host": host_header}) as resp:
                if resp.status != 200:
                    raise DiscoveryFetchError(f"GET {self.host}{path}: HTTP {resp.status}")
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DiscoveryFetchError(f"GET {self.host}{path}: {e!r}") from e

    async def fetch(self) -> Roster:
        roster: Roster = {}
        for path in self.paths:
            roster.update(parse_server_list(await self._get(path)))
        return roster

    async def _handle_list(self, request: web.Request) -> web.Response:
        path = request.path_qs
        try:
            data = await self._get(path)
            body = rewrite_server_list(data, self.override_table)
        except (DiscoveryFetchError, ET.ParseError) as e:
            log.error("error proxying server list %s: %s", path, e)
            return web.Response(status=502, text="bad gateway")

        log.debug("served server list %s to %s", path, request.remote)
        return web.Response(body=body, content_type="application/xml")

    async def listen(self, host: str, port: Optional[int] = None) -> None:
        app = web.Application()
        for path in self.paths:
            app.router.add_get(urlsplit(path).path or "/", self._handle_list)

        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, self.port if port is None else port)
        try:
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise ListenerBindError(host, self.port if port is None else port, str(e)) from e

    async def close(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
        if self._session is not None:
            await self._session.close()
            self._session = None


# =============================================================================
# Registry
# =============================================================================

DIRECTORY_TYPES: Dict[str, Callable[[Any], DirectoryClient]] = {
    "sls": SlsDirectory.from_locator,
}


def create_directory(locator: Any) -> DirectoryClient:
    kind = "sls"
    if isinstance(locator, dict):
        kind = str(locator.get("type") or "sls")
    factory = DIRECTORY_TYPES.get(kind)
    if factory is None:
        raise ConfigError(f"unknown directory type {kind!r}")
    return factory(locator)

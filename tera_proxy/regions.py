from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from .errors import ConfigError

if TYPE_CHECKING:
    from .directory import DirectoryClient
    from .listeners import GameListener, PassthroughListener
    from .provision import ServerBinding

log = logging.getLogger("tera-proxy.regions")

FALLBACK_BIND_HOST = "127.0.0.1"
UNRESOLVED_REGION = "???"

Locator = Union[str, Dict[str, Any]]
Selector = Union[str, Dict[str, Dict[str, Any]]]


@dataclass(frozen=True)
class RegionInfo:
    locator: Locator
    bind_host: str
    https_passthrough: bool = False


REGIONS: Dict[str, RegionInfo] = {
    "EU": RegionInfo(
        locator={
            "hostname": "web-sls.tera.gameforge.com",
            "port": 4566,
            "pathname": ["/servers/list.uk", "/servers/list.de", "/servers/list.fr"],
        },
        bind_host="127.0.0.2",
    ),
    "JP": RegionInfo(
        locator="http://tera.pmang.jp/game_launcher/server_list.xml",
        bind_host="127.0.0.3",
        https_passthrough=True,
    ),
    "KR": RegionInfo(
        locator="http://tera.nexon.com/launcher/sls/servers/list.xml",
        bind_host="127.0.0.4",
        https_passthrough=True,
    ),
    "NA": RegionInfo(
        locator="http://sls.service.enmasse.com:8080/servers/list.en",
        bind_host="127.0.0.5",
    ),
    "RU": RegionInfo(
        locator="http://launcher.tera-online.ru/launcher/sls/",
        bind_host="127.0.0.6",
    ),
    "TW": RegionInfo(
        locator="http://tera.mangot5.com/game/tera/serverList.xml",
        bind_host="127.0.0.7",
        https_passthrough=True,
    ),
}


@dataclass
class RegionUnit:
    """
    One configured region plus the runtime handles it exclusively owns.

    `servers` is either "*" or a mapping of server id -> field overrides.
    """
    region: Optional[str]
    region_name: str
    locator: Optional[Locator]
    bind_host: str
    servers: Selector = "*"
    https_passthrough: bool = False

    directory: Optional["DirectoryClient"] = None
    passthrough: Optional["PassthroughListener"] = None
    game_listeners: Dict[str, "GameListener"] = field(default_factory=dict)
    bindings: Dict[str, "ServerBinding"] = field(default_factory=dict)
    closed: bool = False

    async def close(self) -> None:
        await self.close_listeners()
        await self.close_directory()

    async def close_listeners(self) -> None:
        # also stops any provisioning still in flight from opening more
        self.closed = True

        if self.passthrough is not None:
            try:
                await self.passthrough.close()
            except Exception as e:
                log.error("[%s] error closing https proxy: %r", self.region_name, e)

        for sid, listener in list(self.game_listeners.items()):
            try:
                await listener.close()
            except Exception as e:
                log.error("[%s] error closing game proxy %s: %r", self.region_name, sid, e)

    async def close_directory(self) -> None:
        if self.directory is not None:
            try:
                await self.directory.close()
            except Exception as e:
                log.error("[%s] error closing sls proxy: %r", self.region_name, e)


def _normalize_selector(raw: Any) -> Selector:
    if raw is None or raw == "*":
        return "*"
    if isinstance(raw, list):
        return {str(sid): {} for sid in raw}
    if isinstance(raw, dict):
        selector: Dict[str, Dict[str, Any]] = {}
        for sid, opts in raw.items():
            if opts is not None and not isinstance(opts, dict):
                raise ConfigError(f"settings for server {sid} must be a mapping, got {opts!r}")
            selector[str(sid)] = dict(opts or {})
        return selector
    raise ConfigError(f'server selector must be "*", a list or a mapping, got {raw!r}')


def resolve_unit(entry: Dict[str, Any]) -> RegionUnit:
    code = entry.get("region")
    if code is not None and not isinstance(code, str):
        raise ConfigError(f"region must be a region code string, got {code!r}")
    if not code:
        region_name = UNRESOLVED_REGION
    elif code in REGIONS:
        region_name = code
    else:
        region_name = f"{code}*"

    info = REGIONS.get(region_name)
    return RegionUnit(
        region=code,
        region_name=region_name,
        locator=entry.get("sls") or (info.locator if info else None),
        bind_host=entry.get("listenHost") or (info.bind_host if info else FALLBACK_BIND_HOST),
        servers=_normalize_selector(entry.get("servers")),
        https_passthrough=bool(info and info.https_passthrough),
    )


def resolve_topology(config: Dict[str, Any]) -> List[RegionUnit]:
    servers = config.get("servers")
    if servers == "*":
        entries: List[Dict[str, Any]] = [{"region": code} for code in REGIONS]
    elif isinstance(servers, list):
        entries = servers
    else:
        raise ConfigError('"servers" must be "*" or a list of region entries')

    units = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError(f"region entry must be a mapping, got {entry!r}")
        units.append(resolve_unit(entry))
    return units

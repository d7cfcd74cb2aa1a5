from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional

from .directory import Roster, ServerAddress
from .errors import DiscoveryFetchError, ListenerBindError
from .listeners import GameListener, PassthroughListener
from .regions import RegionUnit, Selector
from .util import ensure_int

log = logging.getLogger("tera-proxy.provision")

BASE_PORT = 30000
HTTPS_PORT = 443

# config key -> ServerBinding field
OVERRIDE_FIELDS = {
    "connectHost": "connect_host",
    "connectPort": "connect_port",
    "listenHost": "listen_host",
    "listenPort": "listen_port",
}


@dataclass(frozen=True)
class ServerBinding:
    id: str
    connect_host: str
    connect_port: int
    listen_host: str
    listen_port: int


def local_port(server_id: str) -> int:
    return BASE_PORT + int(server_id, 10)


def _merge_overrides(binding: ServerBinding, overrides: Mapping[str, Any], region: str) -> ServerBinding:
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        attr = OVERRIDE_FIELDS.get(key)
        if attr is None:
            log.warning("[%s] server %s: ignoring unknown setting %r", region, binding.id, key)
            continue
        if attr.endswith("_port"):
            value = ensure_int(value, getattr(binding, attr))
        changes[attr] = value
    return replace(binding, **changes) if changes else binding


def compute_bindings(
    region: str,
    selector: Selector,
    roster: Roster,
    bind_host: str,
) -> Dict[str, ServerBinding]:
    """
    One binding per selected server id that exists in the roster.

    Listen port is BASE_PORT + id unless overridden; overrides from the
    selector are merged last and win over everything computed here.
    """
    wanted: Mapping[str, Mapping[str, Any]]
    if selector == "*":
        wanted = {sid: {} for sid in roster}
    else:
        wanted = selector

    result: Dict[str, ServerBinding] = {}
    for sid, overrides in wanted.items():
        target = roster.get(sid)
        if target is None:
            log.warning("[%s] server %s not found; skipping", region, sid)
            continue
        try:
            port = local_port(sid)
        except ValueError:
            port = 0
            if "listenPort" not in overrides:
                log.warning("[%s] server id %r is not numeric and has no listenPort; skipping", region, sid)
                continue

        binding = ServerBinding(
            id=sid,
            connect_host=target.ip,
            connect_port=target.port,
            listen_host=bind_host,
            listen_port=port,
        )
        result[sid] = _merge_overrides(binding, overrides, region)
    return result


def register_overrides(unit: RegionUnit) -> None:
    if unit.directory is None:
        log.warning("[%s] no directory client; nothing to register", unit.region_name)
        return
    for sid, b in unit.bindings.items():
        unit.directory.override_table[sid] = ServerAddress(ip=b.listen_host, port=b.listen_port)


ListenerFactory = Callable[[ServerBinding, Any, str], GameListener]


async def provision_region(
    unit: RegionUnit,
    engine: Any,
    *,
    listener_factory: Optional[ListenerFactory] = None,
) -> None:
    """
    fetch -> bindings -> register overrides -> listen, for one region.

    Failures stay inside the region: a failed fetch skips the region, a failed
    bind skips that one binding.
    """
    name = unit.region_name
    factory = listener_factory or GameListener

    if unit.directory is None:
        log.error("[%s] no discovery locator configured; skipping region", name)
        return

    try:
        roster = await unit.directory.fetch()
    except DiscoveryFetchError as e:
        log.error("[%s] error setting up sls proxy: %s", name, e)
        return
    log.debug("[%s] retrieved official server list %s", name, roster)
    if unit.closed:
        return

    unit.bindings = compute_bindings(name, unit.servers, roster, unit.bind_host)

    # must be visible to the directory before anything starts answering
    register_overrides(unit)

    log.debug("[%s] starting sls proxy server on %s", name, unit.bind_host)
    try:
        await unit.directory.listen(unit.bind_host)
        log.info("[%s] sls proxy server listening on %s", name, getattr(unit.directory, "listen_address", unit.bind_host))
    except ListenerBindError as e:
        log.error("[%s] error starting sls proxy server: %s", name, e)

    if unit.https_passthrough and not unit.closed:
        if unit.directory.address is None:
            log.error("[%s] upstream address unknown; not starting https proxy", name)
        else:
            log.debug("[%s] setting up https proxy to %s:%d", name, unit.directory.address, HTTPS_PORT)
            unit.passthrough = PassthroughListener(unit.bind_host, HTTPS_PORT, unit.directory.address, HTTPS_PORT, name)
            try:
                await unit.passthrough.start()
            except ListenerBindError as e:
                log.error("[%s] error setting up https proxy: %s", name, e)
                unit.passthrough = None

    for sid, binding in unit.bindings.items():
        if unit.closed:
            return
        log.debug("[%s] setting up game proxy %s %s", name, sid, binding)
        # owned by the unit before it binds, so a concurrent shutdown closes it
        listener = unit.game_listeners[sid] = factory(binding, engine, name)
        try:
            await listener.start()
        except ListenerBindError as e:
            log.error("[%s] error setting up game proxy %s: %s", name, sid, e)
            del unit.game_listeners[sid]

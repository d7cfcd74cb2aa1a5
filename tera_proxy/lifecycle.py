"""
lifecycle.py

Startup ordering and the single shutdown path.

Startup:
    directories created -> upstream names resolved -> hosts file redirected
    -> termination triggers installed -> regions provisioned concurrently

Shutdown (any trigger, runs once):
    provisioning cancelled -> every listener closed -> every directory client
    closed -> hosts file reverted

When the trigger is a process signal a daemon timer is armed as well; it
terminates the process after `force_exit_after` seconds no matter what the
shutdown is stuck on.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from .directory import create_directory
from .dispatch import DispatchEngine
from .errors import ConfigError, DiscoveryFetchError, HostsAccessError
from .hosts import HostsOverride, HostsRedirect, default_hosts_path, remediation_message
from .provision import ListenerFactory, provision_region
from .regions import RegionUnit, resolve_topology
from .util import is_ip

log = logging.getLogger("tera-proxy.lifecycle")

FORCE_EXIT_AFTER = 5.0
CLOSE_TIMEOUT = 2.0


# =============================================================================
# Termination triggers
# =============================================================================

class TerminationTrigger:
    # whether firing this trigger arms the force-exit timer
    force_exit = True

    def install(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> None:
        raise NotImplementedError

    def uninstall(self) -> None:
        pass


class SignalTrigger(TerminationTrigger):
    def __init__(self, signals: Optional[Sequence[int]] = None) -> None:
        if signals is None:
            signals = [s for s in (getattr(signal, "SIGHUP", None), signal.SIGINT, signal.SIGTERM) if s is not None]
        self.signals = list(signals)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._fallback: Dict[int, Any] = {}

    def install(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> None:
        self._loop = loop
        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, callback)
            except NotImplementedError:
                # no loop signal support (Windows)
                self._fallback[sig] = signal.signal(sig, lambda *_: loop.call_soon_threadsafe(callback))

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self.signals:
            if sig in self._fallback:
                signal.signal(sig, self._fallback.pop(sig))
            else:
                try:
                    self._loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass
        self._loop = None


class HostQuitTrigger(TerminationTrigger):
    """
    Quit event of an embedding host runtime.

    `host` must provide `on_quit(callback)`; the host owns process exit, so no
    force-exit timer is armed.
    """
    force_exit = False

    def __init__(self, host: Any) -> None:
        self.host = host

    def install(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> None:
        self.host.on_quit(lambda *_: loop.call_soon_threadsafe(callback))


# =============================================================================
# Coordinator
# =============================================================================

class Proxy:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        engine: Optional[DispatchEngine] = None,
        force_exit_after: Optional[float] = FORCE_EXIT_AFTER,
        force_exit: Callable[[int], None] = os._exit,
        listener_factory: Optional[ListenerFactory] = None,
    ) -> None:
        self.config = config
        self.engine = engine or DispatchEngine()
        self.listener_factory = listener_factory
        self.units: List[RegionUnit] = resolve_topology(config)
        self.hosts: Optional[HostsRedirect] = None
        self.exit_code = 0

        self.force_exit_after = force_exit_after
        self.close_timeout = CLOSE_TIMEOUT
        self._force_exit = force_exit
        self._force_timer: Optional[threading.Timer] = None

        self._tasks: List[asyncio.Task] = []
        self._shutdown_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    # -- startup --------------------------------------------------------------

    def create_directories(self) -> None:
        for unit in self.units:
            if unit.locator is None:
                log.warning("[%s] no discovery locator; region will be skipped", unit.region_name)
                continue
            try:
                unit.directory = create_directory(unit.locator)
            except ConfigError as e:
                log.error("[%s] invalid discovery locator: %s", unit.region_name, e)

    async def resolve_upstreams(self) -> None:
        async def _one(unit: RegionUnit) -> None:
            try:
                await unit.directory.resolve()
            except DiscoveryFetchError as e:
                log.error("[%s] %s", unit.region_name, e)

        await asyncio.gather(*(_one(u) for u in self.units if u.directory is not None))

    def hosts_overrides(self) -> List[HostsOverride]:
        overrides = []
        for unit in self.units:
            if unit.directory is None or is_ip(unit.directory.host):
                continue
            overrides.append(HostsOverride(unit.directory.host, unit.bind_host))
        return overrides

    def redirect_hosts(self) -> None:
        """Raises HostsAccessError; nothing has been opened yet when it does."""
        if self.config.get("noHostsEdit"):
            log.info("skipping hosts override")
            return
        path = self.config.get("hostsPath") or default_hosts_path()
        self.hosts = HostsRedirect(path, self.hosts_overrides())
        self.hosts.apply()

    async def prepare(self) -> None:
        self.create_directories()
        await self.resolve_upstreams()
        self.redirect_hosts()

    def provision(self) -> List[asyncio.Task]:
        for unit in self.units:
            coro = provision_region(unit, self.engine, listener_factory=self.listener_factory)
            self._tasks.append(asyncio.create_task(coro, name=f"provision-{unit.region_name}"))
        return list(self._tasks)

    async def run(self, triggers: Sequence[TerminationTrigger] = ()) -> int:
        try:
            await self.prepare()
        except HostsAccessError as e:
            log.error("error redirecting through hosts file: %s", e)
            msg = remediation_message(e)
            if msg:
                print(msg, file=sys.stderr)
            await self._close_directories()
            return 1

        loop = asyncio.get_running_loop()
        for trigger in triggers:
            trigger.install(loop, lambda t=trigger: self.request_shutdown(force_exit=t.force_exit))

        try:
            self.provision()
            await self._stopped.wait()
        finally:
            for trigger in triggers:
                trigger.uninstall()
        return self.exit_code

    # -- shutdown -------------------------------------------------------------

    def arm_force_exit(self) -> None:
        if self._force_timer is not None or self.force_exit_after is None:
            return

        def _fire() -> None:
            log.warning("shutdown did not finish in %.1fs; forcing exit", self.force_exit_after)
            # the hard exit skips atexit, so the hosts file goes back first
            if self.hosts is not None:
                try:
                    self.hosts.revert()
                except HostsAccessError as e:
                    log.error("error reverting hosts file: %s", e)
                    self.exit_code = 1
            self._force_exit(self.exit_code)

        self._force_timer = threading.Timer(self.force_exit_after, _fire)
        self._force_timer.daemon = True
        self._force_timer.start()

    def request_shutdown(self, *, force_exit: bool = True) -> None:
        if self._shutdown_task is not None:
            return
        if force_exit:
            self.arm_force_exit()
        self._shutdown_task = asyncio.ensure_future(self._shutdown())

    async def shutdown(self) -> int:
        """Idempotent; every caller waits for the one shutdown run."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        return await asyncio.shield(self._shutdown_task)

    async def _bounded(self, what: str, coro: Any) -> None:
        try:
            await asyncio.wait_for(coro, timeout=self.close_timeout)
        except asyncio.TimeoutError:
            log.error("timed out %s", what)
        except Exception as e:
            log.error("error %s: %r", what, e)

    async def _close_directories(self) -> None:
        for unit in self.units:
            if unit.directory is not None:
                await self._bounded(f"closing [{unit.region_name}] sls proxy", unit.close_directory())

    async def _shutdown(self) -> int:
        log.info("terminating...")

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.wait(self._tasks, timeout=self.close_timeout)

        for unit in self.units:
            await self._bounded(f"closing [{unit.region_name}] listeners", unit.close_listeners())
        await self._close_directories()

        if self.hosts is not None:
            try:
                self.hosts.revert()
            except HostsAccessError as e:
                log.error("error reverting hosts file: %s", e)
                self.exit_code = 1

        self._stopped.set()
        return self.exit_code

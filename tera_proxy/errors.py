from __future__ import annotations

import enum
from typing import Optional


class ProxyError(Exception):
    pass


class ConfigError(ProxyError):
    """Malformed or missing configuration. Fatal before any side effect."""


class HostsErrorKind(enum.Enum):
    READ_ONLY = "read-only"
    PRIVILEGE = "insufficient-privilege"
    OTHER = "other"


class HostsAccessError(ProxyError):
    def __init__(self, path: str, kind: HostsErrorKind, errno: Optional[int] = None, reason: str = "") -> None:
        self.path = path
        self.kind = kind
        self.errno = errno
        self.reason = reason
        super().__init__(f"hosts file {path}: {kind.value}" + (f" ({reason})" if reason else ""))


class DiscoveryFetchError(ProxyError):
    pass


class ListenerBindError(ProxyError):
    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = port
        super().__init__(f"cannot bind {host}:{port}: {reason}")


class ModulePreloadError(ProxyError):
    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        super().__init__(f"failed to preload module {name!r}: {reason}")


class ModuleDirError(ProxyError):
    pass

"""
hosts.py

Redirection of canonical hostnames through the system hosts file.

The hosts file is process-wide state this program does not own. Overrides are
applied once at startup and reverted once at shutdown; the revert re-reads the
file first so that anything edited by someone else in the meantime is kept.

File model:
- every line is kept; comment, blank and malformed lines round-trip verbatim
- an entry line is `address name [name...] [# comment]`
- newline style (LF / CRLF) and the trailing newline are preserved
"""

from __future__ import annotations

import atexit
import errno
import logging
import os
import stat
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from .errors import HostsAccessError, HostsErrorKind
from .util import TRACE

log = logging.getLogger("tera-proxy.hosts")


def default_hosts_path() -> str:
    if sys.platform == "win32":
        root = os.environ.get("SystemRoot", r"C:\Windows")
        return os.path.join(root, "System32", "drivers", "etc", "hosts")
    return "/etc/hosts"


REMEDIATION: Dict[HostsErrorKind, str] = {
    HostsErrorKind.READ_ONLY: """
*********************************
*                               *
*  FAILED TO WRITE HOSTS FILE!  *
*  ---------------------------  *
*     FILE SET TO READ-ONLY     *
*                               *
*********************************

Your hosts file seems to be set to read-only.
Find this file and make sure it's writable:
(Right-click, Properties, uncheck Read-only)

    {path}
""",
    HostsErrorKind.PRIVILEGE: """
*********************************
*                               *
*  FAILED TO WRITE HOSTS FILE!  *
*  ---------------------------  *
*     RUN AS ADMINISTRATOR!     *
*                               *
*********************************

You don't have sufficient privileges to create or modify the hosts file:

    {path}

Please try again as administrator (Windows) or root (elsewhere).
""",
}


def remediation_message(err: HostsAccessError) -> Optional[str]:
    tpl = REMEDIATION.get(err.kind)
    if tpl is None:
        return None
    return tpl.format(path=err.path)


def classify_os_error(e: OSError) -> HostsErrorKind:
    if e.errno in (errno.EACCES, errno.EROFS):
        return HostsErrorKind.READ_ONLY
    if e.errno == errno.EPERM:
        return HostsErrorKind.PRIVILEGE
    return HostsErrorKind.OTHER


# =============================================================================
# File model
# =============================================================================

@dataclass(eq=False)
class HostsEntry:
    address: str
    names: List[str]
    comment: str = ""
    # original text; untouched entries render from it
    raw: Optional[str] = None

    def render(self) -> str:
        if self.raw is not None:
            return self.raw
        line = f"{self.address} {' '.join(self.names)}"
        if self.comment:
            line += f" {self.comment}"
        return line


Line = Union[str, HostsEntry]


def _parse_line(line: str) -> Line:
    body, sep, comment = line.partition("#")
    fields = body.split()
    if len(fields) < 2:
        return line
    return HostsEntry(
        address=fields[0],
        names=fields[1:],
        comment=(sep + comment) if sep else "",
        raw=line,
    )


@dataclass
class HostsFile:
    lines: List[Line] = field(default_factory=list)
    newline: str = "\n"
    trailing_newline: bool = True

    @classmethod
    def parse(cls, text: str) -> "HostsFile":
        newline = "\r\n" if "\r\n" in text else "\n"
        hf = cls(newline=newline, trailing_newline=(text.endswith("\n") or not text))
        hf.lines = [_parse_line(line) for line in text.splitlines()]
        return hf

    def render(self) -> str:
        out = [line.render() if isinstance(line, HostsEntry) else line for line in self.lines]
        text = self.newline.join(out)
        if out and self.trailing_newline:
            text += self.newline
        return text

    def _entries(self) -> List[HostsEntry]:
        return [line for line in self.lines if isinstance(line, HostsEntry)]

    def _drop(self, entry: HostsEntry) -> None:
        self.lines = [line for line in self.lines if line is not entry]

    def _strip_name(self, entry: HostsEntry, name: str) -> None:
        entry.names = [n for n in entry.names if n != name]
        entry.raw = None
        if not entry.names:
            self._drop(entry)

    def get(self, name: str) -> Optional[str]:
        for entry in self._entries():
            if name in entry.names:
                return entry.address
        return None

    def as_dict(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for entry in self._entries():
            for name in entry.names:
                out.setdefault(name, entry.address)
        return out

    def remove(self, name: str) -> None:
        for entry in self._entries():
            if name in entry.names:
                self._strip_name(entry, name)

    def set(self, name: str, address: Optional[str]) -> None:
        """Point `name` at `address`; None removes the name."""
        if address is None:
            self.remove(name)
            return

        own = next((e for e in self._entries() if e.names == [name]), None)
        # any other occurrence goes, so lookups are unambiguous
        for entry in self._entries():
            if entry is not own and name in entry.names:
                self._strip_name(entry, name)

        if own is None:
            self.lines.append(HostsEntry(address=address, names=[name]))
        elif own.address != address:
            own.address = address
            own.raw = None


# =============================================================================
# Operations
# =============================================================================

@dataclass(frozen=True)
class HostsOverride:
    name: str
    address: str


Originals = Dict[str, Optional[str]]


def read_hosts(path: str) -> HostsFile:
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            text = f.read()
    except FileNotFoundError:
        log.debug("hosts file %s does not exist; starting empty", path)
        return HostsFile()
    except (OSError, UnicodeDecodeError) as e:
        raise HostsAccessError(path, HostsErrorKind.OTHER, getattr(e, "errno", None), str(e)) from e
    return HostsFile.parse(text)


def apply_overrides(table: HostsFile, overrides: Iterable[HostsOverride]) -> Originals:
    originals: Originals = {}
    for ov in overrides:
        # the first capture wins when two units redirect the same name
        if ov.name not in originals:
            originals[ov.name] = table.get(ov.name)
        table.set(ov.name, ov.address)
    return originals


# replace refused: bind-mounted file, or no right to create files beside it
_IN_PLACE_ERRNOS = (errno.EBUSY, errno.EXDEV, errno.EACCES, errno.EPERM)


def _write_in_place(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def _write_replace(path: str, text: str) -> None:
    fd, tmp = tempfile.mkstemp(prefix=".tera-proxy-", dir=os.path.dirname(os.path.abspath(path)))
    os.close(fd)
    try:
        with open(tmp, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        try:
            mode = stat.S_IMODE(os.stat(path).st_mode)
        except FileNotFoundError:
            mode = 0o644
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def write_hosts(path: str, table: HostsFile) -> None:
    """Write `table` to `path`; a failed write leaves the old file whole where the OS allows."""
    text = table.render()
    try:
        try:
            _write_replace(path, text)
        except OSError as e:
            if e.errno not in _IN_PLACE_ERRNOS:
                raise
            log.debug("cannot replace %s (%s); writing in place", path, e)
            _write_in_place(path, text)
    except OSError as e:
        raise HostsAccessError(path, classify_os_error(e), e.errno, e.strerror or str(e)) from e


def revert_overrides(
    path: str,
    overrides: Iterable[HostsOverride],
    originals: Originals,
    fallback: Optional[HostsFile] = None,
) -> HostsFile:
    """
    Restore the values captured at apply time.

    Any name whose live value is no longer the address we wrote was changed by
    someone else; the live value is what gets kept for that name.
    """
    restore = dict(originals)
    try:
        table = read_hosts(path)
    except HostsAccessError as e:
        if fallback is None:
            raise
        log.warning("error re-reading hosts file before revert, using cached copy: %s", e)
        table = fallback
    else:
        # last write wins for a repeated name
        written = {ov.name: ov.address for ov in overrides}
        for name, address in written.items():
            current = table.get(name)
            if current != address:
                log.debug("hosts entry for %s changed externally (%s); keeping it", name, current)
                restore[name] = current

    for name, orig in restore.items():
        table.set(name, orig)

    write_hosts(path, table)
    return table


# =============================================================================
# Acquire / release resource
# =============================================================================

class HostsRedirect:
    def __init__(self, path: str, overrides: Iterable[HostsOverride]) -> None:
        self.path = path
        self.overrides: List[HostsOverride] = list(overrides)
        self.originals: Originals = {}
        self._table: Optional[HostsFile] = None
        self.applied = False
        self.reverted = False
        # revert may also run from the force-exit timer thread
        self._lock = threading.Lock()

    def apply(self) -> None:
        log.log(TRACE, "checking hosts file %s", self.path)
        table = read_hosts(self.path)

        log.debug("setting hosts overrides %s", [(o.name, o.address) for o in self.overrides])
        self.originals = apply_overrides(table, self.overrides)
        write_hosts(self.path, table)

        self._table = table
        self.applied = True
        atexit.register(self._revert_at_exit)
        log.info("successfully edited hosts file")

    def revert(self) -> None:
        """Idempotent; raises HostsAccessError if the file cannot be written."""
        with self._lock:
            if not self.applied or self.reverted:
                return
            self.reverted = True
            atexit.unregister(self._revert_at_exit)
            revert_overrides(self.path, self.overrides, self.originals, fallback=self._table)
        log.info("reverted hosts file")

    def _revert_at_exit(self) -> None:
        try:
            self.revert()
        except HostsAccessError as e:
            log.error("error reverting hosts file: %s", e)

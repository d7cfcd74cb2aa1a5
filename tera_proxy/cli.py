from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import sys
from typing import Any, Dict, Optional

from . import __version__
from .config import DEFAULT_LOG_FILE, load_config
from .dispatch import DEFAULT_MODULE_DIR, DispatchEngine
from .errors import ConfigError, ModuleDirError
from .lifecycle import Proxy, SignalTrigger
from .util import TRACE, colorize, json_line, use_color, utc_iso

log = logging.getLogger("tera-proxy")

VERBOSITY_LEVELS: Dict[int, int] = {
    -2: logging.ERROR,
    -1: logging.WARNING,
    0: logging.INFO,
    1: logging.DEBUG,
    2: TRACE,
    3: 1,
}

_SHORTHANDS = (("vvv", 3), ("vv", 2), ("q", -1), ("qq", -2))

_LEVEL_COLORS = {
    logging.ERROR: "31",
    logging.WARNING: "33",
    logging.INFO: "32",
    logging.DEBUG: "36",
}


# =============================================================================
# Logging setup
# =============================================================================

class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        code = _LEVEL_COLORS.get(record.levelno) or ("31" if record.levelno > logging.ERROR else "90")
        return colorize(line, code)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        obj: Dict[str, Any] = {
            "ts": utc_iso(record.created),
            "level": record.levelname.lower(),
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            obj["err"] = self.formatException(record.exc_info)
        return json_line(obj)


def setup_logging(verbosity: int = 0, color: Optional[bool] = None, raw: bool = False) -> logging.Logger:
    logging.addLevelName(TRACE, "TRACE")

    log.propagate = False
    log.handlers.clear()
    log.setLevel(1)  # handlers gate output

    ch = logging.StreamHandler()
    ch.setLevel(VERBOSITY_LEVELS.get(verbosity, logging.INFO))
    if raw:
        ch.setFormatter(JsonLineFormatter())
    else:
        fmt = "%(asctime)s %(levelname)s %(name)s %(message)s"
        if color if color is not None else use_color(sys.stderr):
            ch.setFormatter(ColorFormatter(fmt))
        else:
            ch.setFormatter(logging.Formatter(fmt))
    log.addHandler(ch)
    return log


def add_file_logging(path: str) -> None:
    try:
        fh = logging.FileHandler(path, mode="w", encoding="utf-8")
    except OSError as e:
        log.warning("cannot open log file %s: %s", path, e)
        return
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(JsonLineFormatter())
    log.addHandler(fh)
    log.debug("logging to %s", os.path.abspath(path))


# =============================================================================
# CLI + entrypoint
# =============================================================================

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tera-proxy",
        description="Redirect game server lists and connections through local proxies",
    )
    p.add_argument("-v", "--verbose", nargs="?", const="1", default=None, dest="v", metavar="LEVEL",
                   help="console verbosity, -2..3 (default 0; bare -v means 1)")
    p.add_argument("-vv", action="store_true", help="same as -v 2")
    p.add_argument("-vvv", action="store_true", help="same as -v 3")
    p.add_argument("-q", action="store_true", help="same as -v -1")
    p.add_argument("-qq", action="store_true", help="same as -v -2")
    p.add_argument("-c", "--color", action="store_true", default=None, help="force colored output")
    p.add_argument("--no-color", action="store_true", help="disable colored output")
    p.add_argument("-r", "--raw", action="store_true", help="log JSON lines to the console")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("config", nargs="?", help="config file (.json or .yaml); default: all regions")
    return p


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = build_argparser()
    args = p.parse_args(argv)

    # `-v some/config.json` with no positional: the value was the config
    if args.v is not None and args.config is None and not re.fullmatch(r"-?\d+", args.v):
        args.config = args.v
        args.v = "1"

    for flag, level in _SHORTHANDS:
        if getattr(args, flag):
            args.v = str(level)
            break

    verbosity = 0
    if args.v is not None:
        try:
            verbosity = int(args.v)
        except ValueError:
            verbosity = None
        if verbosity not in VERBOSITY_LEVELS:
            choices = ", ".join(str(k) for k in sorted(VERBOSITY_LEVELS))
            p.error(f'argument "-v": invalid choice: {args.v} (choose from [{choices}])')
    args.verbosity = verbosity

    if args.color or args.no_color:
        args.color = bool(args.color)
    else:
        args.color = None
    return args


async def amain(args: argparse.Namespace) -> int:
    log.debug("startup args=%s argv=%s", vars(args), sys.argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        log.error("%s", e)
        return 1

    log_file = cfg.get("logFile", DEFAULT_LOG_FILE)
    if log_file:
        add_file_logging(log_file)
    log.info("config %s", cfg)

    try:
        engine = DispatchEngine.from_directory(cfg.get("modulesPath") or DEFAULT_MODULE_DIR)
        proxy = Proxy(cfg, engine=engine)
    except (ModuleDirError, ConfigError) as e:
        log.error("%s", e)
        return 1

    return await proxy.run([SignalTrigger()])


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbosity, args.color, args.raw)
    try:
        rc = asyncio.run(amain(args))
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)

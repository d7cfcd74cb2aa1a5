from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .util import jsonish_to_json

log = logging.getLogger("tera-proxy.config")

DEFAULT_CONFIG: Dict[str, Any] = {"servers": "*"}
DEFAULT_LOG_FILE = "tera-proxy.log"


def _load_json(path: str, raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        norm = jsonish_to_json(raw)
        try:
            return json.loads(norm)
        except ValueError as e:
            raise ConfigError(f"config parse error for {path}: {e}") from e


def _load_yaml(path: str, raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"error parsing YAML in {path}: {e}") from e


_LOADERS = {
    ".json": _load_json,
    ".yml": _load_yaml,
    ".yaml": _load_yaml,
}


def load_config(path: Optional[str]) -> Dict[str, Any]:
    """
    Load the proxy configuration.

    No path means the default configuration (every known region). The loader
    is picked by file extension; the result must be a mapping with `servers`.
    """
    if not path:
        log.info("using default config")
        return dict(DEFAULT_CONFIG)

    config_path = os.path.abspath(path)
    ext = os.path.splitext(config_path)[1].lower()
    log.info("loading config file %s (type %s)", config_path, ext or "?")

    loader = _LOADERS.get(ext)
    if loader is None:
        raise ConfigError(f"unrecognized config type {ext!r} for {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"error reading config file {config_path}: {e}") from e

    cfg = loader(config_path, raw)
    if not isinstance(cfg, dict):
        raise ConfigError(f"config root in {config_path} must be a mapping, got {type(cfg).__name__}")

    validate_config(cfg)
    log.info("successfully loaded config")
    return cfg


def validate_config(cfg: Dict[str, Any]) -> None:
    servers = cfg.get("servers")
    if not servers:
        raise ConfigError('no custom servers specified; please provide at least one (or "*")')
    if servers != "*" and not isinstance(servers, list):
        raise ConfigError('"servers" must be "*" or a list of region entries')

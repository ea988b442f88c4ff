"""
Runtime configuration, resolved once by the process that composes the bridge.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6505
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_KEEPALIVE_S = 10.0
DEFAULT_LOG_LEVEL = "INFO"

PORT_ENV_KEYS = ("GODOT_BRIDGE_PORT", "MCP_BRIDGE_PORT", "GOPEAK_BRIDGE_PORT")
HOST_ENV_KEY = "GODOT_BRIDGE_HOST"
TIMEOUT_ENV_KEY = "GODOT_BRIDGE_TIMEOUT"
LOG_LEVEL_ENV_KEY = "GODOT_BRIDGE_LOG_LEVEL"


def parse_port(raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    try:
        port = int(raw.strip(), 10)
    except ValueError:
        return None
    if 1 <= port <= 65535:
        return port
    return None


def resolve_port(environ: Optional[Mapping[str, str]] = None) -> int:
    """
    First valid port among PORT_ENV_KEYS. Blank values are skipped quietly,
    invalid ones with a warning; DEFAULT_PORT when none is usable.
    """
    environ = os.environ if environ is None else environ
    for key in PORT_ENV_KEYS:
        raw = environ.get(key)
        if raw is None or not raw.strip():
            continue
        port = parse_port(raw)
        if port is not None:
            return port
        logger.warning("Ignoring invalid %s=%r. Expected an integer between 1 and 65535.", key, raw)
    return DEFAULT_PORT


def _positive_float(raw: Optional[str], default: float, key: str) -> float:
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        value = -1.0
    if value > 0:
        return value
    logger.warning("Ignoring invalid %s=%r. Expected a positive number of seconds.", key, raw)
    return default


@dataclass
class BridgeConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    timeout_s: float = DEFAULT_TIMEOUT_S
    keepalive_s: float = DEFAULT_KEEPALIVE_S
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeConfig":
        environ = os.environ if environ is None else environ
        return cls(
            host=(environ.get(HOST_ENV_KEY) or DEFAULT_HOST).strip() or DEFAULT_HOST,
            port=resolve_port(environ),
            timeout_s=_positive_float(environ.get(TIMEOUT_ENV_KEY), DEFAULT_TIMEOUT_S, TIMEOUT_ENV_KEY),
            log_level=(environ.get(LOG_LEVEL_ENV_KEY) or DEFAULT_LOG_LEVEL).upper(),
        )

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5555


def _default_selectors_path() -> str:
    """Selectors file shipped at the repository root."""
    config_dir = Path(__file__).resolve().parent
    project_root = config_dir.parent.parent
    return str(project_root / "selectors" / "ozon-selectors.json")


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float, *, allow_zero: bool = False) -> float:
    try:
        value = float(os.environ.get(name) or default)
    except ValueError:
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


@dataclass
class BridgeConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    debug: bool = False
    stealth_mode: bool = True
    command_timeout: float = 30.0
    connect_timeout: float = 2.0
    selectors_path: str = field(default_factory=_default_selectors_path)
    log_file: str | None = None
    humanize_scale: float = 1.0

    @classmethod
    def from_env(cls, argv: list[str] | None = None) -> BridgeConfig:
        args = sys.argv[1:] if argv is None else argv
        host = (os.environ.get("MCP_HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST
        try:
            port = int(os.environ.get("MCP_PORT") or DEFAULT_PORT)
        except ValueError:
            port = DEFAULT_PORT
        if not 0 <= port <= 65535:
            port = DEFAULT_PORT
        log_file = (os.environ.get("MCP_LOG_FILE") or "").strip()
        return cls(
            host=host,
            port=port,
            debug=_env_flag("DEBUG", False) or "--debug" in args,
            stealth_mode=_env_flag("STEALTH_MODE", True),
            command_timeout=_env_float("MCP_COMMAND_TIMEOUT", 30.0),
            connect_timeout=_env_float("MCP_CONNECT_TIMEOUT", 2.0, allow_zero=True),
            selectors_path=expand_path(os.environ.get("MCP_SELECTORS_PATH") or _default_selectors_path()),
            log_file=expand_path(log_file) if log_file else None,
            humanize_scale=_env_float("MCP_HUMANIZE_SCALE", 1.0, allow_zero=True),
        )

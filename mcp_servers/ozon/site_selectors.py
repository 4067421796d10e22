from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .errors import InvalidArguments

logger = logging.getLogger("mcp.ozon.selectors")


def load_selectors(path: str | Path) -> dict[str, Any]:
    """Read the site selector map. Missing or broken files yield an empty map."""
    p = Path(path)
    if not p.exists():
        logger.warning("selectors file not found: %s", p)
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("cannot load selectors from %s: %s", p, exc)
        return {}
    if not isinstance(data, dict):
        logger.error("selectors file %s must contain a JSON object", p)
        return {}
    logger.debug("loaded selectors from %s", p)
    return data


def section(selectors: dict[str, Any], *path: str) -> Any:
    """Fetch a nested selector section, failing with a readable error if absent."""
    node: Any = selectors
    for key in path:
        if not isinstance(node, dict) or key not in node:
            raise InvalidArguments(f"Selectors not configured: {'.'.join(path)}")
        node = node[key]
    return node

#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[ozon-mcp] host={os.environ.get('MCP_HOST', '127.0.0.1')} | "
    f"port={os.environ.get('MCP_PORT', '5555')} | "
    f"stealth={os.environ.get('STEALTH_MODE', 'true')} | "
    f"debug={os.environ.get('DEBUG', 'false')}",
    file=sys.stderr,
)

from mcp_servers.ozon.main import main  # noqa: E402

if __name__ == "__main__":
    main()

"""
MCP tool definitions.

Two primitives (`browser_evaluate`, `browser_interact`), a status probe, and the
Ozon site tools layered on the primitives.
"""

from __future__ import annotations

from typing import Any

# ═══════════════════════════════════════════════════════════════════════════════
# PRIMITIVES
# ═══════════════════════════════════════════════════════════════════════════════

EVALUATE_TOOL: dict[str, Any] = {
    "name": "browser_evaluate",
    "description": """Run JavaScript in the bound tab's page context and return the result.
USAGE:
- Expression: browser_evaluate(script="document.title")
- Function body: browser_evaluate(script="() => document.querySelectorAll('a').length")
Fails with an evaluation error if the page throws.""",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "script": {"type": "string", "description": "Script or function body to evaluate"},
            "rawResult": {
                "type": "boolean",
                "default": False,
                "description": "Return the bare value instead of pretty-printed JSON",
            },
        },
        "required": ["script"],
    },
}

INTERACT_TOOL: dict[str, Any] = {
    "name": "browser_interact",
    "description": """Perform simulated user actions on the bound tab, strictly in order.
ACTIONS:
- {"type": "click", "selector": "#buy", "clickCount": 1}
- {"type": "type", "selector": "input[name=text]", "text": "hello"}
- {"type": "press_key", "key": "Enter"}
- {"type": "scroll_by", "x": 0, "y": 400}
- {"type": "wait", "timeout": 500}   (milliseconds, local pause)
The first failing action stops the sequence; the error names its index.
Effects of earlier actions are not rolled back.""",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "actions": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {"type": "string", "enum": ["click", "type", "press_key", "scroll_by", "wait"]},
                        "selector": {"type": "string"},
                        "clickCount": {"type": "integer", "minimum": 1},
                        "text": {"type": "string"},
                        "key": {"type": "string"},
                        "x": {"type": "number"},
                        "y": {"type": "number"},
                        "timeout": {"type": "integer", "minimum": 0},
                    },
                    "required": ["type"],
                },
            },
            "rawResult": {"type": "boolean", "default": False},
        },
        "required": ["actions"],
    },
}

STATUS_TOOL: dict[str, Any] = {
    "name": "browser_status",
    "description": """Report whether the extension is connected, which tab is bound, and stealth state.
RESPONSE EXAMPLE:
{"connected": true, "tabId": 123, "stealthMode": true, "projectName": "ozon", "listening": true}""",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {},
    },
}

# ═══════════════════════════════════════════════════════════════════════════════
# OZON
# ═══════════════════════════════════════════════════════════════════════════════

OZON_SEARCH_TOOL: dict[str, Any] = {
    "name": "ozon_search_and_parse",
    "description": "Search for products on Ozon and parse the first results (title, price, url, selector).",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {"query": {"type": "string", "description": "Search query"}},
        "required": ["query"],
    },
}

OZON_PRODUCT_TOOL: dict[str, Any] = {
    "name": "ozon_parse_product_page",
    "description": "Extract details from the current product page (title, price, variations, availability, description, characteristics).",
    "inputSchema": {"$schema": "http://json-schema.org/draft-07/schema#", "type": "object", "properties": {}},
}

OZON_CART_TOOL: dict[str, Any] = {
    "name": "ozon_cart_action",
    "description": "Smart cart action on the current product: add, increment, or decrement quantity.",
    "inputSchema": {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ["add", "increment", "decrement"],
                "description": '"add" handles the initial addition; "increment"/"decrement" adjust quantity by one.',
            },
        },
        "required": ["action"],
    },
}

OZON_SHARE_LINK_TOOL: dict[str, Any] = {
    "name": "ozon_get_share_link",
    "description": "Get a clean share link for the current product (canonical URL, no tracking parameters).",
    "inputSchema": {"$schema": "http://json-schema.org/draft-07/schema#", "type": "object", "properties": {}},
}

CORE_TOOL_DEFINITIONS: list[dict[str, Any]] = [EVALUATE_TOOL, INTERACT_TOOL, STATUS_TOOL]
OZON_TOOL_DEFINITIONS: list[dict[str, Any]] = [
    OZON_SEARCH_TOOL,
    OZON_PRODUCT_TOOL,
    OZON_CART_TOOL,
    OZON_SHARE_LINK_TOOL,
]
TOOL_DEFINITIONS: list[dict[str, Any]] = CORE_TOOL_DEFINITIONS + OZON_TOOL_DEFINITIONS

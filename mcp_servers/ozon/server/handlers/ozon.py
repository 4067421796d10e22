"""Ozon site tools built on the evaluate/interact primitives.

Selectors come from the selectors file; scripts receive them as a JSON literal
(`S`) so quoting in selectors can never break the injected code.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from ...actions import Click, Evaluate, PressKey
from ...errors import InvalidArguments
from ...site_selectors import section
from ..types import ToolResult

if TYPE_CHECKING:
    from ...backend import CommandDispatcher
    from ...humanize import Humanizer

logger = logging.getLogger("mcp.ozon.site")

MAX_SEARCH_RESULTS = 12

SEARCH_RESULTS_JS = r"""
() => {
  const S = __S__;
  const grid = document.querySelector(S.grid);
  if (!grid) return { items: [], error: 'Grid not found' };
  const cards = Array.from(grid.querySelectorAll(S.tile));
  return {
    items: cards.slice(0, __LIMIT__).map((card, i) => {
      const link = card.querySelector(S.link) || card.querySelector("a[href*='/product/']");
      const price = card.innerText.match(/\d+[\s\d]*₽/);
      return {
        index: i,
        title: link ? link.innerText.split('\n')[0] : '',
        price: price ? price[0] : '',
        url: link ? link.href : '',
        selector: S.grid + ' ' + S.tile + ':nth-of-type(' + (i + 1) + ')'
      };
    })
  };
}
"""

PRODUCT_PAGE_JS = r"""
() => {
  const S = __S__;
  if (!document.querySelector(S.heading)) return { error: 'Not a product page' };
  const txt = (sel) => { const el = sel && document.querySelector(sel); return el ? el.innerText.trim() : null; };

  const characteristics = () => {
    const out = [];
    const root = document.querySelector(S.characteristicsFull) || document.querySelector(S.characteristicsShort);
    if (!root) return out;
    const dts = root.querySelectorAll('dt');
    const dds = root.querySelectorAll('dd');
    if (dts.length > 0 && dts.length === dds.length) {
      dts.forEach((dt, i) => out.push({ name: dt.innerText.trim(), value: dds[i].innerText.trim() }));
      return out;
    }
    const rows = root.querySelectorAll('tr');
    if (rows.length > 0) {
      rows.forEach((row) => {
        const cells = row.querySelectorAll('td, th');
        if (cells.length >= 2) out.push({ name: cells[0].innerText.trim(), value: cells[1].innerText.trim() });
      });
      return out;
    }
    root.querySelectorAll('div > div').forEach((div) => {
      const spans = div.querySelectorAll('span');
      if (spans.length >= 2) {
        const name = spans[0].innerText.trim();
        const value = spans[spans.length - 1].innerText.trim();
        if (name && value && name !== value) out.push({ name, value });
      }
    });
    if (out.length === 0) {
      const lines = root.innerText.split('\n').map((l) => l.trim()).filter(Boolean);
      for (let i = 0; i + 1 < lines.length; i += 2) out.push({ name: lines[i], value: lines[i + 1] });
    }
    return out;
  };

  const availability = () => {
    const el = document.querySelector(S.addToCart);
    if (!el) return 'Unknown';
    const text = el.innerText.toLowerCase();
    if (text.includes('нет в наличии') || text.includes('закончился')) return 'Out of stock';
    return 'Available';
  };

  return {
    title: txt(S.heading),
    price: txt(S.price),
    variations: S.variations ? Array.from(document.querySelectorAll(S.variations)).map((el) => el.innerText.trim()) : [],
    availability: availability(),
    description: txt(S.description),
    characteristics: characteristics()
  };
}
"""

CART_STATE_JS = r"""
() => {
  const S = __S__;
  if (!document.querySelector(S.container)) return { status: 'missing' };
  const q = S.quantity ? document.querySelector(S.quantity) : null;
  const n = q ? parseInt(q.innerText || q.value, 10) : 0;
  return { status: 'ok', quantity: Number.isFinite(n) ? n : 0 };
}
"""

CART_COUNT_JS = r"""
() => {
  const S = __S__;
  const el = document.querySelector(S.icon + ' span');
  return el ? el.innerText : '0';
}
"""

SHARE_LINK_JS = r"""
() => {
  const canonical = document.querySelector("link[rel='canonical']");
  if (canonical && canonical.href) return canonical.href;
  const og = document.querySelector("meta[property='og:url']");
  if (og && og.content) return og.content;
  return window.location.href.split('?')[0];
}
"""


def _script(template: str, selectors: dict[str, Any] | None = None, **extra: Any) -> str:
    out = template.replace("__S__", json.dumps(selectors or {}, ensure_ascii=False))
    for key, value in extra.items():
        out = out.replace(f"__{key.upper()}__", json.dumps(value))
    return out.strip()


def _unwrap(result: Any) -> Any:
    """Accept both bare values and CDP-style {"value": ...} envelopes."""
    if isinstance(result, dict) and "value" in result and set(result) <= {"type", "value", "description", "subtype"}:
        return result["value"]
    return result


class OzonHandler:
    CART_ACTIONS = ("add", "increment", "decrement")

    def __init__(self, dispatcher: CommandDispatcher, selectors: dict[str, Any], human: Humanizer) -> None:
        self.dispatcher = dispatcher
        self.selectors = selectors or {}
        self.human = human

    def _evaluate(self, script: str) -> Any:
        return _unwrap(self.dispatcher.execute_sync(Evaluate(script), raw_result=True))

    def search_and_parse(self, args: dict[str, Any]) -> ToolResult:
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            raise InvalidArguments("'query' must be a non-empty string")
        search = section(self.selectors, "search")
        input_sel = section(search, "input")
        grid = {
            "grid": section(search, "results", "grid"),
            "tile": section(self.selectors, "productCard", "tile"),
            "link": section(self.selectors, "productCard", "link"),
        }

        self.human.pause(500, 1500)
        self.dispatcher.interact_sync([Click(input_sel, click_count=3)])
        self.human.pause(200, 500)
        self.human.type_text(input_sel, query)
        self.human.pause(300, 800)
        self.dispatcher.interact_sync([PressKey("Enter")])
        self.human.pause(2000, 5000)
        self.human.scroll()
        self.human.pause(500, 1000)

        parsed = self._evaluate(_script(SEARCH_RESULTS_JS, grid, limit=MAX_SEARCH_RESULTS))
        items = parsed.get("items") if isinstance(parsed, dict) else None
        if isinstance(parsed, dict) and parsed.get("error") and not items:
            logger.info("search parse: %s", parsed["error"])
        return ToolResult.json(items or [])

    def parse_product_page(self, args: dict[str, Any]) -> ToolResult:
        product = section(self.selectors, "product")
        characteristics = product.get("characteristics") or {}
        sel = {
            "heading": section(product, "heading"),
            "price": (product.get("price") or {}).get("current"),
            "description": product.get("description"),
            "characteristicsFull": characteristics.get("full"),
            "characteristicsShort": characteristics.get("short"),
            "variations": product.get("variations"),
            "addToCart": (product.get("addToCart") or {}).get("container"),
        }

        self.human.pause(500, 1500)
        self.human.scroll()
        self.human.pause(800, 1500)

        result = self._evaluate(_script(PRODUCT_PAGE_JS, sel))
        if isinstance(result, dict) and result.get("error"):
            return ToolResult.error(str(result["error"]), tool="ozon_parse_product_page")
        return ToolResult.json(result)

    def cart_action(self, args: dict[str, Any]) -> ToolResult:
        action = str(args.get("action") or "").strip().lower()
        if action not in self.CART_ACTIONS:
            raise InvalidArguments(f"'action' must be one of {', '.join(self.CART_ACTIONS)}")
        cart = section(self.selectors, "product", "addToCart")

        state = self._evaluate(
            _script(CART_STATE_JS, {"container": section(cart, "container"), "quantity": cart.get("quantity")})
        )
        if not isinstance(state, dict) or state.get("status") == "missing":
            return ToolResult.error("Add to cart widget not found", tool="ozon_cart_action")
        quantity = int(state.get("quantity") or 0)

        clicks: list[Click] = []
        if action == "add":
            if quantity > 0:
                return ToolResult.text(f"Item already in cart (quantity: {quantity})")
            clicks.append(Click(section(cart, "button")))
        elif action == "increment":
            clicks.append(Click(section(cart, "increment") if quantity > 0 else section(cart, "button")))
        elif action == "decrement" and quantity > 0:
            clicks.append(Click(section(cart, "decrement")))

        if not clicks:
            return ToolResult.text("No action performed (conditions not met)")

        self.human.pause(300, 800)
        self.dispatcher.interact_sync(clicks)
        self.human.pause(1000, 2500)

        icon = section(self.selectors, "header", "cart", "icon")
        count = self._evaluate(_script(CART_COUNT_JS, {"icon": icon}))
        return ToolResult.text(f"Action {action} performed. Cart count: {count}")

    def get_share_link(self, args: dict[str, Any]) -> ToolResult:
        return ToolResult.text(str(self._evaluate(_script(SHARE_LINK_JS))))

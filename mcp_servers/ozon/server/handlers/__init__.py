"""Tool handlers grouped by domain."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .core import core_handlers

if TYPE_CHECKING:
    from ..types import HandlerFunc
    from .ozon import OzonHandler


def ozon_handlers(ozon: OzonHandler) -> dict[str, tuple[HandlerFunc, bool]]:
    return {
        "ozon_search_and_parse": (ozon.search_and_parse, True),
        "ozon_parse_product_page": (ozon.parse_product_page, True),
        "ozon_cart_action": (ozon.cart_action, True),
        "ozon_get_share_link": (ozon.get_share_link, True),
    }


__all__ = ["core_handlers", "ozon_handlers"]

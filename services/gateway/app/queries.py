"""
Stock Gateway — 在庫クエリ

読み取り専用のアクセサ。副作用を持つのは sync_stock だけで、
在庫サービスの現在値で商品サービスの stock を無条件に上書きする
(補償なしのベストエフォート単品同期)。
"""

import logging
from typing import Any

from .clients import InventoryClient, ProductClient
from .errors import INVENTORY_SERVICE, InvalidUpstreamResponse
from .models import SyncResult

logger = logging.getLogger(__name__)


def as_quantity(value: Any) -> int | None:
    """整数 (または整数値の float) なら int を返す。bool や文字列は数量ではない。"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def extract_quantity(data: Any, *keys: str, service: str = INVENTORY_SERVICE) -> int:
    """
    レスポンスから最初に見つかった数値フィールドを数量として返す。

    0 も有効な数量として扱う。どのキーにも数値がなければ契約違反。
    """
    if isinstance(data, dict):
        for key in keys:
            quantity = as_quantity(data.get(key))
            if quantity is not None:
                return quantity
    raise InvalidUpstreamResponse(service, f"missing {' / '.join(keys)} field")


class StockQuery:
    def __init__(self, inventory: InventoryClient, products: ProductClient) -> None:
        self.inventory = inventory
        self.products = products

    async def get_stock(self, product_id: str) -> dict:
        return await self.inventory.get_item(str(product_id))

    async def get_low_stock(self) -> Any:
        return await self.inventory.low_stock()

    async def list_items(self, page: int = 1, per_page: int = 50) -> dict:
        return await self.inventory.list_items(page, per_page)

    async def get_product(self, product_id: str) -> dict:
        return await self.products.get_product(str(product_id))

    async def current_quantity(self, product_id: str) -> int:
        item = await self.get_stock(product_id)
        return extract_quantity(item, "quantity", "stock")

    async def sync_stock(self, product_id: str) -> SyncResult:
        """在庫サービスの数量で商品サービスの stock を上書きする。"""
        product_id = str(product_id)
        logger.info("Syncing stock for product %s", product_id)

        quantity = await self.current_quantity(product_id)
        await self.products.update_stock(product_id, quantity)

        logger.info("Stock synced for product %s: %s", product_id, quantity)
        return SyncResult(success=True, product_id=product_id, stock=quantity)

"""
Stock Gateway — 一括同期 (Reconciliation Sweep)

在庫サービスのページ付き一覧を順に読み、各アイテムの数量を
商品サービスの stock に書き込み直す。

- アイテム単位の失敗は集計するだけで、処理は止めない
- ページ取得が失敗したらそこで打ち切り、途中までのレポートを返す (リトライなし)
- 補償はしない。取りこぼしは次回の同期で修正される
"""

import logging

from . import events
from .clients import ProductClient
from .errors import INVENTORY_SERVICE, GatewayError, InvalidUpstreamResponse
from .events import SagaEventPublisher
from .models import BulkSyncReport
from .queries import StockQuery, as_quantity

logger = logging.getLogger(__name__)


def _page_number(data: dict, key: str, default: int) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


class BulkReconciler:
    def __init__(
        self,
        query: StockQuery,
        products: ProductClient,
        per_page: int = 50,
        publisher: SagaEventPublisher | None = None,
    ) -> None:
        self.query = query
        self.products = products
        self.per_page = per_page
        self.publisher = publisher or SagaEventPublisher(None)

    async def sync_all_products(self) -> BulkSyncReport:
        report = BulkSyncReport()
        logger.info("Starting bulk sync from inventory to product service")

        page = 1
        while True:
            try:
                data = await self.query.list_items(page, self.per_page)
                items = data.get("data") if isinstance(data, dict) else None
                if not isinstance(data, dict) or not isinstance(items or [], list):
                    raise InvalidUpstreamResponse(
                        INVENTORY_SERVICE, f"malformed inventory page {page}"
                    )
            except GatewayError as e:
                logger.error("Failed to fetch inventory page %s: %s", page, e.message)
                break

            items = items or []
            logger.info("Processing page %s: %s items", page, len(items))
            for item in items:
                await self._sync_item(item, report)

            current = _page_number(data, "current_page", page)
            last = _page_number(data, "last_page", current)
            # current_page が進まない上流でも last_page で止まる
            if current >= last or page >= last:
                break
            page += 1

        logger.info(
            "Bulk sync completed: %s synced, %s failed", report.synced, report.failed
        )
        await self.publisher.publish(
            events.BULK_SYNC_COMPLETED, synced=report.synced, failed=report.failed
        )
        return report

    async def _sync_item(self, item, report: BulkSyncReport) -> None:
        if not isinstance(item, dict):
            report.record_failure(None, None, "inventory item is not an object")
            return

        product_id = item.get("product_id")
        raw_quantity = item.get("quantity")
        quantity = as_quantity(raw_quantity)
        if product_id is None or product_id == "":
            report.record_failure(None, raw_quantity, "missing product_id")
            return
        product_id = str(product_id)
        if quantity is None:
            report.record_failure(product_id, raw_quantity, "missing quantity")
            return

        try:
            await self.products.update_stock(product_id, quantity)
        except GatewayError as e:
            report.record_failure(product_id, quantity, e.message)
            logger.error("Failed to sync %s: %s", product_id, e.message)
            return

        report.record_success(product_id, quantity)
        logger.debug("Synced %s: %s", product_id, quantity)

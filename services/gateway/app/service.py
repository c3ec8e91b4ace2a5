"""
Stock Gateway — ゲートウェイ向けファサード

ルートから呼ばれる操作をまとめる。クライアント・クエリ・Saga は
すべて GatewayConfig から組み立て、ここで共有する。
"""

from typing import Any, Mapping

import httpx
import redis.asyncio as aioredis

from .clients import InventoryClient, ProductClient
from .config import GatewayConfig
from .events import SagaEventPublisher
from .locks import ProductLocks
from .models import BulkSyncReport, ProvisioningResult, SagaResult, SyncResult
from .provisioning import ProductProvisioningSaga
from .queries import StockQuery
from .reconciler import BulkReconciler
from .stock_saga import StockMutationSaga


class StockService:
    def __init__(
        self,
        config: GatewayConfig,
        inventory: InventoryClient,
        products: ProductClient,
        publisher: SagaEventPublisher | None = None,
    ) -> None:
        self.config = config
        self.inventory = inventory
        self.products = products
        self.publisher = publisher or SagaEventPublisher(None)
        self.locks = ProductLocks()

        self.query = StockQuery(inventory, products)
        self.mutations = StockMutationSaga(
            inventory, products, self.query, self.locks, self.publisher
        )
        self.provisioning = ProductProvisioningSaga(
            inventory, products, config.default_warehouse_location, self.publisher
        )
        self.reconciler = BulkReconciler(
            self.query, products, config.sync_page_size, self.publisher
        )

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        redis: aioredis.Redis | None = None,
        inventory_transport: httpx.AsyncBaseTransport | None = None,
        product_transport: httpx.AsyncBaseTransport | None = None,
    ) -> "StockService":
        inventory = InventoryClient(
            config.inventory_service_url, config.timeout_seconds, inventory_transport
        )
        products = ProductClient(
            config.product_service_url,
            config.timeout_seconds,
            product_transport,
            stock_method=config.product_stock_method,
        )
        return cls(config, inventory, products, SagaEventPublisher(redis))

    async def aclose(self) -> None:
        await self.inventory.close()
        await self.products.close()

    # ── 在庫変更 (Saga) ──────────────────────────

    async def add_stock(self, product_id: str, quantity: int) -> SagaResult:
        return await self.mutations.add_stock(product_id, quantity)

    async def remove_stock(self, product_id: str, quantity: int) -> SagaResult:
        return await self.mutations.remove_stock(product_id, quantity)

    # ── 読み取り ──────────────────────────────────

    async def get_stock(self, product_id: str) -> dict:
        return await self.query.get_stock(product_id)

    async def get_low_stock(self) -> Any:
        return await self.query.get_low_stock()

    # ── 同期 ──────────────────────────────────────

    async def sync_stock(self, product_id: str) -> SyncResult:
        return await self.query.sync_stock(product_id)

    async def sync_all_products(self) -> BulkSyncReport:
        return await self.reconciler.sync_all_products()

    # ── 商品作成 (Saga) ──────────────────────────

    async def create_product_with_inventory(
        self,
        product_data: Mapping[str, Any],
        warehouse_location: str | None = None,
    ) -> ProvisioningResult:
        return await self.provisioning.create_product_with_inventory(
            product_data, warehouse_location
        )

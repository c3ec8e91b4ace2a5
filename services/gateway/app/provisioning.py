"""
Stock Gateway — 商品作成 Saga

商品サービスに商品を作成し、その ID で在庫サービスに在庫レコードを作成する。

  フロー:
  ┌────────────────────────────────────────────────────────┐
  │  1. 商品サービスに商品を作成 (レスポンスに id 必須)      │
  │  2. 在庫サービスに在庫レコードを作成                     │
  │     ├─ 成功 → InventoryCreated                          │
  │     └─ 失敗 → 商品を削除 (補償トランザクション)          │
  │              ├─ 成功 → RolledBack (ProvisioningError)   │
  │              └─ 失敗 → Orphaned (OrphanedResourceError) │
  └────────────────────────────────────────────────────────┘
"""

import logging
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from . import events
from .clients import InventoryClient, ProductClient
from .errors import OrphanedResourceError, ProvisioningError, ValidationError
from .events import SagaEventPublisher
from .models import InventoryRecord, ProductRecord, ProvisioningResult
from .queries import as_quantity
from .saga import SagaRun, SagaState, SagaStep

logger = logging.getLogger(__name__)


class ProductProvisioningSaga:
    def __init__(
        self,
        inventory: InventoryClient,
        products: ProductClient,
        default_warehouse_location: str = "WH-A1",
        publisher: SagaEventPublisher | None = None,
    ) -> None:
        self.inventory = inventory
        self.products = products
        self.default_warehouse_location = default_warehouse_location
        self.publisher = publisher or SagaEventPublisher(None)

    async def create_product_with_inventory(
        self,
        product_data: Mapping[str, Any],
        warehouse_location: str | None = None,
    ) -> ProvisioningResult:
        if not isinstance(product_data, Mapping) or not product_data:
            raise ValidationError("Product data must be a non-empty object")
        stock = as_quantity(product_data.get("stock") or 0)
        if stock is None or stock < 0:
            raise ValidationError("Product stock must be a non-negative integer")

        logger.info("Creating product with inventory sync")
        run = SagaRun(
            "provision-product",
            [
                SagaStep(
                    "CreateProduct",
                    self._create_product,
                    compensation=self._delete_product,
                    reached=SagaState.PRODUCT_CREATED,
                ),
                SagaStep(
                    "CreateInventory",
                    self._create_inventory,
                    reached=SagaState.INVENTORY_CREATED,
                ),
            ],
            context={
                "product_data": dict(product_data),
                "initial_stock": stock,
                "warehouse_location": warehouse_location or self.default_warehouse_location,
            },
        )
        outcome = await run.execute()
        ctx = run.context
        product_id = ctx.get("product_id")

        if outcome.succeeded:
            await self.publisher.publish(
                events.PROVISIONING_COMPLETED, product_id, run.saga_log
            )
            logger.info("Product and inventory created successfully for ID %s", product_id)
            return ProvisioningResult(
                success=True,
                product=ctx["product"],
                inventory=ctx["inventory"],
                saga_log=run.saga_log,
            )

        if outcome.failed_step == "CreateProduct":
            await self.publisher.publish(
                events.PROVISIONING_ABORTED, product_id, run.saga_log
            )
            if isinstance(outcome.error, ProvisioningError):
                raise outcome.error
            raise ProvisioningError(
                f"Failed to create product: {outcome.error.message}", outcome.error
            ) from outcome.error

        inventory_error = outcome.error
        if outcome.compensated:
            run.transition(SagaState.ROLLED_BACK)
            await self.publisher.publish(
                events.PROVISIONING_COMPENSATED, product_id, run.saga_log
            )
            logger.info("Rollback successful: product %s deleted", product_id)
            raise ProvisioningError(
                f"Failed to create inventory: {inventory_error.message}", inventory_error
            ) from inventory_error

        # 商品だけが残った → 運用者による手動削除が必要
        run.transition(SagaState.ORPHANED)
        await self.publisher.publish(
            events.PROVISIONING_ORPHANED, product_id, run.saga_log
        )
        logger.critical("Rollback failed: product %s is orphaned", product_id)
        raise OrphanedResourceError(product_id, inventory_error) from inventory_error

    # ── ステップ ──────────────────────────────────

    async def _create_product(self, ctx: dict) -> dict:
        created = await self.products.create_product(ctx["product_data"])
        try:
            record = ProductRecord.model_validate(created)
        except PydanticValidationError as e:
            raise ProvisioningError("Product created but no ID found in response") from e
        ctx["product"] = created
        ctx["product_id"] = record.id
        logger.info("Product created with ID %s", record.id)
        return created

    async def _create_inventory(self, ctx: dict) -> dict:
        record = InventoryRecord(
            product_id=ctx["product_id"],
            quantity=ctx["initial_stock"],
            warehouse_location=ctx["warehouse_location"],
        )
        logger.info("Creating inventory item: %s", record.model_dump())
        ctx["inventory"] = await self.inventory.create_item(record)
        return ctx["inventory"]

    async def _delete_product(self, ctx: dict) -> dict:
        return await self.products.delete_product(ctx["product_id"])


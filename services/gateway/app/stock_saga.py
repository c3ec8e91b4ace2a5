"""
Stock Gateway — 在庫変更 Saga

在庫サービス (source of truth) を調整してから、商品サービスの
stock (非正規化キャッシュ) に新しい数量を書き込む 2 ステップの Saga。

  フロー:
  ┌───────────────────────────────────────────────────────────┐
  │  1. 現在の在庫数を取得 (ベストエフォート、失敗しても続行)    │
  │  2. 在庫サービスで相対調整 (delta)                          │
  │  3. 商品サービスの stock を新しい数量で更新                  │
  │     ├─ 成功 → ProductSynced                                │
  │     └─ 失敗 → 在庫を逆調整 (補償トランザクション)            │
  │              ├─ 成功 → RolledBack                          │
  │              └─ 失敗 / 事前値不明 → Inconsistent            │
  └───────────────────────────────────────────────────────────┘

  注意: 手順 1 が失敗すると補償ができない。この場合は黙って
  やり過ごさず Inconsistent として呼び出し側に通知する。
"""

import logging
from typing import NoReturn

from . import events
from .clients import InventoryClient, ProductClient
from .errors import (
    PRODUCT_SERVICE,
    Inconsistent,
    StockSyncFailed,
    UpstreamUnavailable,
    ValidationError,
)
from .events import SagaEventPublisher
from .locks import ProductLocks
from .models import SagaResult, StockAdjustmentRequest
from .queries import StockQuery, extract_quantity
from .saga import SagaOutcome, SagaRun, SagaState, SagaStep, StepStatus

logger = logging.getLogger(__name__)

ADD_REASON = "Stock added via API Gateway"
REMOVE_REASON = "Stock removed via API Gateway"
ROLLBACK_REASON = "Rollback: product service update failed"


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive number")
    return quantity


class StockMutationSaga:
    def __init__(
        self,
        inventory: InventoryClient,
        products: ProductClient,
        query: StockQuery,
        locks: ProductLocks | None = None,
        publisher: SagaEventPublisher | None = None,
    ) -> None:
        self.inventory = inventory
        self.products = products
        self.query = query
        self.locks = locks or ProductLocks()
        self.publisher = publisher or SagaEventPublisher(None)

    async def add_stock(self, product_id: str, quantity: int) -> SagaResult:
        quantity = _validate_quantity(quantity)
        result = await self.adjust_stock(product_id, quantity, ADD_REASON)
        result.quantity_added = quantity
        return result

    async def remove_stock(self, product_id: str, quantity: int) -> SagaResult:
        quantity = _validate_quantity(quantity)
        result = await self.adjust_stock(product_id, -quantity, REMOVE_REASON)
        result.quantity_removed = quantity
        return result

    async def adjust_stock(self, product_id: str, delta: int, reason: str) -> SagaResult:
        """
        在庫を delta だけ調整し、商品サービスに反映する。

        同じ商品 ID の Saga は ProductLocks で直列化される。
        """
        product_id = str(product_id)
        logger.info("Adjusting stock for product %s by %+d", product_id, delta)

        async with self.locks.hold(product_id):
            run = self._build(product_id, delta, reason)
            outcome = await run.execute()

        ctx = run.context
        if outcome.succeeded:
            await self.publisher.publish(
                events.STOCK_SAGA_COMPLETED, product_id, run.saga_log, delta=delta
            )
            logger.info(
                "Stock for product %s adjusted: %s -> %s",
                product_id, ctx.get("previous_quantity"), ctx["new_quantity"],
            )
            return SagaResult(
                success=True,
                product_id=product_id,
                new_quantity=ctx["new_quantity"],
                previous_quantity=ctx.get("previous_quantity"),
                inventory_response=ctx["inventory_response"],
                product_response=ctx["product_response"],
                state=run.state.value,
                saga_log=run.saga_log,
            )

        if outcome.failed_step != "UpdateProductStock":
            # 在庫調整の前後で失敗 → 商品サービスへは書き込んでいない
            await self.publisher.publish(
                events.STOCK_SAGA_ABORTED, product_id, run.saga_log, delta=delta
            )
            raise outcome.error

        await self._raise_failed_sync(run, product_id, outcome)

    def _build(self, product_id: str, delta: int, reason: str) -> SagaRun:
        return SagaRun(
            f"adjust-stock:{product_id}",
            [
                SagaStep(
                    "ReadPreviousQuantity", self._read_previous, required=False
                ),
                SagaStep(
                    "AdjustInventory",
                    self._adjust_inventory,
                    compensation=self._revert_inventory,
                    can_compensate=lambda c: c.get("previous_quantity") is not None,
                    reached=SagaState.INVENTORY_ADJUSTED,
                ),
                SagaStep(
                    "UpdateProductStock",
                    self._update_product,
                    reached=SagaState.PRODUCT_SYNCED,
                ),
            ],
            context={"product_id": product_id, "delta": delta, "reason": reason},
        )

    async def _raise_failed_sync(
        self, run: SagaRun, product_id: str, outcome: SagaOutcome
    ) -> NoReturn:
        """商品サービス更新の失敗を、補償の結果に応じた例外として送出する。"""
        product_error = outcome.error
        compensation = outcome.compensations.get("AdjustInventory")

        if compensation is not None and compensation.ok:
            run.transition(SagaState.ROLLED_BACK)
            await self.publisher.publish(
                events.STOCK_SAGA_ROLLED_BACK, product_id, run.saga_log
            )
            logger.info(
                "Rollback successful. Reverted product %s to quantity %s",
                product_id, run.context["previous_quantity"],
            )
            if not isinstance(product_error, UpstreamUnavailable):
                product_error = UpstreamUnavailable(
                    PRODUCT_SERVICE, None, product_error.message
                )
            raise StockSyncFailed(
                product_id, product_error, rolled_back=True
            ) from outcome.error

        run.transition(SagaState.INCONSISTENT)
        await self.publisher.publish(
            events.STOCK_SAGA_INCONSISTENT, product_id, run.saga_log
        )
        if compensation is None or compensation.status is StepStatus.SKIPPED:
            message = (
                f"Product service update failed for product {product_id} and the "
                "previous inventory quantity is unknown; rollback was not attempted. "
                "Manual repair may be needed"
            )
            attempted = False
        else:
            message = (
                f"Product service update failed for product {product_id} and the "
                f"inventory rollback failed ({compensation.error.message}). "
                "Manual repair may be needed"
            )
            attempted = True
        logger.error(message)
        raise Inconsistent(
            product_id, message, cause=product_error, compensation_attempted=attempted
        ) from outcome.error

    # ── ステップ ──────────────────────────────────

    async def _read_previous(self, ctx: dict) -> int:
        ctx["previous_quantity"] = await self.query.current_quantity(ctx["product_id"])
        return ctx["previous_quantity"]

    async def _adjust_inventory(self, ctx: dict) -> int:
        req = StockAdjustmentRequest(
            product_id=ctx["product_id"], delta=ctx["delta"], reason=ctx["reason"]
        )
        resp = await self.inventory.adjust(req)
        ctx["inventory_response"] = resp
        ctx["new_quantity"] = extract_quantity(resp, "quantity", "new_quantity")
        return ctx["new_quantity"]

    async def _update_product(self, ctx: dict):
        ctx["product_response"] = await self.products.update_stock(
            ctx["product_id"], ctx["new_quantity"]
        )
        return ctx["product_response"]

    async def _revert_inventory(self, ctx: dict):
        req = StockAdjustmentRequest(
            product_id=ctx["product_id"],
            delta=ctx["previous_quantity"] - ctx["new_quantity"],
            reason=ROLLBACK_REASON,
        )
        return await self.inventory.adjust(req, expect_json=False)

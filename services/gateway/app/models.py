"""
Stock Gateway — データモデル

在庫サービスが数量の正 (source of truth)、商品サービスの stock は
読み取り用に非正規化されたミラー。
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator


# ── 上流のレコード ──────────────────────────────


class InventoryRecord(BaseModel):
    """在庫サービスが所有する在庫レコード。数量は相対調整でのみ変更する。"""
    product_id: str
    quantity: int = 0
    warehouse_location: str


class ProductRecord(BaseModel):
    """商品サービスが所有する商品レコード。id 以外のフィールド (stock など) はそのまま通す。"""
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # 商品サービスは数値 ID を返すが、在庫側では文字列として扱う
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class StockAdjustmentRequest(BaseModel):
    """在庫サービスの adjust エンドポイントに送る 1 件の作業単位。冪等キーはない。"""
    product_id: str
    delta: int
    reason: str

    def payload(self) -> dict:
        return {"quantity": self.delta, "reason": self.reason}


# ── Saga の結果 ──────────────────────────────────


class SagaResult(BaseModel):
    success: bool
    product_id: str
    new_quantity: int
    previous_quantity: int | None = None
    quantity_added: int | None = None
    quantity_removed: int | None = None
    # 上流の書き込みレスポンスはオブジェクトとは限らない
    inventory_response: Any
    product_response: Any = None
    state: str
    saga_log: list[dict] = []


class ProvisioningResult(BaseModel):
    success: bool
    product: dict[str, Any]
    inventory: Any
    saga_log: list[dict] = []


class SyncResult(BaseModel):
    success: bool
    product_id: str
    stock: int


class SyncError(BaseModel):
    product_id: str | None
    error: str


class SyncDetail(BaseModel):
    product_id: str | None
    quantity: Any = None
    status: str
    error: str | None = None


class BulkSyncReport(BaseModel):
    """一括同期の結果。synced + failed は観測した全アイテム数に一致する。"""
    synced: int = 0
    failed: int = 0
    errors: list[SyncError] = []
    details: list[SyncDetail] = []

    def record_success(self, product_id: str, quantity: int) -> None:
        self.synced += 1
        self.details.append(
            SyncDetail(product_id=product_id, quantity=quantity, status="success")
        )

    def record_failure(self, product_id: str | None, quantity: Any, error: str) -> None:
        self.failed += 1
        self.errors.append(SyncError(product_id=product_id, error=error))
        self.details.append(
            SyncDetail(product_id=product_id, quantity=quantity, status="failed", error=error)
        )


# ── Request Models ───────────────────────────────


class StockChangeRequest(BaseModel):
    quantity: StrictInt


class CreateProductRequest(BaseModel):
    product: dict[str, Any]
    warehouse_location: str | None = None

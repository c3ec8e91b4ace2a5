"""
Stock Gateway — エラー分類

Saga やクエリが送出する型付きエラー。
HTTP ステータスへの変換は main.py の例外ハンドラ 1 箇所だけで行う。

  GatewayError
   ├─ ValidationError          呼び出し側の入力不正 (上流呼び出し前に拒否)
   ├─ UpstreamUnavailable      上流のネットワーク障害 / 非 2xx
   │   └─ StockSyncFailed      商品サービス更新失敗 (在庫はロールバック済み)
   ├─ InvalidUpstreamResponse  2xx だが期待するフィールドがない (契約違反)
   ├─ ProvisioningError        商品 + 在庫の作成に失敗 (補償済み)
   ├─ Inconsistent             補償失敗 / 補償不能 → 手動修復が必要
   └─ OrphanedResourceError    作成済み商品の削除に失敗 → 手動削除が必要
"""

INVENTORY_SERVICE = "inventory-service"
PRODUCT_SERVICE = "product-service"


class GatewayError(Exception):
    error = "gateway_error"
    default_status = 500

    def __init__(self, message: str, *, service: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.service = service

    @property
    def status_code(self) -> int:
        return self.default_status

    def to_dict(self) -> dict:
        body = {"error": self.error, "message": self.message}
        if self.service:
            body["service"] = self.service
        return body


class ValidationError(GatewayError):
    error = "validation_error"
    default_status = 400


class UpstreamUnavailable(GatewayError):
    """上流サービスへの呼び出しが失敗した。status は HTTP 応答があった場合のみ。"""

    error = "upstream_unavailable"
    default_status = 503

    def __init__(self, service: str, status: int | None = None, detail: str = "") -> None:
        message = f"{service} request failed"
        if status is not None:
            message += f" with status {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message, service=service)
        self.status = status
        self.detail = detail

    @property
    def status_code(self) -> int:
        return self.status or self.default_status

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.status is not None:
            body["upstream_status"] = self.status
        return body


class StockSyncFailed(UpstreamUnavailable):
    """
    在庫調整後に商品サービスの更新が失敗した。

    失敗したステップは商品サービス側なので、在庫サービスのエラーではなく
    商品サービスのエラーを運ぶ。rolled_back は補償 (逆調整) が成功したかどうか。
    """

    error = "stock_sync_failed"

    def __init__(self, product_id: str, cause: UpstreamUnavailable, rolled_back: bool) -> None:
        super().__init__(cause.service or PRODUCT_SERVICE, cause.status, cause.detail)
        self.message = f"Failed to update product service: {cause.message}"
        self.args = (self.message,)
        self.product_id = product_id
        self.cause = cause
        self.rolled_back = rolled_back

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["product_id"] = self.product_id
        body["rolled_back"] = self.rolled_back
        return body


class InvalidUpstreamResponse(GatewayError):
    error = "invalid_upstream_response"
    default_status = 502

    def __init__(self, service: str, detail: str) -> None:
        super().__init__(f"Invalid {service} response: {detail}", service=service)
        self.detail = detail


class ProvisioningError(GatewayError):
    error = "provisioning_failed"

    def __init__(self, message: str, cause: GatewayError | None = None) -> None:
        super().__init__(message, service=cause.service if cause else None)
        self.cause = cause

    @property
    def status_code(self) -> int:
        if isinstance(self.cause, UpstreamUnavailable) and self.cause.status:
            return self.cause.status
        return self.default_status


class Inconsistent(GatewayError):
    """
    在庫サービスと商品サービスが食い違ったまま Saga が終了した。

    - 補償 (逆調整) を試みたが失敗した
    - 事前の在庫数が取得できず、補償そのものを行えなかった
    どちらも手動修復が必要なので、一般的な 500 とは区別して返す。
    """

    error = "inconsistent_state"

    def __init__(
        self,
        product_id: str,
        message: str,
        cause: GatewayError | None = None,
        compensation_attempted: bool = False,
    ) -> None:
        super().__init__(message, service=cause.service if cause else None)
        self.product_id = product_id
        self.cause = cause
        self.compensation_attempted = compensation_attempted

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["product_id"] = self.product_id
        body["compensation_attempted"] = self.compensation_attempted
        return body


class OrphanedResourceError(GatewayError):
    """商品は作成されたが在庫がなく、補償の削除も失敗した。運用者による削除が必要。"""

    error = "orphaned_resource"

    def __init__(self, product_id: str, cause: GatewayError | None = None) -> None:
        message = (
            "Product created but inventory sync failed. "
            f"Manual cleanup required for product {product_id}"
        )
        if cause is not None:
            message += f". Original error: {cause.message}"
        super().__init__(message, service=PRODUCT_SERVICE)
        self.product_id = product_id
        self.cause = cause

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["product_id"] = self.product_id
        return body

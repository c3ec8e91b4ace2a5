"""
Stock Gateway — 上流サービスクライアント

在庫サービスと商品サービスへの薄い HTTP クライアント。
すべての呼び出しは固定タイムアウト付きで、httpx の例外は
UpstreamUnavailable / InvalidUpstreamResponse に正規化して送出する。
リトライはしない。
"""

import logging
from typing import Any

import httpx

from .errors import (
    INVENTORY_SERVICE,
    PRODUCT_SERVICE,
    InvalidUpstreamResponse,
    UpstreamUnavailable,
)
from .models import InventoryRecord, StockAdjustmentRequest

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    """上流のエラーボディから人が読めるメッセージを取り出す。"""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if body.get(key):
                return str(body[key])
    return str(body)[:200]


class ServiceClient:
    """
    上流サービスクライアントの基底クラス

    httpx.AsyncClient を 1 つ保持し、ゲートウェイの lifespan で close する。
    transport はテストで httpx.MockTransport を差し込むために使う。
    """

    service_name: str = "upstream-service"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self, method: str, path: str, expect_json: bool = True, **kwargs: Any
    ) -> Any:
        """
        上流を呼び出してデコード済みの JSON を返す。

        成否はステータスコードで決まる。expect_json=False の書き込み系は
        2xx なら JSON でないボディでも成功として {"raw": 本文} を返す。
        """
        try:
            resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "%s %s %s -> %s", self.service_name, method, path, e.response.status_code
            )
            raise UpstreamUnavailable(
                self.service_name, e.response.status_code, _error_detail(e.response)
            ) from e
        except httpx.HTTPError as e:
            logger.error("%s %s %s failed: %r", self.service_name, method, path, e)
            raise UpstreamUnavailable(
                self.service_name, None, str(e) or type(e).__name__
            ) from e

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            if not expect_json:
                logger.warning(
                    "%s %s %s returned a non-JSON body; treating as success",
                    self.service_name, method, path,
                )
                return {"raw": resp.text}
            raise InvalidUpstreamResponse(
                self.service_name, f"{method} {path} returned a non-JSON body"
            ) from e


class InventoryClient(ServiceClient):
    """在庫サービス (数量の source of truth)"""

    service_name = INVENTORY_SERVICE

    async def get_item(self, product_id: str) -> dict:
        return await self._request("GET", f"/api/v1/inventory/items/{product_id}")

    async def adjust(self, req: StockAdjustmentRequest, expect_json: bool = True) -> Any:
        """expect_json=False は数量を読まない呼び出し (補償の逆調整) 用。"""
        return await self._request(
            "POST",
            f"/api/v1/inventory/items/{req.product_id}/adjust",
            expect_json=expect_json,
            json=req.payload(),
        )

    async def create_item(self, record: InventoryRecord) -> Any:
        return await self._request(
            "POST",
            "/api/v1/inventory/items",
            expect_json=False,
            json=record.model_dump(),
        )

    async def low_stock(self) -> Any:
        return await self._request("GET", "/api/v1/inventory/items/low-stock")

    async def list_items(self, page: int, per_page: int) -> dict:
        return await self._request(
            "GET",
            "/api/v1/inventory/items",
            params={"page": page, "per_page": per_page},
        )


class ProductClient(ServiceClient):
    """商品サービス (stock は非正規化キャッシュ)"""

    service_name = PRODUCT_SERVICE

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        stock_method: str = "PATCH",
    ) -> None:
        super().__init__(base_url, timeout, transport)
        self.stock_method = stock_method

    async def get_product(self, product_id: str) -> dict:
        return await self._request("GET", f"/api/products/{product_id}")

    async def create_product(self, data: dict) -> dict:
        return await self._request("POST", "/api/products", json=data)

    async def update_stock(self, product_id: str, stock: int) -> Any:
        return await self._request(
            self.stock_method,
            f"/api/products/{product_id}",
            expect_json=False,
            json={"stock": stock},
        )

    async def delete_product(self, product_id: str) -> Any:
        return await self._request(
            "DELETE", f"/api/products/{product_id}", expect_json=False
        )

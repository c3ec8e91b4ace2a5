"""
Stock Gateway — 設定

環境変数から一度だけ読み込み、各コンポーネントのコンストラクタへ渡す。
サービス URL をモジュールのグローバル変数には持たない。
"""

import os
from typing import Literal, Mapping

from pydantic import BaseModel

# 環境変数名 → フィールド名
_ENV_FIELDS = {
    "PRODUCT_SERVICE_URL": "product_service_url",
    "INVENTORY_SERVICE_URL": "inventory_service_url",
    "ORDER_SERVICE_URL": "order_service_url",
    "USER_SERVICE_URL": "user_service_url",
    "REDIS_URL": "redis_url",
    "GATEWAY_TIMEOUT_SECONDS": "timeout_seconds",
    "SYNC_PAGE_SIZE": "sync_page_size",
    "DEFAULT_WAREHOUSE_LOCATION": "default_warehouse_location",
    "PRODUCT_STOCK_METHOD": "product_stock_method",
    "LOG_LEVEL": "log_level",
}


class GatewayConfig(BaseModel):
    product_service_url: str = "http://localhost:8001"
    inventory_service_url: str = "http://localhost:8000"
    order_service_url: str | None = None
    user_service_url: str | None = None
    # 未設定なら Saga イベントは発行しない
    redis_url: str | None = None
    timeout_seconds: float = 30.0
    sync_page_size: int = 50
    default_warehouse_location: str = "WH-A1"
    product_stock_method: Literal["PATCH", "PUT"] = "PATCH"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewayConfig":
        env = os.environ if environ is None else environ
        values = {
            field: env[name] for name, field in _ENV_FIELDS.items() if env.get(name)
        }
        if "product_stock_method" in values:
            values["product_stock_method"] = values["product_stock_method"].upper()
        return cls.model_validate(values)

    def service_urls(self) -> dict:
        return {
            "products": self.product_service_url,
            "inventory": self.inventory_service_url,
            "orders": self.order_service_url,
            "users": self.user_service_url,
        }

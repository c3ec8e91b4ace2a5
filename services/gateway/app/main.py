"""
Stock Gateway — FastAPI エントリーポイント

在庫サービスと商品サービスの間で在庫数を同期するゲートウェイ。
在庫変更・商品作成は Saga として実行し、型付きエラーは
ここの例外ハンドラで HTTP ステータスと JSON エンベロープに変換する。

  ┌──────────┐     ┌─────────┐     ┌───────────────────┐
  │  Client  │────▶│ Gateway │────▶│ Inventory Service │ (source of truth)
  │          │     │ (Saga)  │────▶│ Product Service   │ (stock キャッシュ)
  └──────────┘     └────┬────┘     └───────────────────┘
                        │ stock_saga_events
                        ▼
                      Redis Pub/Sub
"""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import GatewayConfig
from .errors import GatewayError
from .models import CreateProductRequest, StockChangeRequest
from .service import StockService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_stock_service(request: Request) -> StockService:
    return request.app.state.stock_service


def create_app(
    config: GatewayConfig | None = None,
    redis: aioredis.Redis | None = None,
    inventory_transport: httpx.AsyncBaseTransport | None = None,
    product_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    ゲートウェイアプリを組み立てる。

    redis / transport はテストから差し込むためのもの。
    redis を渡さず config.redis_url があれば lifespan で接続する。
    """
    config = config or GatewayConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redis_pool = redis
        owns_redis = False
        if redis_pool is None and config.redis_url:
            redis_pool = aioredis.from_url(config.redis_url, decode_responses=True)
            owns_redis = True

        app.state.stock_service = StockService.from_config(
            config, redis_pool, inventory_transport, product_transport
        )
        logger.info("Stock gateway initialized with %s", config.service_urls())
        yield
        await app.state.stock_service.aclose()
        if owns_redis:
            await redis_pool.aclose()

    app = FastAPI(title="Stock Gateway", lifespan=lifespan)
    app.state.config = config

    # ── エラーハンドリング ────────────────────────

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(request: Request, exc: GatewayError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, "[%s %s] %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "timestamp": _timestamp()},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "validation_error",
                "message": "; ".join(
                    f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}"
                    for e in exc.errors()
                ),
                "timestamp": _timestamp(),
            },
        )

    # ── 在庫 API ──────────────────────────────────
    # /low-stock と /sync-all は /{product_id} より先に登録する

    @app.get("/api/stock/low-stock")
    @app.get("/api/stock/lowStock", include_in_schema=False)
    async def get_low_stock(service: StockService = Depends(get_stock_service)):
        """在庫が少ないアイテムの一覧"""
        return await service.get_low_stock()

    @app.post("/api/stock/sync-all")
    async def sync_all_products(service: StockService = Depends(get_stock_service)):
        """在庫サービスの全アイテムを商品サービスに同期する"""
        report = await service.sync_all_products()
        return {"message": "Bulk stock sync completed", **report.model_dump()}

    @app.post("/api/stock/products", status_code=201)
    async def create_product(
        req: CreateProductRequest,
        service: StockService = Depends(get_stock_service),
    ):
        """商品を作成し、対応する在庫レコードも作成する (Saga)"""
        result = await service.create_product_with_inventory(
            req.product, req.warehouse_location
        )
        return {"message": "Product created successfully", **result.model_dump()}

    @app.get("/api/stock/{product_id}")
    async def get_stock(
        product_id: str, service: StockService = Depends(get_stock_service)
    ):
        return await service.get_stock(product_id)

    @app.post("/api/stock/{product_id}/add")
    async def add_stock(
        product_id: str,
        req: StockChangeRequest,
        service: StockService = Depends(get_stock_service),
    ):
        """在庫を追加する (Saga)"""
        result = await service.add_stock(product_id, req.quantity)
        return {
            "message": "Stock added successfully",
            **result.model_dump(exclude_none=True),
        }

    @app.post("/api/stock/{product_id}/remove")
    async def remove_stock(
        product_id: str,
        req: StockChangeRequest,
        service: StockService = Depends(get_stock_service),
    ):
        """在庫を減らす (Saga)"""
        result = await service.remove_stock(product_id, req.quantity)
        return {
            "message": "Stock removed successfully",
            **result.model_dump(exclude_none=True),
        }

    @app.post("/api/stock/{product_id}/sync")
    async def sync_stock(
        product_id: str, service: StockService = Depends(get_stock_service)
    ):
        """1 商品の在庫数を商品サービスに上書き同期する"""
        result = await service.sync_stock(product_id)
        return {"message": "Stock synchronized successfully", **result.model_dump()}

    # ── ステータス ────────────────────────────────

    @app.get("/api/status")
    async def status():
        return {
            "gateway": "UP",
            "services": config.service_urls(),
            "timestamp": _timestamp(),
        }

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "stock-gateway", "timestamp": _timestamp()}

    return app


_config = GatewayConfig.from_env()
configure_logging(_config.log_level)
app = create_app(_config)

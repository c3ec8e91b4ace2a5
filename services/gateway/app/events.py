"""
Stock Gateway — Saga イベント

Saga の終了時に 1 件だけイベントを Redis Pub/Sub に発行する。
発行はベストエフォートで、Redis の障害は Saga の結果を変えない。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL = "stock_saga_events"

# イベント種別
STOCK_SAGA_COMPLETED = "StockSagaCompleted"
STOCK_SAGA_ABORTED = "StockSagaAborted"
STOCK_SAGA_ROLLED_BACK = "StockSagaRolledBack"
STOCK_SAGA_INCONSISTENT = "StockSagaInconsistent"
PROVISIONING_COMPLETED = "ProvisioningCompleted"
PROVISIONING_ABORTED = "ProvisioningAborted"
PROVISIONING_COMPENSATED = "ProvisioningCompensated"
PROVISIONING_ORPHANED = "ProvisioningOrphaned"
BULK_SYNC_COMPLETED = "BulkSyncCompleted"


class SagaEvent(BaseModel):
    event_type: str
    product_id: str | None = None
    saga_log: list[dict] = []
    data: dict = {}
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SagaEventPublisher:
    """redis が None の場合は何もしない。"""

    def __init__(self, redis: aioredis.Redis | None, channel: str = CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(
        self,
        event_type: str,
        product_id: str | None = None,
        saga_log: list[dict] | None = None,
        **data,
    ) -> None:
        if self.redis is None:
            return
        event = SagaEvent(
            event_type=event_type,
            product_id=product_id,
            saga_log=saga_log or [],
            data=data,
        )
        try:
            await self.redis.publish(
                self.channel, json.dumps(event.model_dump(mode="json"), default=str)
            )
        except (RedisError, OSError):
            logger.warning("Failed to publish %s event", event_type, exc_info=True)

"""Pytest configuration and fixtures"""
import asyncio
import json
import math
from dataclasses import dataclass
from typing import Any

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.config import GatewayConfig
from app.service import StockService

INVENTORY_URL = "http://inventory.test"
PRODUCTS_URL = "http://products.test"


@dataclass
class Call:
    service: str
    method: str
    path: str
    params: dict
    body: Any


class FakeUpstream:
    """
    In-memory inventory and product services behind httpx.MockTransport.

    Handlers yield to the event loop once per request so concurrent sagas
    interleave the way they would against real services.
    """

    LOW_STOCK_THRESHOLD = 10

    def __init__(self):
        self.inventory: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.calls: list[Call] = []
        self.failures: list[dict] = []
        self.adjust_key: str | None = "quantity"
        self.product_create_without_id = False
        self.replies: dict[tuple[str, str], dict] = {}
        self._next_product_id = 1

    def add_item(self, product_id, quantity, warehouse_location="WH-A1", product=True):
        key = str(product_id)
        self.inventory[key] = {
            "product_id": key,
            "quantity": quantity,
            "warehouse_location": warehouse_location,
        }
        if product:
            self.products[key] = {
                "id": int(key) if key.isdigit() else key,
                "name": f"Product {key}",
                "sku": f"SKU-{key}",
                "price": 9.99,
                "stock": quantity,
            }

    def fail(self, method, path, status=500, *, times=None, after=0, params=None):
        """Inject a failure; status=None raises a connection error instead."""
        self.failures.append(
            {
                "method": method,
                "path": path,
                "status": status,
                "times": times,
                "after": after,
                "params": params or {},
                "seen": 0,
                "hits": 0,
            }
        )

    def reply_with(self, method, path, status=200, **kwargs):
        """Apply the request normally but answer with a different response body."""
        self.replies[(method, path)] = {"status_code": status, **kwargs}

    def _replied(self, request, response):
        reply = self.replies.get((request.method, request.url.path))
        if reply is None or response.status_code >= 400:
            return response
        return httpx.Response(**reply)

    def calls_to(self, method, path):
        return [c for c in self.calls if c.method == method and c.path == path]

    def _failure_for(self, request):
        params = dict(request.url.params)
        for rule in self.failures:
            if rule["method"] != request.method or rule["path"] != request.url.path:
                continue
            if any(params.get(k) != v for k, v in rule["params"].items()):
                continue
            rule["seen"] += 1
            if rule["seen"] <= rule["after"]:
                continue
            if rule["times"] is not None and rule["hits"] >= rule["times"]:
                continue
            rule["hits"] += 1
            if rule["status"] is None:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(rule["status"], json={"message": "injected failure"})
        return None

    async def _record(self, service, request):
        await asyncio.sleep(0)
        body = json.loads(request.content) if request.content else None
        self.calls.append(
            Call(service, request.method, request.url.path, dict(request.url.params), body)
        )
        return body

    # ── Inventory service ─────────────────────────

    async def inventory_handler(self, request: httpx.Request) -> httpx.Response:
        return self._replied(request, await self._inventory(request))

    async def _inventory(self, request):
        body = await self._record("inventory", request)
        failure = self._failure_for(request)
        if failure is not None:
            return failure

        prefix = "/api/v1/inventory/items"
        path = request.url.path
        method = request.method

        if path == prefix and method == "GET":
            page = int(request.url.params.get("page", 1))
            per_page = int(request.url.params.get("per_page", 50))
            items = list(self.inventory.values())
            last_page = max(1, math.ceil(len(items) / per_page))
            chunk = items[(page - 1) * per_page: page * per_page]
            return httpx.Response(
                200,
                json={
                    "data": [dict(i) for i in chunk],
                    "current_page": page,
                    "last_page": last_page,
                    "total": len(items),
                },
            )
        if path == prefix and method == "POST":
            key = body["product_id"]
            if key in self.inventory:
                return httpx.Response(409, json={"message": "Item already exists"})
            self.inventory[key] = dict(body)
            return httpx.Response(201, json=dict(body))

        rest = path[len(prefix) + 1:]
        if rest == "low-stock" and method == "GET":
            low = [
                dict(i)
                for i in self.inventory.values()
                if i.get("quantity", 0) < self.LOW_STOCK_THRESHOLD
            ]
            return httpx.Response(200, json=low)

        if rest.endswith("/adjust") and method == "POST":
            key = rest[: -len("/adjust")]
            item = self.inventory.get(key)
            if item is None:
                return httpx.Response(404, json={"message": "Item not found"})
            item["quantity"] += body["quantity"]
            resp = {"product_id": key, "reason": body["reason"]}
            if self.adjust_key:
                resp[self.adjust_key] = item["quantity"]
            return httpx.Response(200, json=resp)

        item = self.inventory.get(rest)
        if item is None or method != "GET":
            return httpx.Response(404, json={"message": "Item not found"})
        return httpx.Response(200, json=dict(item))

    # ── Product service ───────────────────────────

    async def product_handler(self, request: httpx.Request) -> httpx.Response:
        return self._replied(request, await self._products(request))

    async def _products(self, request):
        body = await self._record("products", request)
        failure = self._failure_for(request)
        if failure is not None:
            return failure

        prefix = "/api/products"
        path = request.url.path
        method = request.method

        if path == prefix and method == "POST":
            if self.product_create_without_id:
                return httpx.Response(201, json=dict(body))
            while str(self._next_product_id) in self.products:
                self._next_product_id += 1
            product = {**body, "id": self._next_product_id}
            self.products[str(self._next_product_id)] = product
            return httpx.Response(201, json=dict(product))

        key = path[len(prefix) + 1:]
        product = self.products.get(key)
        if product is None:
            return httpx.Response(404, json={"message": "Product not found"})
        if method == "GET":
            return httpx.Response(200, json=dict(product))
        if method in ("PATCH", "PUT"):
            product.update(body)
            return httpx.Response(200, json=dict(product))
        if method == "DELETE":
            del self.products[key]
            return httpx.Response(204)
        return httpx.Response(405)


class RecordingRedis:
    """Stands in for redis.asyncio.Redis.publish."""

    def __init__(self, fail=False):
        self.fail = fail
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel, message):
        if self.fail:
            raise RedisConnectionError("redis is down")
        self.messages.append((channel, json.loads(message)))
        return 1

    def event_types(self):
        return [m["event_type"] for _, m in self.messages]

    def last(self):
        return self.messages[-1][1]


def saga_states(saga_log):
    return [entry["state"] for entry in saga_log if "state" in entry]


@pytest.fixture
def upstream():
    up = FakeUpstream()
    up.add_item("42", 50)
    up.add_item("7", 3)
    return up


@pytest.fixture
def fake_redis():
    return RecordingRedis()


@pytest.fixture
def config():
    return GatewayConfig(
        product_service_url=PRODUCTS_URL,
        inventory_service_url=INVENTORY_URL,
        sync_page_size=2,
    )


@pytest.fixture
def inventory_transport(upstream):
    return httpx.MockTransport(upstream.inventory_handler)


@pytest.fixture
def product_transport(upstream):
    return httpx.MockTransport(upstream.product_handler)


@pytest.fixture
def service(config, fake_redis, inventory_transport, product_transport):
    return StockService.from_config(
        config, fake_redis, inventory_transport, product_transport
    )

"""Tests for the add/remove stock saga"""
import asyncio

import pytest

from app import events
from app.errors import (
    Inconsistent,
    InvalidUpstreamResponse,
    StockSyncFailed,
    UpstreamUnavailable,
    ValidationError,
)
from app.stock_saga import ADD_REASON, REMOVE_REASON, ROLLBACK_REASON

from conftest import saga_states

ADJUST_42 = "/api/v1/inventory/items/42/adjust"
PRODUCT_42 = "/api/products/42"


@pytest.mark.asyncio
async def test_add_stock_pushes_new_quantity_to_product(service, upstream):
    result = await service.add_stock("42", 10)

    assert result.success is True
    assert result.product_id == "42"
    assert result.new_quantity == 60
    assert result.previous_quantity == 50
    assert result.quantity_added == 10
    assert result.state == "ProductSynced"
    assert result.inventory_response["quantity"] == 60
    assert result.product_response["stock"] == 60

    assert upstream.inventory["42"]["quantity"] == 60
    assert upstream.products["42"]["stock"] == 60
    assert [c.body for c in upstream.calls_to("POST", ADJUST_42)] == [
        {"quantity": 10, "reason": ADD_REASON}
    ]
    assert upstream.calls_to("PATCH", PRODUCT_42)[0].body == {"stock": 60}


@pytest.mark.asyncio
async def test_saga_log_records_state_transitions(service):
    result = await service.add_stock(42, 1)

    assert saga_states(result.saga_log) == ["InventoryAdjusted", "ProductSynced"]
    actions = [e["action"] for e in result.saga_log if "action" in e]
    assert actions == ["ReadPreviousQuantity", "AdjustInventory", "UpdateProductStock"]
    assert all(
        e["status"] == "COMPLETED" for e in result.saga_log if "status" in e
    )


@pytest.mark.asyncio
async def test_remove_stock_sends_negative_delta(service, upstream):
    result = await service.remove_stock("42", 20)

    assert result.new_quantity == 30
    assert result.quantity_removed == 20
    assert result.quantity_added is None
    assert upstream.calls_to("POST", ADJUST_42)[0].body == {
        "quantity": -20,
        "reason": REMOVE_REASON,
    }
    assert upstream.products["42"]["stock"] == 30


@pytest.mark.asyncio
async def test_add_then_remove_restores_both_services(service, upstream):
    await service.add_stock("42", 15)
    await service.remove_stock("42", 15)

    assert upstream.inventory["42"]["quantity"] == 50
    assert upstream.products["42"]["stock"] == 50


@pytest.mark.asyncio
async def test_new_quantity_field_and_zero_are_accepted(service, upstream):
    upstream.adjust_key = "new_quantity"

    result = await service.remove_stock("7", 3)

    assert result.new_quantity == 0
    assert upstream.products["7"]["stock"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -5, True, 2.5, "3", None])
async def test_non_positive_or_non_integer_quantity_rejected(service, upstream, quantity):
    with pytest.raises(ValidationError):
        await service.add_stock("42", quantity)
    with pytest.raises(ValidationError):
        await service.remove_stock("42", quantity)

    assert upstream.calls == []


@pytest.mark.asyncio
async def test_product_failure_rolls_back_inventory(service, upstream, fake_redis):
    upstream.fail("PATCH", PRODUCT_42, 500)

    with pytest.raises(StockSyncFailed) as exc_info:
        await service.add_stock("42", 10)

    err = exc_info.value
    assert err.rolled_back is True
    assert err.service == "product-service"
    assert err.status_code == 500
    assert "Failed to update product service" in err.message

    assert upstream.inventory["42"]["quantity"] == 50
    assert upstream.products["42"]["stock"] == 50
    adjusts = upstream.calls_to("POST", ADJUST_42)
    assert [c.body for c in adjusts] == [
        {"quantity": 10, "reason": ADD_REASON},
        {"quantity": -10, "reason": ROLLBACK_REASON},
    ]

    event = fake_redis.last()
    assert event["event_type"] == events.STOCK_SAGA_ROLLED_BACK
    assert saga_states(event["saga_log"]) == [
        "InventoryAdjusted",
        "CompensationAttempted",
        "RolledBack",
    ]


@pytest.mark.asyncio
async def test_unknown_previous_quantity_is_inconsistent_without_compensation(
    service, upstream, fake_redis
):
    upstream.fail("GET", "/api/v1/inventory/items/42", 503)
    upstream.fail("PATCH", PRODUCT_42, 500)

    with pytest.raises(Inconsistent) as exc_info:
        await service.add_stock("42", 10)

    err = exc_info.value
    assert err.product_id == "42"
    assert err.compensation_attempted is False
    assert isinstance(err.cause, UpstreamUnavailable)
    assert err.cause.service == "product-service"

    # only the forward adjustment was sent
    assert len(upstream.calls_to("POST", ADJUST_42)) == 1
    assert upstream.inventory["42"]["quantity"] == 60

    event = fake_redis.last()
    assert event["event_type"] == events.STOCK_SAGA_INCONSISTENT
    assert saga_states(event["saga_log"])[-2:] == ["CompensationAttempted", "Inconsistent"]
    skipped = [e for e in event["saga_log"] if e.get("status") == "SKIPPED"]
    assert skipped[0]["action"] == "AdjustInventory (COMPENSATING)"


@pytest.mark.asyncio
async def test_failed_compensation_is_inconsistent(service, upstream):
    upstream.fail("PATCH", PRODUCT_42, 500)
    upstream.fail("POST", ADJUST_42, 500, after=1)

    with pytest.raises(Inconsistent) as exc_info:
        await service.remove_stock("42", 5)

    assert exc_info.value.compensation_attempted is True
    assert len(upstream.calls_to("POST", ADJUST_42)) == 2
    assert upstream.inventory["42"]["quantity"] == 45


@pytest.mark.asyncio
async def test_missing_quantity_in_adjust_response_aborts(service, upstream, fake_redis):
    upstream.adjust_key = None

    with pytest.raises(InvalidUpstreamResponse):
        await service.add_stock("42", 10)

    assert upstream.calls_to("PATCH", PRODUCT_42) == []
    assert len(upstream.calls_to("POST", ADJUST_42)) == 1
    event = fake_redis.last()
    assert event["event_type"] == events.STOCK_SAGA_ABORTED
    assert saga_states(event["saga_log"]) == ["Aborted"]


@pytest.mark.asyncio
async def test_inventory_failure_propagates_without_touching_products(service, upstream):
    with pytest.raises(UpstreamUnavailable) as exc_info:
        await service.add_stock("999", 1)

    assert exc_info.value.status == 404
    assert exc_info.value.service == "inventory-service"
    assert [c for c in upstream.calls if c.service == "products"] == []


@pytest.mark.asyncio
async def test_inventory_connection_error_maps_to_503(service, upstream):
    upstream.fail("POST", ADJUST_42, status=None)

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await service.add_stock("42", 1)

    assert exc_info.value.status is None
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_concurrent_mutations_on_same_product_are_serialized(service, upstream):
    first, second = await asyncio.gather(
        service.add_stock("42", 5),
        service.add_stock("42", 7),
    )

    previous = sorted([first.previous_quantity, second.previous_quantity])
    assert previous in ([50, 55], [50, 57])
    assert upstream.inventory["42"]["quantity"] == 62
    assert upstream.products["42"]["stock"] == 62
    assert len(service.locks) == 0


@pytest.mark.asyncio
async def test_concurrent_rollback_restores_exact_previous_quantity(service, upstream):
    upstream.fail("PATCH", PRODUCT_42, 500, times=1)

    results = await asyncio.gather(
        service.add_stock("42", 5),
        service.add_stock("42", 7),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, StockSyncFailed)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(failures) == 1 and len(successes) == 1
    assert upstream.inventory["42"]["quantity"] == 50 + successes[0].quantity_added
    assert upstream.products["42"]["stock"] == upstream.inventory["42"]["quantity"]


@pytest.mark.asyncio
async def test_redis_failure_does_not_change_outcome(
    config, inventory_transport, product_transport, upstream
):
    from app.service import StockService

    from conftest import RecordingRedis

    svc = StockService.from_config(
        config, RecordingRedis(fail=True), inventory_transport, product_transport
    )

    result = await svc.add_stock("42", 1)

    assert result.success is True
    assert upstream.products["42"]["stock"] == 51


@pytest.mark.asyncio
async def test_plain_text_2xx_from_product_service_is_success(service, upstream, fake_redis):
    upstream.reply_with("PATCH", PRODUCT_42, 200, text="OK")

    result = await service.add_stock("42", 10)

    assert result.success is True
    assert result.product_response == {"raw": "OK"}
    assert upstream.inventory["42"]["quantity"] == 60
    assert upstream.products["42"]["stock"] == 60
    assert len(upstream.calls_to("POST", ADJUST_42)) == 1
    assert fake_redis.last()["event_type"] == events.STOCK_SAGA_COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [True, ["updated"]])
async def test_non_object_json_from_product_service_is_kept(service, upstream, body):
    upstream.reply_with("PATCH", PRODUCT_42, 200, json=body)

    result = await service.add_stock("42", 5)

    assert result.product_response == body
    assert upstream.products["42"]["stock"] == 55

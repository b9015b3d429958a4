import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from order_service import messaging
from order_service.models import Order, OrderLineItem, OrderStatus


def make_order(status=OrderStatus.PENDING):
    return Order(
        id="order-1",
        user_id="cust-123",
        status=status,
        shipping_address={"city": "London"},
        payment_method="credit_card",
        items=[OrderLineItem(product_id=1, quantity=2, unit_price=Decimal("99.99"))],
    )


@pytest.fixture
def mock_channel():
    exchange = AsyncMock()
    channel = MagicMock()
    channel.get_exchange = AsyncMock(return_value=exchange)
    with patch.object(messaging, "channel", channel):
        yield exchange


@pytest.mark.asyncio
async def test_publish_without_channel_is_skipped():
    with patch.object(messaging, "channel", None):
        await messaging.publish_event("order_exchange", "order.created", {"event_type": "OrderCreated"})


@pytest.mark.asyncio
async def test_order_created_event(mock_channel):
    await messaging.publish_order_created(make_order())

    mock_channel.publish.assert_awaited_once()
    message = mock_channel.publish.call_args.args[0]
    assert mock_channel.publish.call_args.kwargs["routing_key"] == "order.created"

    payload = json.loads(message.body.decode())
    assert payload["event_type"] == "OrderCreated"
    assert payload["order_id"] == "order-1"
    assert payload["status"] == "pending"
    assert payload["items"] == [{"product_id": 1, "quantity": 2, "unit_price": "99.99"}]
    assert payload["total_amount"] == "199.98"


@pytest.mark.asyncio
async def test_cancellation_uses_its_own_routing_key(mock_channel):
    await messaging.publish_status_changed(make_order(OrderStatus.CANCELLED))

    assert mock_channel.publish.call_args.kwargs["routing_key"] == "order.cancelled"
    payload = json.loads(mock_channel.publish.call_args.args[0].body.decode())
    assert payload["event_type"] == "OrderCancelled"


@pytest.mark.asyncio
async def test_other_status_changes(mock_channel):
    await messaging.publish_status_changed(make_order(OrderStatus.SHIPPED))

    assert mock_channel.publish.call_args.kwargs["routing_key"] == "order.status_changed"
    payload = json.loads(mock_channel.publish.call_args.args[0].body.decode())
    assert payload["status"] == "shipped"

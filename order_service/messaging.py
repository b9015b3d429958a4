import json
from datetime import datetime
from uuid import uuid4

import aio_pika
import structlog
from aio_pika.exceptions import AMQPException
from tenacity import retry, stop_after_attempt, wait_exponential

from order_service.config import Config
from order_service.models import Order, OrderStatus

logger = structlog.get_logger(__name__)

connection = None
channel = None


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
async def _connect():
    return await aio_pika.connect_robust(Config.RABBITMQ_URL)


async def setup_rabbitmq():
    global connection, channel
    try:
        connection = await _connect()
        channel = await connection.channel()
        await channel.declare_exchange(Config.ORDER_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("rabbitmq.ready", exchange=Config.ORDER_EXCHANGE)
    except (AMQPException, OSError) as e:
        # Orders are still taken without a broker; events are skipped until it is back.
        logger.warning("rabbitmq.unavailable", error=str(e))


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if not channel:
        logger.warning("event.not_published", routing_key=routing_key, reason="channel not available")
        return

    message = aio_pika.Message(
        json.dumps(message_data, default=str).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )

    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("event.published", routing_key=routing_key, event_type=message_data["event_type"])
    except (AMQPException, ConnectionError) as e:
        logger.error("event.publish_failed", routing_key=routing_key, error=str(e))


def order_event(event_type: str, order: Order, **extra) -> dict:
    event = {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.utcnow().isoformat(),
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status.value,
    }
    event.update(extra)
    return event


async def publish_order_created(order: Order):
    event = order_event(
        "OrderCreated",
        order,
        items=[
            {"product_id": item.product_id, "quantity": item.quantity, "unit_price": str(item.unit_price)}
            for item in order.items
        ],
        total_amount=str(order.total_amount),
    )
    await publish_event(Config.ORDER_EXCHANGE, "order.created", event)


async def publish_status_changed(order: Order):
    if order.status == OrderStatus.CANCELLED:
        await publish_event(Config.ORDER_EXCHANGE, "order.cancelled", order_event("OrderCancelled", order))
    else:
        await publish_event(Config.ORDER_EXCHANGE, "order.status_changed", order_event("OrderStatusChanged", order))

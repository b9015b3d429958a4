"""Payment outcome consumer.

Payment is simulated by a separate service that reports back on
``payment_exchange``. A processed payment moves the order to ``processing``;
a failed payment cancels it, which gives its stock back. Both go through the
status state machine as the system actor, so the same transition rules and
stock compensation apply as for HTTP requests.
"""

import asyncio
import json

import aio_pika
import structlog
from aio_pika.exceptions import AMQPException

from order_service.auth import SYSTEM_ACTOR
from order_service.config import Config
from order_service.database import get_session
from order_service.errors import InvalidTransition, OrderNotFound
from order_service.messaging import publish_status_changed
from order_service.models import OrderStatus
from order_service.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)


async def update_order_status(order_id: str, new_status: OrderStatus, db):
    try:
        order = await OrderStateMachine(db).transition(order_id, new_status, SYSTEM_ACTOR)
    except (OrderNotFound, InvalidTransition) as e:
        # Redelivery cannot fix these; acknowledge and move on.
        logger.warning("payment_event.ignored", order_id=order_id, status=new_status.value, reason=str(e))
        return None

    await publish_status_changed(order)
    return order


async def _handle(message: aio_pika.IncomingMessage, new_status: OrderStatus):
    # StorageFailure escapes the block so the broker redelivers the message.
    async with message.process(requeue=True):
        try:
            event_data = json.loads(message.body.decode())
            order_id = event_data["order_id"]
        except (ValueError, KeyError) as e:
            logger.error("payment_event.malformed", routing_key=message.routing_key, error=str(e))
            return None

        logger.info("payment_event.received", routing_key=message.routing_key, order_id=order_id)
        order = None
        async for session in get_session():
            order = await update_order_status(order_id, new_status, session)
        return order


async def process_payment_processed(message: aio_pika.IncomingMessage):
    return await _handle(message, OrderStatus.PROCESSING)


async def process_payment_failed(message: aio_pika.IncomingMessage):
    return await _handle(message, OrderStatus.CANCELLED)


HANDLERS = {
    "payment.processed": process_payment_processed,
    "payment.failed": process_payment_failed,
}


async def on_message(message: aio_pika.IncomingMessage):
    handler = HANDLERS.get(message.routing_key)
    if handler is None:
        async with message.process():
            logger.info("payment_event.unhandled", routing_key=message.routing_key)
        return
    await handler(message)


async def start_consumer():
    try:
        connection = await aio_pika.connect_robust(Config.RABBITMQ_URL)
    except (AMQPException, OSError) as e:
        logger.warning("consumer.not_started", error=str(e))
        return

    async with connection:
        channel = await connection.channel()

        payment_exchange = await channel.declare_exchange(
            Config.PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True
        )

        queue = await channel.declare_queue("order_payment_q", durable=True)
        for routing_key in HANDLERS:
            await queue.bind(payment_exchange, routing_key)

        logger.info("consumer.listening", exchange=Config.PAYMENT_EXCHANGE)
        await queue.consume(on_message, no_ack=False)

        # Keep the consumer task running
        await asyncio.Future()


if __name__ == "__main__":
    from order_service.logconfig import configure_logging

    configure_logging()
    try:
        asyncio.run(start_consumer())
    except KeyboardInterrupt:
        logger.info("consumer.stopped")

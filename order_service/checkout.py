"""Checkout: turns a cart snapshot into a committed order in one unit of work.

Header, line items and stock decrements are written inside a single
transaction. Any failure (unknown product, short stock, timeout, driver
error) rolls the whole unit back, so a rejected checkout leaves no order row,
no line item and no decrement behind.
"""

import asyncio
from uuid import uuid4

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.assembler import OrderAssembler, normalize_cart
from order_service.config import Config
from order_service.errors import CheckoutError, CheckoutTimeout, InvalidQuantity, StorageFailure
from order_service.inventory import InventoryLedger
from order_service.models import Order, OrderLineItem, OrderStatus

logger = structlog.get_logger(__name__)


class CheckoutCoordinator:
    def __init__(self, session: AsyncSession, timeout: float = Config.CHECKOUT_TIMEOUT_SECONDS):
        self.session = session
        self.timeout = timeout
        self.assembler = OrderAssembler(session)
        self.ledger = InventoryLedger(session)

    async def checkout(self, user_id: str, cart_lines, shipping_address: dict, payment_method: str) -> Order:
        # Quantities are checked before the transaction is opened.
        lines = normalize_cart(cart_lines)
        if not lines:
            raise InvalidQuantity("Cart is empty")

        try:
            order = await asyncio.wait_for(
                self._checkout(user_id, lines, shipping_address, payment_method),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("checkout.timeout", user_id=user_id, timeout=self.timeout)
            raise CheckoutTimeout(f"Checkout did not complete within {self.timeout} seconds")
        except CheckoutError as exc:
            logger.info(
                "checkout.rejected",
                user_id=user_id,
                reason=exc.reason,
                product_id=exc.product_id,
            )
            raise
        except SQLAlchemyError as exc:
            logger.error("checkout.storage_failure", user_id=user_id, error=str(exc))
            raise StorageFailure("Checkout could not be committed") from exc

        logger.info(
            "checkout.committed",
            order_id=order.id,
            user_id=user_id,
            lines=len(order.items),
        )
        return order

    async def _checkout(self, user_id, lines, shipping_address, payment_method) -> Order:
        async with self.session.begin():
            draft = await self.assembler.assemble(user_id, lines, shipping_address, payment_method)

            order = Order(
                id=str(uuid4()),
                user_id=draft.user_id,
                status=OrderStatus.PENDING,
                shipping_address=draft.shipping_address,
                payment_method=draft.payment_method,
                items=[],
            )
            self.session.add(order)
            await self.session.flush()

            # Draft lines are already in ascending product id order.
            for line in draft.lines:
                await self.ledger.reserve(line.product_id, line.quantity)
                order.items.append(
                    OrderLineItem(
                        product_id=line.product_id,
                        product=line.product,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                    )
                )
            await self.session.flush()

        return order

"""Inventory ledger: the only writer of ``Product.available_quantity``.

Reservations are a single conditional UPDATE whose affected-row count decides
the outcome, so two transactions racing for the last units can never both
succeed. Selecting the stock first and writing it back afterwards is exactly
the overselling bug this module exists to prevent; do not reintroduce it.

The ledger works inside the caller's transaction and never commits.
"""

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.errors import InsufficientStock, ProductNotFound
from order_service.models import Product
from order_service.validation import check_quantity, is_storable_id

logger = structlog.get_logger(__name__)


class InventoryLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def reserve(self, product_id: int, quantity: int) -> None:
        check_quantity(product_id, quantity)
        self._require_storable(product_id)

        result = await self.session.execute(
            update(Product)
            .where(Product.id == product_id, Product.available_quantity >= quantity)
            .values(available_quantity=Product.available_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.debug("inventory.reserved", product_id=product_id, quantity=quantity)
            return

        # Nothing matched: either the row is gone or the guard rejected it.
        if not await self._exists(product_id):
            raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)
        raise InsufficientStock(
            f"Insufficient stock for product {product_id} (requested {quantity})",
            product_id=product_id,
        )

    async def release(self, product_id: int, quantity: int) -> None:
        check_quantity(product_id, quantity)
        self._require_storable(product_id)

        result = await self.session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(available_quantity=Product.available_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)
        logger.debug("inventory.released", product_id=product_id, quantity=quantity)

    async def available(self, product_id: int) -> int:
        self._require_storable(product_id)
        quantity = await self.session.scalar(
            select(Product.available_quantity).where(Product.id == product_id)
        )
        if quantity is None:
            raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)
        return quantity

    def _require_storable(self, product_id) -> None:
        # Ids outside the column range cannot name a row.
        if not is_storable_id(product_id):
            raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)

    async def _exists(self, product_id: int) -> bool:
        found = await self.session.scalar(select(Product.id).where(Product.id == product_id))
        return found is not None

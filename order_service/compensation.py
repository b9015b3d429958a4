from typing import Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.errors import InvalidTransition
from order_service.inventory import InventoryLedger
from order_service.models import Order, OrderStatus

logger = structlog.get_logger(__name__)


class CompensationHandler:
    """Gives an order's reserved stock back to the ledger.

    Runs inside the state machine's transaction. The state machine keeps an
    order from being cancelled twice; the status check below only guards
    against a caller that bypasses it.
    """

    def __init__(self, session: AsyncSession, ledger: InventoryLedger = None):
        self.ledger = ledger or InventoryLedger(session)

    async def restore(self, order: Order) -> Dict[int, int]:
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransition(f"Order {order.id} is already cancelled; stock was restored")

        restored = {}
        for item in sorted(order.items, key=lambda i: i.product_id):
            await self.ledger.release(item.product_id, item.quantity)
            restored[item.product_id] = restored.get(item.product_id, 0) + item.quantity

        logger.info("inventory.restored", order_id=order.id, products=restored)
        return restored

"""Order status transitions.

Happy path: pending -> processing -> shipped -> delivered.
Cancellation is possible from pending or processing only; delivered and
cancelled are terminal.

Every legal move is listed in ``TRANSITIONS`` together with who may make it.
A pair missing from the table is an invalid transition, whoever asks (this
covers terminal states, backwards moves and re-submitting the current
status). A pair that is present but not open to the caller is forbidden.
"""

from datetime import datetime

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.auth import Actor
from order_service.compensation import CompensationHandler
from order_service.errors import Forbidden, InvalidTransition, StorageFailure
from order_service.inventory import InventoryLedger
from order_service.models import Order, OrderStatus
from order_service.orders import get_order

logger = structlog.get_logger(__name__)

PENDING = OrderStatus.PENDING
PROCESSING = OrderStatus.PROCESSING
SHIPPED = OrderStatus.SHIPPED
DELIVERED = OrderStatus.DELIVERED
CANCELLED = OrderStatus.CANCELLED

# Keyed by actor.is_privileged.
ADMIN_ONLY = frozenset({True})
OWNER_OR_ADMIN = frozenset({True, False})

TRANSITIONS = {
    (PENDING, PROCESSING): ADMIN_ONLY,
    (PENDING, SHIPPED): ADMIN_ONLY,
    (PENDING, DELIVERED): ADMIN_ONLY,
    (PENDING, CANCELLED): OWNER_OR_ADMIN,
    (PROCESSING, SHIPPED): ADMIN_ONLY,
    (PROCESSING, DELIVERED): ADMIN_ONLY,
    (PROCESSING, CANCELLED): OWNER_OR_ADMIN,
    (SHIPPED, DELIVERED): ADMIN_ONLY,
}

TERMINAL_STATES = frozenset({DELIVERED, CANCELLED})


def is_allowed(current: OrderStatus, requested: OrderStatus, privileged: bool) -> bool:
    return privileged in TRANSITIONS.get((current, requested), frozenset())


def check_transition(current: OrderStatus, requested: OrderStatus, actor: Actor) -> None:
    allowed = TRANSITIONS.get((current, requested))
    if allowed is None:
        if current == requested:
            raise InvalidTransition(f"Order is already {current.value}")
        if current in TERMINAL_STATES:
            raise InvalidTransition(f"Order is {current.value}; no further status changes are allowed")
        raise InvalidTransition(f"Cannot move an order from {current.value} to {requested.value}")
    if actor.is_privileged not in allowed:
        raise Forbidden(f"Only administrators may move an order from {current.value} to {requested.value}")


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).lower())
    except ValueError:
        raise InvalidTransition(f"Unknown order status {value!r}")


class OrderStateMachine:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.compensation = CompensationHandler(session, InventoryLedger(session))

    async def transition(self, order_id: str, requested, actor: Actor) -> Order:
        requested = parse_status(requested)

        try:
            async with self.session.begin():
                order = await get_order(self.session, order_id, actor)
                current = order.status
                check_transition(current, requested, actor)

                # Conditional on the status we checked, so a concurrent change
                # (e.g. a second cancellation) loses instead of applying twice.
                result = await self.session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == current)
                    .values(status=requested, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidTransition(f"Order {order_id} was modified concurrently; retry with its current status")

                if requested == CANCELLED:
                    await self.compensation.restore(order)

                await self.session.refresh(order, attribute_names=["status", "updated_at"])
        except SQLAlchemyError as exc:
            logger.error("order.transition_storage_failure", order_id=order_id, error=str(exc))
            raise StorageFailure(f"Status change for order {order_id} could not be committed") from exc

        logger.info(
            "order.status_changed",
            order_id=order.id,
            from_status=current.value,
            to_status=requested.value,
            actor=actor.user_id,
        )
        return order

    async def cancel(self, order_id: str, actor: Actor) -> Order:
        return await self.transition(order_id, CANCELLED, actor)

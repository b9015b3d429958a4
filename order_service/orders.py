from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.auth import Actor
from order_service.errors import OrderNotFound
from order_service.models import Order, OrderStatus


async def get_order(session: AsyncSession, order_id: str, actor: Actor) -> Order:
    """Owners see their own orders, admins see all; anyone else gets NotFound."""
    query = select(Order).where(Order.id == order_id)
    if not actor.is_privileged:
        query = query.where(Order.user_id == actor.user_id)

    order = (await session.execute(query)).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


async def list_orders_for_user(session: AsyncSession, user_id: str) -> List[Order]:
    result = await session.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
    )
    return list(result.scalars().all())


async def list_all_orders(session: AsyncSession, status: Optional[OrderStatus] = None) -> List[Order]:
    query = select(Order).order_by(Order.created_at.desc())
    if status is not None:
        query = query.where(Order.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())

import asyncio
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.auth import Actor, get_actor, require_admin
from order_service.checkout import CheckoutCoordinator
from order_service.config import Config
from order_service.consumer import start_consumer
from order_service.database import get_session, init_db
from order_service.errors import OrderServiceError
from order_service.logconfig import configure_logging
from order_service.messaging import close_rabbitmq, publish_order_created, publish_status_changed, setup_rabbitmq
from order_service.models import OrderStatus
from order_service.orders import get_order, list_all_orders, list_orders_for_user
from order_service.schemas import CheckoutRequest, ErrorResponse, OrderRead, OrderSummary, StatusUpdate
from order_service.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)

app = FastAPI(title="Order Service")

ERROR_RESPONSES = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def log_consumer_exit(task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("consumer.crashed", error=repr(exc), exc_info=exc)


@app.on_event("startup")
async def startup_event():
    configure_logging()
    await init_db()
    await setup_rabbitmq()
    app.state.consumer_task = asyncio.create_task(start_consumer())
    app.state.consumer_task.add_done_callback(log_consumer_exit)


@app.on_event("shutdown")
async def shutdown_event():
    consumer_task = getattr(app.state, "consumer_task", None)
    if consumer_task is not None:
        consumer_task.cancel()
    await close_rabbitmq()


@app.get("/api/health")
async def health():
    return {"status": "API is running"}


@app.post("/api/orders", response_model=OrderRead, status_code=201, responses=ERROR_RESPONSES)
async def create_order(
    order_data: CheckoutRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    order = await CheckoutCoordinator(db).checkout(
        actor.user_id,
        order_data.items,
        order_data.shipping_address.model_dump(exclude_none=True),
        order_data.payment_method,
    )
    await publish_order_created(order)
    return OrderRead.model_validate(order)


@app.get("/api/orders", response_model=List[OrderRead])
async def get_orders(actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_session)):
    orders = await list_orders_for_user(db, actor.user_id)
    return [OrderRead.model_validate(order) for order in orders]


@app.get("/api/orders/{order_id}", response_model=OrderRead, responses=ERROR_RESPONSES)
async def get_order_detail(order_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_session)):
    order = await get_order(db, order_id, actor)
    return OrderRead.model_validate(order)


@app.patch("/api/orders/{order_id}/status", response_model=OrderRead, responses=ERROR_RESPONSES)
async def update_order_status(
    order_id: str,
    update: StatusUpdate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_session),
):
    order = await OrderStateMachine(db).transition(order_id, update.status, actor)
    await publish_status_changed(order)
    return OrderRead.model_validate(order)


@app.patch("/api/orders/{order_id}/cancel", response_model=OrderRead, responses=ERROR_RESPONSES)
async def cancel_order(order_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_session)):
    order = await OrderStateMachine(db).cancel(order_id, actor)
    await publish_status_changed(order)
    return OrderRead.model_validate(order)


@app.get("/api/admin/orders", response_model=List[OrderSummary], dependencies=[Depends(require_admin)])
async def admin_list_orders(status: Optional[OrderStatus] = None, db: AsyncSession = Depends(get_session)):
    orders = await list_all_orders(db, status)
    return [OrderSummary.model_validate(order) for order in orders]


if __name__ == "__main__":
    uvicorn.run(app, host=Config.HOST, port=Config.PORT)

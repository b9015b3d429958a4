import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from order_service.checkout import CheckoutCoordinator
from order_service.errors import CheckoutTimeout, InsufficientStock, InvalidQuantity, ProductNotFound, StorageFailure
from order_service.models import Order, OrderLineItem, OrderStatus, Product
from order_service.orders import get_order
from order_service.validation import MAX_DB_INTEGER
from order_service.auth import Actor

from tests.conftest import SHIPPING_ADDRESS


async def count_rows(session_factory, model):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


@pytest.mark.asyncio
async def test_checkout_creates_pending_order_and_reserves_stock(place_order, products, stock):
    order = await place_order(
        [
            {"product_id": products["phone"], "quantity": 1},
            {"product_id": products["headphones"], "quantity": 2},
        ]
    )

    assert order.status == OrderStatus.PENDING
    assert order.user_id == "cust-123"
    assert order.shipping_address == SHIPPING_ADDRESS
    assert order.payment_method == "credit_card"

    # Line items come out in ascending product id order with the catalog price.
    assert [(item.product_id, item.quantity, item.unit_price) for item in order.items] == [
        (products["headphones"], 2, Decimal("99.99")),
        (products["phone"], 1, Decimal("699.99")),
    ]
    assert order.total_amount == Decimal("899.97")
    assert order.item_count == 3

    assert await stock(products["headphones"]) == 48
    assert await stock(products["phone"]) == 29


@pytest.mark.asyncio
async def test_checkout_merges_duplicate_lines(place_order, products, stock):
    order = await place_order(
        [
            (products["headphones"], 1),
            (products["headphones"], 2),
        ]
    )

    assert len(order.items) == 1
    assert order.items[0].quantity == 3
    assert await stock(products["headphones"]) == 47


@pytest.mark.asyncio
async def test_failed_line_rolls_back_the_whole_checkout(place_order, session_factory, products, stock):
    with pytest.raises(InsufficientStock) as exc_info:
        await place_order(
            [
                {"product_id": products["headphones"], "quantity": 5},
                {"product_id": products["phone"], "quantity": 2},
                {"product_id": products["vinyl"], "quantity": 4},
            ]
        )

    assert exc_info.value.product_id == products["vinyl"]
    # Earlier lines were reserved inside the unit, and must have been undone.
    assert await stock(products["headphones"]) == 50
    assert await stock(products["phone"]) == 30
    assert await stock(products["vinyl"]) == 3
    assert await count_rows(session_factory, Order) == 0
    assert await count_rows(session_factory, OrderLineItem) == 0


@pytest.mark.asyncio
async def test_unknown_product_aborts_checkout(place_order, session_factory, products, stock):
    with pytest.raises(ProductNotFound) as exc_info:
        await place_order(
            [
                {"product_id": products["headphones"], "quantity": 1},
                {"product_id": 4242, "quantity": 1},
            ]
        )

    assert exc_info.value.product_id == 4242
    assert await stock(products["headphones"]) == 50
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -3])
async def test_non_positive_quantity_is_rejected_before_any_mutation(place_order, session_factory, products, stock, quantity):
    with pytest.raises(InvalidQuantity) as exc_info:
        await place_order(
            [
                {"product_id": products["headphones"], "quantity": 1},
                {"product_id": products["phone"], "quantity": quantity},
            ]
        )

    assert exc_info.value.product_id == products["phone"]
    assert await stock(products["headphones"]) == 50
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(place_order, products):
    with pytest.raises(InvalidQuantity):
        await place_order([])


@pytest.mark.asyncio
async def test_concurrent_checkouts_for_the_last_units(place_order, session_factory, products, stock):
    """Stock 3, two buyers want 2 each: exactly one order goes through."""
    results = await asyncio.gather(
        place_order([{"product_id": products["vinyl"], "quantity": 2}], user_id="alice"),
        place_order([{"product_id": products["vinyl"], "quantity": 2}], user_id="bob"),
        return_exceptions=True,
    )

    orders = [r for r in results if isinstance(r, Order)]
    failures = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(orders) == 1
    assert len(failures) == 1
    assert failures[0].product_id == products["vinyl"]
    assert await stock(products["vinyl"]) == 1
    assert await count_rows(session_factory, Order) == 1


@pytest.mark.asyncio
async def test_concurrent_checkouts_with_overlapping_products(place_order, products, stock):
    """Carts listing the same products in opposite orders both complete."""
    first, second = await asyncio.gather(
        place_order(
            [
                {"product_id": products["phone"], "quantity": 1},
                {"product_id": products["headphones"], "quantity": 1},
            ],
            user_id="alice",
        ),
        place_order(
            [
                {"product_id": products["headphones"], "quantity": 1},
                {"product_id": products["phone"], "quantity": 1},
            ],
            user_id="bob",
        ),
    )

    assert first.status == second.status == OrderStatus.PENDING
    assert await stock(products["headphones"]) == 48
    assert await stock(products["phone"]) == 28


@pytest.mark.asyncio
async def test_price_change_does_not_touch_existing_orders(place_order, session_factory, products):
    order = await place_order([{"product_id": products["headphones"], "quantity": 2}])

    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Product).where(Product.id == products["headphones"]).values(price=Decimal("149.99"))
            )

    async with session_factory() as session:
        reloaded = await get_order(session, order.id, Actor(user_id="cust-123"))
        assert reloaded.items[0].unit_price == Decimal("99.99")
        assert reloaded.total_amount == Decimal("199.98")


@pytest.mark.asyncio
async def test_timed_out_checkout_rolls_back(session_factory, products, stock):
    async with session_factory() as session:
        coordinator = CheckoutCoordinator(session, timeout=0.1)
        reserve = coordinator.ledger.reserve

        async def slow_reserve(product_id, quantity):
            await reserve(product_id, quantity)
            await asyncio.sleep(5)

        coordinator.ledger.reserve = slow_reserve

        with pytest.raises(CheckoutTimeout):
            await coordinator.checkout(
                "cust-123",
                [{"product_id": products["headphones"], "quantity": 1}],
                SHIPPING_ADDRESS,
                "credit_card",
            )

    assert await stock(products["headphones"]) == 50
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [MAX_DB_INTEGER + 1, 10**20])
async def test_quantity_beyond_the_column_range_names_the_product(place_order, session_factory, products, stock, quantity):
    with pytest.raises(InvalidQuantity) as exc_info:
        await place_order(
            [
                {"product_id": products["headphones"], "quantity": 1},
                {"product_id": products["vinyl"], "quantity": quantity},
            ]
        )

    assert exc_info.value.product_id == products["vinyl"]
    assert await stock(products["headphones"]) == 50
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
async def test_merged_duplicates_beyond_the_column_range_are_rejected(place_order, session_factory, products):
    with pytest.raises(InvalidQuantity) as exc_info:
        await place_order(
            [
                {"product_id": products["vinyl"], "quantity": MAX_DB_INTEGER},
                {"product_id": products["vinyl"], "quantity": 1},
            ]
        )

    assert exc_info.value.product_id == products["vinyl"]
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("product_id", [MAX_DB_INTEGER + 1, 10**20])
async def test_product_id_beyond_the_column_range_is_not_found(place_order, session_factory, products, stock, product_id):
    with pytest.raises(ProductNotFound) as exc_info:
        await place_order(
            [
                {"product_id": products["headphones"], "quantity": 1},
                {"product_id": product_id, "quantity": 1},
            ]
        )

    assert exc_info.value.product_id == product_id
    assert await stock(products["headphones"]) == 50
    assert await count_rows(session_factory, Order) == 0


@pytest.mark.asyncio
async def test_driver_failure_mid_checkout_rolls_back(session_factory, products, stock):
    async with session_factory() as session:
        coordinator = CheckoutCoordinator(session)
        reserve = coordinator.ledger.reserve
        reserved = []

        async def failing_reserve(product_id, quantity):
            # The first line really is decremented before the driver gives out.
            if reserved:
                raise OperationalError("UPDATE products", {}, Exception("disk I/O error"))
            await reserve(product_id, quantity)
            reserved.append(product_id)

        coordinator.ledger.reserve = failing_reserve

        with pytest.raises(StorageFailure) as exc_info:
            await coordinator.checkout(
                "cust-123",
                [
                    {"product_id": products["headphones"], "quantity": 2},
                    {"product_id": products["phone"], "quantity": 1},
                ],
                SHIPPING_ADDRESS,
                "credit_card",
            )

    assert isinstance(exc_info.value.__cause__, OperationalError)
    assert reserved == [products["headphones"]]
    assert await stock(products["headphones"]) == 50
    assert await stock(products["phone"]) == 30
    assert await count_rows(session_factory, Order) == 0
    assert await count_rows(session_factory, OrderLineItem) == 0

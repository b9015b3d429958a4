from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_service.errors import InvalidQuantity, ProductNotFound
from order_service.models import Product

# Largest value the INTEGER id and quantity columns can hold.
MAX_DB_INTEGER = 2**31 - 1


@dataclass(frozen=True)
class ValidatedLine:
    product_id: int
    quantity: int
    unit_price: Decimal
    product: Product


def check_quantity(product_id, quantity) -> None:
    """Reject non-positive or non-integer quantities before any storage call."""
    if not isinstance(quantity, int) or isinstance(quantity, bool) or not 0 < quantity <= MAX_DB_INTEGER:
        raise InvalidQuantity(
            f"Quantity for product {product_id} must be an integer between 1 and {MAX_DB_INTEGER}, got {quantity!r}",
            product_id=product_id,
        )


def is_storable_id(product_id) -> bool:
    return isinstance(product_id, int) and not isinstance(product_id, bool) and 0 < product_id <= MAX_DB_INTEGER


class LineItemValidator:
    """Confirms a cart line's product exists and supplies its current price.

    Stock sufficiency is decided later by the ledger's conditional update,
    inside the same transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def validate(self, product_id: int, quantity: int) -> ValidatedLine:
        check_quantity(product_id, quantity)
        if not is_storable_id(product_id):
            raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)

        # Refresh any cached row so the captured price is the current one.
        product = await self.session.scalar(
            select(Product).where(Product.id == product_id).execution_options(populate_existing=True)
        )
        if product is None:
            raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)

        return ValidatedLine(
            product_id=product_id,
            quantity=quantity,
            unit_price=Decimal(product.price),
            product=product,
        )

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from order_service.validation import LineItemValidator, ValidatedLine, check_quantity


@dataclass
class OrderDraft:
    user_id: str
    shipping_address: dict
    payment_method: str
    lines: List[ValidatedLine] = field(default_factory=list)


def normalize_cart(cart_lines: Iterable) -> List[Tuple[int, int]]:
    """Merge duplicate products and sort by product id.

    Accepts ``(product_id, quantity)`` pairs or mappings / objects with
    ``product_id`` and ``quantity``. The ascending order is the lock
    acquisition order used by every checkout.
    """
    merged = {}
    for line in cart_lines:
        if isinstance(line, Mapping):
            product_id, quantity = line["product_id"], line["quantity"]
        elif isinstance(line, tuple):
            product_id, quantity = line
        else:
            product_id, quantity = line.product_id, line.quantity
        check_quantity(product_id, quantity)
        merged[product_id] = merged.get(product_id, 0) + quantity
        # The merged line must still fit the quantity column.
        check_quantity(product_id, merged[product_id])
    return sorted(merged.items())


class OrderAssembler:
    def __init__(self, session: AsyncSession, validator: LineItemValidator = None):
        self.validator = validator or LineItemValidator(session)

    async def assemble(self, user_id: str, cart_lines, shipping_address: dict, payment_method: str) -> OrderDraft:
        draft = OrderDraft(
            user_id=user_id,
            shipping_address=dict(shipping_address),
            payment_method=payment_method,
        )
        # The first failing line aborts the whole draft.
        for product_id, quantity in normalize_cart(cart_lines):
            draft.lines.append(await self.validator.validate(product_id, quantity))
        return draft

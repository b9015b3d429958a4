import pytest
import httpx
from decimal import Decimal

from order_service.checkout import CheckoutCoordinator
from order_service.database import create_engine, create_session_factory, get_session
from order_service.inventory import InventoryLedger
from order_service.main import app
from order_service.models import Base, Product

SHIPPING_ADDRESS = {
    "full_name": "Ada Lovelace",
    "street": "12 St James's Square",
    "city": "London",
    "postal_code": "SW1Y 4JH",
    "country": "GB",
}


# A file-backed database so that separate sessions really are separate
# connections competing for the same rows.
@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def products(session_factory):
    """Product ids by short name: headphones (50), phone (30), vinyl (3)."""
    catalog = {
        "headphones": Product(name="Wireless Headphones", price=Decimal("99.99"), available_quantity=50),
        "phone": Product(name="Smartphone", price=Decimal("699.99"), available_quantity=30),
        "vinyl": Product(name="Limited Edition Vinyl", price=Decimal("25.00"), available_quantity=3),
    }
    async with session_factory() as session:
        async with session.begin():
            session.add_all(catalog.values())
    return {name: product.id for name, product in catalog.items()}


@pytest.fixture
def stock(session_factory):
    async def _stock(product_id):
        async with session_factory() as session:
            return await InventoryLedger(session).available(product_id)

    return _stock


@pytest.fixture
def place_order(session_factory):
    async def _place_order(lines, user_id="cust-123", payment_method="credit_card"):
        async with session_factory() as session:
            return await CheckoutCoordinator(session).checkout(user_id, lines, SHIPPING_ADDRESS, payment_method)

    return _place_order


@pytest.fixture
async def client(session_factory):
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()

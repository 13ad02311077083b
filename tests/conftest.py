"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- An in-memory Redis replacement
- Test data factories (products, customers)
- Wired session store and conversation service
"""
import fnmatch
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.database import Base, create_tables, get_db
from app.db.models.customer import Customer
from app.db.models.product import Product
from app.domain.services.cart_service import CartService
from app.domain.services.catalog import (
    DatabaseCustomerDirectory,
    DatabaseOrderGateway,
    DatabaseProductCatalog,
)
from app.domain.services.conversation_service import ConversationService, PhoneLockRegistry
from app.domain.services.session_store import HybridSessionStore
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-key"
ADMIN_HEADERS = {"X-Admin-API-Key": TEST_ADMIN_API_KEY}

# Positional menu order: "1" is Pizza, "5" is Soda
MENU_PRODUCTS: list[tuple[str, str]] = [
    ("Pizza", "4500.00"),
    ("Burger", "3200.00"),
    ("Salad", "2800.00"),
    ("Coffee", "1400.00"),
    ("Soda", "900.00"),
]


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    await create_tables(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """In-memory stand-in for the Redis client, with TTL bookkeeping."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (expiry in seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def ttl(self, key: str) -> int:
        if key not in self._store:
            return -2
        return self._ttls.get(key, -1)

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self._store)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in list(self._store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


class BrokenRedis(FakeRedis):
    """Every command fails as if the server were unreachable."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def _fail(self):
        self.calls += 1
        raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._fail()

    async def get(self, key: str) -> str | None:
        self._fail()

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        self._fail()

    async def delete(self, *keys: str) -> int:
        self._fail()

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        self._fail()
        yield  # pragma: no cover


@pytest.fixture
def broken_redis() -> BrokenRedis:
    """A Redis client whose every command fails"""
    return BrokenRedis()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with a FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def fast_retries():
    """No backoff sleeps in tests; three attempts are still made."""
    with patch.object(settings, "STORAGE_RETRY_BASE_DELAY_SECONDS", 0.0), \
         patch.object(settings, "STORAGE_RETRY_ATTEMPTS", 3):
        yield


@pytest.fixture(autouse=True)
def admin_api_key():
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield TEST_ADMIN_API_KEY


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def product_factory(db_session: AsyncSession):
    """Factory for creating catalog products"""
    async def _create_product(
        name: str = "Pizza",
        price: str | Decimal = "4500.00",
        available: bool = True,
        stock_quantity: int | None = None,
        category: str | None = "food",
    ) -> Product:
        product = Product(
            name=name,
            price=Decimal(price),
            available=available,
            stock_quantity=stock_quantity,
            category=category,
        )
        db_session.add(product)
        await db_session.commit()
        await db_session.refresh(product)
        return product

    return _create_product


@pytest.fixture
def customer_factory(db_session: AsyncSession):
    """Factory for creating customers"""
    async def _create_customer(
        phone_number: str = "+2348031234567",
        name: str | None = "Ada",
    ) -> Customer:
        customer = Customer(phone_number=phone_number, name=name)
        db_session.add(customer)
        await db_session.commit()
        await db_session.refresh(customer)
        return customer

    return _create_customer


@pytest.fixture
async def menu_products(product_factory) -> dict[str, Product]:
    """The five menu products, in menu order, keyed by name"""
    products = {}
    for name, price in MENU_PRODUCTS:
        products[name] = await product_factory(name=name, price=price)
    return products


# ============================================================================
# Wired services
# ============================================================================

@pytest.fixture
def session_store(db_session: AsyncSession, fake_redis: FakeRedis) -> HybridSessionStore:
    return HybridSessionStore(db_session, fake_redis)


@pytest.fixture
def catalog(db_session: AsyncSession) -> DatabaseProductCatalog:
    return DatabaseProductCatalog(db_session)


@pytest.fixture
def cart_service(db_session: AsyncSession, catalog: DatabaseProductCatalog) -> CartService:
    return CartService(
        catalog,
        DatabaseOrderGateway(db_session, tax_rate=Decimal("0.10")),
        tax_rate=Decimal("0.10"),
        currency_symbol="₦",
    )


@pytest.fixture
def conversation_service(
    db_session: AsyncSession,
    session_store: HybridSessionStore,
    catalog: DatabaseProductCatalog,
    cart_service: CartService,
) -> ConversationService:
    return ConversationService(
        store=session_store,
        catalog=catalog,
        cart=cart_service,
        customers=DatabaseCustomerDirectory(db_session),
        locks=PhoneLockRegistry(),
    )

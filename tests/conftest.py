"""
Shared fixtures: in-memory canonical store, in-memory cache, fake upstream APIs.

The cache double implements the subset of redis.asyncio used by the engine.
Upstream APIs are served through httpx.MockTransport.
"""

import fnmatch
from typing import Dict, Iterable, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from ordersync_api.core.rate_limiter import RateLimiter
from ordersync_api.db.base import get_session_factory, init_db
from ordersync_api.db.models import Order, SourceConfig
from ordersync_api.db.repository import OrderRepository


class InMemoryCache:
    """Async stand-in for redis.asyncio.Redis (decode_responses=True)."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, Optional[int]] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.values, self.lists, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self.values or k in self.lists or k in self.hashes)

    async def keys(self, pattern="*"):
        return [k for k in self.values if fnmatch.fnmatch(k, pattern)]

    async def lpush(self, key, *values):
        entries = self.lists.setdefault(key, [])
        for value in values:
            entries.insert(0, value)
        return len(entries)

    async def ltrim(self, key, start, end):
        self.lists[key] = self.lists.get(key, [])[start:end + 1]

    async def lrange(self, key, start, end):
        entries = self.lists.get(key, [])
        return entries[start:] if end == -1 else entries[start:end + 1]

    async def hincrby(self, key, field, amount=1):
        entries = self.hashes.setdefault(key, {})
        entries[field] = str(int(entries.get(field, 0)) + amount)
        return int(entries[field])

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def ping(self):
        return True

    async def aclose(self):
        pass


class UnavailableCache:
    """Cache whose every call fails, as when Redis is down or flushed mid-call."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise ConnectionError("cache unavailable")
        return fail


def make_source_order(native_id: int, state: str = "En dispatch", phone: Optional[str] = None, **extra) -> dict:
    """Raw storefront order as the `/orders` endpoint returns it."""
    order = {
        "id": native_id,
        "order_state_name": state,
        "full_name": f"Customer {native_id}",
        "telephone": phone or f"0555{native_id:06d}",
        "wilaya": "Alger",
        "commune": "Bab Ezzouar",
        "items": [
            {"product_id": 10, "title": "T-shirt", "sku": "TS-01", "quantity": 2, "unit_price": 1500.0},
        ],
        "total": 3000.0,
        "created_at": "2024-05-01 10:00:00",
    }
    order.update(extra)
    return order


class FakeStorefront:
    """Storefront `/orders` API over a fixed list of pages."""

    def __init__(
        self,
        pages: List[List[dict]],
        rate_limited_responses: int = 0,
        status_code: int = 200,
        failing_pages: Iterable[int] = (),
    ):
        self.pages = pages
        self.failing_pages = set(failing_pages)
        self.requested_pages: List[int] = []
        self.requests: List[httpx.Request] = []
        self.rate_limited_responses = rate_limited_responses
        self.status_code = status_code

    @classmethod
    def newest_first(cls, count: int, page_size: int, **options) -> "FakeStorefront":
        ids = list(range(count, 0, -1))
        return cls([[make_source_order(i) for i in ids[p:p + page_size]] for p in range(0, count, page_size)], **options)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.rate_limited_responses > 0:
            self.rate_limited_responses -= 1
            return httpx.Response(429, json={"message": "Too Many Attempts."})
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"message": "error"})

        page = int(request.url.params.get("page", 1))
        if page in self.failing_pages:
            return httpx.Response(500, json={"message": "Server Error"})
        per_page = int(request.url.params.get("per_page", 20))
        self.requested_pages.append(page)
        data = self.pages[page - 1] if 0 < page <= len(self.pages) else []
        return httpx.Response(200, json={"data": data[:per_page]})

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeMaystro:
    """Maystro `/api/stores/orders/` API over a fixed list of orders."""

    def __init__(self, orders: List[dict], fail: bool = False):
        self.orders = orders
        self.fail = fail
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return httpx.Response(502, json={"detail": "bad gateway"})

        params = request.url.params
        if "external_order_id" in params:
            results = [o for o in self.orders if o["external_order_id"] == params["external_order_id"]]
            return httpx.Response(200, json={"list": {"results": results, "next": None, "count": len(results)}})

        limit = int(params.get("limit", 250))
        offset = int(params.get("offset", 0))
        results = self.orders[offset:offset + limit]
        return httpx.Response(200, json={"list": {"results": results, "next": None, "count": len(self.orders)}})

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_maystro_order(reference: str, status: int, tracking: Optional[str] = None) -> dict:
    return {
        "id": abs(hash(reference)) % 100000,
        "instance_uuid": f"uuid-{reference}",
        "display_id": f"D-{reference}",
        "external_order_id": reference,
        "status": status,
        "tracking_number": tracking,
        "last_update": "2024-05-02T08:00:00Z",
    }


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def rate_limiter(cache):
    return RateLimiter(cache, min_delay=0)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def repository(session_factory):
    return OrderRepository(session_factory)


async def add_source(session_factory, store_identifier: str, base_url: str = "https://store.test/api/v1",
                     is_active: bool = True) -> SourceConfig:
    async with session_factory() as session:
        config = SourceConfig(
            store_identifier=store_identifier,
            store_name=store_identifier.title(),
            base_url=base_url,
            api_token=f"token-{store_identifier}",
            is_active=is_active,
        )
        session.add(config)
        await session.commit()
        return config


async def add_order(session_factory, reference: str, store_identifier: str = "store-a", native_id: int = 1,
                    status: str = "SHIPPED", shipping_status: Optional[str] = None,
                    tracking_code: Optional[str] = None) -> Order:
    async with session_factory() as session:
        order = Order(
            source="ecomanager",
            store_identifier=store_identifier,
            source_native_id=native_id,
            reference=reference,
            status=status,
            shipping_status=shipping_status,
            tracking_code=tracking_code,
            total=1000.0,
        )
        session.add(order)
        await session.commit()
        return order

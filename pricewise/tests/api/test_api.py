from __future__ import annotations

import secrets
import uuid
from collections.abc import AsyncGenerator, Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from fastapi import APIRouter, FastAPI, Request
from jose import jwt as jose_jwt
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricewise.src.api.auth import create_jwt, create_refresh_token
from pricewise.src.api.database import get_db
from pricewise.src.api.errors import register_error_handlers
from pricewise.src.api.routes import limiter, router
from pricewise.src.config import Settings, settings
from pricewise.src.contracts.errors import StorageUnavailable
from pricewise.src.contracts.models import (
    Availability,
    Base,
    DeliveryResult,
    MagicLinkToken,
    NotificationIntent,
    PriceQuote,
    Product,
    ProductDescriptor,
    Store,
    User,
)
from pricewise.src.refresh.orchestrator import RefreshOrchestrator
from pricewise.src.scraper.registry import AdapterRegistry
from pricewise.src.snapshots.repository import PriceSnapshotRepository
from pricewise.src.snapshots.store import SqlPriceStore
from pricewise.src.users.repository import UserRepository

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── Fakes ─────────────────────────────────────────────────────────────────────


class FixedPriceAdapter:
    def __init__(self, store_id: str, prices: dict[str, str]) -> None:
        self.store_id = store_id
        self.prices = prices

    async def fetch_quotes(
        self,
        product: ProductDescriptor,
        max_results: int,
        timeout: float | None = None,
    ) -> list[PriceQuote]:
        price = self.prices.get(product.id)
        if price is None:
            return []
        return [
            PriceQuote(
                product_id=product.id,
                store_id=self.store_id,
                price=Decimal(price),
                availability=Availability.IN_STOCK,
                source_url=f"https://{self.store_id}.example.com/{product.id}",
                observed_at=datetime.now(timezone.utc),
            )
        ]


class RecordingDispatcher:
    def __init__(self) -> None:
        self.intents: list[NotificationIntent] = []

    async def dispatch(self, intents: Sequence[NotificationIntent]) -> list[DeliveryResult]:
        self.intents.extend(intents)
        return [
            DeliveryResult(alert_id=i.alert_id, user_id=i.user_id, delivered=True)
            for i in intents
        ]


class BrokenOrchestrator:
    async def refresh(
        self, product_ids: Sequence[str], deadline_seconds: float | None = None
    ) -> None:
        raise StorageUnavailable("database is down")


# ── Test database and app (temp-file SQLite) ──────────────────────────────────


@pytest.fixture(autouse=True)
def reset_rate_limits() -> None:
    limiter.reset()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                Product(
                    id="iphone",
                    name="iPhone 15 Pro",
                    brand="Apple",
                    category="electronics",
                    description="Titanium smartphone",
                ),
                Product(
                    id="headphones",
                    name="Sony WH-1000XM5",
                    brand="Sony",
                    category="audio",
                    description="Wireless noise cancelling headphones",
                ),
                Store(id="amazon", name="Amazon"),
                Store(id="walmart", name="Walmart"),
            ]
        )
        await session.commit()

    yield factory
    await engine.dispose()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def app(
    session_factory: async_sessionmaker[AsyncSession], dispatcher: RecordingDispatcher
) -> FastAPI:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = FastAPI()
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_error_handlers(app)
    app.include_router(router)
    app.dependency_overrides[get_db] = override_get_db
    app.state.orchestrator = RefreshOrchestrator(
        store=SqlPriceStore(session_factory),
        adapters=AdapterRegistry(
            {
                "amazon": FixedPriceAdapter("amazon", {"iphone": "1049.00"}),
                "walmart": FixedPriceAdapter("walmart", {"iphone": "989.00"}),
            }
        ),
        dispatcher=dispatcher,
        settings=Settings(storage_retry_backoff_seconds=0.0),
    )
    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


# ── Helpers ───────────────────────────────────────────────────────────────────


async def create_test_user(
    factory: async_sessionmaker[AsyncSession], email: str = "test@example.com"
) -> User:
    async with factory() as session:
        user = await UserRepository(session).create(email)
        await session.commit()
        return user


async def create_test_magic_link(
    factory: async_sessionmaker[AsyncSession],
    email: str = "test@example.com",
    expired: bool = False,
    used: bool = False,
) -> str:
    token = secrets.token_urlsafe(48)
    offset = timedelta(hours=-1) if expired else timedelta(minutes=10)
    async with factory() as session:
        session.add(
            MagicLinkToken(
                id=uuid.uuid4(),
                email=email,
                token=token,
                expires_at=datetime.now(timezone.utc) + offset,
                used=used,
            )
        )
        await session.commit()
    return token


async def insert_prices(
    factory: async_sessionmaker[AsyncSession],
    *entries: tuple[str, str, str, int],
) -> None:
    """Insert (product_id, store_id, price, minutes after BASE_TIME) history rows."""
    async with factory() as session:
        repo = PriceSnapshotRepository(session)
        for product_id, store_id, price, minutes in entries:
            await repo.append(
                PriceQuote(
                    product_id=product_id,
                    store_id=store_id,
                    price=Decimal(price),
                    availability=Availability.IN_STOCK,
                    source_url=f"https://{store_id}.example.com/{product_id}",
                    observed_at=BASE_TIME + timedelta(minutes=minutes),
                )
            )
        await session.commit()


def auth_cookies(user: User) -> dict[str, str]:
    return {"access_token": create_jwt(user.id)}


# ── Tests: Magic Link Flow ────────────────────────────────────────────────────


class TestMagicLinkFlow:
    @pytest.mark.asyncio
    async def test_send_magic_link_returns_200(self, client: httpx.AsyncClient) -> None:
        with patch("pricewise.src.api.auth.resend") as mock_resend:
            mock_resend.Emails.send = MagicMock(return_value={"id": "fake"})
            response = await client.post("/auth/magic-link", json={"email": "user@example.com"})
        assert response.status_code == 200
        assert response.json()["message"] == "Magic link sent"
        sent = mock_resend.Emails.send.call_args.args[0]
        assert sent["to"] == ["user@example.com"]
        assert "/auth/verify?token=" in sent["html"]

    @pytest.mark.asyncio
    async def test_send_magic_link_invalid_email(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/auth/magic-link", json={"email": "not-an-email"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_verify_valid_token_creates_user_and_sets_cookies(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        token = await create_test_magic_link(session_factory, email="newuser@example.com")
        response = await client.post("/auth/verify", json={"token": token})
        assert response.status_code == 200
        data = response.json()
        assert data["email"] == "newuser@example.com"
        assert "id" in data
        assert "access_token" in response.cookies
        assert "refresh_token" in response.cookies

    @pytest.mark.asyncio
    async def test_verify_existing_user_returns_user(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory, email="existing@example.com")
        token = await create_test_magic_link(session_factory, email="existing@example.com")
        response = await client.post("/auth/verify", json={"token": token})
        assert response.status_code == 200
        assert response.json()["id"] == str(user.id)

    @pytest.mark.asyncio
    async def test_token_cannot_be_used_twice(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        token = await create_test_magic_link(session_factory)
        first = await client.post("/auth/verify", json={"token": token})
        second = await client.post("/auth/verify", json={"token": token})
        assert first.status_code == 200
        assert second.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expired,used", [(True, False), (False, True)])
    async def test_verify_rejects_expired_or_used_token(
        self,
        client: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        expired: bool,
        used: bool,
    ) -> None:
        token = await create_test_magic_link(session_factory, expired=expired, used=used)
        response = await client.post("/auth/verify", json={"token": token})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_verify_unknown_token(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/auth/verify", json={"token": "nonexistent-token"})
        assert response.status_code == 400


# ── Tests: Auth ───────────────────────────────────────────────────────────────


class TestAuth:
    @pytest.mark.asyncio
    async def test_reject_unauthenticated(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/alerts")).status_code == 401
        assert (await client.get("/api/favorites")).status_code == 401
        response = await client.post("/api/refresh", json={"product_ids": ["iphone"]})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_reject_expired_jwt(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        now = datetime.now(timezone.utc)
        expired_token = jose_jwt.encode(
            {
                "sub": str(user.id),
                "iat": now - timedelta(hours=1),
                "exp": now - timedelta(minutes=1),
                "type": "access",
            },
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        response = await client.get("/api/alerts", cookies={"access_token": expired_token})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_reject_invalid_jwt(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/alerts", cookies={"access_token": "not.a.valid.jwt"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.get(
            "/api/alerts", cookies={"access_token": create_refresh_token(user.id)}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_token_for_deleted_user(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/alerts", cookies={"access_token": create_jwt(uuid.uuid4())}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "User not found"


class TestRefreshToken:
    @pytest.mark.asyncio
    async def test_refresh_with_valid_token(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.post(
            "/auth/refresh", cookies={"refresh_token": create_refresh_token(user.id)}
        )
        assert response.status_code == 200
        assert "access_token" in response.cookies

    @pytest.mark.asyncio
    async def test_refresh_without_token(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/auth/refresh")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_refresh_with_access_token_type_rejected(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.post(
            "/auth/refresh", cookies={"refresh_token": create_jwt(user.id)}
        )
        assert response.status_code == 401


# ── Tests: Products ───────────────────────────────────────────────────────────


class TestProducts:
    @pytest.mark.asyncio
    async def test_list_products(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/products")
        assert response.status_code == 200
        assert {p["id"] for p in response.json()} == {"iphone", "headphones"}

    @pytest.mark.asyncio
    async def test_list_carries_current_prices(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await insert_prices(
            session_factory,
            ("iphone", "amazon", "1099.00", 0),
            ("iphone", "walmart", "999.00", 30),
        )
        response = await client.get("/api/products")
        assert response.status_code == 200
        by_id = {p["id"]: p for p in response.json()}
        assert [p["store_id"] for p in by_id["iphone"]["prices"]] == ["walmart", "amazon"]
        assert by_id["iphone"]["best_price"]["store_id"] == "walmart"
        assert Decimal(by_id["iphone"]["best_price"]["price"]) == Decimal("999")
        assert by_id["headphones"]["prices"] == []
        assert by_id["headphones"]["best_price"] is None

    @pytest.mark.asyncio
    async def test_latest_products_with_limit(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        async with session_factory() as session:
            session.add(
                Product(
                    id="watch",
                    name="Apple Watch Series 9",
                    brand="Apple",
                    created_at=datetime.now(timezone.utc) + timedelta(days=1),
                )
            )
            await session.commit()

        response = await client.get("/api/products", params={"sort": "latest", "limit": 1})
        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == ["watch"]

    @pytest.mark.asyncio
    async def test_detail_shows_last_known_price_per_store(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await insert_prices(
            session_factory,
            ("iphone", "amazon", "1099.00", 0),
            ("iphone", "amazon", "1049.00", 60),
            ("iphone", "walmart", "999.00", 30),
        )
        response = await client.get("/api/products/iphone")
        assert response.status_code == 200
        data = response.json()
        assert [p["store_id"] for p in data["prices"]] == ["walmart", "amazon"]
        assert [Decimal(p["price"]) for p in data["prices"]] == [
            Decimal("999"),
            Decimal("1049"),
        ]
        assert data["prices"][1]["store_name"] == "Amazon"
        assert data["best_price"]["store_id"] == "walmart"
        assert data["best_price"]["observed_at"].startswith("2025-03-01T12:30")

    @pytest.mark.asyncio
    async def test_detail_without_prices(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/products/headphones")
        assert response.status_code == 200
        assert response.json()["prices"] == []
        assert response.json()["best_price"] is None

    @pytest.mark.asyncio
    async def test_unknown_product(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/products/nope")).status_code == 404
        assert (await client.get("/api/products/nope/history")).status_code == 404

    @pytest.mark.asyncio
    async def test_history_in_observation_order(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await insert_prices(
            session_factory,
            ("iphone", "amazon", "1049.00", 60),
            ("iphone", "walmart", "999.00", 30),
            ("iphone", "amazon", "1099.00", 0),
        )
        response = await client.get("/api/products/iphone/history")
        assert response.status_code == 200
        assert [Decimal(p["price"]) for p in response.json()] == [
            Decimal("1099"),
            Decimal("999"),
            Decimal("1049"),
        ]

        limited = await client.get(
            "/api/products/iphone/history", params={"store_id": "amazon", "limit": 1}
        )
        assert [Decimal(p["price"]) for p in limited.json()] == [Decimal("1049")]


# ── Tests: Alerts ─────────────────────────────────────────────────────────────


class TestAlerts:
    @pytest.mark.asyncio
    async def test_create_and_list(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.post(
            "/api/alerts",
            json={"product_id": "iphone", "target_price": "999.00"},
            cookies=auth_cookies(user),
        )
        assert response.status_code == 201
        created = response.json()
        assert created["user_id"] == str(user.id)
        assert created["is_active"] is True
        assert Decimal(created["target_price"]) == Decimal("999")

        listed = await client.get("/api/alerts", cookies=auth_cookies(user))
        assert [a["id"] for a in listed.json()] == [created["id"]]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["0", "-5.00"])
    async def test_non_positive_target_rejected(
        self,
        client: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        target: str,
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.post(
            "/api/alerts",
            json={"product_id": "iphone", "target_price": target},
            cookies=auth_cookies(user),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_product_rejected(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.post(
            "/api/alerts",
            json={"product_id": "missing", "target_price": "10.00"},
            cookies=auth_cookies(user),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_users_only_see_and_delete_their_own(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        owner = await create_test_user(session_factory, email="owner@example.com")
        other = await create_test_user(session_factory, email="other@example.com")
        created = await client.post(
            "/api/alerts",
            json={"product_id": "iphone", "target_price": "999.00"},
            cookies=auth_cookies(owner),
        )
        alert_id = created.json()["id"]

        assert (await client.get("/api/alerts", cookies=auth_cookies(other))).json() == []
        foreign = await client.delete(f"/api/alerts/{alert_id}", cookies=auth_cookies(other))
        assert foreign.status_code == 404

        own = await client.delete(f"/api/alerts/{alert_id}", cookies=auth_cookies(owner))
        assert own.status_code == 204
        assert (await client.get("/api/alerts", cookies=auth_cookies(owner))).json() == []


# ── Tests: Favorites ──────────────────────────────────────────────────────────


class TestFavorites:
    @pytest.mark.asyncio
    async def test_add_is_idempotent_and_list_includes_best_price(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        await insert_prices(
            session_factory,
            ("iphone", "amazon", "1049.00", 0),
            ("iphone", "walmart", "999.00", 0),
        )

        first = await client.post(
            "/api/favorites", json={"product_id": "iphone"}, cookies=auth_cookies(user)
        )
        second = await client.post(
            "/api/favorites", json={"product_id": "iphone"}, cookies=auth_cookies(user)
        )
        assert first.status_code == 201
        assert first.json()["id"] == second.json()["id"]

        listed = (await client.get("/api/favorites", cookies=auth_cookies(user))).json()
        assert len(listed) == 1
        assert listed[0]["product"]["name"] == "iPhone 15 Pro"
        assert listed[0]["best_price"]["store_id"] == "walmart"

    @pytest.mark.asyncio
    async def test_delete(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        created = await client.post(
            "/api/favorites", json={"product_id": "headphones"}, cookies=auth_cookies(user)
        )
        favorite_id = created.json()["id"]

        response = await client.delete(
            f"/api/favorites/{favorite_id}", cookies=auth_cookies(user)
        )
        assert response.status_code == 204
        again = await client.delete(f"/api/favorites/{favorite_id}", cookies=auth_cookies(user))
        assert again.status_code == 404


# ── Tests: Refresh trigger ────────────────────────────────────────────────────


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_persists_prices_and_fires_alert(
        self,
        client: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: RecordingDispatcher,
    ) -> None:
        user = await create_test_user(session_factory)
        created = await client.post(
            "/api/alerts",
            json={"product_id": "iphone", "target_price": "999.00"},
            cookies=auth_cookies(user),
        )

        response = await client.post(
            "/api/refresh",
            json={"product_ids": ["iphone", "headphones"]},
            cookies=auth_cookies(user),
        )
        assert response.status_code == 200
        summary = response.json()
        assert summary["state"] == "completed"
        assert summary["products_requested"] == 2
        assert summary["products_succeeded"] == 1
        assert summary["products_failed"] == 1
        assert summary["quotes_written"] == 2
        assert summary["change_events_by_classification"]["new"] == 2
        assert summary["notifications_sent"] == 1

        assert [str(i.alert_id) for i in dispatcher.intents] == [created.json()["id"]]
        assert dispatcher.intents[0].store_id == "walmart"
        assert dispatcher.intents[0].savings == Decimal("10.00")

        alerts = (await client.get("/api/alerts", cookies=auth_cookies(user))).json()
        assert alerts[0]["is_active"] is False
        assert alerts[0]["fired_at"] is not None

        detail = (await client.get("/api/products/iphone")).json()
        assert detail["best_price"]["store_id"] == "walmart"

    @pytest.mark.asyncio
    async def test_fired_alert_can_be_reactivated(
        self,
        client: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: RecordingDispatcher,
    ) -> None:
        user = await create_test_user(session_factory)
        created = await client.post(
            "/api/alerts",
            json={"product_id": "iphone", "target_price": "999.00"},
            cookies=auth_cookies(user),
        )
        alert_id = created.json()["id"]
        await client.post(
            "/api/refresh", json={"product_ids": ["iphone"]}, cookies=auth_cookies(user)
        )

        response = await client.post(
            f"/api/alerts/{alert_id}/reactivate", cookies=auth_cookies(user)
        )
        assert response.status_code == 200
        assert response.json()["is_active"] is True
        assert response.json()["fired_at"] is None

        await client.post(
            "/api/refresh", json={"product_ids": ["iphone"]}, cookies=auth_cookies(user)
        )
        assert len(dispatcher.intents) == 2

    @pytest.mark.asyncio
    async def test_empty_batch_is_rejected(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.post(
            "/api/refresh", json={"product_ids": []}, cookies=auth_cookies(user)
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_storage_outage_is_503(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        user = await create_test_user(session_factory)
        app.state.orchestrator = BrokenOrchestrator()
        response = await client.post(
            "/api/refresh", json={"product_ids": ["iphone"]}, cookies=auth_cookies(user)
        )
        assert response.status_code == 503
        assert response.json()["detail"] == "Price storage unavailable"

    @pytest.mark.asyncio
    async def test_pipeline_not_running(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        user = await create_test_user(session_factory)
        app.state.orchestrator = None
        response = await client.post(
            "/api/refresh", json={"product_ids": ["iphone"]}, cookies=auth_cookies(user)
        )
        assert response.status_code == 503


# ── Tests: Search ─────────────────────────────────────────────────────────────


class TestSearch:
    @pytest.mark.asyncio
    async def test_search_returns_intent_and_matches(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/search", json={"query": "apple phone under 1200"})
        assert response.status_code == 200
        data = response.json()
        assert data["search_intent"]["brand"] == "apple"
        assert data["search_intent"]["product_type"] == "phone"
        assert data["search_intent"]["price_range"] == {"min": None, "max": 1200}
        assert [m["id"] for m in data["matches"]] == ["iphone"]
        assert data["total_results"] == 1

    @pytest.mark.asyncio
    async def test_matches_carry_best_price(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await insert_prices(
            session_factory,
            ("iphone", "amazon", "1049.00", 0),
            ("iphone", "walmart", "1079.00", 0),
        )
        response = await client.post("/api/search", json={"query": "apple phone under 1200"})
        assert response.status_code == 200
        [match] = response.json()["matches"]
        assert match["best_price"]["store_id"] == "amazon"
        assert len(match["prices"]) == 2

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/search", json={"query": ""})
        assert response.status_code == 422


# ── Tests: Device Registration ────────────────────────────────────────────────


class TestDeviceRegistration:
    @pytest.mark.asyncio
    async def test_register_web_push_subscription(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        subscription = '{"endpoint": "https://push.example.com/abc", "keys": {}}'
        response = await client.post(
            "/api/devices",
            json={"device_token": subscription, "platform": "web"},
            cookies=auth_cookies(user),
        )
        assert response.status_code == 201
        data = response.json()
        assert data["device_token"] == subscription
        assert data["platform"] == "web"
        assert data["user_id"] == str(user.id)

    @pytest.mark.asyncio
    async def test_unsupported_platform(
        self, client: httpx.AsyncClient, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user = await create_test_user(session_factory)
        response = await client.post(
            "/api/devices",
            json={"device_token": "tok", "platform": "ios"},
            cookies=auth_cookies(user),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_register_device_unauthenticated(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/devices", json={"device_token": "tok", "platform": "web"}
        )
        assert response.status_code == 401


# ── Tests: Health ─────────────────────────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_db_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "db": "ok"}


# ── Tests: Rate Limiting ─────────────────────────────────────────────────────


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_rate_limit_exceeded(self) -> None:
        test_limiter = Limiter(key_func=get_remote_address)
        test_app = FastAPI()
        test_app.state.limiter = test_limiter
        test_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

        test_router = APIRouter()

        @test_router.post("/api/refresh-limited")
        @test_limiter.limit("2/minute")
        async def limited_endpoint(request: Request) -> dict[str, str]:
            return {"message": "ok"}

        test_app.include_router(test_router)

        transport = httpx.ASGITransport(app=test_app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            assert (await c.post("/api/refresh-limited")).status_code == 200
            assert (await c.post("/api/refresh-limited")).status_code == 200
            assert (await c.post("/api/refresh-limited")).status_code == 429

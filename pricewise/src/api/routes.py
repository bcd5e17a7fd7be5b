import uuid
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricewise.src.alerts.repository import AlertRepository
from pricewise.src.api.auth import (
    REFRESH_TOKEN,
    create_magic_link,
    decode_token,
    get_current_user,
    load_user,
    set_access_cookie,
    set_refresh_cookie,
    verify_magic_link,
)
from pricewise.src.api.database import get_db
from pricewise.src.contracts.models import (
    DeviceRegistration,
    DeviceRegistrationCreate,
    DeviceRegistrationRead,
    FavoriteCreate,
    FavoriteRead,
    PriceAlertCreate,
    PriceAlertRead,
    PriceHistoryPoint,
    ProductDetail,
    ProductRead,
    RefreshRequest,
    RefreshSummary,
    SearchRequest,
    SearchResponse,
    StorePrice,
    User,
    UserRead,
)
from pricewise.src.favorites.repository import FavoriteRepository
from pricewise.src.products.repository import ProductRepository, StoreRepository
from pricewise.src.refresh.orchestrator import RefreshOrchestrator
from pricewise.src.search.intent import SearchIntentAnalyzer
from pricewise.src.snapshots.repository import PriceSnapshotRepository

logger = structlog.get_logger(__name__)

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()

_search_analyzer = SearchIntentAnalyzer()


# ── Request / Response schemas ────────────────────────────────────────────────


class MagicLinkRequest(BaseModel):
    email: EmailStr


class VerifyRequest(BaseModel):
    token: str


class HealthResponse(BaseModel):
    status: str
    db: str


# ── Dependencies & helpers ────────────────────────────────────────────────────


def get_orchestrator(request: Request) -> RefreshOrchestrator:
    orchestrator: RefreshOrchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Refresh pipeline not running",
        )
    return orchestrator


async def _current_prices(
    session: AsyncSession, product_ids: list[str]
) -> dict[str, list[StorePrice]]:
    """Last known price per store for each product, cheapest first."""
    latest = await PriceSnapshotRepository(session).get_latest(product_ids)
    stores = await StoreRepository(session).get_many([store_id for _, store_id in latest])
    store_names = {store.id: store.name for store in stores}

    prices: dict[str, list[StorePrice]] = {pid: [] for pid in product_ids}
    for (product_id, store_id), row in latest.items():
        quote = row.to_schema()
        prices[product_id].append(
            StorePrice(
                store_id=store_id,
                store_name=store_names.get(store_id, store_id),
                price=quote.price,
                availability=quote.availability,
                source_url=quote.source_url,
                observed_at=quote.observed_at,
            )
        )
    for entries in prices.values():
        entries.sort(key=lambda p: (p.price, p.store_id))
    return prices


def _with_prices(product: ProductRead, prices: list[StorePrice]) -> ProductDetail:
    return ProductDetail(
        **product.model_dump(),
        prices=prices,
        best_price=prices[0] if prices else None,
    )


async def _require_product(session: AsyncSession, product_id: str) -> ProductRead:
    product = await ProductRepository(session).get_by_id(product_id)
    if product is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found",
        )
    return product.to_schema()


# ── Auth routes ───────────────────────────────────────────────────────────────


@router.post("/auth/magic-link", status_code=status.HTTP_200_OK)
@limiter.limit("5/minute")
async def send_magic_link(
    request: Request,
    body: MagicLinkRequest,
    session: AsyncSession = Depends(get_db),
) -> JSONResponse:
    await create_magic_link(body.email, session)
    return JSONResponse(
        content={"message": "Magic link sent"},
        status_code=status.HTTP_200_OK,
    )


@router.post("/auth/verify", status_code=status.HTTP_200_OK)
@limiter.limit("10/minute")
async def verify_token(
    request: Request,
    body: VerifyRequest,
    response: Response,
    session: AsyncSession = Depends(get_db),
) -> UserRead:
    user = await verify_magic_link(body.token, session)
    set_access_cookie(response, user.id)
    set_refresh_cookie(response, user.id)
    return UserRead(id=user.id, email=user.email, created_at=user.created_at)


@router.post("/auth/refresh", status_code=status.HTTP_200_OK)
@limiter.limit("10/minute")
async def refresh_jwt(
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> JSONResponse:
    refresh_token: str | None = request.cookies.get("refresh_token")
    if refresh_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No refresh token",
        )

    user = await load_user(session, decode_token(refresh_token, REFRESH_TOKEN))
    response = JSONResponse(
        content={"message": "Token refreshed"},
        status_code=status.HTTP_200_OK,
    )
    set_access_cookie(response, user.id)
    return response


# ── Product routes ────────────────────────────────────────────────────────────


@router.get("/api/products")
async def list_products(
    sort: Literal["name", "latest"] = "name",
    limit: int | None = Query(default=None, ge=1, le=200),
    session: AsyncSession = Depends(get_db),
) -> list[ProductDetail]:
    rows = await ProductRepository(session).list_all(latest_first=sort == "latest", limit=limit)
    prices = await _current_prices(session, [row.id for row in rows])
    return [_with_prices(row.to_schema(), prices[row.id]) for row in rows]


@router.get("/api/products/{product_id}")
async def get_product(
    product_id: str,
    session: AsyncSession = Depends(get_db),
) -> ProductDetail:
    product = await _require_product(session, product_id)
    prices = (await _current_prices(session, [product_id]))[product_id]
    return _with_prices(product, prices)


@router.get("/api/products/{product_id}/history")
async def get_price_history(
    product_id: str,
    store_id: str | None = None,
    limit: int | None = Query(default=None, ge=1, le=1000),
    session: AsyncSession = Depends(get_db),
) -> list[PriceHistoryPoint]:
    await _require_product(session, product_id)
    rows = await PriceSnapshotRepository(session).get_history(
        product_id, store_id=store_id, limit=limit
    )
    history: list[PriceHistoryPoint] = []
    for row in rows:
        quote = row.to_schema()
        history.append(
            PriceHistoryPoint(
                store_id=quote.store_id,
                price=quote.price,
                availability=quote.availability,
                observed_at=quote.observed_at,
            )
        )
    return history


# ── Alert routes ──────────────────────────────────────────────────────────────


@router.get("/api/alerts")
async def list_alerts(
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[PriceAlertRead]:
    rows = await AlertRepository(session).list_for_user(current_user.id)
    return [row.to_schema() for row in rows]


@router.post("/api/alerts", status_code=status.HTTP_201_CREATED)
async def create_alert(
    body: PriceAlertCreate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PriceAlertRead:
    await _require_product(session, body.product_id)
    alert = await AlertRepository(session).create(
        current_user.id, body.product_id, body.target_price
    )
    logger.info(
        "alert_created",
        user_id=str(current_user.id),
        alert_id=str(alert.id),
        product_id=body.product_id,
    )
    return alert.to_schema()


@router.post("/api/alerts/{alert_id}/reactivate")
async def reactivate_alert(
    alert_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PriceAlertRead:
    alert = await AlertRepository(session).reactivate_for_user(current_user.id, alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return alert.to_schema()


@router.delete("/api/alerts/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_alert(
    alert_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    deleted = await AlertRepository(session).delete_for_user(current_user.id, alert_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Favorite routes ───────────────────────────────────────────────────────────


@router.get("/api/favorites")
async def list_favorites(
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[FavoriteRead]:
    favorites = await FavoriteRepository(session).list_for_user(current_user.id)
    product_ids = [f.product_id for f in favorites]
    products = {p.id: p for p in await ProductRepository(session).get_many(product_ids)}
    prices = await _current_prices(session, product_ids)

    result: list[FavoriteRead] = []
    for favorite in favorites:
        product = products.get(favorite.product_id)
        best = prices.get(favorite.product_id) or []
        result.append(
            FavoriteRead(
                id=favorite.id,
                product_id=favorite.product_id,
                created_at=favorite.created_at,
                product=product.to_schema() if product else None,
                best_price=best[0] if best else None,
            )
        )
    return result


@router.post("/api/favorites", status_code=status.HTTP_201_CREATED)
async def add_favorite(
    body: FavoriteCreate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> FavoriteRead:
    product = await _require_product(session, body.product_id)
    favorite = await FavoriteRepository(session).add(current_user.id, body.product_id)
    return FavoriteRead(
        id=favorite.id,
        product_id=favorite.product_id,
        created_at=favorite.created_at,
        product=product,
    )


@router.delete("/api/favorites/{favorite_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_favorite(
    favorite_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    deleted = await FavoriteRepository(session).delete_for_user(current_user.id, favorite_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Favorite not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Refresh & search ──────────────────────────────────────────────────────────


@router.post("/api/refresh")
@limiter.limit("6/minute")
async def trigger_refresh(
    request: Request,
    body: RefreshRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
) -> RefreshSummary:
    logger.info(
        "refresh_requested",
        user_id=str(current_user.id),
        products=len(body.product_ids),
    )
    # InvalidRefreshRequest and StorageUnavailable are mapped by api.errors
    return await orchestrator.refresh(body.product_ids, body.deadline_seconds)


@router.post("/api/search")
@limiter.limit("30/minute")
async def search_products(
    request: Request,
    body: SearchRequest,
    session: AsyncSession = Depends(get_db),
) -> SearchResponse:
    intent = _search_analyzer.analyze(body.query)
    catalog = [row.to_schema() for row in await ProductRepository(session).list_all()]
    matches = _search_analyzer.find_matches(
        intent,
        catalog,
        category=body.category,
        max_results=body.max_results,
        query=body.query,
    )
    prices = await _current_prices(session, [match.id for match in matches])
    matches = [
        match.model_copy(
            update={
                "prices": prices[match.id],
                "best_price": prices[match.id][0] if prices[match.id] else None,
            }
        )
        for match in matches
    ]
    return SearchResponse(
        query=body.query,
        search_intent=intent,
        matches=matches,
        total_results=len(matches),
    )


# ── Device registration ──────────────────────────────────────────────────────


@router.post("/api/devices", status_code=status.HTTP_201_CREATED)
async def register_device(
    body: DeviceRegistrationCreate,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> DeviceRegistrationRead:
    device = DeviceRegistration(
        id=uuid.uuid4(),
        user_id=current_user.id,
        device_token=body.device_token,
        platform=body.platform.value,
    )
    session.add(device)
    await session.flush()
    await session.refresh(device)

    return DeviceRegistrationRead(
        id=device.id,
        user_id=device.user_id,
        device_token=device.device_token,
        platform=body.platform,
        created_at=device.created_at,
    )


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health")
async def health_check(
    session: AsyncSession = Depends(get_db),
) -> HealthResponse:
    db_status = "ok"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        db=db_status,
    )

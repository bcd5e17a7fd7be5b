from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────────────


class Availability(str, enum.Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


class ChangeClassification(str, enum.Enum):
    NEW = "new"
    INCREASE = "increase"
    DECREASE = "decrease"
    UNCHANGED = "unchanged"


class JobState(str, enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    ALERTING = "alerting"
    NOTIFYING = "notifying"
    COMPLETED = "completed"


class ProductOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Platform(str, enum.Enum):
    WEB = "web"


# ── Pipeline schemas ──────────────────────────────────────────────────────────


class ProductDescriptor(BaseModel):
    """What a store adapter needs to know to look a product up."""

    id: str
    name: str
    category: str = ""
    brand: str = ""
    model: str = ""
    description: str = ""

    @property
    def search_text(self) -> str:
        if self.brand and self.brand.lower() not in self.name.lower():
            return f"{self.brand} {self.name}"
        return self.name


class PriceQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    store_id: str
    price: Decimal = Field(ge=0)
    availability: Availability = Availability.UNKNOWN
    source_url: str
    observed_at: datetime
    title: str = ""
    shipping: Decimal | None = None


class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    store_id: str
    old_price: Decimal | None
    new_price: Decimal
    delta: Decimal | None
    delta_percent: Decimal | None
    classification: ChangeClassification


class PriceAlertRead(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    product_id: str
    target_price: Decimal
    is_active: bool
    created_at: datetime | None = None
    fired_at: datetime | None = None


class PriceAlertCreate(BaseModel):
    product_id: str = Field(min_length=1)
    target_price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class NotificationIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    alert_id: uuid.UUID
    user_id: uuid.UUID
    product_id: str
    store_id: str
    triggering_price: Decimal
    target_price: Decimal
    savings: Decimal
    source_url: str = ""
    product_name: str = ""
    store_name: str = ""


class DeliveryResult(BaseModel):
    alert_id: uuid.UUID
    user_id: uuid.UUID
    delivered: bool
    channels: dict[str, bool] = Field(default_factory=dict)
    error: str | None = None


class RefreshRequest(BaseModel):
    product_ids: list[str]
    deadline_seconds: float | None = Field(default=None, gt=0)


class ProductResult(BaseModel):
    product_id: str
    outcome: ProductOutcome
    quotes_fetched: int = 0
    quotes_written: int = 0
    adapter_failures: int = 0
    write_failures: int = 0
    error: str | None = None


class RefreshSummary(BaseModel):
    job_id: uuid.UUID
    state: JobState
    products_requested: int
    products_succeeded: int
    products_failed: int
    quotes_written: int
    change_events_by_classification: dict[str, int]
    notifications_sent: int
    notification_failures: int = 0
    adapter_failures: int = 0
    write_failures: int = 0
    deadline_exceeded: bool = False
    products: list[ProductResult] = Field(default_factory=list)
    change_events: list[ChangeEvent] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None


# ── Catalog / API schemas ─────────────────────────────────────────────────────


class ProductRead(BaseModel):
    id: str
    name: str
    description: str
    category: str
    brand: str
    model: str
    image_url: str
    specifications: str


class StoreRead(BaseModel):
    id: str
    name: str
    base_url: str
    logo_url: str
    is_active: bool
    search_url_template: str | None = None


class StorePrice(BaseModel):
    store_id: str
    store_name: str
    price: Decimal
    availability: Availability
    source_url: str
    observed_at: datetime


class ProductDetail(ProductRead):
    """A product with its current price at every store, cheapest first."""

    prices: list[StorePrice] = Field(default_factory=list)
    best_price: StorePrice | None = None


class PriceHistoryPoint(BaseModel):
    store_id: str
    price: Decimal
    availability: Availability
    observed_at: datetime


class FavoriteCreate(BaseModel):
    product_id: str = Field(min_length=1)


class FavoriteRead(BaseModel):
    id: uuid.UUID
    product_id: str
    created_at: datetime | None = None
    product: ProductRead | None = None
    best_price: StorePrice | None = None


class PriceRange(BaseModel):
    min: int | None = None
    max: int | None = None


class SearchIntent(BaseModel):
    product_type: str = "general"
    brand: str | None = None
    price_range: PriceRange | None = None
    features: list[str] = Field(default_factory=list)
    category: str | None = None


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    category: str | None = None
    max_results: int = Field(default=10, ge=1, le=50)


class ProductMatch(BaseModel):
    id: str
    name: str
    description: str
    category: str
    brand: str
    confidence: float
    reasons: list[str] = Field(default_factory=list)
    prices: list[StorePrice] = Field(default_factory=list)
    best_price: StorePrice | None = None


class SearchResponse(BaseModel):
    query: str
    search_intent: SearchIntent
    matches: list[ProductMatch]
    total_results: int


class UserRead(BaseModel):
    id: uuid.UUID
    email: EmailStr
    created_at: datetime


class DeviceRegistrationCreate(BaseModel):
    device_token: str
    platform: Platform = Platform.WEB


class DeviceRegistrationRead(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    device_token: str
    platform: Platform
    created_at: datetime | None = None


# ── SQLAlchemy ORM ─────────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    devices: Mapped[list["DeviceRegistration"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    brand: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    model: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    image_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    specifications: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def to_descriptor(self) -> ProductDescriptor:
        return ProductDescriptor(
            id=self.id,
            name=self.name,
            category=self.category,
            brand=self.brand,
            model=self.model,
            description=self.description,
        )

    def to_schema(self) -> ProductRead:
        return ProductRead(
            id=self.id,
            name=self.name,
            description=self.description,
            category=self.category,
            brand=self.brand,
            model=self.model,
            image_url=self.image_url,
            specifications=self.specifications,
        )


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    base_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    logo_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Used by the generic adapter when no retailer-specific adapter is registered,
    # e.g. "https://shop.example.com/search?q={query}"
    search_url_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_schema(self) -> StoreRead:
        return StoreRead(
            id=self.id,
            name=self.name,
            base_url=self.base_url,
            logo_url=self.logo_url,
            is_active=self.is_active,
            search_url_template=self.search_url_template,
        )


class PriceRow(Base):
    """One persisted quote. The ``prices`` table is the snapshot history."""

    __tablename__ = "prices"

    # Autoincrement id doubles as the insertion-order tie-break for observed_at.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    store_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    availability: Mapped[str] = mapped_column(String(20), nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    shipping: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_prices_product_store_observed", "product_id", "store_id", "observed_at", "id"),
        Index("ix_prices_observed_at", "observed_at"),
    )

    def to_schema(self) -> PriceQuote:
        return PriceQuote(
            product_id=self.product_id,
            store_id=self.store_id,
            price=self.price,
            availability=Availability(self.availability),
            source_url=self.source_url,
            observed_at=_as_utc(self.observed_at),
            title=self.title,
            shipping=self.shipping,
        )


class PriceAlert(Base):
    __tablename__ = "price_alerts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    target_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    fired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_price_alerts_product_active", "product_id", "is_active"),
        Index("ix_price_alerts_user_id", "user_id"),
    )

    def to_schema(self) -> PriceAlertRead:
        return PriceAlertRead(
            id=self.id,
            user_id=self.user_id,
            product_id=self.product_id,
            target_price=self.target_price,
            is_active=self.is_active,
            created_at=self.created_at,
            fired_at=self.fired_at,
        )


class UserFavorite(Base):
    __tablename__ = "user_favorites"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_user_favorites_user_product"),
    )


class DeviceRegistration(Base):
    __tablename__ = "device_registrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    device_token: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default=Platform.WEB.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="devices")

    __table_args__ = (
        Index("ix_device_registrations_user_id", "user_id"),
    )


class MagicLinkToken(Base):
    __tablename__ = "magic_link_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    token: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

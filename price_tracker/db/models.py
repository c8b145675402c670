"""SQLAlchemy database models."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class PageKind(str, enum.Enum):
    """What a configured page (or queued item) points at."""

    SEARCH = "search"
    DETAIL = "details"


class Store(Base):
    """Storefront whose pages are crawled."""

    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)  # Base domain for relative links
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    pages: Mapped[list["PageEntry"]] = relationship(
        "PageEntry", back_populates="store", cascade="all, delete-orphan"
    )


class PageEntry(Base):
    """Configured crawl target belonging to a store."""

    __tablename__ = "pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[PageKind] = mapped_column(
        Enum(PageKind, name="page_kind", values_callable=lambda kinds: [k.value for k in kinds]),
        nullable=False,
    )
    handler: Mapped[str] = mapped_column(String(32), default="kabum", nullable=False)  # Site handler name
    ean: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    gtin: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    store: Mapped["Store"] = relationship("Store", back_populates="pages")


class Product(Base):
    """Catalog product. Never updated by the scrape pipeline once created."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[str] = mapped_column(String(128), nullable=False)
    ean: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    gtin: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    prices: Mapped[list["ProductPrice"]] = relationship(
        "ProductPrice", back_populates="product"
    )


class ProductPrice(Base):
    """Append-only price observation of a product at a store."""

    __tablename__ = "product_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False, index=True
    )
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="prices")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_product_price_non_negative"),
    )

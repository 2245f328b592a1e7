# woocatalog/models/catalog.py
# Local mirror of the remote WooCommerce catalog, one namespace per shop.
#
# Rows are keyed by (shop_id, remote_id); every write path goes through the
# insert-on-conflict upserts in woocatalog.store.catalog_store so re-syncing the
# same remote state never duplicates rows.
from __future__ import annotations
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from woocatalog.db import Base, utcnow
from woocatalog.models.enums import (
    ProductStatus,
    ProductType,
    StockStatus,
    enum_column,
)

# Semi-structured attachments (categories, images, attributes...). JSONB on
# PostgreSQL so the GIN indexes below can serve containment queries.
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    remote_id: Mapped[int] = mapped_column(Integer, nullable=False)

    sku: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    type: Mapped[ProductType] = mapped_column(enum_column(ProductType), default=ProductType.SIMPLE, index=True)
    status: Mapped[ProductStatus] = mapped_column(enum_column(ProductStatus), default=ProductStatus.PUBLISH, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    short_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Woo returns prices as decimal strings ("9.99"); kept verbatim
    price: Mapped[str | None] = mapped_column(String(32), nullable=True)
    regular_price: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sale_price: Mapped[str | None] = mapped_column(String(32), nullable=True)

    stock_status: Mapped[StockStatus] = mapped_column(enum_column(StockStatus), default=StockStatus.INSTOCK, index=True)
    stock_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    manage_stock: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    categories: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONDocument, nullable=True)
    tags: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONDocument, nullable=True)
    images: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONDocument, nullable=True)
    attributes: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONDocument, nullable=True)
    variations: Mapped[list[int] | None] = mapped_column(JSONDocument, nullable=True)  # remote variation ids

    date_created: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    date_modified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("shop_id", "remote_id", name="uq_products_shop_remote"),
        Index("ix_products_categories", "categories", postgresql_using="gin"),
        Index("ix_products_attributes", "attributes", postgresql_using="gin"),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} shop={self.shop_id} remote={self.remote_id} sku={self.sku!r}>"


class Variation(Base):
    __tablename__ = "variations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    remote_id: Mapped[int] = mapped_column(Integer, nullable=False)
    remote_parent_id: Mapped[int] = mapped_column(Integer, nullable=False)

    sku: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[ProductStatus] = mapped_column(enum_column(ProductStatus), default=ProductStatus.PUBLISH)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[str | None] = mapped_column(String(32), nullable=True)
    regular_price: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sale_price: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stock_status: Mapped[StockStatus] = mapped_column(enum_column(StockStatus), default=StockStatus.INSTOCK)
    stock_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    manage_stock: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attributes: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONDocument, nullable=True)
    image: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)

    date_created: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    date_modified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("shop_id", "remote_id", name="uq_variations_shop_remote"),
        Index("ix_variations_attributes", "attributes", postgresql_using="gin"),
    )


class ProductShopVariant(Base):
    """Variations explicitly selected for transfer of a product to another shop."""
    __tablename__ = "product_shop_variants"

    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    variation_id: Mapped[int] = mapped_column(ForeignKey("variations.id", ondelete="CASCADE"), primary_key=True)

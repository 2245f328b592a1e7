# woocatalog/models/shop.py
from __future__ import annotations
from datetime import datetime
from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from woocatalog.db import Base, utcnow
from woocatalog.models.enums import ShopStatus, enum_column


class Shop(Base):
    __tablename__ = "shops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    base_url: Mapped[str] = mapped_column(String(255), index=True)
    consumer_key: Mapped[str] = mapped_column(String(255))
    consumer_secret: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[ShopStatus] = mapped_column(enum_column(ShopStatus), default=ShopStatus.UNKNOWN, index=True)
    last_ping: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Shop id={self.id} name={self.name!r} status={getattr(self.status, 'value', self.status)}>"

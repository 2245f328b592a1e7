# woocatalog/models/enums.py
# Closed value sets shared by the ORM models, the engines and the API schemas.
from __future__ import annotations

import enum

from sqlalchemy import Enum as SAEnum


class ShopStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ProductType(str, enum.Enum):
    SIMPLE = "simple"
    VARIABLE = "variable"
    GROUPED = "grouped"
    EXTERNAL = "external"


class ProductStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PRIVATE = "private"
    PUBLISH = "publish"


class StockStatus(str, enum.Enum):
    INSTOCK = "instock"
    OUTOFSTOCK = "outofstock"
    ONBACKORDER = "onbackorder"


class ImportType(str, enum.Enum):
    PARENT = "parent"
    VARIATIONS = "variations"
    SYNC = "sync"


class ImportStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStatus.COMPLETED, ImportStatus.FAILED)


class ImportErrorType(str, enum.Enum):
    VALIDATION = "validation"
    WOOCOMMERCE = "woocommerce"
    NETWORK = "network"
    DATABASE = "database"


class SyncAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    TRANSFERRED = "transferred"
    FAILED = "failed"


def coerce(enum_cls, value, default=None):
    """Map a raw remote/CSV string onto `enum_cls`, falling back to `default` for unknown values."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except (ValueError, AttributeError):
        return default


def enum_column(enum_cls, length: int = 20) -> SAEnum:
    # stored as plain VARCHAR holding the enum value, no native DB enum type
    return SAEnum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )

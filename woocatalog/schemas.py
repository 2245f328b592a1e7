from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ShopCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    base_url: str = Field(..., min_length=1, description="Store root URL, e.g. https://shop.example.com")
    consumer_key: str = Field(..., min_length=1)
    consumer_secret: str = Field(..., min_length=1)
    is_default: bool = False


class ShopOut(BaseModel):
    id: int
    name: str
    base_url: str
    is_active: bool
    is_default: bool
    status: str
    last_ping: Optional[str] = None


class SyncRequest(BaseModel):
    shop_id: int
    batch_size: Optional[int] = Field(None, ge=1, le=100, description="Items per page")
    max_products: Optional[int] = Field(None, ge=1, le=5000, description="Cap per run")


class TransferRequest(BaseModel):
    target_shop_id: int
    source_shop_id: Optional[int] = None
    product_ids: List[int] = Field(default_factory=list, description="Local mirror product ids")
    master_product_ids: List[int] = Field(default_factory=list, description="CSV-only master products")
    # product id -> variation ids to include; omitted products use their stored selection
    selected_variations: Dict[int, List[int]] = Field(default_factory=dict)


class VariantSelection(BaseModel):
    product_id: int
    variation_ids: List[int] = Field(default_factory=list)


class ScheduleRequest(BaseModel):
    interval: int = Field(..., description="Seconds between syncs")

# woocatalog/woo/payloads.py
# ============================
# CSV row / local record  ->  WooCommerce payload
# WooCommerce item        ->  local mirror column values
# ============================
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from woocatalog.models.enums import (
    ProductStatus,
    ProductType,
    StockStatus,
    coerce,
)

logger = logging.getLogger("uvicorn.error")

ATTRIBUTE_PREFIX = "meta_attribute_"


class RowValidationError(ValueError):
    """A CSV row that cannot be turned into a payload. Never retried."""


# --- Small normalizers ---

def clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_row(row: Dict[str, Any]) -> Dict[str, str]:
    """Trim header names and cell values; missing cells become ''."""
    return {clean(k): clean(v) for k, v in (row or {}).items() if k is not None}


def split_pipe(value: Any) -> List[str]:
    """'A | B||C' -> ['A', 'B', 'C']"""
    return [part.strip() for part in clean(value).split("|") if part.strip()]


def slugify(name: str) -> str:
    s = clean(name).lower()
    s = re.sub(r"[^\w\s-]", "", s)
    return re.sub(r"[\s_-]+", "-", s).strip("-")


def is_numeric_price(value: str) -> bool:
    try:
        d = Decimal(value)
    except (InvalidOperation, ValueError):
        return False
    return d.is_finite() and d >= 0


def parse_wc_datetime(value: Any) -> Optional[datetime]:
    """Parse Woo's ISO-8601 timestamps; `*_gmt` values carry no offset and are UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        logger.debug("[WC] unparseable timestamp %r", value)
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_price(value: Any) -> Optional[str]:
    s = clean(value)
    return s or None


# --- CSV rows -> payloads ---

def _validated_enum(row: Dict[str, str], column: str, enum_cls, default):
    raw = row.get(column, "")
    if not raw:
        return default
    value = coerce(enum_cls, raw)
    if value is None:
        allowed = ", ".join(m.value for m in enum_cls)
        raise RowValidationError(f"Invalid {column} '{raw}' (expected one of: {allowed})")
    return value


def _validated_price(row: Dict[str, str], column: str = "regular_price") -> Optional[str]:
    raw = row.get(column, "")
    if not raw:
        return None
    if not is_numeric_price(raw):
        raise RowValidationError(f"Invalid {column} '{raw}': must be a non-negative number")
    return raw


def attributes_from_row(row: Dict[str, str]) -> List[Dict[str, Any]]:
    """Every non-empty `meta_attribute_<Name>` column becomes one attribute."""
    attrs: List[Dict[str, Any]] = []
    for key, value in row.items():
        if not key.startswith(ATTRIBUTE_PREFIX) or not value:
            continue
        name = key[len(ATTRIBUTE_PREFIX):].strip()
        if name:
            attrs.append({"name": name, "option": value})
    return attrs


def build_parent_payload(raw_row: Dict[str, Any]) -> Dict[str, Any]:
    row = normalize_row(raw_row)
    sku = row.get("sku", "")
    title = row.get("post_title", "")
    if not sku:
        raise RowValidationError("SKU is required")
    if not title:
        raise RowValidationError("post_title is required")

    product_type = _validated_enum(row, "tax_product_type", ProductType, ProductType.SIMPLE)
    payload: Dict[str, Any] = {
        "name": title,
        "sku": sku,
        "type": product_type.value,
        "status": _validated_enum(row, "post_status", ProductStatus, ProductStatus.PUBLISH).value,
        "stock_status": _validated_enum(row, "stock_status", StockStatus, StockStatus.INSTOCK).value,
        "description": row.get("post_content", ""),
        "short_description": row.get("post_excerpt", ""),
    }
    if row.get("post_name"):
        payload["slug"] = row["post_name"]
    price = _validated_price(row)
    if price is not None:
        payload["regular_price"] = price

    cats = split_pipe(row.get("tax_product_cat"))
    if cats:
        payload["categories"] = [{"name": c, "slug": slugify(c)} for c in cats]
    images = split_pipe(row.get("images"))
    if images:
        payload["images"] = [{"src": url} for url in images]

    attrs = attributes_from_row(row)
    if attrs:
        # parent attributes list every option and are usable for variations
        payload["attributes"] = [
            {"name": a["name"], "options": split_pipe(a["option"]), "visible": True,
             "variation": product_type == ProductType.VARIABLE}
            for a in attrs
        ]
    return payload


def build_variation_payload(raw_row: Dict[str, Any]) -> Dict[str, Any]:
    row = normalize_row(raw_row)
    if not row.get("parent_sku"):
        raise RowValidationError("parent_sku is required")
    if not row.get("sku"):
        raise RowValidationError("SKU is required")

    payload: Dict[str, Any] = {
        "sku": row["sku"],
        "stock_status": _validated_enum(row, "stock_status", StockStatus, StockStatus.INSTOCK).value,
    }
    price = _validated_price(row)
    if price is not None:
        payload["regular_price"] = price
    attrs = attributes_from_row(row)
    if attrs:
        payload["attributes"] = attrs
    images = split_pipe(row.get("images"))
    if images:
        payload["image"] = {"src": images[0]}
    return payload


# --- Woo items -> mirror values ---

def product_values(item: Dict[str, Any]) -> Dict[str, Any]:
    """Column values for a Product mirror row (without shop_id/remote_id)."""
    return {
        "sku": clean(item.get("sku")) or None,
        "name": clean(item.get("name")) or f"Product {item.get('id')}",
        "slug": clean(item.get("slug")),
        "type": coerce(ProductType, item.get("type"), ProductType.SIMPLE),
        "status": coerce(ProductStatus, item.get("status"), ProductStatus.PUBLISH),
        "description": item.get("description") or None,
        "short_description": item.get("short_description") or None,
        "price": _opt_price(item.get("price")),
        "regular_price": _opt_price(item.get("regular_price")),
        "sale_price": _opt_price(item.get("sale_price")),
        "stock_status": coerce(StockStatus, item.get("stock_status"), StockStatus.INSTOCK),
        "stock_quantity": _opt_int(item.get("stock_quantity")),
        "manage_stock": bool(item.get("manage_stock")),
        "categories": item.get("categories") or [],
        "tags": item.get("tags") or [],
        "images": item.get("images") or [],
        "attributes": item.get("attributes") or [],
        "variations": [int(v) for v in (item.get("variations") or []) if _opt_int(v) is not None],
        "date_created": parse_wc_datetime(item.get("date_created_gmt") or item.get("date_created")),
        "date_modified": parse_wc_datetime(item.get("date_modified_gmt") or item.get("date_modified")),
    }


def variation_values(item: Dict[str, Any]) -> Dict[str, Any]:
    """Column values for a Variation mirror row (without shop_id/product_id/remote ids)."""
    return {
        "sku": clean(item.get("sku")) or None,
        "status": coerce(ProductStatus, item.get("status"), ProductStatus.PUBLISH),
        "description": item.get("description") or None,
        "price": _opt_price(item.get("price")),
        "regular_price": _opt_price(item.get("regular_price")),
        "sale_price": _opt_price(item.get("sale_price")),
        "stock_status": coerce(StockStatus, item.get("stock_status"), StockStatus.INSTOCK),
        "stock_quantity": _opt_int(item.get("stock_quantity")),
        "manage_stock": bool(item.get("manage_stock")),
        "attributes": item.get("attributes") or [],
        "image": item.get("image") or None,
        "date_created": parse_wc_datetime(item.get("date_created_gmt") or item.get("date_created")),
        "date_modified": parse_wc_datetime(item.get("date_modified_gmt") or item.get("date_modified")),
    }


def first_category_name(categories: Iterable[Dict[str, Any]] | None) -> Optional[str]:
    for cat in categories or []:
        name = clean((cat or {}).get("name"))
        if name:
            return name
    return None


# --- Local records -> transfer payload ---

def _value(v: Any) -> Any:
    return getattr(v, "value", v)


def _strip_ids(entries: Iterable[Dict[str, Any]] | None, keep: Iterable[str]) -> List[Dict[str, Any]]:
    # remote ids are shop-local; only portable keys travel to another shop
    out = []
    for e in entries or []:
        if not isinstance(e, dict):
            continue
        picked = {k: e[k] for k in keep if e.get(k) not in (None, "", [])}
        if picked:
            out.append(picked)
    return out


def variation_transfer_payload(variation) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "sku": variation.sku or "",
        "stock_status": _value(variation.stock_status) or StockStatus.INSTOCK.value,
        "attributes": _strip_ids(variation.attributes, ("name", "option")),
    }
    if variation.regular_price:
        payload["regular_price"] = variation.regular_price
    if variation.sale_price:
        payload["sale_price"] = variation.sale_price
    if variation.manage_stock:
        payload["manage_stock"] = True
        payload["stock_quantity"] = variation.stock_quantity
    image = variation.image if isinstance(variation.image, dict) else None
    if image and image.get("src"):
        payload["image"] = {"src": image["src"]}
    return payload


def transfer_payload(product, selected_variations: Optional[List[Any]] = None) -> Dict[str, Any]:
    """
    Payload for pushing a local product into another shop.

    `variations` carries only the selected subset; an empty subset is omitted.
    """
    payload: Dict[str, Any] = {
        "name": product.name,
        "type": _value(product.type) or ProductType.SIMPLE.value,
        "status": _value(product.status) or ProductStatus.PUBLISH.value,
        "sku": product.sku or "",
        "description": product.description or "",
        "short_description": product.short_description or "",
        "stock_status": _value(product.stock_status) or StockStatus.INSTOCK.value,
        "categories": _strip_ids(product.categories, ("name", "slug")),
        "tags": _strip_ids(product.tags, ("name", "slug")),
        "images": _strip_ids(product.images, ("src", "alt", "name")),
        "attributes": _strip_ids(product.attributes, ("name", "options", "visible", "variation")),
    }
    if product.slug:
        payload["slug"] = product.slug
    if product.regular_price:
        payload["regular_price"] = product.regular_price
    if product.sale_price:
        payload["sale_price"] = product.sale_price
    if product.manage_stock:
        payload["manage_stock"] = True
        payload["stock_quantity"] = product.stock_quantity
    if selected_variations:
        payload["variations"] = [variation_transfer_payload(v) for v in selected_variations]
    return payload

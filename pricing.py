import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException

from database import as_utc, utcnow
from schemas import OrderItem

DELIVERY_CHARGE = float(os.getenv("DELIVERY_CHARGE", "0"))
COMMISSION_PERCENTAGE = float(os.getenv("COMMISSION_PERCENTAGE", "10"))


@dataclass
class OrderQuote:
    items: List[OrderItem]
    subtotal: float
    discount: float
    delivery_charge: float
    total: float
    commission: float
    commission_percentage: float
    coupon: Optional[Dict[str, Any]] = field(default=None)

    @property
    def coupon_code(self) -> str:
        return self.coupon["code"] if self.coupon else ""


def find_coupon(db, code: str) -> Optional[Dict[str, Any]]:
    return db["coupon"].find_one({"code": code.strip().upper()})


def evaluate_coupon(coupon: Optional[Dict[str, Any]], amount: float, now: Optional[datetime] = None) -> float:
    """Return the discount `coupon` gives on `amount`, or raise why it can't be applied."""
    if not coupon:
        raise HTTPException(status_code=404, detail="Invalid coupon code")
    now = as_utc(now or utcnow())

    if not coupon.get("is_active", True):
        raise HTTPException(status_code=400, detail="Coupon is not active")
    valid_from = as_utc(coupon.get("valid_from"))
    valid_until = as_utc(coupon.get("valid_until"))
    if valid_from and now < valid_from:
        raise HTTPException(status_code=400, detail="Coupon is not valid yet")
    if valid_until and now > valid_until:
        raise HTTPException(status_code=400, detail="Coupon has expired")

    usage_limit = coupon.get("usage_limit")
    if usage_limit and coupon.get("used_count", 0) >= usage_limit:
        raise HTTPException(status_code=400, detail="Coupon usage limit reached")

    min_order_amount = float(coupon.get("min_order_amount") or 0)
    if amount < min_order_amount:
        raise HTTPException(status_code=400, detail=f"Minimum order amount of ₹{min_order_amount:g} required")

    value = float(coupon.get("discount_value", 0))
    if coupon.get("discount_type") == "percentage":
        discount = amount * value / 100
        if coupon.get("max_discount"):
            discount = min(discount, float(coupon["max_discount"]))
    else:
        discount = value
    return round(min(discount, amount), 2)


def _load_product(db, product_id: str) -> Optional[Dict[str, Any]]:
    try:
        oid = ObjectId(product_id)
    except (InvalidId, TypeError):
        return None
    return db["product"].find_one({"_id": oid})


def _unit_price(product: Dict[str, Any], weight: str) -> Optional[float]:
    options = product.get("weight_options") or []
    if not options:
        return float(product.get("price", 0)) if not weight else None
    for option in options:
        if option.get("weight") == weight:
            return float(option["price"])
    return None


def _egg_choice(product: Dict[str, Any], requested: Optional[bool]) -> bool:
    # without an egg option the product is sold only as its own variant
    if not product.get("has_egg_option", True) or requested is None:
        return bool(product.get("is_eggless", False))
    return bool(requested)


def quote_order(db, lines: List[Dict[str, Any]], coupon_code: Optional[str] = None,
                delivery_date: Optional[datetime] = None, now: Optional[datetime] = None,
                delivery_charge: Optional[float] = None,
                commission_percentage: Optional[float] = None) -> OrderQuote:
    """
    Price a cart against current catalog data.

    Each line is {product_id, weight, is_eggless, quantity}. Prices and names
    are read from the product records, never from the client, and snapshotted
    into the returned items. Any unavailable product, unknown weight or
    unusable coupon rejects the whole cart.
    """
    if not lines:
        raise HTTPException(status_code=400, detail="No items in order")

    delivery_charge = DELIVERY_CHARGE if delivery_charge is None else delivery_charge
    commission_percentage = COMMISSION_PERCENTAGE if commission_percentage is None else commission_percentage

    items: List[OrderItem] = []
    subtotal = 0.0
    for line in lines:
        product_id = str(line.get("product_id", ""))
        weight = line.get("weight") or ""
        quantity = int(line.get("quantity", 0))
        if quantity < 1:
            raise HTTPException(status_code=400, detail="Invalid item quantity")

        product = _load_product(db, product_id)
        if not product or not product.get("is_active", True):
            raise HTTPException(status_code=400, detail=f"Product {line.get('name') or product_id} not available")
        name = product.get("name", "Product")

        price = _unit_price(product, weight)
        if price is None:
            raise HTTPException(status_code=400, detail=f"Invalid weight option for {name}")

        if product.get("is_pre_order") and delivery_date is not None:
            earliest = as_utc(product.get("pre_order_delivery_date"))
            if earliest and as_utc(delivery_date) < earliest:
                raise HTTPException(
                    status_code=400,
                    detail=f"{name} is a pre-order item and can be delivered from {earliest.date().isoformat()}",
                )

        subtotal += price * quantity
        items.append(OrderItem(
            product_id=str(product["_id"]),
            name=name,
            weight=weight,
            is_eggless=_egg_choice(product, line.get("is_eggless")),
            quantity=quantity,
            price=price,
        ))

    subtotal = round(subtotal, 2)
    discount = 0.0
    coupon = None
    if coupon_code and coupon_code.strip():
        coupon = find_coupon(db, coupon_code)
        if coupon is None:
            raise HTTPException(status_code=400, detail="Invalid coupon code")
        discount = evaluate_coupon(coupon, subtotal, now)

    total = round(subtotal - discount + delivery_charge, 2)
    commission = round(total * commission_percentage / 100, 2)
    return OrderQuote(
        items=items,
        subtotal=subtotal,
        discount=discount,
        delivery_charge=delivery_charge,
        total=total,
        commission=commission,
        commission_percentage=commission_percentage,
        coupon=coupon,
    )

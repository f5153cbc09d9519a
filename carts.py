from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

from auth import Actor, RetailerActor, SalesmanActor, ensure_permission, require_retailer
from catalog import get_product_doc
from connections import require_connection
from database import encode, get_db, lookup_map, to_str_id, utcnow
from errors import Forbidden, NotFound, ProductUnavailable
from pricing import compute_totals, unit_price_for, validate_quantity
from schemas import Cart, CartItem, Money

log = structlog.get_logger()

CartKey = Dict[str, Optional[str]]


# -----------------------------
# Cart ownership
# -----------------------------

def retailer_cart_key(retailer: RetailerActor) -> CartKey:
    return {"retailer_id": retailer.id, "salesman_id": None}


def salesman_cart_key(db: Database, salesman: SalesmanActor, retailer_id: str) -> CartKey:
    """Cart a salesman keeps for one retailer; requires an approved connection."""
    ensure_permission(salesman, "can_place_orders")
    require_connection(db, salesman.wholesaler_id, retailer_id)
    return {"retailer_id": retailer_id, "salesman_id": salesman.id}


def get_cart(db: Database, key: CartKey) -> Optional[Dict[str, Any]]:
    return db["cart"].find_one(key)


def _ensure_cart(db: Database, key: CartKey, wholesaler_id: Optional[str]) -> None:
    fresh = Cart(retailer_id=key["retailer_id"], salesman_id=key["salesman_id"],
                 wholesaler_id=wholesaler_id).to_document()
    for field in ("retailer_id", "salesman_id", "updated_at"):
        fresh.pop(field)
    db["cart"].update_one(key, {"$setOnInsert": fresh}, upsert=True)


def _priced_line(db: Database, actor: Actor, product_id: str, quantity: int) -> Tuple[Dict[str, Any], Decimal]:
    product = get_product_doc(db, product_id)
    if isinstance(actor, SalesmanActor):
        if product["wholesaler_id"] != actor.wholesaler_id:
            raise Forbidden("Product does not belong to your wholesaler")
    else:
        require_connection(db, product["wholesaler_id"], actor.id)
    if not product.get("is_active", True):
        raise ProductUnavailable("Product is not available", product_id=product_id)
    validate_quantity(product, quantity)
    return product, unit_price_for(product, quantity)


# -----------------------------
# Mutations
# -----------------------------

def _set_line(db: Database, key: CartKey, product_id: str, quantity: int, unit_price: Decimal) -> bool:
    res = db["cart"].update_one(
        {**key, "items.product_id": product_id},
        {"$set": {
            "items.$.quantity": quantity,
            "items.$.unit_price": encode(unit_price),
            "updated_at": utcnow(),
        }},
    )
    return res.matched_count > 0


def add_item(db: Database, key: CartKey, actor: Actor, product_id: str, quantity: int) -> Dict[str, Any]:
    """Add a product or replace the quantity of the line already holding it."""
    product, unit_price = _priced_line(db, actor, product_id, quantity)
    wholesaler_id = actor.wholesaler_id if isinstance(actor, SalesmanActor) else None
    _ensure_cart(db, key, wholesaler_id)

    while not _set_line(db, key, product_id, quantity, unit_price):
        line = CartItem(product_id=product_id, quantity=quantity, unit_price=unit_price).model_dump()
        res = db["cart"].update_one(
            {**key, "items.product_id": {"$ne": product_id}},
            {"$push": {"items": encode(line)}, "$set": {"updated_at": utcnow()}},
        )
        if res.modified_count:
            break
    log.info("cart_item_added", product_id=product_id, quantity=quantity, unit_price=str(unit_price))
    return get_cart(db, key)


def update_item(db: Database, key: CartKey, actor: Actor, product_id: str, quantity: int) -> Dict[str, Any]:
    cart = get_cart(db, key)
    if not cart:
        raise NotFound("Cart not found")
    if not any(i["product_id"] == product_id for i in cart.get("items", [])):
        raise NotFound("Product not in cart", product_id=product_id)
    _, unit_price = _priced_line(db, actor, product_id, quantity)
    if not _set_line(db, key, product_id, quantity, unit_price):
        raise NotFound("Product not in cart", product_id=product_id)
    log.info("cart_item_updated", product_id=product_id, quantity=quantity, unit_price=str(unit_price))
    return get_cart(db, key)


def remove_item(db: Database, key: CartKey, product_id: str) -> Dict[str, Any]:
    cart = get_cart(db, key)
    if not cart:
        raise NotFound("Cart not found")
    db["cart"].update_one(key, {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": utcnow()}})
    return get_cart(db, key)


def remove_products(db: Database, key: CartKey, product_ids: List[str]) -> None:
    db["cart"].update_one(
        key, {"$pull": {"items": {"product_id": {"$in": product_ids}}}, "$set": {"updated_at": utcnow()}}
    )


def clear_cart(db: Database, key: CartKey) -> None:
    db["cart"].update_one(key, {"$set": {"items": [], "updated_at": utcnow()}})


# -----------------------------
# View
# -----------------------------

def view_cart(db: Database, key: CartKey) -> Dict[str, Any]:
    """Line totals at the snapshotted unit price; GST at each product's current rate."""
    cart = to_str_id(get_cart(db, key))
    if not cart or not cart.get("items"):
        return {"items": [], "total": Decimal("0"), "gst_amount": Decimal("0"), "grand_total": Decimal("0")}

    products = lookup_map(
        db, "product", [i["product_id"] for i in cart["items"]],
        ["name", "wholesaler_id", "unit_type", "gst_percentage", "stock_quantity", "moq", "image_url", "is_active"],
    )
    wholesalers = lookup_map(
        db, "wholesaler", [p["wholesaler_id"] for p in products.values()], ["business_name", "city"]
    )
    items = []
    total = gst_amount = Decimal("0")
    for item in cart["items"]:
        product = products.get(item["product_id"])
        totals = compute_totals(item["unit_price"], item["quantity"], product["gst_percentage"] if product else 0)
        if product:
            product["wholesaler"] = wholesalers.get(product["wholesaler_id"])
        items.append({**item, "product": product, "total": totals.subtotal, "gst_amount": totals.tax})
        total += totals.subtotal
        gst_amount += totals.tax
    return {"items": items, "total": total, "gst_amount": gst_amount, "grand_total": total + gst_amount}


# -----------------------------
# API Schemas
# -----------------------------

class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CartQuantityIn(BaseModel):
    quantity: int = Field(..., ge=1)


class CartLineOut(BaseModel):
    product_id: str
    quantity: int
    unit_price: Money
    total: Money
    gst_amount: Money
    product: Optional[Dict[str, Any]] = None


class CartOut(BaseModel):
    items: List[CartLineOut]
    total: Money
    gst_amount: Money
    grand_total: Money


# -----------------------------
# Retailer cart
# -----------------------------
router = APIRouter(prefix="/api/cart", tags=["Cart"])


@router.get("", response_model=CartOut)
def get_cart_endpoint(retailer: RetailerActor = Depends(require_retailer), db: Database = Depends(get_db)):
    return view_cart(db, retailer_cart_key(retailer))


@router.post("/add", response_model=CartOut)
def add_to_cart(payload: CartItemIn, retailer: RetailerActor = Depends(require_retailer),
                db: Database = Depends(get_db)):
    key = retailer_cart_key(retailer)
    add_item(db, key, retailer, payload.product_id, payload.quantity)
    return view_cart(db, key)


@router.put("/update/{product_id}", response_model=CartOut)
def update_cart_item(product_id: str, payload: CartQuantityIn,
                     retailer: RetailerActor = Depends(require_retailer), db: Database = Depends(get_db)):
    key = retailer_cart_key(retailer)
    update_item(db, key, retailer, product_id, payload.quantity)
    return view_cart(db, key)


@router.delete("/remove/{product_id}", response_model=CartOut)
def remove_from_cart(product_id: str, retailer: RetailerActor = Depends(require_retailer),
                     db: Database = Depends(get_db)):
    key = retailer_cart_key(retailer)
    remove_item(db, key, product_id)
    return view_cart(db, key)


@router.delete("/clear")
def clear(retailer: RetailerActor = Depends(require_retailer), db: Database = Depends(get_db)):
    clear_cart(db, retailer_cart_key(retailer))
    return {"message": "Cart cleared"}

"""
Order placement and the order lifecycle.

A checkout turns a cart into one order per wholesaler. Every line is
validated before anything is written; stock is then reserved with guarded
decrements so concurrent checkouts can never drive it below zero.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import (
    Actor, RetailerActor, SalesmanActor, WholesalerActor,
    get_actor, require_retailer, require_seller, require_wholesaler,
)
from carts import get_cart, remove_products, retailer_cart_key, salesman_cart_key
from config import get_settings
from connections import require_connection
from database import get_db, lookup_map, next_sequence, oid, to_str_id, utcnow
from errors import (
    Conflict, EmptyCart, Forbidden, InsufficientStock, InvalidStateTransition,
    MarketplaceError, NotFound, PartialPlacement, ProductUnavailable,
)
from pricing import compute_totals
from schemas import (
    FULFILLMENT_FLOW, PAYMENT_TERM_DAYS, Order, OrderItem, OrderStatus,
    PaymentStatus, PaymentTerms,
)

log = structlog.get_logger()

PARTY_FIELDS = ["business_name", "owner_name", "phone", "email", "city", "state", "business_address"]


# -----------------------------
# Helpers
# -----------------------------

def generate_order_number(db: Database, now: Optional[datetime] = None) -> str:
    day = (now or utcnow()).strftime("%y%m%d")
    seq = next_sequence(db, f"order:{day}")
    return f"ORD{day}{seq:04d}"


def payment_due_date(terms: str, created_at: datetime) -> datetime:
    return created_at + timedelta(days=PAYMENT_TERM_DAYS[PaymentTerms(terms)])


def _reserve(db: Database, product_id: str, quantity: int) -> bool:
    res = db["product"].update_one(
        {"_id": oid(product_id), "stock_quantity": {"$gte": quantity}},
        {"$inc": {"stock_quantity": -quantity}, "$set": {"updated_at": utcnow()}},
    )
    return res.modified_count == 1


def _release(db: Database, items: List[Dict[str, Any]]) -> None:
    for item in items:
        db["product"].update_one(
            {"_id": oid(item["product_id"])},
            {"$inc": {"stock_quantity": item["quantity"]}, "$set": {"updated_at": utcnow()}},
        )


def get_order_doc(db: Database, order_id: str) -> Dict[str, Any]:
    _id = oid(order_id)
    doc = db["order"].find_one({"_id": _id}) if _id else None
    if not doc:
        raise NotFound("Order not found")
    return doc


def can_view(order: Dict[str, Any], actor: Actor) -> bool:
    if isinstance(actor, RetailerActor):
        return order["retailer_id"] == actor.id
    return order["wholesaler_id"] == actor.wholesaler_id


# -----------------------------
# Placement
# -----------------------------

def _load_products(db: Database, lines: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    ids = [oid(line["product_id"]) for line in lines if oid(line["product_id"])]
    return {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}


def _validate_lines(lines: List[Dict[str, Any]], products: Dict[str, Dict[str, Any]]) -> None:
    for line in lines:
        product = products.get(line["product_id"])
        if not product:
            raise NotFound("Product not found", product_id=line["product_id"])
        if not product.get("is_active", True):
            raise ProductUnavailable(f"{product['name']} is not available", product_id=line["product_id"])
        if line["quantity"] > product.get("stock_quantity", 0):
            raise InsufficientStock(
                f"Insufficient stock for {product['name']}",
                product_id=line["product_id"], available=product.get("stock_quantity", 0),
            )


def _partition(lines: List[Dict[str, Any]],
               products: Dict[str, Dict[str, Any]]) -> List[Tuple[str, List[Dict[str, Any]]]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for line in lines:
        groups.setdefault(products[line["product_id"]]["wholesaler_id"], []).append(line)
    return list(groups.items())


def _order_items(lines: List[Dict[str, Any]], products: Dict[str, Dict[str, Any]]) -> List[OrderItem]:
    items = []
    for line in lines:
        product = products[line["product_id"]]
        totals = compute_totals(line["unit_price"], line["quantity"], product.get("gst_percentage", 0))
        items.append(OrderItem(
            product_id=line["product_id"],
            product_name=product["name"],
            quantity=line["quantity"],
            unit_price=line["unit_price"],
            gst_amount=totals.tax,
            total_price=totals.total,
        ))
    return items


def _place_partition(db: Database, wholesaler: Dict[str, Any], retailer_id: str,
                     items: List[OrderItem], delivery_address: str, notes: str,
                     salesman_id: Optional[str]) -> Dict[str, Any]:
    reserved: List[Dict[str, Any]] = []
    for item in items:
        if not _reserve(db, item.product_id, item.quantity):
            _release(db, reserved)
            log.warning("stock_reservation_failed", product_id=item.product_id, quantity=item.quantity)
            raise InsufficientStock(f"Insufficient stock for {item.product_name}", product_id=item.product_id)
        reserved.append({"product_id": item.product_id, "quantity": item.quantity})

    subtotal = sum((i.unit_price * i.quantity for i in items), Decimal("0"))
    gst_amount = sum((i.gst_amount for i in items), Decimal("0"))
    terms = wholesaler.get("payment_terms") or PaymentTerms.IMMEDIATE.value
    created_at = utcnow()

    try:
        for _ in range(get_settings().order_number_retries):
            order = Order(
                order_number=generate_order_number(db, created_at),
                retailer_id=retailer_id,
                wholesaler_id=str(wholesaler["_id"]),
                placed_by_salesman=salesman_id,
                items=items,
                subtotal=subtotal,
                gst_amount=gst_amount,
                total_amount=subtotal + gst_amount,
                delivery_address=delivery_address,
                payment_terms=terms,
                payment_due_date=payment_due_date(terms, created_at),
                notes=notes,
                created_at=created_at,
                updated_at=created_at,
            )
            doc = order.to_document()
            try:
                res = db["order"].insert_one(doc)
            except DuplicateKeyError:
                log.warning("order_number_collision", order_number=order.order_number)
                continue
            doc["_id"] = res.inserted_id
            log.info("order_placed", order_number=order.order_number, wholesaler_id=order.wholesaler_id,
                     retailer_id=retailer_id, total=str(order.total_amount))
            return doc
    except Exception:
        _release(db, reserved)
        raise
    _release(db, reserved)
    raise Conflict("Could not allocate an order number, retry the checkout")


def place_order(db: Database, actor: Actor, retailer_id: Optional[str] = None,
                delivery_address: Optional[str] = None, notes: Optional[str] = None) -> List[Dict[str, Any]]:
    """Turn the actor's cart into one pending order per wholesaler."""
    salesman_id = None
    if isinstance(actor, SalesmanActor):
        key = salesman_cart_key(db, actor, retailer_id)
        salesman_id = actor.id
        if notes:
            notes = f"[Order placed by Salesman: {actor.name}] {notes}"
        else:
            notes = f"[Order placed by Salesman: {actor.name}]"
    elif isinstance(actor, RetailerActor):
        key = retailer_cart_key(actor)
        retailer_id = actor.id
    else:
        raise Forbidden("Only retailers and salesmen place orders")

    cart = get_cart(db, key)
    lines = to_str_id(cart)["items"] if cart else []
    if not lines:
        raise EmptyCart("Cart is empty")

    products = _load_products(db, lines)
    _validate_lines(lines, products)
    partitions = _partition(lines, products)

    if isinstance(actor, RetailerActor) and get_settings().enforce_connection_at_checkout:
        for wholesaler_id, _ in partitions:
            require_connection(db, wholesaler_id, retailer_id)

    if not delivery_address:
        if isinstance(actor, RetailerActor):
            delivery_address = actor.business_address
        else:
            retailer = db["retailer"].find_one({"_id": oid(retailer_id)}, {"business_address": 1})
            if not retailer:
                raise NotFound("Retailer not found")
            delivery_address = retailer.get("business_address", "")

    wholesalers = {
        str(w["_id"]): w
        for w in db["wholesaler"].find({"_id": {"$in": [oid(w) for w, _ in partitions]}}, {"payment_terms": 1})
    }

    placed: List[Dict[str, Any]] = []
    try:
        for wholesaler_id, group in partitions:
            wholesaler = wholesalers.get(wholesaler_id)
            if not wholesaler:
                raise NotFound("Wholesaler not found", wholesaler_id=wholesaler_id)
            placed.append(_place_partition(
                db, wholesaler, retailer_id, _order_items(group, products),
                delivery_address or "", notes or "", salesman_id,
            ))
    except MarketplaceError as exc:
        if not placed:
            raise
        log.error("order_partially_placed", placed=[o["order_number"] for o in placed], cause=exc.kind)
        raise PartialPlacement(
            f"Some orders were placed before a failure: {exc.message}",
            placed=[o["order_number"] for o in placed], cause=exc.kind,
        )
    finally:
        if placed:
            placed_products = [i["product_id"] for o in placed for i in o["items"]]
            remove_products(db, key, placed_products)
    return placed


# -----------------------------
# Lifecycle
# -----------------------------

def cancel_order(db: Database, order_id: str, actor: Actor) -> Dict[str, Any]:
    order = get_order_doc(db, order_id)
    if not isinstance(actor, RetailerActor) or order["retailer_id"] != actor.id:
        raise Forbidden("Unauthorized")
    cancelled = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": OrderStatus.PENDING.value},
        {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not cancelled:
        raise InvalidStateTransition("Only pending orders may be cancelled", status=order["status"])
    _release(db, cancelled["items"])
    log.info("order_cancelled", order_number=cancelled["order_number"])
    return cancelled


def update_status(db: Database, order_id: str, actor: Actor, new_status: OrderStatus) -> Dict[str, Any]:
    """Move an order forward along the fulfillment flow. Only the order's wholesaler may."""
    order = get_order_doc(db, order_id)
    if not isinstance(actor, WholesalerActor) or order["wholesaler_id"] != actor.id:
        raise Forbidden("Unauthorized")
    current = OrderStatus(order["status"])
    new_status = OrderStatus(new_status)
    if current not in FULFILLMENT_FLOW or new_status not in FULFILLMENT_FLOW \
            or FULFILLMENT_FLOW.index(new_status) <= FULFILLMENT_FLOW.index(current):
        raise InvalidStateTransition(
            f"Cannot move order from {current.value} to {new_status.value}",
            status=current.value,
        )
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current.value},
        {"$set": {"status": new_status.value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise Conflict("Order changed concurrently, reload and retry")
    log.info("order_status_updated", order_number=updated["order_number"], status=new_status.value)
    return updated


def update_payment(db: Database, order_id: str, actor: WholesalerActor, payment_status: PaymentStatus,
                   payment_terms: Optional[PaymentTerms] = None) -> Dict[str, Any]:
    order = get_order_doc(db, order_id)
    if order["wholesaler_id"] != actor.id:
        raise Forbidden("Unauthorized")
    updates: Dict[str, Any] = {"payment_status": PaymentStatus(payment_status).value, "updated_at": utcnow()}
    if payment_terms:
        updates["payment_terms"] = PaymentTerms(payment_terms).value
        updates["payment_due_date"] = payment_due_date(payment_terms, order["created_at"])
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    log.info("order_payment_updated", order_number=updated["order_number"],
             payment_status=updates["payment_status"])
    return updated


def list_orders(db: Database, filt: Dict[str, Any], status: Optional[OrderStatus] = None,
                limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    if status:
        filt = {**filt, "status": OrderStatus(status).value}
    cursor = db["order"].find(filt).sort("created_at", -1).skip(offset).limit(limit)
    return [to_str_id(o) for o in cursor]


def attach_parties(db: Database, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    wholesalers = lookup_map(db, "wholesaler", [o["wholesaler_id"] for o in orders], PARTY_FIELDS)
    retailers = lookup_map(db, "retailer", [o["retailer_id"] for o in orders], PARTY_FIELDS)
    salesmen = lookup_map(db, "salesman", [o.get("placed_by_salesman") for o in orders], ["name", "phone"])
    for o in orders:
        o["wholesaler"] = wholesalers.get(o["wholesaler_id"])
        o["retailer"] = retailers.get(o["retailer_id"])
        o["salesman"] = salesmen.get(o.get("placed_by_salesman"))
    return orders


# -----------------------------
# API Schemas
# -----------------------------

class PlaceOrderIn(BaseModel):
    delivery_address: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdateIn(BaseModel):
    status: OrderStatus


class PaymentUpdateIn(BaseModel):
    payment_status: PaymentStatus
    payment_terms: Optional[PaymentTerms] = None


class OrderOut(Order):
    id: str
    wholesaler: Optional[Dict[str, Any]] = None
    retailer: Optional[Dict[str, Any]] = None
    salesman: Optional[Dict[str, Any]] = None


def orders_out(db: Database, docs: List[Dict[str, Any]]) -> List[OrderOut]:
    return [OrderOut(**o) for o in attach_parties(db, [to_str_id(d) for d in docs])]


# -----------------------------
# Orders
# -----------------------------
router = APIRouter(prefix="/api/orders", tags=["Orders"])


@router.post("/place", response_model=List[OrderOut], status_code=201)
def place(payload: PlaceOrderIn, retailer: RetailerActor = Depends(require_retailer),
          db: Database = Depends(get_db)):
    docs = place_order(db, retailer, delivery_address=payload.delivery_address, notes=payload.notes)
    return orders_out(db, docs)


@router.get("/my-orders", response_model=List[OrderOut])
def my_orders(status: Optional[OrderStatus] = None,
              limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
              retailer: RetailerActor = Depends(require_retailer), db: Database = Depends(get_db)):
    docs = list_orders(db, {"retailer_id": retailer.id}, status, limit, offset)
    return [OrderOut(**o) for o in attach_parties(db, docs)]


@router.get("/received-orders", response_model=List[OrderOut])
def received_orders(status: Optional[OrderStatus] = None,
                    limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                    actor: Actor = Depends(require_seller), db: Database = Depends(get_db)):
    docs = list_orders(db, {"wholesaler_id": actor.wholesaler_id}, status, limit, offset)
    return [OrderOut(**o) for o in attach_parties(db, docs)]


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: str, actor: Actor = Depends(get_actor), db: Database = Depends(get_db)):
    doc = get_order_doc(db, order_id)
    if not can_view(doc, actor):
        raise Forbidden("Unauthorized")
    return orders_out(db, [doc])[0]


@router.put("/{order_id}/status", response_model=OrderOut)
def change_status(order_id: str, payload: StatusUpdateIn, actor: Actor = Depends(get_actor),
                  db: Database = Depends(get_db)):
    return orders_out(db, [update_status(db, order_id, actor, payload.status)])[0]


@router.put("/{order_id}/cancel", response_model=OrderOut)
def cancel(order_id: str, actor: Actor = Depends(get_actor), db: Database = Depends(get_db)):
    return orders_out(db, [cancel_order(db, order_id, actor)])[0]


@router.put("/{order_id}/payment", response_model=OrderOut)
def change_payment(order_id: str, payload: PaymentUpdateIn,
                   wholesaler: WholesalerActor = Depends(require_wholesaler), db: Database = Depends(get_db)):
    return orders_out(db, [update_payment(db, order_id, wholesaler, payload.payment_status,
                                          payload.payment_terms)])[0]

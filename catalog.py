import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import (
    Actor, RetailerActor, SalesmanActor, WholesalerActor,
    ensure_permission, get_actor, require_permission, require_seller, require_wholesaler,
)
from connections import approved_wholesaler_ids, require_connection
from database import encode, get_db, lookup_map, oid, to_str_id, utcnow
from errors import Forbidden, InsufficientStock, NotFound, ValidationFailed
from pricing import quote
from schemas import Money, PriceTier, Product, UnitType

log = structlog.get_logger()

Seller = Union[WholesalerActor, SalesmanActor]


# -----------------------------
# Lookups
# -----------------------------

def get_product_doc(db: Database, product_id: str) -> Dict[str, Any]:
    _id = oid(product_id)
    doc = db["product"].find_one({"_id": _id}) if _id else None
    if not doc:
        raise NotFound("Product not found", product_id=product_id)
    return doc


def get_owned_product(db: Database, product_id: str, actor: Seller) -> Dict[str, Any]:
    _id = oid(product_id)
    doc = db["product"].find_one({"_id": _id, "wholesaler_id": actor.wholesaler_id}) if _id else None
    if not doc:
        raise NotFound("Product not found", product_id=product_id)
    return doc


def get_visible_product(db: Database, product_id: str, actor: Actor) -> Dict[str, Any]:
    doc = get_product_doc(db, product_id)
    if isinstance(actor, RetailerActor):
        require_connection(db, doc["wholesaler_id"], actor.id)
        if not doc.get("is_active", True):
            raise NotFound("Product not found", product_id=product_id)
    elif doc["wholesaler_id"] != actor.wholesaler_id:
        raise NotFound("Product not found", product_id=product_id)
    return doc


def visibility_filter(db: Database, actor: Actor) -> Optional[Dict[str, Any]]:
    """Mongo filter for the products ``actor`` may browse, or None for nothing."""
    if isinstance(actor, RetailerActor):
        wholesaler_ids = approved_wholesaler_ids(db, actor.id)
        if not wholesaler_ids:
            return None
        return {"wholesaler_id": {"$in": wholesaler_ids}, "is_active": True}
    return {"wholesaler_id": actor.wholesaler_id}


def list_products(db: Database, actor: Actor, category: Optional[str] = None,
                  brand: Optional[str] = None, wholesaler_id: Optional[str] = None,
                  search: Optional[str] = None, is_active: Optional[bool] = None,
                  limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    filt = visibility_filter(db, actor)
    if filt is None:
        return []
    if wholesaler_id:
        allowed = filt["wholesaler_id"]
        if isinstance(allowed, dict):
            if wholesaler_id not in allowed["$in"]:
                return []
        elif wholesaler_id != allowed:
            return []
        filt["wholesaler_id"] = wholesaler_id
    if category:
        filt["category"] = category
    if brand:
        filt["brand"] = brand
    if is_active is not None and not isinstance(actor, RetailerActor):
        filt["is_active"] = is_active
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"sku": pattern}]

    cursor = db["product"].find(filt).sort("created_at", -1).skip(offset).limit(limit)
    return [to_str_id(d) for d in cursor]


# -----------------------------
# Read-time enrichment
# -----------------------------

def attach_brand_details(db: Database, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Resolve brand description and image by ``(wholesaler_id, brand)``."""
    pairs = {(p["wholesaler_id"], p["brand"]) for p in products if p.get("brand")}
    brand_map: Dict[tuple, Dict[str, Any]] = {}
    if pairs:
        query = {"$or": [{"wholesaler_id": w, "name": n} for w, n in pairs]}
        for b in db["brand"].find(query, {"wholesaler_id": 1, "name": 1, "description": 1, "image_url": 1}):
            brand_map[(b["wholesaler_id"], b["name"])] = {
                "name": b["name"],
                "description": b.get("description", ""),
                "image_url": b.get("image_url", ""),
            }
    for p in products:
        p["brand_details"] = brand_map.get((p["wholesaler_id"], p.get("brand")))
    return products


def attach_wholesaler(db: Database, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    wholesalers = lookup_map(db, "wholesaler", [p["wholesaler_id"] for p in products],
                             ["business_name", "city", "state"])
    for p in products:
        p["wholesaler"] = wholesalers.get(p["wholesaler_id"])
    return products


# -----------------------------
# Mutations
# -----------------------------

def create_product(db: Database, actor: Seller, data: Dict[str, Any]) -> Dict[str, Any]:
    ensure_permission(actor, "can_add_products")
    product = Product(
        **data,
        wholesaler_id=actor.wholesaler_id,
        created_by_salesman=actor.id if isinstance(actor, SalesmanActor) else None,
    )
    doc = product.to_document()
    res = db["product"].insert_one(doc)
    doc["_id"] = res.inserted_id
    log.info("product_created", product_id=str(res.inserted_id), wholesaler_id=actor.wholesaler_id)
    return doc


def update_product(db: Database, product_id: str, actor: Seller, changes: Dict[str, Any]) -> Dict[str, Any]:
    ensure_permission(actor, "can_add_products")
    current = get_owned_product(db, product_id, actor)
    merged = {**to_str_id(current), **changes}
    merged.pop("id", None)
    # validate the whole resulting document, write only the change set
    try:
        product = Product.model_validate(merged)
    except PydanticValidationError as e:
        raise ValidationFailed("Invalid product data", errors=[err["msg"] for err in e.errors()])
    updates = encode(product.model_dump(include=set(changes)))
    updates["updated_at"] = utcnow()
    updates["updated_by_salesman"] = actor.id if isinstance(actor, SalesmanActor) else None
    doc = db["product"].find_one_and_update(
        {"_id": current["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    log.info("product_updated", product_id=product_id, fields=sorted(changes))
    return doc


def deactivate_product(db: Database, product_id: str, actor: Seller) -> Dict[str, Any]:
    ensure_permission(actor, "can_delete_products")
    current = get_owned_product(db, product_id, actor)
    updates: Dict[str, Any] = {"is_active": False, "updated_at": utcnow()}
    if isinstance(actor, SalesmanActor):
        updates["updated_by_salesman"] = actor.id
    doc = db["product"].find_one_and_update(
        {"_id": current["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    log.info("product_deactivated", product_id=product_id)
    return doc


def delete_product(db: Database, product_id: str, actor: Actor) -> None:
    if not isinstance(actor, WholesalerActor):
        raise Forbidden("Only the wholesaler can delete products")
    _id = oid(product_id)
    res = db["product"].delete_one({"_id": _id, "wholesaler_id": actor.id}) if _id else None
    if not res or res.deleted_count == 0:
        raise NotFound("Product not found", product_id=product_id)
    log.info("product_deleted", product_id=product_id)


def adjust_stock(db: Database, product_id: str, actor: Seller, delta: int) -> Dict[str, Any]:
    """Apply ``delta`` to stock atomically; stock never goes below zero."""
    ensure_permission(actor, "can_add_products")
    current = get_owned_product(db, product_id, actor)
    filt: Dict[str, Any] = {"_id": current["_id"]}
    if delta < 0:
        filt["stock_quantity"] = {"$gte": -delta}
    doc = db["product"].find_one_and_update(
        filt,
        {"$inc": {"stock_quantity": delta}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise InsufficientStock("Stock cannot go below zero", product_id=product_id)
    log.info("stock_adjusted", product_id=product_id, delta=delta, stock=doc["stock_quantity"])
    return doc


# -----------------------------
# API Schemas
# -----------------------------

class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: str = Field(..., min_length=1)
    subcategory: str = ""
    brand: str = ""
    sku: Optional[str] = None
    unit_type: UnitType = UnitType.PIECE
    moq: int = Field(1, ge=1)
    stock_quantity: int = Field(0, ge=0)
    pricing_tiers: List[PriceTier] = Field(..., min_length=1)
    base_price: Money = Field(..., ge=0)
    mrp: Money = Decimal("0")
    gst_percentage: Money = Field(Decimal("18"), ge=0, le=100)
    hsn_code: str = ""
    image_url: str = ""


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    unit_type: Optional[UnitType] = None
    moq: Optional[int] = None
    pricing_tiers: Optional[List[PriceTier]] = None
    base_price: Optional[Money] = None
    mrp: Optional[Money] = None
    gst_percentage: Optional[Money] = None
    hsn_code: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


class StockAdjustIn(BaseModel):
    delta: int


class PriceQuoteIn(BaseModel):
    quantity: int = Field(..., ge=1)


class PriceQuoteOut(BaseModel):
    unit_price: Money
    quantity: int
    subtotal: Money
    gst_percentage: Money
    gst_amount: Money
    total: Money


class ProductOut(Product):
    id: str
    brand_details: Optional[Dict[str, Any]] = None
    wholesaler: Optional[Dict[str, Any]] = None


def _out(db: Database, docs: List[Dict[str, Any]]) -> List[ProductOut]:
    products = attach_wholesaler(db, attach_brand_details(db, docs))
    return [ProductOut(**p) for p in products]


# -----------------------------
# Products
# -----------------------------
router = APIRouter(prefix="/api/products", tags=["Products"])


@router.get("", response_model=List[ProductOut])
def list_products_endpoint(
    q: Optional[str] = Query(None, alias="search", description="Search by name, description, sku"),
    category: Optional[str] = None,
    brand: Optional[str] = None,
    wholesaler_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: Database = Depends(get_db),
):
    docs = list_products(db, actor, category=category, brand=brand, wholesaler_id=wholesaler_id,
                         search=q, is_active=is_active, limit=limit, offset=offset)
    return _out(db, docs)


@router.get("/my/products", response_model=List[ProductOut])
def my_products(actor: Seller = Depends(require_seller), db: Database = Depends(get_db)):
    docs = list_products(db, actor, limit=1000)
    return _out(db, docs)


@router.get("/{product_id}", response_model=ProductOut)
def get_product(product_id: str, actor: Actor = Depends(get_actor), db: Database = Depends(get_db)):
    doc = get_visible_product(db, product_id, actor)
    return _out(db, [to_str_id(doc)])[0]


@router.post("", response_model=ProductOut, status_code=201)
def create_product_endpoint(payload: ProductIn, actor: Seller = Depends(require_permission("can_add_products")),
                            db: Database = Depends(get_db)):
    doc = create_product(db, actor, payload.model_dump())
    return _out(db, [to_str_id(doc)])[0]


@router.put("/{product_id}", response_model=ProductOut)
def update_product_endpoint(product_id: str, payload: ProductUpdate,
                            actor: Seller = Depends(require_permission("can_add_products")),
                            db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed("No fields to update")
    doc = update_product(db, product_id, actor, changes)
    return _out(db, [to_str_id(doc)])[0]


@router.post("/{product_id}/deactivate", response_model=ProductOut)
def deactivate_product_endpoint(product_id: str,
                                actor: Seller = Depends(require_permission("can_delete_products")),
                                db: Database = Depends(get_db)):
    doc = deactivate_product(db, product_id, actor)
    return _out(db, [to_str_id(doc)])[0]


@router.delete("/{product_id}")
def delete_product_endpoint(product_id: str, wholesaler: WholesalerActor = Depends(require_wholesaler),
                            db: Database = Depends(get_db)):
    delete_product(db, product_id, wholesaler)
    return {"message": "Product deleted successfully"}


@router.post("/{product_id}/stock", response_model=ProductOut)
def adjust_stock_endpoint(product_id: str, payload: StockAdjustIn,
                          actor: Seller = Depends(require_permission("can_add_products")),
                          db: Database = Depends(get_db)):
    doc = adjust_stock(db, product_id, actor, payload.delta)
    return _out(db, [to_str_id(doc)])[0]


@router.post("/{product_id}/calculate-price", response_model=PriceQuoteOut)
def calculate_price(product_id: str, payload: PriceQuoteIn, actor: Actor = Depends(get_actor),
                    db: Database = Depends(get_db)):
    doc = to_str_id(get_visible_product(db, product_id, actor))
    return quote(doc, payload.quantity)

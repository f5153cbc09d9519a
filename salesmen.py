from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from accounts import (
    AddRetailerIn, create_retailer, ensure_unique, find_retailer, insert_account, normalize_email,
)
from auth import SalesmanActor, WholesalerActor, ensure_permission, hash_password, require_salesman, require_wholesaler
from carts import (
    CartItemIn, CartOut, CartQuantityIn,
    add_item, clear_cart, remove_item, salesman_cart_key, update_item, view_cart,
)
from config import get_settings
from connections import find_connection, link_retailer
from database import encode, get_db, lookup_map, oid, to_str_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from orders import OrderOut, PlaceOrderIn, attach_parties, list_orders, orders_out, place_order
from schemas import ConnectionStatus, OrderStatus, RequestedBy, Salesman, SalesmanPermissions, SalesmanProfile

log = structlog.get_logger()

RETAILER_FIELDS = ["business_name", "owner_name", "phone", "email", "city", "state"]


# -----------------------------
# Salesman management
# -----------------------------

def get_own_salesman(db: Database, wholesaler_id: str, salesman_id: str) -> Dict[str, Any]:
    _id = oid(salesman_id)
    doc = db["salesman"].find_one({"_id": _id, "wholesaler_id": wholesaler_id}) if _id else None
    if not doc:
        raise NotFound("Salesman not found")
    return doc


def create_salesman(db: Database, wholesaler_id: str, name: str, phone: str, email: Optional[str] = None,
                    permissions: Optional[SalesmanPermissions] = None) -> Dict[str, Any]:
    """Create a salesman whose phone number is the temporary password."""
    email = normalize_email(email)
    ensure_unique(db, "salesman", phone, email)
    doc = Salesman(
        wholesaler_id=wholesaler_id,
        name=name,
        email=email,
        phone=phone,
        password=hash_password(phone),
        requires_password_setup=True,
        permissions=permissions,
    ).to_document()
    doc = insert_account(db, "salesman", doc)
    log.info("salesman_created", salesman_id=str(doc["_id"]), wholesaler_id=wholesaler_id)
    return doc


def update_salesman(db: Database, wholesaler_id: str, salesman_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    current = get_own_salesman(db, wholesaler_id, salesman_id)
    if "email" in changes:
        changes["email"] = normalize_email(changes["email"])
    if changes.get("email") or changes.get("phone"):
        ensure_unique(db, "salesman", changes.get("phone") or current["phone"], changes.get("email"),
                      exclude_id=salesman_id)

    updates: Dict[str, Any] = {"updated_at": utcnow()}
    for field in ("name", "email", "phone", "is_active"):
        if changes.get(field) is not None:
            updates[field] = changes[field]
    if changes.get("password"):
        updates["password"] = hash_password(changes["password"])
    # partial permission updates merge over the stored set
    for key, value in (changes.get("permissions") or {}).items():
        if value is not None:
            updates[f"permissions.{key}"] = value

    try:
        doc = db["salesman"].find_one_and_update(
            {"_id": current["_id"]}, {"$set": encode(updates)}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise Conflict("Email or phone already registered")
    log.info("salesman_updated", salesman_id=salesman_id, fields=sorted(k for k in updates if k != "updated_at"))
    return doc


def visible_connections(db: Database, salesman: SalesmanActor) -> List[Dict[str, Any]]:
    """Approved retailers of the wholesaler plus the salesman's own links, or only the latter."""
    filt: Dict[str, Any] = {"wholesaler_id": salesman.wholesaler_id}
    if salesman.can("can_view_all_retailers"):
        filt["$or"] = [{"status": ConnectionStatus.APPROVED.value}, {"salesman_id": salesman.id}]
    else:
        filt["salesman_id"] = salesman.id
    return list(db["connection"].find(filt).sort("created_at", -1))


def add_retailer_for_salesman(db: Database, salesman: SalesmanActor, data: Dict[str, Any],
                              message: Optional[str] = None) -> Dict[str, Any]:
    """Link an existing retailer or register a new one on the wholesaler's behalf."""
    ensure_permission(salesman, "can_add_retailers")
    retailer = find_retailer(db, data["phone"], data.get("email"), data.get("gst_number"))
    if retailer:
        if find_connection(db, salesman.wholesaler_id, str(retailer["_id"])):
            raise Conflict("This retailer is already connected or has a pending request")
    else:
        retailer = create_retailer(db, data)
    approved = not get_settings().salesman_retailers_require_approval
    connection = link_retailer(
        db, salesman.wholesaler_id, str(retailer["_id"]), RequestedBy.SALESMAN,
        salesman_id=salesman.id, message=message or f"Added by {salesman.name}", approved=approved,
    )
    return {"retailer": retailer, "connection": connection}


# -----------------------------
# API Schemas
# -----------------------------

class PermissionsIn(BaseModel):
    can_add_products: Optional[bool] = None
    can_delete_products: Optional[bool] = None
    can_add_brands: Optional[bool] = None
    can_add_retailers: Optional[bool] = None
    can_delete_retailers: Optional[bool] = None
    can_view_all_retailers: Optional[bool] = None
    can_place_orders: Optional[bool] = None


class SalesmanIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=5)
    email: Optional[str] = None
    permissions: Optional[SalesmanPermissions] = None


class SalesmanUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)
    is_active: Optional[bool] = None
    permissions: Optional[PermissionsIn] = None


class SalesmanOut(SalesmanProfile):
    id: str
    wholesaler: Optional[Dict[str, Any]] = None


class SalesmanRetailerIn(AddRetailerIn):
    message: Optional[str] = None


def _salesman_out(doc: Dict[str, Any]) -> SalesmanOut:
    doc = to_str_id(doc)
    doc.pop("password", None)
    return SalesmanOut(**doc)


router = APIRouter(prefix="/api/salesmen", tags=["Salesmen"])


# -----------------------------
# Salesman routes
# -----------------------------

@router.get("/profile", response_model=SalesmanOut)
def profile(salesman: SalesmanActor = Depends(require_salesman), db: Database = Depends(get_db)):
    doc = db["salesman"].find_one({"_id": oid(salesman.id)})
    out = _salesman_out(doc)
    out.wholesaler = lookup_map(db, "wholesaler", [salesman.wholesaler_id], ["business_name"]).get(
        salesman.wholesaler_id
    )
    return out


@router.get("/my-permissions", response_model=SalesmanPermissions)
def my_permissions(salesman: SalesmanActor = Depends(require_salesman)):
    return salesman.permissions


@router.post("/add-retailer", status_code=201)
def salesman_add_retailer(payload: SalesmanRetailerIn, salesman: SalesmanActor = Depends(require_salesman),
                          db: Database = Depends(get_db)):
    data = payload.model_dump(exclude={"password", "message"})
    result = add_retailer_for_salesman(db, salesman, data, payload.message)
    status = result["connection"]["status"]
    retailer = to_str_id(result["retailer"])
    return {
        "message": "Retailer added successfully" if status == ConnectionStatus.APPROVED
        else "Retailer added successfully. Pending wholesaler approval.",
        "retailer": {k: retailer.get(k) for k in ["id"] + RETAILER_FIELDS},
        "connection_status": status,
    }


@router.get("/my-retailers")
def my_retailers(salesman: SalesmanActor = Depends(require_salesman), db: Database = Depends(get_db)):
    connections = visible_connections(db, salesman)
    retailers = lookup_map(db, "retailer", [c["retailer_id"] for c in connections], RETAILER_FIELDS)
    out = []
    for c in connections:
        retailer = retailers.get(c["retailer_id"])
        if not retailer:
            continue
        out.append({
            **retailer,
            "connection_id": str(c["_id"]),
            "connection_status": c["status"],
            "added_by_me": c.get("salesman_id") == salesman.id,
        })
    return out


@router.get("/cart/{retailer_id}", response_model=CartOut)
def get_retailer_cart(retailer_id: str, salesman: SalesmanActor = Depends(require_salesman),
                      db: Database = Depends(get_db)):
    return view_cart(db, salesman_cart_key(db, salesman, retailer_id))


@router.post("/cart/{retailer_id}/add", response_model=CartOut)
def add_to_retailer_cart(retailer_id: str, payload: CartItemIn,
                         salesman: SalesmanActor = Depends(require_salesman), db: Database = Depends(get_db)):
    key = salesman_cart_key(db, salesman, retailer_id)
    add_item(db, key, salesman, payload.product_id, payload.quantity)
    return view_cart(db, key)


@router.put("/cart/{retailer_id}/update/{product_id}", response_model=CartOut)
def update_retailer_cart(retailer_id: str, product_id: str, payload: CartQuantityIn,
                         salesman: SalesmanActor = Depends(require_salesman), db: Database = Depends(get_db)):
    key = salesman_cart_key(db, salesman, retailer_id)
    update_item(db, key, salesman, product_id, payload.quantity)
    return view_cart(db, key)


@router.delete("/cart/{retailer_id}/remove/{product_id}", response_model=CartOut)
def remove_from_retailer_cart(retailer_id: str, product_id: str,
                              salesman: SalesmanActor = Depends(require_salesman), db: Database = Depends(get_db)):
    key = salesman_cart_key(db, salesman, retailer_id)
    remove_item(db, key, product_id)
    return view_cart(db, key)


@router.delete("/cart/{retailer_id}/clear")
def clear_retailer_cart(retailer_id: str, salesman: SalesmanActor = Depends(require_salesman),
                        db: Database = Depends(get_db)):
    clear_cart(db, salesman_cart_key(db, salesman, retailer_id))
    return {"message": "Cart cleared"}


@router.post("/place-order/{retailer_id}", response_model=List[OrderOut], status_code=201)
def place_for_retailer(retailer_id: str, payload: PlaceOrderIn,
                       salesman: SalesmanActor = Depends(require_salesman), db: Database = Depends(get_db)):
    docs = place_order(db, salesman, retailer_id, payload.delivery_address, payload.notes)
    return orders_out(db, docs)


@router.get("/my-orders", response_model=List[OrderOut])
def salesman_orders(status: Optional[OrderStatus] = None,
                    limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                    salesman: SalesmanActor = Depends(require_salesman), db: Database = Depends(get_db)):
    docs = list_orders(db, {"placed_by_salesman": salesman.id}, status, limit, offset)
    return [OrderOut(**o) for o in attach_parties(db, docs)]


# -----------------------------
# Wholesaler routes
# -----------------------------

@router.get("/my-salesmen", response_model=List[SalesmanOut])
def my_salesmen(wholesaler: WholesalerActor = Depends(require_wholesaler), db: Database = Depends(get_db)):
    docs = db["salesman"].find({"wholesaler_id": wholesaler.id}).sort("created_at", -1)
    return [_salesman_out(d) for d in docs]


@router.get("/pending-retailers")
def pending_retailers(wholesaler: WholesalerActor = Depends(require_wholesaler), db: Database = Depends(get_db)):
    connections = list(db["connection"].find({
        "wholesaler_id": wholesaler.id,
        "requested_by": RequestedBy.SALESMAN.value,
        "status": ConnectionStatus.PENDING.value,
    }))
    retailers = lookup_map(db, "retailer", [c["retailer_id"] for c in connections], RETAILER_FIELDS)
    salesmen = lookup_map(db, "salesman", [c.get("salesman_id") for c in connections], ["name"])
    return [
        {
            "id": str(c["_id"]),
            "retailer": retailers.get(c["retailer_id"]),
            "salesman_id": c.get("salesman_id"),
            "salesman_name": (salesmen.get(c.get("salesman_id")) or {}).get("name", "Unknown"),
            "message": c.get("message", ""),
            "created_at": c.get("created_at"),
        }
        for c in connections
    ]


@router.post("/create", response_model=SalesmanOut, status_code=201)
def create(payload: SalesmanIn, wholesaler: WholesalerActor = Depends(require_wholesaler),
           db: Database = Depends(get_db)):
    doc = create_salesman(db, wholesaler.id, payload.name, payload.phone, payload.email, payload.permissions)
    return _salesman_out(doc)


@router.put("/{salesman_id}", response_model=SalesmanOut)
def update(salesman_id: str, payload: SalesmanUpdate, wholesaler: WholesalerActor = Depends(require_wholesaler),
           db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed("No fields to update")
    return _salesman_out(update_salesman(db, wholesaler.id, salesman_id, changes))


@router.delete("/{salesman_id}")
def delete(salesman_id: str, wholesaler: WholesalerActor = Depends(require_wholesaler),
           db: Database = Depends(get_db)):
    doc = get_own_salesman(db, wholesaler.id, salesman_id)
    db["salesman"].delete_one({"_id": doc["_id"]})
    log.info("salesman_deleted", salesman_id=salesman_id)
    return {"message": "Salesman deleted successfully"}

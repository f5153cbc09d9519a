import re
from typing import List, Optional, Union

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import (
    Actor, SalesmanActor, WholesalerActor,
    get_actor, require_permission, require_seller, require_wholesaler,
)
from database import get_db, oid, to_str_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import Brand, Category

log = structlog.get_logger()

DEFAULT_CATEGORIES = [
    "Electronics",
    "Clothing & Apparel",
    "Food & Beverages",
    "Home & Kitchen",
    "Health & Beauty",
    "Stationery & Office",
    "Toys & Games",
    "Sports & Fitness",
    "Automotive",
    "Other",
]


def seed_default_categories(db: Database) -> int:
    added = 0
    for name in DEFAULT_CATEGORIES:
        doc = Category(name=name, is_default=True).to_document()
        doc.pop("name")
        res = db["category"].update_one(
            {"name": name},
            {"$setOnInsert": doc},
            upsert=True,
        )
        if res.upserted_id is not None:
            added += 1
    if added:
        log.info("categories_seeded", added=added)
    return added


# -----------------------------
# API Schemas
# -----------------------------

class BrandIn(BaseModel):
    name: str
    description: Optional[str] = ""
    image_url: Optional[str] = ""


class BrandOut(Brand):
    id: str


class CategoryIn(BaseModel):
    name: str


class CategoryOut(Category):
    id: str


def _clean_name(name: str, what: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed(f"{what} name is required")
    return name


# -----------------------------
# Brands
# -----------------------------
brands_router = APIRouter(prefix="/api/brands", tags=["Brands"])


@brands_router.get("", response_model=List[BrandOut])
def list_brands(actor: Union[WholesalerActor, SalesmanActor] = Depends(require_seller),
                db: Database = Depends(get_db)):
    docs = db["brand"].find({"wholesaler_id": actor.wholesaler_id}).sort("name", 1)
    return [BrandOut(**to_str_id(d)) for d in docs]


@brands_router.post("", response_model=BrandOut, status_code=201)
def create_brand(payload: BrandIn,
                 actor: Union[WholesalerActor, SalesmanActor] = Depends(require_permission("can_add_brands")),
                 db: Database = Depends(get_db)):
    name = _clean_name(payload.name, "Brand")
    if db["brand"].find_one({"wholesaler_id": actor.wholesaler_id, "name": name}):
        raise Conflict("Brand name already exists")
    doc = Brand(
        wholesaler_id=actor.wholesaler_id,
        name=name,
        description=payload.description or "",
        image_url=payload.image_url or "",
    ).to_document()
    try:
        res = db["brand"].insert_one(doc)
    except DuplicateKeyError:
        raise Conflict("Brand name already exists")
    doc["_id"] = res.inserted_id
    return BrandOut(**to_str_id(doc))


@brands_router.put("/{brand_id}", response_model=BrandOut)
def update_brand(brand_id: str, payload: BrandIn,
                 actor: Union[WholesalerActor, SalesmanActor] = Depends(require_permission("can_add_brands")),
                 db: Database = Depends(get_db)):
    name = _clean_name(payload.name, "Brand")
    _id = oid(brand_id)
    brand = db["brand"].find_one({"_id": _id, "wholesaler_id": actor.wholesaler_id}) if _id else None
    if not brand:
        raise NotFound("Brand not found")
    if name != brand["name"] and db["brand"].find_one(
        {"wholesaler_id": actor.wholesaler_id, "name": name, "_id": {"$ne": _id}}
    ):
        raise Conflict("Brand name already exists")
    try:
        upd = db["brand"].find_one_and_update(
            {"_id": _id},
            {"$set": {
                "name": name,
                "description": payload.description or "",
                "image_url": payload.image_url or "",
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise Conflict("Brand name already exists")
    if name != brand["name"]:
        # products reference brands by name
        db["product"].update_many(
            {"wholesaler_id": actor.wholesaler_id, "brand": brand["name"]}, {"$set": {"brand": name}}
        )
    return BrandOut(**to_str_id(upd))


@brands_router.delete("/{brand_id}")
def delete_brand(brand_id: str, wholesaler: WholesalerActor = Depends(require_wholesaler),
                 db: Database = Depends(get_db)):
    _id = oid(brand_id)
    res = db["brand"].delete_one({"_id": _id, "wholesaler_id": wholesaler.id}) if _id else None
    if not res or res.deleted_count == 0:
        raise NotFound("Brand not found")
    return {"message": "Brand deleted successfully"}


# -----------------------------
# Categories
# -----------------------------
categories_router = APIRouter(prefix="/api/categories", tags=["Categories"])


@categories_router.get("", response_model=List[CategoryOut])
def list_categories(actor: Actor = Depends(get_actor), db: Database = Depends(get_db)):
    docs = db["category"].find({}).sort([("is_default", -1), ("name", 1)])
    return [CategoryOut(**to_str_id(d)) for d in docs]


@categories_router.post("", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryIn, wholesaler: WholesalerActor = Depends(require_wholesaler),
                    db: Database = Depends(get_db)):
    name = _clean_name(payload.name, "Category")
    if db["category"].find_one({"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}):
        raise Conflict("Category already exists")
    doc = Category(name=name, created_by=wholesaler.id).to_document()
    try:
        res = db["category"].insert_one(doc)
    except DuplicateKeyError:
        raise Conflict("Category already exists")
    doc["_id"] = res.inserted_id
    return CategoryOut(**to_str_id(doc))

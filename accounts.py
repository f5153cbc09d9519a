import re
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import (
    PASSWORD_SETUP, RetailerActor, WholesalerActor,
    create_access_token, create_password_setup_token, decode_token,
    hash_password, require_retailer, require_wholesaler, verify_password,
)
from connections import auto_approve
from database import encode, get_db, oid, to_str_id, utcnow
from errors import AuthenticationFailed, Conflict, NotFound, ValidationFailed
from gst import GstVerifier, get_gst_verifier, normalize_gst_number
from schemas import (
    Money, PaymentTerms, RequestedBy, Retailer, RetailerProfile, Role,
    Wholesaler, WholesalerProfile,
)

log = structlog.get_logger()

PHONE_LOGIN = re.compile(r"^\d{10}$")
MIN_PASSWORD_LENGTH = 6
COLLECTIONS = {Role.WHOLESALER: "wholesaler", Role.RETAILER: "retailer", Role.SALESMAN: "salesman"}


# -----------------------------
# Identity helpers
# -----------------------------

def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None or not email.strip():
        return None
    return email.strip().lower()


def identity_filter(phone: str, email: Optional[str] = None,
                    gst_number: Optional[str] = None) -> Dict[str, Any]:
    clauses: List[Dict[str, Any]] = [{"phone": phone}]
    if email:
        clauses.append({"email": email})
    if gst_number:
        clauses.append({"gst_number": gst_number})
    return {"$or": clauses}


def ensure_unique(db: Database, collection: str, phone: str, email: Optional[str] = None,
                  gst_number: Optional[str] = None, exclude_id: Optional[str] = None) -> None:
    filt = identity_filter(phone, email, gst_number)
    if exclude_id:
        filt["_id"] = {"$ne": oid(exclude_id)}
    if db[collection].find_one(filt, {"_id": 1}):
        raise Conflict("Email, phone, or GST number already registered")


def check_gst(verifier: GstVerifier, gst_number: Optional[str]) -> None:
    """Reject a GST number the verifier positively identifies as invalid."""
    if not gst_number:
        return
    result = verifier.verify(gst_number)
    if not result.is_valid:
        raise ValidationFailed(result.error or "Invalid GST number", isValid=False)


def insert_account(db: Database, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
    try:
        res = db[collection].insert_one(doc)
    except DuplicateKeyError:
        raise Conflict("Email, phone, or GST number already registered")
    doc["_id"] = res.inserted_id
    return doc


def create_wholesaler(db: Database, data: Dict[str, Any], password: str) -> Dict[str, Any]:
    data = {**data, "email": normalize_email(data.get("email")),
            "gst_number": normalize_gst_number(data.get("gst_number"))}
    ensure_unique(db, "wholesaler", data["phone"], data["email"], data["gst_number"])
    doc = Wholesaler(**data, password=hash_password(password)).to_document()
    doc = insert_account(db, "wholesaler", doc)
    log.info("wholesaler_registered", wholesaler_id=str(doc["_id"]))
    return doc


def create_retailer(db: Database, data: Dict[str, Any], password: Optional[str] = None,
                    is_verified: bool = False) -> Dict[str, Any]:
    """Register a retailer.

    Without ``password`` the phone number becomes a temporary password and
    the retailer must choose their own on first login.
    """
    data = {**data, "email": normalize_email(data.get("email")),
            "gst_number": normalize_gst_number(data.get("gst_number"))}
    ensure_unique(db, "retailer", data["phone"], data["email"], data["gst_number"])
    doc = Retailer(
        **data,
        password=hash_password(password or data["phone"]),
        requires_password_setup=password is None,
        is_verified=is_verified,
    ).to_document()
    doc = insert_account(db, "retailer", doc)
    log.info("retailer_registered", retailer_id=str(doc["_id"]), temporary_password=password is None)
    return doc


def find_retailer(db: Database, phone: str, email: Optional[str] = None,
                  gst_number: Optional[str] = None) -> Optional[Dict[str, Any]]:
    return db["retailer"].find_one(
        identity_filter(phone, normalize_email(email), normalize_gst_number(gst_number))
    )


def user_summary(doc: Dict[str, Any], role: Role) -> Dict[str, Any]:
    out = {"id": str(doc["_id"]), "email": doc.get("email"), "phone": doc.get("phone"), "user_type": role.value}
    if role == Role.SALESMAN:
        out.update(name=doc.get("name"), wholesaler_id=doc.get("wholesaler_id"))
    else:
        out.update(business_name=doc.get("business_name"), owner_name=doc.get("owner_name"),
                   gst_number=doc.get("gst_number"))
    return out


# -----------------------------
# Login & password setup
# -----------------------------

def find_login_user(db: Database, role: Role, login: str) -> Optional[Dict[str, Any]]:
    login = login.strip()
    filt: Dict[str, Any] = {"phone": login} if PHONE_LOGIN.match(login) else {"email": login.lower()}
    if role == Role.SALESMAN:
        filt["is_active"] = True
    return db[COLLECTIONS[role]].find_one(filt)


def login(db: Database, role: Role, login_id: str, password: str) -> Dict[str, Any]:
    user = find_login_user(db, role, login_id)
    if not user or not verify_password(password, user["password"]):
        log.info("login_failed", user_type=role.value)
        raise AuthenticationFailed("Invalid credentials")
    user_id = str(user["_id"])
    if user.get("requires_password_setup"):
        return {
            "requires_password_setup": True,
            "temp_token": create_password_setup_token(user_id, role.value),
            "user_type": role.value,
            "message": "Please set your password to continue",
        }
    log.info("login_succeeded", user_id=user_id, user_type=role.value)
    return {
        "message": "Login successful",
        "token": create_access_token(user_id, role.value),
        "user": user_summary(user, role),
    }


def set_password(db: Database, temp_token: str, new_password: str) -> Dict[str, Any]:
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    payload = decode_token(temp_token)
    if payload.get("purpose") != PASSWORD_SETUP:
        raise AuthenticationFailed("Invalid token type")
    role = Role(payload["role"])
    if role == Role.WHOLESALER:
        raise ValidationFailed("Invalid user type")
    user = db[COLLECTIONS[role]].find_one_and_update(
        {"_id": oid(payload["sub"]), "requires_password_setup": True},
        {"$set": {
            "password": hash_password(new_password),
            "requires_password_setup": False,
            "updated_at": utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        if db[COLLECTIONS[role]].find_one({"_id": oid(payload["sub"])}, {"_id": 1}):
            raise ValidationFailed("Password already set")
        raise NotFound("User not found")
    log.info("password_set", user_id=payload["sub"], user_type=role.value)
    return {
        "message": "Password set successfully",
        "token": create_access_token(payload["sub"], role.value),
        "user": user_summary(user, role),
    }


# -----------------------------
# API Schemas
# -----------------------------

class WholesalerSignupIn(BaseModel):
    business_name: str = Field(..., min_length=1)
    owner_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: str = Field(..., min_length=5)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    gst_number: Optional[str] = None
    business_address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    business_type: str = "wholesaler"


class RetailerSignupIn(BaseModel):
    business_name: str = Field(..., min_length=1)
    owner_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: str = Field(..., min_length=5)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    gst_number: Optional[str] = None
    business_address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""


class AddRetailerIn(RetailerSignupIn):
    password: Optional[str] = Field(None, min_length=MIN_PASSWORD_LENGTH)


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1, description="Email or 10 digit phone number")
    password: str
    user_type: Role


class SetPasswordIn(BaseModel):
    temp_token: str
    new_password: str


class WholesalerUpdate(BaseModel):
    business_name: Optional[str] = None
    owner_name: Optional[str] = None
    business_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    minimum_order_value: Optional[Money] = Field(None, ge=0)
    payment_terms: Optional[PaymentTerms] = None


class WholesalerOut(WholesalerProfile):
    id: str


class RetailerOut(RetailerProfile):
    id: str


def _signup_response(doc: Dict[str, Any], role: Role) -> Dict[str, Any]:
    return {
        "message": f"{role.value.capitalize()} registered successfully",
        "token": create_access_token(str(doc["_id"]), role.value),
        "user": user_summary(doc, role),
    }


# -----------------------------
# Auth
# -----------------------------
auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


@auth_router.post("/wholesaler/signup", status_code=201)
def wholesaler_signup(payload: WholesalerSignupIn, db: Database = Depends(get_db),
                      verifier: GstVerifier = Depends(get_gst_verifier)):
    data = payload.model_dump(exclude={"password"})
    check_gst(verifier, normalize_gst_number(data.get("gst_number")))
    doc = create_wholesaler(db, data, payload.password)
    return _signup_response(doc, Role.WHOLESALER)


@auth_router.post("/retailer/signup", status_code=201)
def retailer_signup(payload: RetailerSignupIn, db: Database = Depends(get_db),
                    verifier: GstVerifier = Depends(get_gst_verifier)):
    data = payload.model_dump(exclude={"password"})
    check_gst(verifier, normalize_gst_number(data.get("gst_number")))
    doc = create_retailer(db, data, payload.password)
    return _signup_response(doc, Role.RETAILER)


@auth_router.post("/login")
def login_endpoint(payload: LoginIn, db: Database = Depends(get_db)):
    return login(db, payload.user_type, payload.email, payload.password)


@auth_router.post("/set-password")
def set_password_endpoint(payload: SetPasswordIn, db: Database = Depends(get_db)):
    return set_password(db, payload.temp_token, payload.new_password)


# -----------------------------
# Wholesalers
# -----------------------------
wholesalers_router = APIRouter(prefix="/api/wholesalers", tags=["Wholesalers"])

PUBLIC_PROJECTION = {"password": 0}


@wholesalers_router.get("", response_model=List[WholesalerOut])
def list_wholesalers(
    city: Optional[str] = None,
    state: Optional[str] = None,
    business_type: Optional[str] = None,
    q: Optional[str] = Query(None, alias="search", description="Search by business or owner name"),
    verified_only: bool = False,
    db: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {}
    if verified_only:
        filt["is_verified"] = True
    if city:
        filt["city"] = {"$regex": re.escape(city), "$options": "i"}
    if state:
        filt["state"] = state
    if business_type:
        filt["business_type"] = business_type
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        filt["$or"] = [{"business_name": pattern}, {"owner_name": pattern}]
    docs = db["wholesaler"].find(filt, PUBLIC_PROJECTION).sort("business_name", 1)
    return [WholesalerOut(**to_str_id(d)) for d in docs]


@wholesalers_router.put("/me", response_model=WholesalerOut)
def update_me(payload: WholesalerUpdate, wholesaler: WholesalerActor = Depends(require_wholesaler),
              db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No fields to update")
    doc = db["wholesaler"].find_one_and_update(
        {"_id": oid(wholesaler.id)},
        {"$set": {**encode(changes), "updated_at": utcnow()}},
        projection=PUBLIC_PROJECTION,
        return_document=ReturnDocument.AFTER,
    )
    return WholesalerOut(**to_str_id(doc))


@wholesalers_router.get("/{wholesaler_id}", response_model=WholesalerOut)
def get_wholesaler(wholesaler_id: str, db: Database = Depends(get_db)):
    _id = oid(wholesaler_id)
    doc = db["wholesaler"].find_one({"_id": _id}, PUBLIC_PROJECTION) if _id else None
    if not doc:
        raise NotFound("Wholesaler not found")
    return WholesalerOut(**to_str_id(doc))


@wholesalers_router.post("/add-retailer", status_code=201)
def add_retailer(payload: AddRetailerIn, wholesaler: WholesalerActor = Depends(require_wholesaler),
                 db: Database = Depends(get_db)):
    data = payload.model_dump(exclude={"password"})
    doc = create_retailer(db, data, payload.password, is_verified=True)
    connection = auto_approve(db, wholesaler.id, str(doc["_id"]), RequestedBy.WHOLESALER,
                              message="Retailer added by wholesaler")
    return {
        "message": "Retailer added successfully and connected",
        "retailer": RetailerOut(**to_str_id(doc)),
        "connection_status": connection["status"],
    }


# -----------------------------
# Retailers
# -----------------------------
retailers_router = APIRouter(prefix="/api/retailers", tags=["Retailers"])


@retailers_router.get("/me", response_model=RetailerOut)
def retailer_profile(retailer: RetailerActor = Depends(require_retailer), db: Database = Depends(get_db)):
    doc = db["retailer"].find_one({"_id": oid(retailer.id)}, PUBLIC_PROJECTION)
    if not doc:
        raise NotFound("Retailer not found")
    return RetailerOut(**to_str_id(doc))

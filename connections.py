import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from pymongo import ReturnDocument

from auth import (
    Actor, RetailerActor, WholesalerActor,
    get_actor, require_retailer, require_wholesaler,
)
from database import get_db, lookup_map, oid, to_str_id, utcnow
from errors import Conflict, Forbidden, InvalidStateTransition, NotConnected, NotFound
from schemas import Connection, ConnectionStatus, RequestedBy

log = structlog.get_logger()

PARTY_FIELDS = ["business_name", "owner_name", "email", "phone", "city", "state"]


# -----------------------------
# Graph queries
# -----------------------------

def find_connection(db: Database, wholesaler_id: str, retailer_id: str) -> Optional[Dict[str, Any]]:
    return db["connection"].find_one({"wholesaler_id": wholesaler_id, "retailer_id": retailer_id})


def connection_status(db: Database, wholesaler_id: str, retailer_id: str) -> str:
    doc = find_connection(db, wholesaler_id, retailer_id)
    return doc["status"] if doc else "none"


def is_connected(db: Database, wholesaler_id: str, retailer_id: str) -> bool:
    return connection_status(db, wholesaler_id, retailer_id) == ConnectionStatus.APPROVED


def require_connection(db: Database, wholesaler_id: str, retailer_id: str) -> None:
    if not is_connected(db, wholesaler_id, retailer_id):
        raise NotConnected(
            "Retailer is not connected to this wholesaler",
            wholesaler_id=wholesaler_id, retailer_id=retailer_id,
        )


def approved_wholesaler_ids(db: Database, retailer_id: str) -> List[str]:
    cursor = db["connection"].find(
        {"retailer_id": retailer_id, "status": ConnectionStatus.APPROVED.value}, {"wholesaler_id": 1}
    )
    return [c["wholesaler_id"] for c in cursor]


def _get_connection(db: Database, connection_id: str) -> Dict[str, Any]:
    _id = oid(connection_id)
    doc = db["connection"].find_one({"_id": _id}) if _id else None
    if not doc:
        raise NotFound("Connection not found")
    return doc


# -----------------------------
# Graph mutations
# -----------------------------

def request_connection(db: Database, retailer_id: str, wholesaler_id: str,
                       message: str = "") -> Tuple[Dict[str, Any], bool]:
    """Create a pending request. Returns ``(connection, created)``.

    A rejected connection is reopened in place rather than duplicated.
    """
    _wid = oid(wholesaler_id)
    if not _wid or not db["wholesaler"].find_one({"_id": _wid}, {"_id": 1}):
        raise NotFound("Wholesaler not found")

    existing = find_connection(db, wholesaler_id, retailer_id)
    if existing:
        if existing["status"] == ConnectionStatus.APPROVED:
            raise Conflict("You are already connected with this wholesaler")
        if existing["status"] == ConnectionStatus.PENDING:
            raise Conflict("Connection request already pending")
        reopened = db["connection"].find_one_and_update(
            {"_id": existing["_id"], "status": ConnectionStatus.REJECTED.value},
            {"$set": {
                "status": ConnectionStatus.PENDING.value,
                "requested_by": RequestedBy.RETAILER.value,
                "salesman_id": None,
                "message": message or "",
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if not reopened:
            raise Conflict("Connection changed concurrently, retry the request")
        log.info("connection_reopened", connection_id=str(existing["_id"]), wholesaler_id=wholesaler_id)
        return reopened, False

    doc = Connection(
        wholesaler_id=wholesaler_id,
        retailer_id=retailer_id,
        requested_by=RequestedBy.RETAILER,
        message=message or "",
    ).to_document()
    try:
        res = db["connection"].insert_one(doc)
    except DuplicateKeyError:
        raise Conflict("Connection already exists")
    doc["_id"] = res.inserted_id
    log.info("connection_requested", connection_id=str(res.inserted_id), wholesaler_id=wholesaler_id)
    return doc, True


def link_retailer(db: Database, wholesaler_id: str, retailer_id: str, requested_by: RequestedBy,
                  salesman_id: Optional[str] = None, message: str = "",
                  approved: bool = True) -> Dict[str, Any]:
    """Connect a retailer created by a wholesaler or salesman.

    An existing connection for the pair is upgraded rather than duplicated.
    """
    status = ConnectionStatus.APPROVED if approved else ConnectionStatus.PENDING
    existing = find_connection(db, wholesaler_id, retailer_id)
    if existing:
        if existing["status"] == ConnectionStatus.APPROVED:
            return existing
        return db["connection"].find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": {"status": status.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    doc = Connection(
        wholesaler_id=wholesaler_id,
        retailer_id=retailer_id,
        salesman_id=salesman_id,
        status=status,
        requested_by=requested_by,
        message=message,
    ).to_document()
    try:
        res = db["connection"].insert_one(doc)
    except DuplicateKeyError:
        raise Conflict("Connection already exists")
    doc["_id"] = res.inserted_id
    log.info("connection_linked", wholesaler_id=wholesaler_id, retailer_id=retailer_id, status=status.value)
    return doc


def auto_approve(db: Database, wholesaler_id: str, retailer_id: str, created_by: RequestedBy,
                 salesman_id: Optional[str] = None, message: str = "") -> Dict[str, Any]:
    return link_retailer(db, wholesaler_id, retailer_id, created_by, salesman_id, message, approved=True)


def _decide(db: Database, connection_id: str, actor: Actor, status: ConnectionStatus) -> Dict[str, Any]:
    doc = _get_connection(db, connection_id)
    if not isinstance(actor, WholesalerActor) or doc["wholesaler_id"] != actor.id:
        raise Forbidden("Unauthorized")
    if status == ConnectionStatus.APPROVED and doc["status"] == ConnectionStatus.APPROVED:
        raise InvalidStateTransition("Connection already approved")
    updated = db["connection"].find_one_and_update(
        {"_id": doc["_id"]},
        {"$set": {"status": status.value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    log.info("connection_decided", connection_id=connection_id, status=status.value)
    return updated


def approve_connection(db: Database, connection_id: str, actor: Actor) -> Dict[str, Any]:
    return _decide(db, connection_id, actor, ConnectionStatus.APPROVED)


def reject_connection(db: Database, connection_id: str, actor: Actor) -> Dict[str, Any]:
    return _decide(db, connection_id, actor, ConnectionStatus.REJECTED)


def can_delete(doc: Dict[str, Any], actor: Actor) -> bool:
    if isinstance(actor, WholesalerActor):
        return doc["wholesaler_id"] == actor.id
    if isinstance(actor, RetailerActor):
        return doc["retailer_id"] == actor.id
    return doc["wholesaler_id"] == actor.wholesaler_id and actor.can("can_delete_retailers")


def delete_connection(db: Database, connection_id: str, actor: Actor) -> None:
    doc = _get_connection(db, connection_id)
    if not can_delete(doc, actor):
        raise Forbidden("You do not have permission to delete this connection")
    db["connection"].delete_one({"_id": doc["_id"]})
    log.info("connection_deleted", connection_id=connection_id)


# -----------------------------
# API
# -----------------------------

class ConnectionRequestIn(BaseModel):
    wholesaler_id: str
    message: Optional[str] = None


class ConnectionOut(Connection):
    id: str
    wholesaler: Optional[Dict[str, Any]] = None
    retailer: Optional[Dict[str, Any]] = None


def _out(doc: Dict[str, Any], **extra: Any) -> ConnectionOut:
    return ConnectionOut(**to_str_id(doc), **extra)


router = APIRouter(prefix="/api/connections", tags=["Connections"])


@router.post("/request", response_model=ConnectionOut)
def request(payload: ConnectionRequestIn, response: Response,
            retailer: RetailerActor = Depends(require_retailer), db: Database = Depends(get_db)):
    doc, created = request_connection(db, retailer.id, payload.wholesaler_id, payload.message or "")
    response.status_code = 201 if created else 200
    return _out(doc)


@router.get("/wholesaler/requests", response_model=List[ConnectionOut])
def wholesaler_requests(status: Optional[ConnectionStatus] = None,
                        wholesaler: WholesalerActor = Depends(require_wholesaler),
                        db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {"wholesaler_id": wholesaler.id}
    if status:
        filt["status"] = status.value
    docs = list(db["connection"].find(filt).sort("created_at", -1))
    retailers = lookup_map(db, "retailer", [d["retailer_id"] for d in docs], PARTY_FIELDS)
    return [_out(d, retailer=retailers.get(d["retailer_id"])) for d in docs]


@router.get("/retailer/requests", response_model=List[ConnectionOut])
def retailer_requests(status: Optional[ConnectionStatus] = None,
                      retailer: RetailerActor = Depends(require_retailer),
                      db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {"retailer_id": retailer.id}
    if status:
        filt["status"] = status.value
    docs = list(db["connection"].find(filt).sort("created_at", -1))
    wholesalers = lookup_map(db, "wholesaler", [d["wholesaler_id"] for d in docs], PARTY_FIELDS)
    return [_out(d, wholesaler=wholesalers.get(d["wholesaler_id"])) for d in docs]


@router.put("/{connection_id}/approve", response_model=ConnectionOut)
def approve(connection_id: str, actor: Actor = Depends(get_actor), db: Database = Depends(get_db)):
    return _out(approve_connection(db, connection_id, actor))


@router.put("/{connection_id}/reject", response_model=ConnectionOut)
def reject(connection_id: str, actor: Actor = Depends(get_actor), db: Database = Depends(get_db)):
    return _out(reject_connection(db, connection_id, actor))


@router.delete("/{connection_id}")
def delete(connection_id: str, actor: Actor = Depends(get_actor), db: Database = Depends(get_db)):
    delete_connection(db, connection_id, actor)
    return {"message": "Connection removed successfully"}


@router.get("/wholesalers/search")
def search_wholesalers(search: Optional[str] = Query(None, description="Search by name, city, state"),
                       retailer: RetailerActor = Depends(require_retailer),
                       db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [
            {"business_name": pattern},
            {"owner_name": pattern},
            {"city": pattern},
            {"state": pattern},
        ]
    projection = {f: 1 for f in PARTY_FIELDS}
    docs = list(db["wholesaler"].find(filt, projection).sort("business_name", 1).limit(50))
    statuses = {
        c["wholesaler_id"]: c["status"]
        for c in db["connection"].find({"retailer_id": retailer.id}, {"wholesaler_id": 1, "status": 1})
    }
    out = []
    for d in docs:
        td = to_str_id(d)
        td["connection_status"] = statuses.get(td["id"], "none")
        out.append(td)
    return out


@router.get("/check/{wholesaler_id}")
def check(wholesaler_id: str, retailer: RetailerActor = Depends(require_retailer),
          db: Database = Depends(get_db)):
    doc = find_connection(db, wholesaler_id, retailer.id)
    if not doc:
        return {"status": "none"}
    return {"status": doc["status"], "connection": _out(doc)}

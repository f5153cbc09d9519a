import re
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx
import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from config import get_settings
from errors import UpstreamUnavailable, ValidationFailed

log = structlog.get_logger()

GST_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$")
UNAVAILABLE_MESSAGE = "GST verification service temporarily unavailable. You can continue with manual entry."


class GstVerification(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_valid: bool
    gst_number: Optional[str] = None
    business_name: str = ""
    owner_name: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    status: str = ""
    registration_date: str = ""
    error: Optional[str] = None


def normalize_gst_number(gst_number: Optional[str]) -> Optional[str]:
    if gst_number is None or not gst_number.strip():
        return None
    return gst_number.strip().upper()


def is_valid_format(gst_number: str) -> bool:
    return bool(GST_PATTERN.match(gst_number))


def _parse_result(gst_number: str, result: Dict[str, Any]) -> GstVerification:
    data = result.get("source_output") or result.get("extraction_output") or result
    address, city, state, pincode = "", "", "", ""
    place = (data.get("principal_place_of_business_fields") or {}).get("principal_place_of_business_address")
    if place:
        parts = [
            place.get("door_number"), place.get("floor_number"), place.get("building_name"),
            place.get("building_number"), place.get("street"), place.get("location"),
            place.get("dst"), place.get("state_name"), place.get("pincode"),
        ]
        address = ", ".join(str(p) for p in parts if p)
        city = place.get("dst") or place.get("location") or ""
        state = place.get("state_name") or ""
        pincode = str(place.get("pincode") or "")
    elif data.get("address"):
        address = data["address"]

    trade_name = data.get("trade_name") or data.get("tradeName")
    legal_name = data.get("legal_name") or data.get("legalName")
    return GstVerification(
        is_valid=True,
        gst_number=gst_number,
        business_name=trade_name or legal_name or "",
        owner_name=legal_name or trade_name or "",
        address=address,
        city=city,
        state=state,
        pincode=pincode,
        status=data.get("gstin_status") or data.get("status") or data.get("sts") or "Active",
        registration_date=data.get("date_of_registration") or data.get("registrationDate") or data.get("rgdt") or "",
    )


class GstVerifier:
    """Client for the third-party GST certificate lookup.

    ``verify`` never raises for transport problems: an unreachable or
    misconfigured upstream degrades to ``is_valid=True`` with an advisory
    ``error`` so registration can continue with manually entered details.
    """

    def __init__(self, url: str, api_key: str, host: str, timeout: float,
                 transport: Optional[httpx.BaseTransport] = None) -> None:
        self.url = url
        self.api_key = api_key
        self.host = host
        self.timeout = timeout
        self.transport = transport

    def _lookup(self, gst_number: str) -> Dict[str, Any]:
        if not self.api_key:
            raise UpstreamUnavailable("GST verification is not configured")
        payload = {"task_id": str(uuid4()), "group_id": str(uuid4()), "data": {"gstin": gst_number}}
        headers = {"x-rapidapi-key": self.api_key, "x-rapidapi-host": self.host}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(str(e))

    def verify(self, gst_number: str) -> GstVerification:
        gst_number = normalize_gst_number(gst_number) or ""
        if not is_valid_format(gst_number):
            return GstVerification(is_valid=False, gst_number=gst_number,
                                   error="Invalid GST format. Format: 22AAAAA0000A1Z5")
        try:
            body = self._lookup(gst_number)
        except UpstreamUnavailable as e:
            log.warning("gst_verification_unavailable", gst_number=gst_number, error=e.message)
            return GstVerification(is_valid=True, gst_number=gst_number, error=UNAVAILABLE_MESSAGE)

        result = body.get("result") if isinstance(body, dict) else None
        if not result:
            return GstVerification(is_valid=False, gst_number=gst_number,
                                   error="GST number not found or invalid")
        return _parse_result(gst_number, result)


def get_gst_verifier() -> GstVerifier:
    settings = get_settings()
    return GstVerifier(
        url=settings.gst_api_url,
        api_key=settings.gst_api_key,
        host=settings.gst_api_host,
        timeout=settings.gst_timeout_seconds,
    )


# -----------------------------
# API
# -----------------------------

class GstVerifyIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    gst_number: str


router = APIRouter(prefix="/api/gst", tags=["GST"])


@router.post("/verify", response_model=GstVerification, response_model_by_alias=True)
def verify_gst(payload: GstVerifyIn, verifier: GstVerifier = Depends(get_gst_verifier)):
    gst_number = normalize_gst_number(payload.gst_number)
    if not gst_number:
        raise ValidationFailed("GST number is required")
    if not is_valid_format(gst_number):
        raise ValidationFailed("Invalid GST format. Format: 22AAAAA0000A1Z5", isValid=False)
    return verifier.verify(gst_number)

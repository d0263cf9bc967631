"""Courier scan normalisation.

Couriers describe progress in free text ("Out For Delivery", "Dispatched",
"Undelivered - customer not available", "RTO Initiated"). Rules are checked
in order; the first match wins, so return-to-origin and failed-attempt
phrases are recognised before the plain "delivered" they often contain.
"""

import re
from datetime import datetime

from protean.exceptions import ValidationError

from orderflow.utils.timestamps import from_iso

_RULES = [
    (re.compile(r"\b(rto|rt-o|dto)\b|return(ed)?\s+to\s+origin", re.I), "rto"),
    (re.compile(r"attempt|undelivered|not\s+delivered|\bndr\b|customer\s+not\s+available", re.I), "ndr"),
    (re.compile(r"\bdelivered\b|^dl$", re.I), "delivered"),
    (re.compile(r"out[-_ ]for[-_ ]delivery|dispatched", re.I), "out_for_delivery"),
    (re.compile(r"in[-_ ]transit|picked[-_ ]?up|reached|^ud$", re.I), "in_transit"),
]


def normalize_scan_status(raw_status: str | None) -> str | None:
    """Map a courier status to a Shipment status, or None if it carries no progress."""
    text = (raw_status or "").strip()
    for pattern, status in _RULES:
        if pattern.search(text):
            return status
    return None


def parse_scan_time(value) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        parsed = from_iso(str(value)) if value else None
    except ValueError as exc:
        raise ValidationError({"timestamp": [f"Unrecognised scan timestamp: {value}"]}) from exc
    if parsed is None:
        raise ValidationError({"timestamp": ["Scan timestamp is required"]})
    return parsed


def extract_scan(payload: dict) -> dict:
    """Read a scan push in either the flat shape or Delhivery's nested one."""
    shipment = payload.get("Shipment")
    if isinstance(shipment, dict):
        status = shipment.get("Status") or {}
        return {
            "waybill": shipment.get("AWB"),
            "status": status.get("Status"),
            "timestamp": status.get("StatusDateTime"),
            "location": status.get("StatusLocation"),
        }
    return {
        "waybill": payload.get("waybill") or payload.get("awb"),
        "status": payload.get("status") or payload.get("scan_type"),
        "timestamp": payload.get("timestamp") or payload.get("scan_time"),
        "location": payload.get("location"),
    }

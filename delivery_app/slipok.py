"""
Client for the SlipOK bank-slip verification API and helpers for reading
the transfer metadata it returns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

import requests

from .utils import last4_digits

REQUEST_TIMEOUT = 20

TRANS_REF_KEYS = ("transRef", "trans_ref", "transactionRef", "transaction_ref", "txnRef")
TRANS_DATE_KEYS = ("transDate", "trans_date", "transactionDate", "txnDate", "date")
TIMESTAMP_KEYS = (
    "transTimestamp",
    "trans_timestamp",
    "transactionTimestamp",
    "transaction_datetime",
    "transactionDateTime",
    "transferDateTime",
    "timestamp",
    "paid_at",
    "paidAt",
)
TIME_FALLBACK_KEYS = ("transTime", "trans_time", "transactionTime")
RECEIVER_KEYS = (
    "receiverAccount",
    "receiver_account",
    "receiverProxy",
    "receiver_proxy",
    "destinationAccount",
    "destination_account",
    "accountTo",
    "account_to",
    "to_account",
    "toAccount",
)
NESTED_RECEIVER_KEYS = ("account", "accountNumber", "account_no", "proxy", "proxyId", "id", "number")

_OFFSET_SUFFIX = re.compile(r"(Z|[+\-]\d{2}:?\d{2})$")


@dataclass
class SlipVerifyResult:
    ok: bool
    code: str = "OK"
    message: str = "success"
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SlipMeta:
    trans_ref: Optional[str] = None
    trans_date: Optional[str] = None
    trans_timestamp: Optional[str] = None
    receiver_last4: Optional[str] = None


def verify_slip(
    file_bytes: bytes,
    filename: str,
    amount: float,
    url: str | None,
    token: str | None,
) -> SlipVerifyResult:
    """Upload a slip image and map the provider's answer onto our error codes."""
    if not url or not token:
        return SlipVerifyResult(False, "CONFIG_MISSING", "SlipOK configuration missing")

    try:
        response = requests.post(
            url,
            headers={"x-authorization": token},
            data={"amount": str(amount)},
            files={"files": (filename or "slip.jpg", file_bytes)},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        return SlipVerifyResult(False, "INTERNAL_ERROR", f"Slip verification failed: {exc}")

    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    if data.get("success") is True or nested.get("success") is True:
        return SlipVerifyResult(True, payload=data)

    code = data.get("code")
    if isinstance(code, int) and not isinstance(code, bool):
        if code == 1013:
            return SlipVerifyResult(False, "SLIP_AMOUNT_MISMATCH", "Amount does not match slip", data)
        if code == 1000:
            return SlipVerifyResult(False, "INVALID_SLIP", "Slip data incomplete", data)
    return SlipVerifyResult(False, "INVALID_SLIP", data.get("message") or "Slip verify failed", data)


def _pick_string(source: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        candidate = source.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def normalize_timestamp(value: Any) -> Optional[str]:
    """Normalise provider timestamps to ISO-8601 with an explicit offset."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return _epoch_iso(float(value) / 1000)

    raw = str(value).strip()
    if not raw:
        return None
    if re.fullmatch(r"\d{10}", raw):
        return _epoch_iso(int(raw))
    if re.fullmatch(r"\d{13}", raw):
        return _epoch_iso(int(raw) / 1000)
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", raw):
        return f"{raw}T00:00:00.000Z"
    if " " in raw and "T" not in raw:
        raw = raw.replace(" ", "T", 1)
    if not _OFFSET_SUFFIX.search(raw):
        raw = f"{raw}Z"
    return raw


def _epoch_iso(seconds: float) -> str:
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def extract_slip_meta(payload: Any) -> SlipMeta:
    """Pull the transfer reference, date, time and receiver account out of a SlipOK payload."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        payload = payload["data"]
    if not isinstance(payload, dict):
        return SlipMeta()

    trans_timestamp = _pick_string(payload, TIMESTAMP_KEYS)
    if trans_timestamp is None:
        for key in TIME_FALLBACK_KEYS:
            if payload.get(key) is not None:
                trans_timestamp = payload[key]
                break

    receiver = _pick_string(payload, RECEIVER_KEYS)
    if not receiver:
        nested = payload.get("receiver") or payload.get("destination")
        if isinstance(nested, dict):
            receiver = _pick_string(nested, NESTED_RECEIVER_KEYS)
            if not receiver:
                for value in nested.values():
                    if isinstance(value, str) and last4_digits(value):
                        receiver = value
                        break

    return SlipMeta(
        trans_ref=_pick_string(payload, TRANS_REF_KEYS),
        trans_date=_pick_string(payload, TRANS_DATE_KEYS),
        trans_timestamp=normalize_timestamp(trans_timestamp),
        receiver_last4=last4_digits(receiver),
    )


def parse_trans_date(value: str | None) -> Optional[date]:
    """Accept `YYYYMMDD` or `YYYY-MM-DD` slip dates."""
    if not value:
        return None
    raw = value.strip()
    if re.fullmatch(r"\d{8}", raw):
        raw = f"{raw[:4]}-{raw[4:6]}-{raw[6:]}"
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def parse_trans_timestamp(value: str | None) -> Optional[datetime]:
    """Parse a normalised timestamp into a naive UTC datetime for storage."""
    if not value:
        return None
    raw = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        stamp = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp.astimezone(timezone.utc).replace(tzinfo=None)

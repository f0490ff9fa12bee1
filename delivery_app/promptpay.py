"""
Utilities for building PromptPay QR payloads reusable across the app.
"""

from __future__ import annotations

import base64
import re
from io import BytesIO
from typing import Tuple

import qrcode
from qrcode.constants import ERROR_CORRECT_M

PROMPTPAY_AID = "A000000677010111"
CURRENCY_THB = "764"
COUNTRY_CODE = "TH"

_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")


def normalize_target(raw: object) -> str:
    """Normalize a PromptPay target, folding 66XXXXXXXXX mobile numbers to 0XXXXXXXXX."""
    value = _NON_ALNUM.sub("", str(raw if raw is not None else ""))
    if not value:
        raise ValueError("PromptPay target is required")
    if re.fullmatch(r"66\d{9}", value):
        value = "0" + value[2:]
    return value


def resolve_account(target: str) -> Tuple[str, str]:
    """Return the merchant account sub-tag and value for a PromptPay target."""
    value = normalize_target(target)
    if re.fullmatch(r"0\d{9}", value):
        return "01", "0066" + value[1:]
    if re.fullmatch(r"\d{13}", value):
        return "02", value
    if re.fullmatch(r"\d{15}", value):
        return "03", value
    return "04", value


def normalize_amount(raw: object) -> float | None:
    if raw is None or raw == "" or isinstance(raw, bool):
        return None
    try:
        amount = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if amount != amount or amount in (float("inf"), float("-inf")):
        return None
    return max(0.0, round(amount, 2))


def _tag(tag: str, value: str) -> str:
    return f"{tag}{len(value):02d}{value}"


def build_promptpay_payload(target: str, amount: float | None = None) -> str:
    """Build EMVCo payload for PromptPay with optional fixed amount."""
    sub_tag, account = resolve_account(target)
    amount = normalize_amount(amount)
    merchant_account = _tag("00", PROMPTPAY_AID) + _tag(sub_tag, account)

    payload = (
        _tag("00", "01")
        + _tag("01", "12" if amount is not None else "11")
        + _tag("29", merchant_account)
        + _tag("53", CURRENCY_THB)
    )

    if amount is not None:
        payload += _tag("54", f"{amount:.2f}")

    payload += _tag("58", COUNTRY_CODE) + "6304"
    return payload + crc16(payload)


def crc16(data: str) -> str:
    """CRC-16/CCITT-FALSE checksum as four uppercase hex digits."""
    return f"{_crc16(data.encode('ascii')):04X}"


def generate_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=6, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def generate_qr_base64(payload: str) -> str:
    """Return QR code image (PNG) as base64 data URI."""
    encoded = base64.b64encode(generate_qr_png(payload)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def _crc16(data: bytes) -> int:
    polynomial = 0x1021
    crc = 0xFFFF
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ polynomial
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc

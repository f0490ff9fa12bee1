from __future__ import annotations

import threading
from typing import Dict, List, Optional

from flask import current_app
from linebot import LineBotApi
from linebot.models import TextSendMessage

from .models import Order

MULTICAST_CHUNK = 500


def notify_order_paid(order: Order) -> Optional[threading.Thread]:
    """Push a LINE summary for an order whose payment has been accepted.

    This function spawns a background thread so HTTP responses are not blocked.
    """

    config = _load_config()
    if not config:
        return None

    summary = _build_order_summary(order)
    if not summary:
        return None

    thread = threading.Thread(
        target=_send_notifications,
        args=(summary, config, current_app.logger),
        daemon=True,
    )
    thread.start()
    return thread


def _load_config() -> Dict[str, Optional[str]]:
    """Read LINE Messaging settings from the app config."""

    token = current_app.config.get("LINE_CHANNEL_ACCESS_TOKEN")
    if not token:
        return {}
    return {
        "line_channel_token": token,
        "line_user_ids": current_app.config.get("LINE_USER_IDS") or "",
    }


def _build_order_summary(order: Order) -> Dict[str, object]:
    details = order.order_details or {}
    items = []
    for item in details.get("productList", []):
        add_ons = [addon.get("name") for addon in item.get("productAddOns", []) if addon.get("name")]
        items.append(
            {
                "name": item.get("productName") or "-",
                "quantity": item.get("qty") or 0,
                "add_ons": add_ons,
            }
        )
    if not items:
        return {}
    return {
        "id": order.id,
        "branch": details.get("branchName") or (order.branch.name if order.branch else ""),
        "status": order.status,
        "total": order.total,
        "location": details.get("location") or {},
        "items": items,
    }


def format_order_message(summary: Dict[str, object]) -> str:
    item_lines = []
    for item in summary["items"]:  # type: ignore[union-attr]
        add_on_text = f" ({', '.join(item['add_ons'])})" if item["add_ons"] else ""
        item_lines.append(f"- {item['name']} x {item['quantity']}{add_on_text}")

    lines = [f"🛵 ออเดอร์ใหม่ #{summary['id']}", f"สาขา: {summary['branch']}", *item_lines]
    address = (summary.get("location") or {}).get("address")  # type: ignore[union-attr]
    if address:
        lines.append(f"จัดส่ง: {address}")
    lines.append(f"ยอดรวม: {summary['total']:.2f} บาท")
    return "\n".join(lines)


def _send_notifications(summary: Dict[str, object], config: Dict[str, Optional[str]], logger) -> None:
    try:
        _send_line_message(summary, config)
    except Exception as exc:  # pragma: no cover
        logger.warning("Failed to send LINE messaging notification: %s", exc)


def _send_line_message(summary: Dict[str, object], config: Dict[str, Optional[str]]) -> None:
    channel_token = config.get("line_channel_token")
    if not channel_token:
        return

    user_ids_raw = config.get("line_user_ids") or ""
    user_ids: List[str] = [user_id.strip() for user_id in user_ids_raw.split(",") if user_id.strip()]
    message = TextSendMessage(text=format_order_message(summary))

    line_api = LineBotApi(channel_token)
    if not user_ids:
        line_api.broadcast(message)
        return

    chunks = [user_ids[i : i + MULTICAST_CHUNK] for i in range(0, len(user_ids), MULTICAST_CHUNK)]
    for chunk in chunks:
        line_api.multicast(chunk, message)

from __future__ import annotations

from typing import Any, Dict, List

from flask import Blueprint, current_app, g, request

from . import repository
from .auth import current_user_or_404, staff_required, token_required
from .cart import (
    DEFAULT_MAX_QTY_PER_ITEM,
    DEFAULT_MAXIMUM_CARD,
    CartError,
    QuantityError,
    build_next_card,
    clear_branch,
    total_unique_items,
)
from .errors import ApiError, api_response, bad_request, not_found
from .models import ORDER_TRANSITIONS, OrderStatusEnum
from .utils import is_expired, log_ctx, parse_ids, parse_int, parse_number, to_bangkok_iso

main_blueprint = Blueprint("main", __name__, url_prefix="/api")


def _request_payload() -> Dict[str, Any]:
    if request.method == "GET":
        return request.args.to_dict()
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _branch_id_or_400(raw: Any) -> int:
    branch_id = parse_int(raw)
    if branch_id is None or branch_id <= 0:
        raise bad_request("Invalid branch id")
    return branch_id


# Catalog


@main_blueprint.route("/branches/<branch_id>/menu")
def branch_menu(branch_id: str):
    payload = repository.get_branch_menu(_branch_id_or_400(branch_id))
    if payload is None:
        raise not_found("Branch not found")
    return api_response(payload, "success")


@main_blueprint.route("/branches/<branch_id>/top-menu")
def branch_top_menu(branch_id: str):
    payload = repository.get_top_menu(_branch_id_or_400(branch_id))
    if payload is None:
        raise not_found("Branch not found")
    response, status = api_response(payload, "success")
    response.headers["Cache-Control"] = "public, s-maxage=30, stale-while-revalidate=120"
    return response, status


@main_blueprint.route("/branch/summary")
@token_required
def branch_summary():
    ids = parse_ids(request.args.get("ids"))
    timezone_name = current_app.config["STORE_TIMEZONE"]
    branches = [repository.branch_summary(branch, timezone_name) for branch in repository.get_branches_by_ids(ids)]
    return api_response({"branches": branches}, "success")


@main_blueprint.route("/search")
def search():
    args = request.args
    category_id = parse_int(args.get("categoryId")) if args.get("categoryId") else None
    lat = parse_number(args.get("lat"))
    lng = parse_number(args.get("lng"))
    limit = parse_int(args.get("limit")) or 20

    results = repository.search_branches(
        query=args.get("q", ""),
        category_id=category_id,
        lat=lat,
        lng=lng,
        limit=limit,
    )
    return api_response(results, "success")


@main_blueprint.route("/categories")
def categories():
    return api_response({"categories": repository.list_categories()}, "success")


@main_blueprint.route("/system/config")
def system_config():
    return api_response({"config": repository.get_system_config()}, "success")


# Cart


@main_blueprint.route("/card")
@token_required
def get_card():
    user = current_user_or_404()
    return api_response({"card": user.card or []}, "success")


@main_blueprint.route("/card/save", methods=["POST"])
@token_required
def save_card():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}

    user = current_user_or_404()
    max_qty = repository.get_number_config("MAX_QTY_PER_ITEM", DEFAULT_MAX_QTY_PER_ITEM)

    try:
        next_card = build_next_card(user.card, payload, max_qty)
    except QuantityError as exc:
        raise ApiError(400, "INVALID_QTY", str(exc)) from None
    except CartError as exc:
        raise bad_request(str(exc)) from None

    if next_card is None:
        return api_response({"user": repository.user_to_dict(user)}, "No changes")

    maximum_items = repository.get_number_config("MAXIMUM_CARD", DEFAULT_MAXIMUM_CARD)
    if total_unique_items(next_card) > maximum_items:
        raise ApiError(400, "CARD_LIMIT_EXCEEDED", "Cart item limit exceeded")

    user = repository.save_user_card(user, next_card)
    current_app.logger.info(
        "card saved %s",
        log_ctx(req_id=g.get("req_id"), user_id=user.id, lines=total_unique_items(next_card)),
    )
    return api_response({"user": repository.user_to_dict(user)}, "Saved")


@main_blueprint.route("/card/clear-by-branch", methods=["POST"])
@token_required
def clear_card_by_branch():
    payload = request.get_json(silent=True) or {}
    branch_id = parse_int(payload.get("branchId")) if isinstance(payload, dict) else None
    if branch_id is None:
        raise bad_request("Invalid branchId")

    user = current_user_or_404()
    current_app.logger.info(
        "card clear branch %s", log_ctx(req_id=g.get("req_id"), user_id=user.id, branch_id=branch_id)
    )
    user = repository.save_user_card(user, clear_branch(user.card, branch_id))
    return api_response({"user": repository.user_to_dict(user)}, "success")


# Orders


def _order_dto(order, branch, txn) -> Dict[str, Any]:
    expired = is_expired(txn.expired_at) if txn is not None else False
    return {
        "id": order.id,
        "status": order.status,
        "displayStatus": repository.display_status(order, txn),
        "created_at": to_bangkok_iso(order.created_at),
        "updated_at": to_bangkok_iso(order.updated_at),
        "order_details": order.order_details,
        "total": order.total,
        "branch": (
            {
                "id": branch.id,
                "name": branch.name,
                "address": branch.address_line,
                "lat": branch.lat,
                "lng": branch.lng,
            }
            if branch is not None
            else None
        ),
        "txn": (
            {
                "id": txn.id,
                "status": txn.status,
                "expired_at": to_bangkok_iso(txn.expired_at),
                "isExpired": expired,
            }
            if txn is not None
            else None
        ),
    }


@main_blueprint.route("/order/by-transaction")
@token_required
def order_by_transaction():
    txn_id = parse_int(request.args.get("txnId"))
    if txn_id is None:
        raise bad_request("Invalid txnId")
    user = current_user_or_404()
    order = repository.get_order_by_txn_id(txn_id, user.id)
    if order is None:
        raise not_found("Order not found")
    return api_response({"order": repository.order_to_dict(order)}, "success")


@main_blueprint.route("/order/details", methods=["GET", "POST"])
@token_required
def order_details():
    payload = _request_payload()
    user = current_user_or_404()

    txn_id = parse_int(payload.get("txnId")) if payload.get("txnId") else None
    if txn_id is not None:
        order = repository.get_order_by_txn_id(txn_id, user.id)
        orders = [order] if order else []
    elif payload.get("ids"):
        orders = repository.get_orders_by_ids(parse_ids(payload.get("ids")), user.id)
    else:
        orders = repository.get_orders_by_user(user.id)

    branches = {branch.id: branch for branch in repository.get_branches_by_ids(o.branch_id for o in orders)}
    txns = {txn.id: txn for txn in repository.get_transactions_by_ids(o.txn_id for o in orders if o.txn_id)}

    dto = [
        _order_dto(order, branches.get(order.branch_id), txns.get(order.txn_id) if order.txn_id else None)
        for order in orders
    ]
    return api_response({"orders": dto}, "success")


@main_blueprint.route("/order/list")
@token_required
def order_list():
    user = current_user_or_404()
    ids = parse_ids(request.args.get("ids"))
    orders = repository.get_orders_by_ids(ids, user.id) if ids else []
    txns = {txn.id: txn for txn in repository.get_transactions_by_ids(o.txn_id for o in orders if o.txn_id)}

    enriched: List[Dict[str, Any]] = []
    for order in orders:
        txn = txns.get(order.txn_id) if order.txn_id else None
        data = repository.order_to_dict(order)
        data["displayStatus"] = repository.display_status(order, txn)
        data["txn"] = repository.txn_to_dict(txn) if txn is not None else None
        enriched.append(data)
    return api_response({"orders": enriched}, "success")


@main_blueprint.route("/order/<int:order_id>/status", methods=["POST"])
@staff_required
def update_order_status(order_id: int):
    payload = request.get_json(silent=True) or {}
    new_status = payload.get("status") if isinstance(payload, dict) else None
    valid_statuses = {status.value for status in OrderStatusEnum}

    if new_status not in valid_statuses:
        raise bad_request("Invalid status")

    order = repository.get_order(order_id)
    if order is None:
        raise not_found("Order not found")

    if new_status not in ORDER_TRANSITIONS.get(order.status, set()):
        raise ApiError(
            400,
            "INVALID_TRANSITION",
            f"Cannot move order from {order.status} to {new_status}",
            {"order": repository.order_to_dict(order)},
        )

    previous = order.status
    repository.set_order_status(order, new_status)
    current_app.logger.info(
        "order status %s",
        log_ctx(req_id=g.get("req_id"), order_id=order.id, previous=previous, status=new_status),
    )
    return api_response({"order": repository.order_to_dict(order)}, "success")

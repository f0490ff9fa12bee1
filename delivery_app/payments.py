from __future__ import annotations

from io import BytesIO
from typing import Any, Dict, List

from flask import Blueprint, Response, current_app, g, request, send_file
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

from . import notifications, repository
from .auth import current_user_or_404, token_required
from .database import db_session
from .errors import ApiError, api_response, bad_request, not_found, render_api_error, render_http_error
from .hours import is_branch_open
from .models import Transaction, TxnMethodTypeEnum, TxnStatusEnum, TxnTypeEnum
from .promptpay import build_promptpay_payload, generate_qr_base64, generate_qr_png, normalize_amount, normalize_target
from .slipok import extract_slip_meta, verify_slip
from .utils import (
    haversine_km,
    is_expired,
    is_valid_location,
    last4_digits,
    log_ctx,
    parse_ids,
    parse_int,
    parse_number,
)

payments_blueprint = Blueprint("payments", __name__, url_prefix="/api")

MOCK_QR_DEFAULT_TARGET = "0943248965"
MOCK_QR_DEFAULT_AMOUNT = "4.22"


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _owned_txn_or_404(txn_id: int, user_id: int) -> Transaction:
    txn = repository.get_transaction(txn_id)
    if txn is None or txn.user_id != user_id:
        raise not_found("Transaction not found")
    return txn


# Transactions


@payments_blueprint.route("/transaction/create", methods=["POST"])
@token_required
def transaction_create():
    payload = _json_body()
    company_id = parse_int(payload.get("companyId"))
    method_id = parse_int(payload.get("methodId"))
    amount = parse_number(payload.get("amount"))
    txn_type = payload.get("txnType")

    if company_id is None or method_id is None or amount is None or amount <= 0 or not isinstance(txn_type, str):
        raise bad_request("Invalid payload", body={"txn": None})
    if txn_type not in {TxnTypeEnum.DEPOSIT.value, TxnTypeEnum.PAYMENT.value}:
        raise bad_request("Unsupported txnType", body={"txn": None})

    user = current_user_or_404()
    method = repository.get_method(method_id)
    if method is None or method.type not in repository.SUPPORTED_METHOD_TYPES:
        raise ApiError(400, "INVALID_METHOD", "Invalid method", {"txn": None})

    is_balance = method.type == TxnMethodTypeEnum.BALANCE.value
    if is_balance and txn_type != TxnTypeEnum.PAYMENT.value:
        raise bad_request("Unsupported balance transaction", body={"txn": None})
    if is_balance and user.balance_value < amount:
        raise ApiError(400, "INSUFFICIENT_BALANCE", "Insufficient balance", {"txn": None})

    balance_adjusted = False
    try:
        if is_balance:
            repository.adjust_balance(user.id, -amount)
            balance_adjusted = True
        expires_in = repository.get_number_config("TXN_EXPIRE_SECONDS", repository.DEFAULT_TXN_EXPIRE_SECONDS)
        txn = repository.create_transaction(user, company_id, txn_type, method_id, amount, expires_in)
    except (SQLAlchemyError, ValueError, LookupError) as exc:
        db_session.rollback()
        if balance_adjusted:
            repository.adjust_balance(user.id, amount)
        current_app.logger.error(
            "transaction create failed %s", log_ctx(req_id=g.get("req_id"), user_id=user.id, error=str(exc))
        )
        raise ApiError(500, "TXN_CREATION_FAILED", "Failed to create transaction", {"txn": None}) from None

    current_app.logger.info(
        "transaction created %s",
        log_ctx(req_id=g.get("req_id"), user_id=user.id, txn_id=txn.id, method=method.type, txn_type=txn_type),
    )
    return api_response({"txn": repository.txn_to_dict(txn)}, "success")


@payments_blueprint.route("/transaction/<int:txn_id>")
@token_required
def transaction_get(txn_id: int):
    user = current_user_or_404()
    txn = _owned_txn_or_404(txn_id, user.id)
    method = repository.get_method(txn.txn_method_id)
    return api_response(
        {"txn": repository.txn_to_dict(txn), "method": repository.method_to_dict(method)}, "success"
    )


@payments_blueprint.route("/transaction/list")
@token_required
def transaction_list():
    user = current_user_or_404()
    ids = parse_ids(request.args.get("ids"))
    txns = repository.get_transactions_by_ids(ids, user_id=user.id)
    return api_response({"transactions": [repository.txn_to_dict(txn) for txn in txns]}, "success")


@payments_blueprint.route("/transaction/details", methods=["GET", "POST"])
@token_required
def transaction_details():
    raw_ids = request.args.get("ids") if request.method == "GET" else _json_body().get("ids")
    ids = parse_ids(raw_ids)
    if not ids:
        return api_response({"txns": []}, "success")

    user = current_user_or_404()
    txns = repository.get_transactions_by_ids(ids, user_id=user.id)
    orders = repository.get_orders_by_txn_ids(txn.id for txn in txns)

    result: List[Dict[str, Any]] = []
    for txn in txns:
        data = repository.txn_to_dict(txn)
        order = orders.get(txn.id)
        data["isExpired"] = is_expired(txn.expired_at)
        data["method"] = repository.method_to_dict(repository.get_method(txn.txn_method_id), include_details=False)
        data["order"] = repository.order_to_dict(order) if order is not None else None
        result.append(data)
    return api_response({"txns": result}, "success")


@payments_blueprint.route("/transaction/method")
@token_required
def transaction_methods():
    company_id = parse_int(request.args.get("companyId"))
    if company_id is None:
        raise bad_request("Invalid companyId", body={"methods": []})
    methods = [repository.method_to_dict(method) for method in repository.list_active_methods()]
    return api_response({"methods": methods}, "success")


# Checkout


def _sanitize_order_details(raw: Any, user_id: int, branch_id: int) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError("BAD_ORDER_DETAILS")

    branch_value = raw.get("branchId")
    if isinstance(branch_value, str) and branch_value.strip():
        branch_str = branch_value.strip()
    elif isinstance(branch_value, (int, float)) and not isinstance(branch_value, bool):
        branch_str = str(int(branch_value))
    else:
        branch_str = str(branch_id)

    product_list = []
    for index, item in enumerate(raw.get("productList") or []):
        if not isinstance(item, dict):
            raise ValueError(f"BAD_PRODUCT_{index}")
        add_ons = [
            {
                "name": addon.get("name") if isinstance(addon.get("name"), str) else "",
                "price": parse_number(addon.get("price")) or 0,
            }
            for addon in item.get("productAddOns") or []
            if isinstance(addon, dict)
        ]
        product_id = item.get("productId")
        product_list.append(
            {
                "qty": parse_number(item.get("qty")) or 0,
                "price": parse_number(item.get("price")) or 0,
                "productId": product_id if isinstance(product_id, str) else str(product_id if product_id is not None else ""),
                "productName": item.get("productName") if isinstance(item.get("productName"), str) else "",
                "productAddOns": add_ons,
            }
        )
    if not product_list:
        raise ValueError("BAD_ORDER_DETAILS")

    details: Dict[str, Any] = {
        "userId": user_id,
        "branchId": branch_str,
        "branchName": raw.get("branchName") if isinstance(raw.get("branchName"), str) else "",
        "productList": product_list,
    }

    location = raw.get("location")
    if location is not None:
        if not isinstance(location, dict) or not is_valid_location(location.get("lat"), location.get("lng")):
            raise ValueError("INVALID_LOCATION")
        details["location"] = {
            "lat": parse_number(location.get("lat")),
            "lng": parse_number(location.get("lng")),
            "address": location.get("address") if isinstance(location.get("address"), str) else None,
        }
    return details


@payments_blueprint.route("/payment", methods=["POST"])
@token_required
def payment():
    empty = {"method": None, "txn": None, "order": None}
    payload = _json_body()
    company_id = parse_int(payload.get("companyId"))
    method_id = parse_int(payload.get("methodId"))
    amount = parse_number(payload.get("amount"))
    branch_id = parse_int(payload.get("branchId"))

    if company_id is None or method_id is None or amount is None or amount <= 0 or branch_id is None:
        raise bad_request("Invalid payload", body=empty)

    user = current_user_or_404()
    method = repository.get_method(method_id)
    if method is None or method.type not in repository.SUPPORTED_METHOD_TYPES:
        raise ApiError(400, "INVALID_METHOD", "Invalid method", empty)

    branch = repository.get_branch(branch_id)
    if branch is None:
        raise ApiError(404, "NOT_FOUND", "Branch not found", empty)
    if branch.company_id != company_id:
        raise bad_request("Branch mismatch", body=empty)

    company = repository.get_company(company_id)
    if company is None:
        raise ApiError(404, "NOT_FOUND", "Company not found", empty)
    if not company.payment_id:
        raise ApiError(400, "CONFIG_MISSING", "Missing payment config", empty)

    max_qty = repository.get_number_config("MAX_QTY_PER_ITEM", 10) or 10
    max_branch_order = repository.get_number_config("MAXIMUM_BRANCH_ORDER", 0)

    try:
        details = _sanitize_order_details(payload.get("orderDetails"), user.id, branch_id)
    except ValueError as exc:
        code = "INVALID_LOCATION" if str(exc) == "INVALID_LOCATION" else "BAD_REQUEST"
        raise ApiError(400, code, "Invalid order details", empty) from None

    if max_branch_order == 1 and details["branchId"] != str(branch_id):
        raise ApiError(400, "MULTI_BRANCH_NOT_ALLOWED", "Branch restriction", empty)

    for item in details["productList"]:
        if item["qty"] <= 0 or item["qty"] > max_qty:
            raise bad_request("Invalid order details", body=empty)

    location = details.get("location")
    if location and branch.lat is not None and branch.lng is not None:
        location["distanceKm"] = round(haversine_km(branch.lat, branch.lng, location["lat"], location["lng"]), 2)

    if not is_branch_open(
        bool(branch.is_force_closed), branch.open_hours, timezone_name=current_app.config["STORE_TIMEZONE"]
    ):
        raise ApiError(400, "BRANCH_CLOSED", "Branch is closed", empty)

    method_dict = repository.method_to_dict(method)
    is_balance = method.type == TxnMethodTypeEnum.BALANCE.value
    if is_balance and user.balance_value < amount:
        raise ApiError(400, "INSUFFICIENT_BALANCE", "Insufficient balance", {**empty, "method": method_dict})

    current_app.logger.info(
        "payment start %s",
        log_ctx(req_id=g.get("req_id"), user_id=user.id, method=method.type, amount=amount),
    )

    txn = None
    order = None
    balance_adjusted = False
    try:
        if is_balance:
            repository.adjust_balance(user.id, -amount)
            balance_adjusted = True
        expires_in = repository.get_number_config("TXN_EXPIRE_SECONDS", repository.DEFAULT_TXN_EXPIRE_SECONDS)
        txn = repository.create_transaction(
            user, company_id, TxnTypeEnum.PAYMENT.value, method_id, amount, expires_in
        )
        order = repository.create_order(user, branch_id, txn.id, details)
    except (SQLAlchemyError, ValueError, LookupError) as exc:
        db_session.rollback()
        if txn is not None:
            repository.update_txn_status(txn, TxnStatusEnum.REJECTED.value)
        if balance_adjusted:
            repository.adjust_balance(user.id, amount)
        current_app.logger.error(
            "payment creation failed %s", log_ctx(req_id=g.get("req_id"), user_id=user.id, error=str(exc))
        )
        raise ApiError(500, "ORDER_CREATION_FAILED", "Failed to create order", {**empty, "method": method_dict}) from None

    body: Dict[str, Any] = {"method": method_dict}
    if is_balance:
        promoted = repository.promote_orders_to_prepare(txn.id)
        for paid in promoted:
            notifications.notify_order_paid(paid)
        body["paymentPayload"] = None
        body["balance"] = user.balance_value
    else:
        body["paymentPayload"] = {"payment_id": company.payment_id}

    body["txn"] = repository.txn_to_dict(txn)
    body["order"] = repository.order_to_dict(order)
    current_app.logger.info(
        "payment created %s", log_ctx(req_id=g.get("req_id"), txn_id=txn.id, order_id=order.id)
    )
    return api_response(body, "success")


# Slip verification


def _reject(txn: Transaction, status: int, code: str, message: str):
    repository.update_txn_status(txn, TxnStatusEnum.REJECTED.value)
    raise ApiError(status, code, message, {"txn": repository.txn_to_dict(txn)})


@payments_blueprint.route("/payment/slipok", methods=["POST"])
@token_required
def payment_slipok():
    """Verify an uploaded bank slip and settle the QR transaction it pays for."""
    if not (request.mimetype or "").startswith("multipart/form-data"):
        raise bad_request("Invalid request", body={"txn": None})

    txn_id = parse_int(request.form.get("txnId"))
    if txn_id is None:
        raise bad_request("Invalid txnId", body={"txn": None})

    user = current_user_or_404()
    txn = _owned_txn_or_404(txn_id, user.id)

    upload = request.files.get("qrFile") or request.files.get("file")
    file_bytes = upload.read() if upload else b""
    current_app.logger.info(
        "slipok received %s", log_ctx(req_id=g.get("req_id"), txn_id=txn.id, has_file=bool(file_bytes))
    )
    if not file_bytes:
        if txn.status == TxnStatusEnum.PENDING.value:
            repository.update_txn_status(txn, TxnStatusEnum.REJECTED.value)
        raise ApiError(400, "INVALID_SLIP", "Invalid slip", {"txn": repository.txn_to_dict(txn)})

    if txn.status == TxnStatusEnum.ACCEPTED.value:
        return api_response({"txn": repository.txn_to_dict(txn)}, "Transaction already accepted")
    if txn.status != TxnStatusEnum.PENDING.value:
        raise ApiError(400, "TXN_ALREADY_FINAL", "Transaction already finalized", {"txn": repository.txn_to_dict(txn)})

    if is_expired(txn.expired_at):
        _reject(txn, 400, "TXN_EXPIRED", "Transaction expired")

    method = repository.get_method(txn.txn_method_id)
    if method is not None and method.type != TxnMethodTypeEnum.QR.value:
        raise ApiError(400, "INVALID_METHOD", "Invalid method", {"txn": repository.txn_to_dict(txn)})

    slip_payload: Dict[str, Any] = {}
    if (current_app.config.get("SLIPOK_MODE") or "").upper() != "LOCAL":
        result = verify_slip(
            file_bytes,
            upload.filename or "slip.jpg",
            txn.amount_value,
            current_app.config.get("SLIPOK_VERIFY_URL"),
            current_app.config.get("SLIPOK_TOKEN"),
        )
        if not result.ok:
            current_app.logger.warning(
                "slipok rejected %s", log_ctx(req_id=g.get("req_id"), txn_id=txn.id, code=result.code)
            )
            _reject(txn, 500 if result.code == "CONFIG_MISSING" else 400, result.code, result.message)
        slip_payload = result.payload

    meta = extract_slip_meta(slip_payload)
    company = repository.get_company(txn.company_id)
    expected_last4 = last4_digits(company.payment_id) if company else None
    if meta.receiver_last4 and expected_last4 and meta.receiver_last4 != expected_last4:
        current_app.logger.warning(
            "slipok receiver mismatch %s",
            log_ctx(req_id=g.get("req_id"), txn_id=txn.id, receiver=meta.receiver_last4, expected=expected_last4),
        )
        _reject(txn, 400, "RECEIVER_MISMATCH", "Slip receiver does not match")

    if meta.trans_ref:
        try:
            repository.stamp_txn_slip_meta(txn, meta.trans_ref, meta.trans_date, meta.trans_timestamp)
        except IntegrityError:
            db_session.rollback()
            txn = repository.get_transaction(txn_id)
            current_app.logger.warning(
                "slipok duplicate slip %s", log_ctx(req_id=g.get("req_id"), txn_id=txn_id, trans_ref=meta.trans_ref)
            )
            _reject(txn, 409, "DUPLICATE_SLIP", "Slip already used")

    repository.update_txn_status(txn, TxnStatusEnum.ACCEPTED.value, commit=False)
    promoted = []
    if txn.txn_type == TxnTypeEnum.DEPOSIT.value and txn.user_id:
        repository.adjust_balance(txn.user_id, txn.amount_value, commit=False)
    elif txn.txn_type == TxnTypeEnum.PAYMENT.value:
        promoted = repository.promote_orders_to_prepare(txn.id, commit=False)
    db_session.commit()

    for order in promoted:
        notifications.notify_order_paid(order)

    current_app.logger.info(
        "slipok accepted %s", log_ctx(req_id=g.get("req_id"), txn_id=txn.id, txn_type=txn.txn_type)
    )
    return api_response({"txn": repository.txn_to_dict(txn)}, "success")


# QR rendering


@payments_blueprint.route("/qr/generate", methods=["POST"])
@token_required
def qr_generate():
    payload = _json_body()
    branch_id = parse_int(payload.get("branchId"))
    if not branch_id:
        raise bad_request("branchId is required")

    branch = repository.get_branch(branch_id)
    if branch is None:
        raise not_found("Branch not found")
    company = repository.get_company(branch.company_id)
    if company is None or not company.payment_id:
        raise ApiError(400, "CONFIG_MISSING", "Company payment_id missing")

    amount = normalize_amount(payload.get("amount"))
    promptpay_payload = build_promptpay_payload(company.payment_id, amount or None)
    current_app.logger.info(
        "qr generate %s", log_ctx(req_id=g.get("req_id"), branch_id=branch_id, amount=amount)
    )

    if "application/json" in request.headers.get("Accept", ""):
        response, status = api_response(
            {
                "pngDataUrl": generate_qr_base64(promptpay_payload),
                "payload": promptpay_payload,
                "amount": amount or None,
            },
            "success",
        )
    else:
        response = send_file(BytesIO(generate_qr_png(promptpay_payload)), mimetype="image/png")
        status = 200
    response.headers["Cache-Control"] = "no-store"
    return response, status


@payments_blueprint.route("/mock/qr")
def mock_qr():
    if not current_app.config.get("ENABLE_MOCK_QR"):
        raise not_found()

    try:
        target = normalize_target(request.args.get("id", MOCK_QR_DEFAULT_TARGET))
    except ValueError as exc:
        raise bad_request(str(exc)) from None
    amount = normalize_amount(request.args.get("amount", MOCK_QR_DEFAULT_AMOUNT))
    promptpay_payload = build_promptpay_payload(target, amount)

    if request.args.get("emv") == "1":
        return Response(promptpay_payload, mimetype="text/plain")

    filename = f"promptpay-{target}{f'-{amount:.2f}' if amount else ''}.png"
    response = send_file(BytesIO(generate_qr_png(promptpay_payload)), mimetype="image/png")
    response.headers["Cache-Control"] = "no-store"
    response.headers["Content-Disposition"] = f'inline; filename="{filename}"'
    return response


@payments_blueprint.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    # Blueprint handlers win over the app's, so known errors are rendered here too.
    if isinstance(exc, ApiError):
        return render_api_error(exc)
    if isinstance(exc, HTTPException):
        return render_http_error(exc)
    db_session.rollback()
    current_app.logger.exception("payment handler failed %s", log_ctx(req_id=g.get("req_id"), path=request.path))
    return api_response(None, "Internal server error", "ERROR", 500)

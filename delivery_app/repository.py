from __future__ import annotations

from collections import Counter
from datetime import timedelta
from itertools import islice
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select

from .database import db_session
from .hours import is_branch_open
from .models import (
    Branch,
    BranchProduct,
    Category,
    Company,
    Order,
    OrderStatusEnum,
    Product,
    ProductCategory,
    SystemConfig,
    Transaction,
    TransactionMethod,
    TxnMethodTypeEnum,
    TxnStatusEnum,
    User,
)
from .slipok import parse_trans_date, parse_trans_timestamp
from .utils import (
    append_id_with_trim,
    haversine_km,
    is_expired,
    parse_int,
    to_bangkok_iso,
    utcnow,
)

SUPPORTED_METHOD_TYPES = (TxnMethodTypeEnum.QR.value, TxnMethodTypeEnum.BALANCE.value)
DEFAULT_TXN_EXPIRE_SECONDS = 900
ORDER_LIST_LIMIT = 50


class InvalidMethodError(ValueError):
    pass


# System config


def get_system_config() -> Dict[str, str]:
    rows = db_session.scalars(select(SystemConfig)).all()
    return {row.config_name: row.config_value or "" for row in rows}


def get_config_value(name: str) -> Optional[str]:
    row = db_session.scalar(select(SystemConfig).where(SystemConfig.config_name == name))
    return row.config_value if row else None


def get_number_config(name: str, default: int) -> int:
    value = parse_int(get_config_value(name))
    return value if value is not None else default


# Users


def get_user(user_id: int | None, uid: str | None = None) -> Optional[User]:
    if user_id is not None:
        user = db_session.get(User, user_id)
        if user is not None:
            return user
    if uid:
        return get_user_by_uid(uid)
    return None


def get_user_by_uid(uid: str) -> Optional[User]:
    return db_session.scalar(select(User).where(User.firebase_uid == uid))


def upsert_user(
    firebase_uid: str,
    email: str | None,
    phone: str | None,
    provider: str | None,
    is_email_verified: bool | None,
    is_phone_verified: bool | None,
) -> User:
    """Touch ``last_login`` for a known uid, or create the user on first login."""
    user = get_user_by_uid(firebase_uid)
    if user is not None:
        user.last_login = utcnow()
        db_session.commit()
        return user

    user = User(
        firebase_uid=firebase_uid,
        email=email,
        phone=phone,
        provider=provider,
        is_email_verified=is_email_verified,
        is_phone_verified=is_phone_verified,
        balance=0,
        card=[],
        txn_history=[],
        order_history=[],
        last_login=utcnow(),
    )
    db_session.add(user)
    db_session.commit()
    return user


def is_email_taken(email: str, exclude_user_id: int | None = None) -> bool:
    stmt = select(User.id).where(User.email == email)
    if exclude_user_id is not None:
        stmt = stmt.where(User.id != exclude_user_id)
    return db_session.scalar(stmt.limit(1)) is not None


def is_phone_taken(phone: str, exclude_user_id: int | None = None) -> bool:
    stmt = select(User.id).where(User.phone == phone)
    if exclude_user_id is not None:
        stmt = stmt.where(User.id != exclude_user_id)
    return db_session.scalar(stmt.limit(1)) is not None


def update_user_contact(uid: str, patch: Dict[str, Any]) -> User:
    user = get_user_by_uid(uid)
    if user is None:
        user = User(firebase_uid=uid, balance=0, card=[], txn_history=[], order_history=[])
        db_session.add(user)
    for key in ("email", "phone", "is_email_verified", "is_phone_verified"):
        if key in patch:
            setattr(user, key, patch[key])
    db_session.commit()
    return user


def save_user_card(user: User, card: List[Dict[str, Any]]) -> User:
    user.card = card
    db_session.commit()
    return user


def adjust_balance(user_id: int, delta: float, commit: bool = True) -> float:
    """Apply ``delta`` to the user's balance, never going below zero."""
    user = db_session.get(User, user_id)
    if user is None:
        raise LookupError("USER_NOT_FOUND")
    user.balance = round(max(0.0, user.balance_value + float(delta)), 2)
    if commit:
        db_session.commit()
    return user.balance_value


def user_to_dict(user: User, include_card: bool = True) -> Dict[str, Any]:
    data = {
        "id": user.id,
        "firebase_uid": user.firebase_uid,
        "email": user.email,
        "phone": user.phone,
        "provider": user.provider,
        "is_email_verified": user.is_email_verified,
        "is_phone_verified": user.is_phone_verified,
        "balance": user.balance_value,
        "created_at": to_bangkok_iso(user.created_at),
        "updated_at": to_bangkok_iso(user.updated_at),
    }
    if include_card:
        data["card"] = user.card or []
    return data


# Transactions


def get_method(method_id: int | None) -> Optional[TransactionMethod]:
    if method_id is None:
        return None
    method = db_session.get(TransactionMethod, method_id)
    if method is None or method.is_deleted == "Y":
        return None
    return method


def list_active_methods() -> List[TransactionMethod]:
    stmt = (
        select(TransactionMethod)
        .where(TransactionMethod.type.in_(SUPPORTED_METHOD_TYPES))
        .where(TransactionMethod.is_deleted == "N")
        .order_by(TransactionMethod.id)
    )
    return list(db_session.scalars(stmt).all())


def create_transaction(
    user: User,
    company_id: int,
    txn_type: str,
    method_id: int,
    amount: float,
    expires_in: int = DEFAULT_TXN_EXPIRE_SECONDS,
    commit: bool = True,
) -> Transaction:
    """Insert a transaction; wallet payments settle immediately, QR payments wait for a slip."""
    method = get_method(method_id)
    if method is None or method.type not in SUPPORTED_METHOD_TYPES:
        raise InvalidMethodError("INVALID_METHOD")

    is_balance = method.type == TxnMethodTypeEnum.BALANCE.value
    txn = Transaction(
        company_id=company_id,
        user_id=user.id,
        txn_type=txn_type,
        txn_method_id=method.id,
        amount=round(float(amount), 2),
        status=TxnStatusEnum.ACCEPTED.value if is_balance else TxnStatusEnum.PENDING.value,
        expired_at=None if is_balance else utcnow() + timedelta(seconds=expires_in),
    )
    db_session.add(txn)
    db_session.flush()

    user.txn_history = append_id_with_trim(user.txn_history, txn.id)
    if commit:
        db_session.commit()
    return txn


def get_transaction(txn_id: int) -> Optional[Transaction]:
    return db_session.get(Transaction, txn_id)


def get_transactions_by_ids(txn_ids: Iterable[int], user_id: int | None = None) -> List[Transaction]:
    ids = list(dict.fromkeys(txn_ids))
    if not ids:
        return []
    stmt = select(Transaction).where(Transaction.id.in_(ids))
    if user_id is not None:
        stmt = stmt.where(Transaction.user_id == user_id)
    stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
    return list(db_session.scalars(stmt).all())


def update_txn_status(txn: Transaction, status: str, commit: bool = True) -> Transaction:
    txn.status = status
    txn.updated_at = utcnow()
    if commit:
        db_session.commit()
    return txn


def stamp_txn_slip_meta(
    txn: Transaction,
    trans_ref: str | None,
    trans_date: str | None,
    trans_timestamp: str | None,
) -> None:
    """Record the slip reference on the transaction; flushing may raise IntegrityError."""
    txn.trans_ref = trans_ref
    txn.trans_date = parse_trans_date(trans_date)
    txn.trans_timestamp = parse_trans_timestamp(trans_timestamp)
    txn.updated_at = utcnow()
    db_session.flush()


def method_to_dict(method: TransactionMethod | None, include_details: bool = True) -> Dict[str, Any] | None:
    if method is None:
        return None
    data = {"id": method.id, "code": method.code, "name": method.name, "type": method.type}
    if include_details:
        data["details"] = method.details
    return data


def txn_to_dict(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "company_id": txn.company_id,
        "user_id": txn.user_id,
        "txn_type": txn.txn_type,
        "txn_method_id": txn.txn_method_id,
        "reversal": bool(txn.reversal),
        "amount": txn.amount_value,
        "adjust_amount": float(txn.adjust_amount or 0),
        "status": txn.status,
        "trans_ref": txn.trans_ref,
        "trans_date": txn.trans_date.isoformat() if txn.trans_date else None,
        "trans_timestamp": to_bangkok_iso(txn.trans_timestamp),
        "expired_at": to_bangkok_iso(txn.expired_at),
        "created_at": to_bangkok_iso(txn.created_at),
        "updated_at": to_bangkok_iso(txn.updated_at),
    }


# Orders


def create_order(
    user: User,
    branch_id: int,
    txn_id: int,
    details: Dict[str, Any],
    status: str = OrderStatusEnum.PENDING.value,
    commit: bool = True,
) -> Order:
    order = Order(
        branch_id=branch_id,
        txn_id=txn_id,
        user_id=user.id,
        order_details=details,
        status=status,
    )
    db_session.add(order)
    db_session.flush()
    user.order_history = append_id_with_trim(user.order_history, order.id)
    if commit:
        db_session.commit()
    return order


def _owned_by(order: Order, user_id: int) -> bool:
    if order.user_id is not None:
        return order.user_id == user_id
    return (order.order_details or {}).get("userId") == user_id


def get_order(order_id: int) -> Optional[Order]:
    return db_session.get(Order, order_id)


def get_order_by_txn_id(txn_id: int, user_id: int) -> Optional[Order]:
    stmt = (
        select(Order)
        .where(Order.txn_id == txn_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(1)
    )
    order = db_session.scalar(stmt)
    if order is None or not _owned_by(order, user_id):
        return None
    return order


def get_orders_by_ids(order_ids: Iterable[int], user_id: int) -> List[Order]:
    ids = list(dict.fromkeys(order_ids))
    if not ids:
        return []
    stmt = select(Order).where(Order.id.in_(ids)).order_by(Order.created_at.desc(), Order.id.desc())
    return [order for order in db_session.scalars(stmt).all() if _owned_by(order, user_id)]


def get_orders_by_user(user_id: int, limit: int = ORDER_LIST_LIMIT) -> List[Order]:
    # Rows without user_id fall back to order_details.userId.
    stmt = (
        select(Order)
        .where(or_(Order.user_id == user_id, Order.user_id.is_(None)))
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    orders = (order for order in db_session.scalars(stmt) if _owned_by(order, user_id))
    return list(islice(orders, limit))


def get_orders_by_txn_ids(txn_ids: Iterable[int]) -> Dict[int, Order]:
    ids = list(dict.fromkeys(txn_ids))
    if not ids:
        return {}
    stmt = select(Order).where(Order.txn_id.in_(ids)).order_by(Order.id)
    return {order.txn_id: order for order in db_session.scalars(stmt).all() if order.txn_id is not None}


def promote_orders_to_prepare(txn_id: int, commit: bool = True) -> List[Order]:
    """Move the transaction's PENDING orders to PREPARE; other statuses are left alone."""
    stmt = select(Order).where(Order.txn_id == txn_id, Order.status == OrderStatusEnum.PENDING.value)
    orders = list(db_session.scalars(stmt).all())
    now = utcnow()
    for order in orders:
        order.status = OrderStatusEnum.PREPARE.value
        order.updated_at = now
    if commit:
        db_session.commit()
    return orders


def set_order_status(order: Order, status: str) -> Order:
    order.status = status
    order.updated_at = utcnow()
    db_session.commit()
    return order


def display_status(order: Order, txn: Transaction | None) -> str:
    if order.status != OrderStatusEnum.PENDING.value or txn is None:
        return order.status
    if txn.status == TxnStatusEnum.REJECTED.value:
        return OrderStatusEnum.REJECTED.value
    if txn.status == TxnStatusEnum.PENDING.value and is_expired(txn.expired_at):
        return "EXPIRED"
    return order.status


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "branch_id": order.branch_id,
        "txn_id": order.txn_id,
        "status": order.status,
        "order_details": order.order_details,
        "total": order.total,
        "created_at": to_bangkok_iso(order.created_at),
        "updated_at": to_bangkok_iso(order.updated_at),
    }


# Branches & catalog


def get_branch(branch_id: int) -> Optional[Branch]:
    return db_session.get(Branch, branch_id)


def get_company(company_id: int) -> Optional[Company]:
    return db_session.get(Company, company_id)


def get_branches_by_ids(branch_ids: Iterable[int]) -> List[Branch]:
    ids = list(dict.fromkeys(branch_ids))
    if not ids:
        return []
    stmt = select(Branch).where(Branch.id.in_(ids)).order_by(Branch.id)
    return list(db_session.scalars(stmt).all())


def branch_to_dict(branch: Branch) -> Dict[str, Any]:
    return {
        "id": branch.id,
        "company_id": branch.company_id,
        "name": branch.name,
        "description": branch.description,
        "image_url": branch.image_url,
        "address_line": branch.address_line,
        "lat": branch.lat,
        "lng": branch.lng,
        "open_hours": branch.open_hours,
        "is_force_closed": bool(branch.is_force_closed),
    }


def branch_summary(branch: Branch, timezone_name: str) -> Dict[str, Any]:
    return {
        "id": branch.id,
        "name": branch.name,
        "address": branch.address_line,
        "image_url": branch.image_url,
        "lat": branch.lat,
        "lng": branch.lng,
        "branchIsOpen": is_branch_open(
            bool(branch.is_force_closed), branch.open_hours, timezone_name=timezone_name
        ),
        "openHours": branch.open_hours,
    }


def _menu_item(row: BranchProduct) -> Dict[str, Any]:
    product = row.product
    add_ons = sorted(product.add_ons, key=lambda addon: addon.id)
    return {
        "product_id": product.id,
        "name": product.name,
        "description": product.description,
        "image_url": product.image_url,
        "price": f"{row.effective_price:.2f}",
        "is_enabled": bool(row.is_enabled),
        "stock_qty": row.stock_qty,
        "add_ons": [
            {
                "id": addon.id,
                "name": addon.name,
                "price": float(addon.price or 0),
                "is_required": bool(addon.is_required),
                "group_name": addon.group_name,
            }
            for addon in add_ons
        ],
    }


def get_branch_menu(branch_id: int) -> Optional[Dict[str, Any]]:
    branch = get_branch(branch_id)
    if branch is None:
        return None
    menu = [_menu_item(row) for row in branch.products if row.product is not None]
    menu.sort(key=lambda item: item["product_id"])
    return {"branch": branch_to_dict(branch), "menu": menu}


def get_top_menu(branch_id: int, limit: int = 10) -> Optional[Dict[str, Any]]:
    """Enabled products of a branch ranked by how many times they were ordered there."""
    branch = get_branch(branch_id)
    if branch is None:
        return None

    counts: Counter = Counter()
    stmt = select(Order.order_details).where(Order.branch_id == branch_id)
    for details in db_session.scalars(stmt).all():
        for item in (details or {}).get("productList", []):
            product_id = parse_int(item.get("productId"))
            qty = parse_int(item.get("qty")) or 0
            if product_id is not None:
                counts[product_id] += max(qty, 0)

    rows = [row for row in branch.products if row.is_enabled and row.product is not None]
    rows.sort(key=lambda row: (-counts.get(row.product_id, 0), row.product_id))
    return {"branch": branch_to_dict(branch), "menu": [_menu_item(row) for row in rows[:limit]]}


def list_categories() -> List[Dict[str, Any]]:
    stmt = select(Category).where(Category.is_enabled.is_(True)).order_by(Category.id)
    return [{"id": category.id, "name": category.name} for category in db_session.scalars(stmt).all()]


def search_branches(
    query: str = "",
    category_id: int | None = None,
    lat: float | None = None,
    lng: float | None = None,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    """Branches offering enabled products that match ``query``, best match first."""
    needle = (query or "").strip().lower()
    limit = max(1, min(100, limit))

    stmt = select(BranchProduct).where(BranchProduct.is_enabled.is_(True))
    if category_id is not None:
        stmt = stmt.where(
            BranchProduct.product_id.in_(
                select(ProductCategory.product_id).where(ProductCategory.category_id == category_id)
            )
        )

    grouped: Dict[int, Dict[str, Any]] = {}
    for row in db_session.scalars(stmt).all():
        product: Product | None = row.product
        if product is None:
            continue
        if needle:
            candidates = (product.name, product.search_terms, row.search_terms)
            if not any(isinstance(value, str) and needle in value.lower() for value in candidates):
                continue

        entry = grouped.get(row.branch_id)
        if entry is None:
            branch = row.branch
            distance = None
            if lat is not None and lng is not None and branch.lat is not None and branch.lng is not None:
                distance = round(haversine_km(lat, lng, branch.lat, branch.lng) * 1000, 1)
            entry = {
                "branch_id": branch.id,
                "branch_name": branch.name,
                "image_url": branch.image_url,
                "lat": branch.lat,
                "lng": branch.lng,
                "address_line": branch.address_line,
                "is_force_closed": bool(branch.is_force_closed),
                "distance_m": distance,
                "products": {},
            }
            grouped[row.branch_id] = entry

        entry["products"].setdefault(
            product.id,
            {
                "product_id": product.id,
                "name": product.name,
                "image_url": product.image_url,
                "price": row.effective_price,
            },
        )

    results = []
    for entry in grouped.values():
        products = [entry["products"][key] for key in sorted(entry["products"])]
        result = {key: value for key, value in entry.items() if key != "products"}
        result["match_count"] = len(products)
        result["products_sample"] = products
        results.append(result)

    results.sort(
        key=lambda item: (
            -item["match_count"],
            item["distance_m"] if item["distance_m"] is not None else float("inf"),
            item["branch_id"],
        )
    )
    return results[:limit]

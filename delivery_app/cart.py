"""
Cart ("card") sanitising and merging.

A cart is a list of branch groups, each holding the product lines picked from
that branch. Lines are identified by branch, product and the canonical list of
selected add-ons, so the same dish with different toppings stays separate.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, List

DEFAULT_MAX_QTY_PER_ITEM = 10
DEFAULT_MAXIMUM_CARD = 100


class CartError(ValueError):
    """Raised for malformed cart payloads."""


class QuantityError(CartError):
    pass


def _to_id(value: Any, field: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return str(int(value)) if float(value).is_integer() else str(value)
    raise CartError(f"Invalid value for {field}")


def _to_name(value: Any, field: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise CartError(f"Invalid value for {field}")


def _to_nullable_string(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    raise CartError("Invalid branchImage")


def _to_number(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise CartError(f"Invalid value for {field}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise CartError(f"Invalid value for {field}") from None
    if not math.isfinite(number):
        raise CartError(f"Invalid value for {field}")
    return number


def _to_quantity(value: Any) -> int:
    qty = math.floor(_to_number(value, "qty"))
    if qty < 1:
        raise QuantityError("Quantity must be at least 1")
    return qty


def sort_add_ons(add_ons: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(add_ons, key=lambda addon: (addon["name"], addon["price"]))


def _sanitize_add_ons(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    add_ons = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise CartError(f"Invalid add-on at index {index}")
        add_ons.append(
            {
                "name": _to_name(item.get("name"), "productAddOns.name"),
                "price": _to_number(item.get("price"), "productAddOns.price"),
            }
        )
    return add_ons


def sanitize_product(raw: Any, index: int) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise CartError(f"Invalid product at index {index}")
    return {
        "productId": _to_id(raw.get("productId"), "productId"),
        "productName": _to_name(raw.get("productName"), "productName"),
        "price": _to_number(raw.get("price"), "price"),
        "qty": _to_quantity(raw.get("qty")),
        "productAddOns": sort_add_ons(_sanitize_add_ons(raw.get("productAddOns"))),
    }


def _branch_header(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "branchId": _to_id(raw.get("branchId"), "branchId"),
        "companyId": _to_id(raw.get("companyId"), "companyId"),
        "branchName": _to_name(raw.get("branchName"), "branchName"),
        "branchImage": _to_nullable_string(raw.get("branchImage")),
    }


def sanitize_branch(raw: Any, index: int) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise CartError(f"Invalid branch at index {index}")
    branch = _branch_header(raw)
    products = raw.get("productList")
    if not isinstance(products, list) or not products:
        raise CartError("productList must contain at least one product")
    branch["productList"] = [sanitize_product(item, i) for i, item in enumerate(products)]
    return branch


def sanitize_card_strict(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        raise CartError("card must be an array")
    return [sanitize_branch(item, index) for index, item in enumerate(raw)]


def sanitize_existing_card(raw: Any) -> List[Dict[str, Any]]:
    """Stored carts that no longer validate are dropped rather than rejected."""
    try:
        return sanitize_card_strict(raw if raw is not None else [])
    except CartError:
        return []


def sanitize_add_request(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, dict):
        raise CartError("Invalid add payload")
    branch = _branch_header(raw)

    sources: List[Any] = []
    if raw.get("item"):
        sources.append(raw["item"])
    if isinstance(raw.get("items"), list):
        sources.extend(raw["items"])
    if isinstance(raw.get("productList"), list):
        sources.extend(raw["productList"])
    if not sources:
        raise CartError("Invalid add payload: add.item required")

    branch["productList"] = [sanitize_product(item, index) for index, item in enumerate(sources)]
    return [branch]


def clamp_qty(qty: int, max_qty: int) -> int:
    return min(max(qty, 1), max_qty)


def variant_key(branch_id: str, item: Dict[str, Any]) -> str:
    add_ons = json.dumps(sort_add_ons(item["productAddOns"]), ensure_ascii=False, separators=(",", ":"))
    return f"{branch_id}|{item['productId']}|{add_ons}"


def _clone_item(item: Dict[str, Any], max_qty: int) -> Dict[str, Any]:
    return {
        "productId": item["productId"],
        "productName": item["productName"],
        "price": item["price"],
        "qty": clamp_qty(item["qty"], max_qty),
        "productAddOns": [dict(addon) for addon in item["productAddOns"]],
    }


def _clone_branch(branch: Dict[str, Any], max_qty: int) -> Dict[str, Any]:
    return {
        "branchId": branch["branchId"],
        "companyId": branch["companyId"],
        "branchName": branch["branchName"],
        "branchImage": branch.get("branchImage"),
        "productList": [_clone_item(item, max_qty) for item in branch["productList"]],
    }


def merge_cards(
    base: List[Dict[str, Any]],
    patch: List[Dict[str, Any]],
    max_qty: int = DEFAULT_MAX_QTY_PER_ITEM,
) -> List[Dict[str, Any]]:
    """Merge ``patch`` into ``base``; matching variants add up, capped at ``max_qty``."""
    branches: Dict[str, Dict[str, Any]] = {}
    for branch in base:
        branches[branch["branchId"]] = _clone_branch(branch, max_qty)

    for branch in patch:
        existing = branches.get(branch["branchId"])
        if existing is None:
            branches[branch["branchId"]] = _clone_branch(branch, max_qty)
            continue

        existing["branchName"] = branch["branchName"]
        existing["branchImage"] = branch.get("branchImage")

        for product in branch["productList"]:
            line = _clone_item(product, max_qty)
            key = variant_key(branch["branchId"], line)
            match = next(
                (item for item in existing["productList"] if variant_key(branch["branchId"], item) == key),
                None,
            )
            if match is None:
                existing["productList"].append(line)
                continue
            match["qty"] = min(match["qty"] + line["qty"], max_qty)
            match["price"] = line["price"]
            match["productName"] = line["productName"]
            match["productAddOns"] = line["productAddOns"]

    return list(branches.values())


def filter_empty_branches(card: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    result = []
    for branch in card:
        products = [item for item in branch["productList"] if item["qty"] > 0]
        if products:
            result.append({**branch, "productList": products})
    return result


def total_unique_items(card: List[Dict[str, Any]]) -> int:
    return sum(len(branch["productList"]) for branch in card)


def clear_branch(card: Any, branch_id: int | str) -> List[Dict[str, Any]]:
    target = str(branch_id)
    return [branch for branch in sanitize_existing_card(card) if branch["branchId"] != target]


def build_next_card(
    existing: Any,
    payload: Dict[str, Any],
    max_qty: int = DEFAULT_MAX_QTY_PER_ITEM,
) -> List[Dict[str, Any]] | None:
    """Compute the cart after a save request, or ``None`` when nothing was added."""
    current = sanitize_existing_card(existing)

    if payload.get("replace") is True:
        return filter_empty_branches(merge_cards([], sanitize_card_strict(payload.get("card") or []), max_qty))

    additions: List[Dict[str, Any]] = []
    if payload.get("add"):
        additions = sanitize_add_request(payload["add"])
    elif payload.get("card"):
        legacy = sanitize_card_strict(payload["card"])
        additions = legacy[:1]

    if not additions:
        return None
    return filter_empty_branches(merge_cards(current, additions, max_qty))

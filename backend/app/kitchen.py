"""
Kitchen workflow over held bills.

A held bill's `data` is the parked cart: `{"cart": [{"product", "variant",
"quantity", "status"}, ...], "orderStatus": ..., ...}`. These helpers only
reshape that blob; persisting it is up to the caller.
"""
import json
from typing import Optional

VISIBLE_ITEM_STATUSES = {None, "PENDING", "PREPARING", "READY"}
# Items the counter has taken over; the kitchen never touches them again.
LOCKED_ITEM_STATUSES = {"SERVED", "BILLING_REQUESTED"}
OPEN_ITEM_STATUSES = {None, "PENDING", "PREPARING"}


def load_bill_data(raw) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    return dict(raw)


def _item_status(item: dict) -> Optional[str]:
    return item.get("status") or None


def _ref_id(ref) -> Optional[str]:
    if isinstance(ref, dict):
        ref = ref.get("id")
    return str(ref) if ref else None


def _matches(item: dict, product_id: str, variant_id: Optional[str]) -> bool:
    if _ref_id(item.get("product")) != str(product_id):
        return False
    if variant_id:
        return _ref_id(item.get("variant")) == str(variant_id)
    return True


def kitchen_view(bills: list) -> list:
    """Bills as the kitchen sees them: only items still in its hands, empty bills dropped."""
    out = []
    for bill in bills:
        data = load_bill_data(bill.get("data"))
        cart = [i for i in data.get("cart") or [] if _item_status(i) in VISIBLE_ITEM_STATUSES]
        if not cart:
            continue
        out.append({**bill, "data": {**data, "cart": cart}})
    return out


def update_item_status(data: dict, product_id: str, variant_id: Optional[str], item_status: str) -> dict:
    data = load_bill_data(data)
    cart = []
    for item in data.get("cart") or []:
        if _matches(item, product_id, variant_id) and _item_status(item) not in LOCKED_ITEM_STATUSES:
            item = {**item, "status": item_status}
        cart.append(item)

    data["cart"] = cart
    if not any(_item_status(i) in OPEN_ITEM_STATUSES for i in cart):
        data["orderStatus"] = "READY"
    elif item_status == "PREPARING":
        data["orderStatus"] = "PREPARING"
    return data


def update_order_status(data: dict, status: str) -> dict:
    data = load_bill_data(data)
    cart = []
    for item in data.get("cart") or []:
        current = _item_status(item)
        if status == "PREPARING" and current in (None, "PENDING"):
            item = {**item, "status": "PREPARING"}
        elif status == "READY" and current == "PREPARING":
            item = {**item, "status": "READY"}
        cart.append(item)

    data["cart"] = cart
    data["orderStatus"] = status
    return data

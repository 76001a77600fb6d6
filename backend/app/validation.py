from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


# Canonical codes mirror the CHECK constraints in `backend/db/schema.sql`.
Role = Annotated[
    Literal["SUPER_ADMIN", "ADMIN", "MANAGER", "CASHIER", "WAITER", "KITCHEN"],
    BeforeValidator(_to_upper_str),
]
# Roles a tenant admin may hand out; SUPER_ADMIN is platform-level only.
TenantRole = Annotated[
    Literal["ADMIN", "MANAGER", "CASHIER", "WAITER", "KITCHEN"],
    BeforeValidator(_to_upper_str),
]
ProductType = Annotated[Literal["SIMPLE", "VARIANT", "COMPOSITE"], BeforeValidator(_to_upper_str)]
DiscountType = Annotated[Literal["PERCENT", "AMOUNT"], BeforeValidator(_to_upper_str)]
DiscountScope = Annotated[Literal["ITEM", "CART"], BeforeValidator(_to_upper_str)]
TaxMode = Annotated[Literal["EXCLUSIVE", "INCLUSIVE"], BeforeValidator(_to_upper_str)]
PaymentMethod = Annotated[Literal["CASH", "CARD"], BeforeValidator(_to_upper_str)]
ItemStatus = Annotated[
    Literal["PENDING", "PREPARING", "READY", "SERVED", "REJECTED", "BILLING_REQUESTED"],
    BeforeValidator(_to_upper_str),
]
OrderStatus = Annotated[
    Literal["PENDING", "PREPARING", "READY", "SERVED", "BILLING_REQUESTED", "COMPLETED"],
    BeforeValidator(_to_upper_str),
]

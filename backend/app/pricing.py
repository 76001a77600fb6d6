"""
Order pricing.

Composes item discounts, the cart discount, a coupon and tax into one
deterministic total. Amounts are Decimals; each money figure is rounded
half-up to cents exactly once and everything downstream is derived from the
rounded figures, so the parts always add up to the reported totals.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

MONEY_Q = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

TAX_EXCLUSIVE = "EXCLUSIVE"
TAX_INCLUSIVE = "INCLUSIVE"


def q_money(v) -> Decimal:
    return to_decimal(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def to_decimal(v) -> Decimal:
    if v is None:
        return ZERO
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


@dataclass
class DiscountRule:
    type: str  # PERCENT | AMOUNT
    value: Decimal
    scope: str = "ITEM"  # ITEM | CART


@dataclass
class Coupon:
    code: str
    type: str  # PERCENT | AMOUNT
    value: Decimal


@dataclass
class LineInput:
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    discount_rule: Optional[DiscountRule] = None
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    # Used only when no cart-level tax is given.
    tax_percent: Optional[Decimal] = None


def apply_rule(amount: Decimal, rule) -> Decimal:
    """Discount produced by a PERCENT/AMOUNT rule on `amount`, capped to [0, amount]."""
    if rule is None:
        return ZERO
    value = to_decimal(rule.value)
    if rule.type == "PERCENT":
        discount = amount * value / HUNDRED
    else:
        discount = value
    return min(max(discount, ZERO), max(amount, ZERO))


def tax_on(amount: Decimal, percent: Decimal, mode: str) -> Decimal:
    if percent <= 0 or amount <= 0:
        return ZERO
    if mode == TAX_INCLUSIVE:
        # Prices already contain the tax; extract it.
        return amount * percent / (HUNDRED + percent)
    return amount * percent / HUNDRED


def allocate(amount: Decimal, weights: list) -> list:
    """
    Split a cent-rounded `amount` across `weights` in proportion.

    Shares are rounded to cents and the last positive weight absorbs the
    rounding remainder, so the shares sum to `amount` exactly.
    """
    weights = [max(to_decimal(w), ZERO) for w in weights]
    total_weight = sum(weights, ZERO)
    if total_weight <= 0:
        return [ZERO for _ in weights]
    last = max(i for i, w in enumerate(weights) if w > 0)
    shares = []
    allocated = ZERO
    for i, w in enumerate(weights):
        if i == last:
            share = amount - allocated
        elif w == 0:
            share = ZERO
        else:
            share = q_money(amount * w / total_weight)
        allocated += share
        shares.append(share)
    return shares


def calculate_totals(
    lines: list,
    *,
    cart_rule: Optional[DiscountRule] = None,
    coupon: Optional[Coupon] = None,
    tax_percent: Optional[Decimal] = None,
    tax_mode: str = TAX_EXCLUSIVE,
) -> dict:
    mode = TAX_INCLUSIVE if tax_mode == TAX_INCLUSIVE else TAX_EXCLUSIVE
    per_item = []
    subtotal = ZERO
    item_discount_total = ZERO

    for line in lines:
        price = q_money(line.unit_price)
        qty = int(line.quantity)
        line_base = q_money(price * qty)
        rule = line.discount_rule if line.discount_rule and line.discount_rule.scope == "ITEM" else None
        line_discount = q_money(apply_rule(line_base, rule))
        subtotal += line_base
        item_discount_total += line_discount
        per_item.append(
            {
                "product_id": line.product_id,
                "product_name": line.product_name,
                "variant_id": line.variant_id,
                "variant_name": line.variant_name,
                "quantity": qty,
                "price": price,
                "discount": line_discount,
                "tax": ZERO,
                # Display amount: quantity x price, before discount and tax.
                "total": line_base,
                "tax_percent": to_decimal(line.tax_percent),
            }
        )

    after_items = max(subtotal - item_discount_total, ZERO)
    cart_discount_total = ZERO
    if cart_rule is not None and cart_rule.scope == "CART":
        cart_discount_total = q_money(apply_rule(after_items, cart_rule))

    coupon_value = ZERO
    if coupon is not None:
        coupon_value = q_money(apply_rule(after_items - cart_discount_total, coupon))

    discount_total = item_discount_total + cart_discount_total + coupon_value
    taxable = max(subtotal - discount_total, ZERO)
    nets = [row["total"] - row["discount"] for row in per_item]

    tax_amount = ZERO
    cart_tax_percent = to_decimal(tax_percent) if tax_percent is not None else None
    if cart_tax_percent is not None:
        tax_amount = q_money(tax_on(taxable, cart_tax_percent, mode))
        for row, share in zip(per_item, allocate(tax_amount, nets)):
            row["tax"] = share
            row["tax_percent"] = cart_tax_percent
    else:
        for row, net in zip(per_item, nets):
            if row["tax_percent"] > 0:
                row["tax"] = q_money(tax_on(net, row["tax_percent"], mode))
                tax_amount += row["tax"]

    total = taxable if mode == TAX_INCLUSIVE else taxable + tax_amount

    return {
        "subtotal": subtotal,
        "item_discount_total": item_discount_total,
        "cart_discount_total": cart_discount_total,
        "coupon_value": coupon_value,
        "discount_total": discount_total,
        "tax_mode": mode,
        "tax_percent": cart_tax_percent if cart_tax_percent is not None else ZERO,
        "tax_amount": tax_amount,
        "total": total,
        "per_item": per_item,
    }


def line_paid_values(sale_total, items: list) -> dict:
    """
    What the customer actually paid for each sale item.

    The sale total (after cart discount, coupon and tax) is split across the
    items by their net share (`total - discount`).
    """
    nets = [to_decimal(it["total"]) - to_decimal(it["discount"]) for it in items]
    shares = allocate(q_money(sale_total), nets)
    return {str(it["id"]): share for it, share in zip(items, shares)}


def apportion_refund(sale_total, items: list, requests: list, already_refunded=ZERO) -> tuple:
    """
    Resolve refund requests against a sale's items.

    `items` are sale item rows (id, quantity, returned_quantity, total, discount);
    `requests` are `(sale_item_id, quantity)` pairs. Quantities are clamped to
    what is still returnable; unknown items and non-positive quantities are
    skipped. Returns `(lines, refund_total)` where each line is
    `{"item", "quantity", "amount"}`; the total never exceeds what remains
    unrefunded on the sale.
    """
    by_id = {str(it["id"]): it for it in items}
    paid = line_paid_values(sale_total, items)
    claimed = {item_id: int(it.get("returned_quantity") or 0) for item_id, it in by_id.items()}

    lines = []
    for item_id, requested in requests:
        item_id = str(item_id)
        item = by_id.get(item_id)
        if item is None:
            continue
        sold_qty = int(item["quantity"])
        done = claimed[item_id]
        qty = min(int(requested or 0), sold_qty - done)
        if qty <= 0:
            continue
        claimed[item_id] = done + qty
        # Cumulative rounding: the last unit returned gets whatever is left of the line.
        amount = q_money(paid[item_id] * (done + qty) / sold_qty) - q_money(paid[item_id] * done / sold_qty)
        lines.append({"item": item, "quantity": qty, "amount": amount})

    refundable = max(q_money(sale_total) - q_money(already_refunded), ZERO)
    refund_total = sum((l["amount"] for l in lines), ZERO)
    if refund_total > refundable:
        excess = refund_total - refundable
        for line in reversed(lines):
            cut = min(excess, line["amount"])
            line["amount"] -= cut
            excess -= cut
            if excess <= 0:
                break
        refund_total = refundable
    return lines, refund_total

import json
from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Optional

from .checkout import variant_display_name
from .config import settings
from .pricing import q_money, to_decimal

_STYLE = """
body { font-family: sans-serif; margin: 0; padding: 10px; }
.receipt-header, .receipt-footer { text-align: center; margin-bottom: 10px; }
.receipt-details { font-size: 12px; margin-bottom: 10px; }
table { width: 100%; border-collapse: collapse; font-size: 12px; }
th, td { border: 1px solid #eee; padding: 5px; text-align: left; }
.totals { margin-top: 10px; font-size: 12px; text-align: right; }
.totals div { display: flex; justify-content: space-between; }
.totals strong { font-size: 14px; }
"""


def money(v, currency: Optional[str] = None) -> str:
    return f"{currency or settings.currency_label} {q_money(v):.2f}"


def _flag(invoice_settings: dict, key: str) -> bool:
    # Unset flags print; only an explicit false hides a section.
    return invoice_settings.get(key) is not False


def _custom_fields(invoice_settings: dict) -> list:
    fields = invoice_settings.get("custom_fields") or []
    if isinstance(fields, str):
        fields = json.loads(fields)
    return [f for f in fields if isinstance(f, dict) and f.get("label")]


def _item_label(item: dict) -> str:
    label = item.get("product_name") or ""
    variant = variant_display_name(
        {"name": item.get("variant_name"), "attributes": item.get("variant_attributes")}
        if item.get("variant_id")
        else None
    )
    if variant:
        label = f"{label} ({variant})"
    return escape(label)


def render_receipt(sale: dict, invoice_settings: Optional[dict] = None) -> str:
    """Printable HTML for `sale` (as returned by `fetch_sale`)."""
    s = invoice_settings or {}
    cur = settings.currency_label

    header = []
    if s.get("logo_url"):
        header.append(f'<img src="{escape(s["logo_url"])}" style="max-width:150px;" />')
    if s.get("header_text"):
        header.append(f"<div>{escape(s['header_text'])}</div>")

    created_at = sale.get("created_at")
    if isinstance(created_at, datetime):
        created_at = created_at.strftime("%Y-%m-%d %H:%M")
    details = [
        f"Order ID: {escape(str(sale.get('order_id') or ''))}<br/>",
        f"Date: {escape(str(created_at or ''))}<br/>",
    ]
    if _flag(s, "show_cashier"):
        cashier = sale.get("cashier_name") or sale.get("cashier_email") or "Unknown"
        details.append(f"Cashier: {escape(cashier)}<br/>")
    details.append(f"Payment Method: {'Card' if sale.get('payment_method') == 'CARD' else 'Cash'}<br/>")
    for field in _custom_fields(s):
        details.append(f"<div><strong>{escape(str(field['label']))}:</strong> {escape(str(field.get('value') or ''))}</div>")

    rows = []
    for item in sale.get("items") or []:
        rows.append(
            f"<tr><td>{_item_label(item)}</td><td>{int(item.get('quantity') or 0)}</td>"
            f"<td>{money(item.get('price'), cur)}</td><td>{money(item.get('total'), cur)}</td></tr>"
        )

    totals = [f"<div><span>Subtotal:</span><span>{money(sale.get('subtotal'), cur)}</span></div>"]
    discount = to_decimal(sale.get("discount"))
    if _flag(s, "show_discount") and discount > Decimal("0"):
        totals.append(f"<div><span>Discount:</span><span>-{money(discount, cur)}</span></div>")
    tax = to_decimal(sale.get("tax"))
    if _flag(s, "show_tax") and tax > Decimal("0"):
        totals.append(f"<div><span>Tax:</span><span>{money(tax, cur)}</span></div>")
    totals.append(f"<div><strong><span>Total:</span><span>{money(sale.get('total'), cur)}</span></strong></div>")

    footer = f"<div>{escape(s['footer_text'])}</div>" if s.get("footer_text") else ""

    return (
        "<html><head>"
        f"<title>Order {escape(str(sale.get('order_id') or ''))}</title>"
        f"<style>{_STYLE}</style>"
        "</head><body>"
        f'<div class="receipt-header">{"".join(header)}</div>'
        f'<div class="receipt-details">{"".join(details)}</div>'
        "<table><thead><tr><th>Item</th><th>Qty</th><th>Price</th><th>Total</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody></table>"
        f'<div class="totals">{"".join(totals)}</div>'
        f'<div class="receipt-footer">{footer}</div>'
        "</body></html>"
    )

from datetime import datetime
from decimal import Decimal

from backend.app.receipts import render_receipt


def _sale(**overrides):
    sale = {
        "order_id": "20260304-AB12C",
        "created_at": datetime(2026, 3, 4, 12, 30),
        "cashier_name": "Sara",
        "cashier_email": "sara@example.com",
        "payment_method": "CARD",
        "subtotal": Decimal("250.00"),
        "discount": Decimal("25.00"),
        "tax": Decimal("22.50"),
        "total": Decimal("247.50"),
        "items": [
            {"product_name": "Shirt", "variant_id": "v1", "variant_name": None, "variant_attributes": {"size": "L"}, "quantity": 2, "price": Decimal("100"), "total": Decimal("200")},
            {"product_name": "Tea <hot>", "variant_id": None, "quantity": 1, "price": Decimal("50"), "total": Decimal("50")},
        ],
    }
    sale.update(overrides)
    return sale


def test_receipt_shows_everything_by_default():
    html = render_receipt(_sale())

    assert "<title>Order 20260304-AB12C</title>" in html
    assert "Cashier: Sara" in html
    assert "Payment Method: Card" in html
    assert "Shirt (L)" in html
    assert "Rs. 100.00" in html
    assert "-Rs. 25.00" in html
    assert "Tax:" in html
    assert "Rs. 247.50" in html


def test_receipt_escapes_user_text():
    html = render_receipt(_sale(), {"header_text": "<b>Shop</b>", "custom_fields": [{"label": "NTN", "value": "1&2"}]})

    assert "Tea &lt;hot&gt;" in html
    assert "&lt;b&gt;Shop&lt;/b&gt;" in html
    assert "<strong>NTN:</strong> 1&amp;2" in html


def test_receipt_honors_invoice_settings():
    html = render_receipt(
        _sale(),
        {
            "logo_url": "https://cdn.example.com/logo.png",
            "footer_text": "Thanks!",
            "show_cashier": False,
            "show_discount": False,
            "show_tax": False,
            "custom_fields": '[{"label": "STRN", "value": "42"}]',
        },
    )

    assert 'src="https://cdn.example.com/logo.png"' in html
    assert "Thanks!" in html
    assert "Cashier:" not in html
    assert "Discount:" not in html
    assert "Tax:" not in html
    assert "STRN:" in html


def test_receipt_hides_zero_discount_and_tax_and_falls_back_on_cashier():
    html = render_receipt(_sale(discount=Decimal("0"), tax=Decimal("0"), cashier_name=None, payment_method="CASH"))

    assert "Discount:" not in html
    assert "Tax:" not in html
    assert "Cashier: sara@example.com" in html
    assert "Payment Method: Cash" in html

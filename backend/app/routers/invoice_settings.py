from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional
import json

from ..db import get_conn, set_client_context
from ..deps import get_client_id, require_permission, COUNTER_ROLES
from ..validation import TaxMode

router = APIRouter(prefix="/invoice-settings", tags=["invoice-settings"])


class CustomField(BaseModel):
    label: str
    value: str = ""


class InvoiceSettingsIn(BaseModel):
    tax_mode: TaxMode = "EXCLUSIVE"
    header_text: Optional[str] = None
    footer_text: Optional[str] = None
    logo_url: Optional[str] = None
    show_cashier: bool = True
    show_discount: bool = True
    show_tax: bool = True
    custom_fields: List[CustomField] = Field(default_factory=list)


@router.get("", dependencies=[Depends(require_permission("manage_receipt_settings", roles=COUNTER_ROLES))])
def get_invoice_settings(client_id: str = Depends(get_client_id)):
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT tax_mode, header_text, footer_text, logo_url,
                       show_cashier, show_discount, show_tax, custom_fields, updated_at
                FROM invoice_settings
                WHERE client_id = %s
                """,
                (client_id,),
            )
            return {"settings": cur.fetchone() or {}}


@router.put("", dependencies=[Depends(require_permission("manage_receipt_settings"))])
def upsert_invoice_settings(data: InvoiceSettingsIn, client_id: str = Depends(get_client_id)):
    custom_fields = [f.model_dump() for f in data.custom_fields if (f.label or "").strip()]
    with get_conn() as conn:
        set_client_context(conn, client_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO invoice_settings
                  (client_id, tax_mode, header_text, footer_text, logo_url,
                   show_cashier, show_discount, show_tax, custom_fields)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (client_id) DO UPDATE
                SET tax_mode = EXCLUDED.tax_mode,
                    header_text = EXCLUDED.header_text,
                    footer_text = EXCLUDED.footer_text,
                    logo_url = EXCLUDED.logo_url,
                    show_cashier = EXCLUDED.show_cashier,
                    show_discount = EXCLUDED.show_discount,
                    show_tax = EXCLUDED.show_tax,
                    custom_fields = EXCLUDED.custom_fields,
                    updated_at = now()
                RETURNING tax_mode, header_text, footer_text, logo_url,
                          show_cashier, show_discount, show_tax, custom_fields, updated_at
                """,
                (
                    client_id,
                    data.tax_mode,
                    data.header_text,
                    data.footer_text,
                    data.logo_url,
                    bool(data.show_cashier),
                    bool(data.show_discount),
                    bool(data.show_tax),
                    json.dumps(custom_fields),
                ),
            )
            return {"settings": cur.fetchone()}

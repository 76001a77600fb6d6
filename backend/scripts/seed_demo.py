#!/usr/bin/env python3
"""
Create a demo tenant to click around in.

Idempotent on user emails: running it twice reuses the existing accounts and
only fills in what is missing.
"""
import argparse
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password


def _ensure_user(cur, *, email: str, name: str, password: str, role: str, client_id):
    cur.execute("SELECT id FROM users WHERE lower(email) = %s", (email,))
    row = cur.fetchone()
    if row:
        return row["id"], False
    cur.execute(
        """
        INSERT INTO users (id, client_id, email, name, hashed_password, role)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (client_id, email, name, hash_password(password), role),
    )
    return cur.fetchone()["id"], True


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a demo client with users, a category and tax slabs.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/amanatpos",
        help="Postgres connection string (defaults to $DATABASE_URL_ADMIN, then $DATABASE_URL).",
    )
    parser.add_argument("--client-name", default="Demo Store")
    parser.add_argument("--domain", default="amanatpos.local", help="Email domain for the demo accounts.")
    parser.add_argument("--password", default=None, help="Password for every demo account (generated when omitted).")
    args = parser.parse_args()

    domain = (args.domain or "").strip().lower()
    if not domain:
        print("domain is required", file=sys.stderr)
        return 2
    password = args.password or secrets.token_urlsafe(12)

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _ensure_user(
                    cur,
                    email=f"superadmin@{domain}",
                    name="Super Admin",
                    password=password,
                    role="SUPER_ADMIN",
                    client_id=None,
                )

                cur.execute("SELECT id FROM clients WHERE name = %s", (args.client_name,))
                row = cur.fetchone()
                if row:
                    client_id = row["id"]
                else:
                    cur.execute(
                        """
                        INSERT INTO clients (id, name, company_name)
                        VALUES (gen_random_uuid(), %s, %s)
                        RETURNING id
                        """,
                        (args.client_name, args.client_name),
                    )
                    client_id = cur.fetchone()["id"]

                for role in ("ADMIN", "CASHIER", "KITCHEN"):
                    _ensure_user(
                        cur,
                        email=f"{role.lower()}@{domain}",
                        name=role.title(),
                        password=password,
                        role=role,
                        client_id=client_id,
                    )

                cur.execute(
                    """
                    INSERT INTO categories (id, client_id, name, is_default)
                    VALUES (gen_random_uuid(), %s, 'General', true)
                    ON CONFLICT DO NOTHING
                    """,
                    (client_id,),
                )

                cur.execute("SELECT COUNT(*) AS n FROM tax_settings WHERE client_id = %s", (client_id,))
                if not cur.fetchone()["n"]:
                    for name, percent, is_default in (("GST", 17, True), ("Reduced", 5, False)):
                        cur.execute(
                            """
                            INSERT INTO tax_settings (id, client_id, name, percent, is_default)
                            VALUES (gen_random_uuid(), %s, %s, %s, %s)
                            """,
                            (client_id, name, percent, is_default),
                        )

                cur.execute(
                    """
                    INSERT INTO invoice_settings (client_id, header_text, footer_text)
                    VALUES (%s, %s, 'Thank you for shopping with us!')
                    ON CONFLICT (client_id) DO NOTHING
                    """,
                    (client_id, args.client_name),
                )

    print(f"client_id={client_id}")
    if not args.password:
        print(f"password={password}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""Emit SQL that grants a Supabase user a tutormatch role."""

from __future__ import annotations

import argparse

ROLES = ("candidate", "requester", "admin")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, user_id: str | None, email: str | None, display_name: str | None = None) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role: {role}")

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    elif email:
        target_where = f"email = {_quote_sql(email)}"
    else:
        raise ValueError("user_id or email is required")

    statements = [
        "update auth.users\n"
        f"set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {_quote_sql(role)})\n"
        f"where {target_where};",
    ]
    if display_name:
        statements.append(
            "update auth.users\n"
            "set raw_user_meta_data = coalesce(raw_user_meta_data, '{}'::jsonb)"
            f" || jsonb_build_object('full_name', {_quote_sql(display_name)})\n"
            f"where {target_where};"
        )
    statements.append(
        "select id, email, raw_app_meta_data ->> 'role' as role\n"
        "from auth.users\n"
        f"where {target_where};"
    )

    body = "\n\n".join(statements)
    return f"""-- tutormatch role bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).
-- Users must sign in again before the new role shows up in their token.

{body}
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to grant a Supabase user a tutormatch role.")
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="admin",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument(
        "--display-name",
        default=None,
        help="Optional full_name stored in raw_user_meta_data, shown on withdrawal notices",
    )
    args = parser.parse_args()

    print(
        render_sql(
            role=args.role,
            user_id=args.user_id,
            email=args.email,
            display_name=args.display_name,
        )
    )


if __name__ == "__main__":
    main()

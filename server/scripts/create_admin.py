"""Admin CLI: grant (or revoke) the admin role for an existing account.

The user must have signed in at least once (email OTP or Google) so the
account row exists.

Usage examples:
  python scripts/create_admin.py --email owner@example.com
  python scripts/create_admin.py --email former@example.com --revoke
"""

import argparse
import asyncio


async def _run(email: str, revoke: bool) -> int:
    from storefront.settings import DATABASE_URL
    from storefront import db

    if not DATABASE_URL:
        print("ERROR: DATABASE_URL is not set.")
        return 2

    await db.init_pool()
    try:
        role = "user" if revoke else "admin"
        user = await db.set_user_role_by_email(email, role)
        if not user:
            print(f"ERROR: No account found for {email}. Sign in once before promoting.")
            return 1

        print("user_id:", user["id"])
        print("email:", user["email"])
        print("role:", user["role"])
        return 0
    finally:
        await db.close_pool()


def main() -> int:
    parser = argparse.ArgumentParser(description="Grant or revoke the admin role for a user.")
    parser.add_argument("--email", required=True, help="Account email")
    parser.add_argument("--revoke", action="store_true", help="Demote the user back to a customer")
    args = parser.parse_args()

    return asyncio.run(_run(args.email.strip().lower(), args.revoke))


if __name__ == "__main__":
    raise SystemExit(main())

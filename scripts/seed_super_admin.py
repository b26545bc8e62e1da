#!/usr/bin/env python3
"""
Seed the first super-admin and print a bearer token for it.

Reads SUPER_ADMIN_EMAIL from .env file.
Run from project root: python scripts/seed_super_admin.py
"""

import sys
import os

from dotenv import load_dotenv

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(project_root, ".env"))

from src.auth import create_super_admin_token
from src.db import supabase


def main():
    email = os.getenv("SUPER_ADMIN_EMAIL")
    if not email:
        print("Error: SUPER_ADMIN_EMAIL must be set in .env")
        sys.exit(1)

    existing = supabase.table("super_admins").select("id, email, created_at").eq("email", email).execute()
    if existing.data:
        super_admin = existing.data[0]
        print(f"Super-admin with email '{email}' already exists.")
    else:
        result = supabase.table("super_admins").insert({"email": email}).execute()
        if not result.data:
            print("Error: Failed to create super-admin")
            sys.exit(1)
        super_admin = result.data[0]
        print("Created super-admin:")

    print(f"  ID: {super_admin['id']}")
    print(f"  Email: {super_admin['email']}")
    print(f"  Token: {create_super_admin_token(super_admin['id'])}")


if __name__ == "__main__":
    main()

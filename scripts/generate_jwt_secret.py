#!/usr/bin/env python3
"""Print a fresh signing secret for JWT_SECRET.

Usage:
    python scripts/generate_jwt_secret.py            # 32 random bytes
    python scripts/generate_jwt_secret.py --bytes 64
"""
from __future__ import annotations

import argparse
import secrets
import sys

MIN_BYTES = 32


def generate_secret(num_bytes: int = MIN_BYTES) -> str:
    if num_bytes < MIN_BYTES:
        raise ValueError(f"secret must be at least {MIN_BYTES} bytes")
    return secrets.token_urlsafe(num_bytes)


def main():
    parser = argparse.ArgumentParser(description="Generate a JWT signing secret")
    parser.add_argument("--bytes", type=int, default=MIN_BYTES, dest="num_bytes")
    args = parser.parse_args()

    try:
        secret = generate_secret(args.num_bytes)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Generated JWT Secret:")
    print(secret)
    print("\nAdd this to your .env file:")
    print(f"JWT_SECRET={secret}")


if __name__ == "__main__":
    main()

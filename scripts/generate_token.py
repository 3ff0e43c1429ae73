#!/usr/bin/env python3
"""
Generate admin and bridge tokens that pass the startup strength check.

Usage:
    python scripts/generate_token.py              # One 32-byte token
    python scripts/generate_token.py 48           # One 48-byte token
    python scripts/generate_token.py --env        # ADMIN_TOKEN / BRIDGE_TOKEN lines for .env
"""
import secrets
import sys

from chatrelay.transport.security import validate_token_strength

ENV_NAMES = ("ADMIN_TOKEN", "BRIDGE_TOKEN")


def generate_token(length: int = 32, name: str = "token") -> str:
    """URL-safe random token; redrawn until it raises no strength warnings."""
    while True:
        token = secrets.token_urlsafe(length)
        if not validate_token_strength(token, name):
            return token


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    if env_format:
        for name in ENV_NAMES:
            print(f"{name}={generate_token(length, name)}")
    else:
        print(generate_token(length))


if __name__ == "__main__":
    main()

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys
import time

from auth.errors import AuthError
from auth.models import DeviceCodeChallenge
from onedrive import api
from onedrive.constants import APP_VERSION
from onedrive.env import load_config, load_env, setup_logging


def print_challenge(challenge: DeviceCodeChallenge) -> None:
    message = challenge.message or (
        f"To sign in, open {challenge.verification_uri} and enter the code {challenge.user_code}"
    )
    print(message, flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="onedrive-auth",
        description="Sign in to OneDrive with the device code flow and manage cached tokens.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    login = commands.add_parser("login", help="sign in, reusing cached tokens when possible")
    login.add_argument(
        "--device-code",
        action="store_true",
        help="always run the device code flow, ignoring cached tokens",
    )
    commands.add_parser("status", help="show the signed-in account without prompting")
    commands.add_parser("token", help="print a valid access token without prompting")
    commands.add_parser("logout", help="sign out and delete the token cache")
    return parser


async def _run(args: argparse.Namespace) -> int:
    config = load_config()
    if args.command in {"status", "token"}:
        config = dataclasses.replace(config, interactive_fallback=False)

    result = await api.initialize(config)
    if not result.ok:
        print(f"Initialization failed: {result.message}", file=sys.stderr)
        return 1

    if args.command == "logout":
        result = await api.sign_out()
        if not result.ok:
            print(f"Sign-out failed: {result.message}", file=sys.stderr)
            return 1
        print("Signed out.")
        return 0

    if args.command == "login" and args.device_code:
        result = await api.authenticate(print_challenge)
    else:
        result = await api.quick_authenticate(print_challenge)

    if not result.ok:
        if args.command == "status":
            print(f"Not signed in: {result.message}")
        else:
            print(f"Authentication failed: {result.message}", file=sys.stderr)
        return 1

    session = api.get_session()
    account = session.current_account
    if args.command == "token":
        print(await session.get_access_token())
        return 0

    credential = session.cache.get()
    remaining = int(credential.expires_at - time.time()) if credential else 0
    print(f"Signed in as {account.username} (token valid for {max(0, remaining)}s).")
    return 0


async def _main(args: argparse.Namespace) -> int:
    try:
        return await _run(args)
    except AuthError as error:
        print(f"Error: {error.message}", file=sys.stderr)
        return 1
    finally:
        await api.dispose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_env()
    setup_logging(args.debug or None)

    try:
        return asyncio.run(_main(args))
    except RuntimeError as error:
        print(f"Configuration error: {error}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())

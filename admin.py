"""
admin.py: operator commands for API tokens and stored credentials.

Run through the main entry point:
  shelf-resolver token add <principal> [--token TOKEN]   → prints the token once
  shelf-resolver token revoke <token>
  shelf-resolver key list                                → masked values
  shelf-resolver key set <name> <value>
  shelf-resolver key delete <name>                       → falls back to .env

Tokens and keys live in the same SQLite file the server reads, so changes
apply to the next request (tokens) or the next restart (keys).

Bootstrap works the same way as API_TOKENS in .env: the env list lets the
first client in, DB tokens are managed from here.
"""
from __future__ import annotations

import argparse
import logging
import secrets
import sys
from typing import Optional

import key_store
from database import DetectionStore
from errors import InvalidInput

logger = logging.getLogger(__name__)


# ── Tokens ─────────────────────────────────────────────────────────────────────

async def add_token(store: DetectionStore, principal: str, token: Optional[str] = None) -> str:
    """Register a bearer token for principal; generates one when not given."""
    principal = (principal or "").strip()
    if not principal:
        raise InvalidInput("principal is required")
    token = token or secrets.token_urlsafe(32)
    await store.add_api_token(token, principal)
    logger.info("API token added for %s", principal)
    return token


async def revoke_token(store: DetectionStore, token: str) -> bool:
    removed = await store.revoke_api_token(token)
    if removed:
        logger.info("API token revoked")
    return removed


# ── Credentials ────────────────────────────────────────────────────────────────

def _check_key_name(key_name: str) -> None:
    if key_name not in key_store.KEY_NAMES:
        raise InvalidInput(
            f"Unknown key '{key_name}'. Known keys: {', '.join(key_store.KEY_NAMES)}"
        )


async def set_key(store: DetectionStore, key_name: str, value: str) -> None:
    _check_key_name(key_name)
    value = (value or "").strip()
    if not value:
        raise InvalidInput("Empty value, not saved")
    await key_store.set(store, key_name, value)
    logger.info("Key %s saved (%s)", key_name, key_store.mask(value))


async def delete_key(store: DetectionStore, key_name: str) -> None:
    _check_key_name(key_name)
    await key_store.delete(store, key_name)
    logger.info("Key %s cleared; .env value applies if present", key_name)


async def list_keys(store: DetectionStore) -> dict[str, str]:
    """Every known key with its masked current value."""
    all_keys = await key_store.get_all_keys(store)
    return {name: key_store.mask(value) for name, value in all_keys.items()}


# ── Command line ───────────────────────────────────────────────────────────────

def add_subcommands(subparsers) -> None:
    """Attach the `token` and `key` command groups to the main parser."""
    token = subparsers.add_parser("token", help="Manage API bearer tokens")
    token_cmds = token.add_subparsers(dest="action", required=True)
    add = token_cmds.add_parser("add", help="Register a token and print it")
    add.add_argument("principal", help="Who the token belongs to")
    add.add_argument("--token", default=None, help="Use this token instead of generating one")
    revoke = token_cmds.add_parser("revoke", help="Remove a token")
    revoke.add_argument("token")

    key = subparsers.add_parser("key", help="Manage stored credentials")
    key_cmds = key.add_subparsers(dest="action", required=True)
    key_cmds.add_parser("list", help="Show every credential, masked")
    set_ = key_cmds.add_parser("set", help="Store a credential (overrides .env)")
    set_.add_argument("name", choices=key_store.KEY_NAMES)
    set_.add_argument("value")
    delete = key_cmds.add_parser("delete", help="Remove a stored credential")
    delete.add_argument("name", choices=key_store.KEY_NAMES)


async def run_command(store: DetectionStore, args: argparse.Namespace, out=None) -> int:
    """Execute a parsed `token` / `key` command. Returns the process exit code."""
    out = out or sys.stdout
    await store.init_db()
    try:
        if args.command == "token" and args.action == "add":
            print(await add_token(store, args.principal, args.token), file=out)
        elif args.command == "token" and args.action == "revoke":
            if not await revoke_token(store, args.token):
                print("No such token.", file=sys.stderr)
                return 1
            print("Token revoked.", file=out)
        elif args.command == "key" and args.action == "list":
            for name, masked in (await list_keys(store)).items():
                print(f"{name:<20} {masked}", file=out)
        elif args.command == "key" and args.action == "set":
            await set_key(store, args.name, args.value)
            print(f"{args.name} saved. Restart the service to apply.", file=out)
        elif args.command == "key" and args.action == "delete":
            await delete_key(store, args.name)
            print(f"{args.name} cleared. Restart the service to apply.", file=out)
    except InvalidInput as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    return 0

"""zkvault command-line entrypoint over a local JSON-file store."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from pathlib import Path
from typing import Callable, List, Optional

from zkvault.config import Config
from zkvault.errors import DecryptionFailure, VaultError
from zkvault.vault.manager import VaultStore
from zkvault.vault.models import VaultItem
from zkvault.vault.security import SecurityManager
from zkvault.vault.session import SessionKeyHolder

logger = logging.getLogger("zkvault")

PasswordPrompt = Callable[[str], str]


# ============================================================================
#  Session plumbing
# ============================================================================
class CliContext:
    def __init__(self, data_dir: Path, owner: str, prompt: PasswordPrompt):
        from zkvault.paths import get_store_path
        from zkvault.storage.backend import JsonFileBackend
        from zkvault.util.rate_limit import RateLimiter

        self.owner = owner
        self.prompt = prompt
        self.settings = Config.load(data_dir)
        self.backend = JsonFileBackend(get_store_path(data_dir))
        self.holder = SessionKeyHolder(idle_timeout=self.settings.idle_timeout)
        self.security = SecurityManager(
            self.backend,
            rate_limiter=RateLimiter(
                self.settings.max_unlock_attempts, self.settings.unlock_delay_base
            ),
        )
        self.store = VaultStore(self.backend, self.holder)

    async def unlock(self) -> None:
        password = self.prompt("Vault password: ")
        await self.security.unlock(self.owner, password, self.holder)
        await self.store.list(self.owner)

    async def close(self) -> None:
        self.security.lock(self.holder)
        await self.backend.close()

    def resolve(self, ref: str) -> VaultItem:
        """Match an item by full id or unique id prefix."""
        matches = [item for item in self.store.items if item.id.startswith(ref)]
        if len(matches) != 1:
            raise VaultError(
                f"No item matches {ref!r}" if not matches else f"Ambiguous id prefix {ref!r}"
            )
        return matches[0]


@asynccontextmanager
async def open_context(args: argparse.Namespace, prompt: PasswordPrompt, unlock: bool = True):
    ctx = CliContext(args.data_dir, args.owner, prompt)
    try:
        if unlock:
            await ctx.unlock()
        yield ctx
    finally:
        await ctx.close()


def _format_item(item: VaultItem) -> str:
    star = "*" if item.is_favorite else " "
    note = f"  ({item.metadata.note})" if item.metadata.note else ""
    return f"{star} {item.id[:8]}  {item.type:<7} {item.name}{note}"


def _print_items(items: List[VaultItem]) -> None:
    if not items:
        print("(no items)")
    for item in items:
        print(_format_item(item))


def _parse_fields(pairs: Optional[List[str]]) -> dict:
    fields = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise VaultError(f"Expected key=value, got {pair!r}")
        fields[key] = value
    return fields


# ============================================================================
#  Commands
# ============================================================================
async def cmd_init(args, prompt: PasswordPrompt) -> int:
    password = prompt("New vault password: ")
    if password != prompt("Repeat password: "):
        print("ERROR: passwords do not match", file=sys.stderr)
        return 1
    async with open_context(args, prompt, unlock=False) as ctx:
        await ctx.security.register(ctx.owner, password)
    print(f"Vault initialised for {args.owner}")
    return 0


async def cmd_unlock(args, prompt: PasswordPrompt) -> int:
    async with open_context(args, prompt) as ctx:
        print(
            f"Vault unlocked: {len(ctx.store.active())} active, "
            f"{len(ctx.store.trash())} in trash"
        )
    return 0


async def cmd_list(args, prompt: PasswordPrompt) -> int:
    async with open_context(args, prompt) as ctx:
        _print_items(ctx.store.active(args.query, args.type, args.favorites))
    return 0


async def cmd_trash(args, prompt: PasswordPrompt) -> int:
    async with open_context(args, prompt) as ctx:
        _print_items(ctx.store.trash(args.query, args.type))
    return 0


async def cmd_add(args, prompt: PasswordPrompt) -> int:
    async with open_context(args, prompt) as ctx:
        secret = prompt("Secret: ")
        metadata = {"name": args.name, **_parse_fields(args.field)}
        if args.note:
            metadata["note"] = args.note
        item = await ctx.store.create(ctx.owner, args.type, metadata, secret)
        print(f"Added {item.id}")
    return 0


async def cmd_show(args, prompt: PasswordPrompt) -> int:
    async with open_context(args, prompt) as ctx:
        result = await ctx.store.reveal(ctx.resolve(args.id))
        print(result)
        return 1 if isinstance(result, DecryptionFailure) else 0


async def cmd_edit(args, prompt: PasswordPrompt) -> int:
    async with open_context(args, prompt) as ctx:
        fields = _parse_fields(args.field)
        if args.name is not None:
            fields["name"] = args.name
        if args.note is not None:
            fields["note"] = args.note
        secret = prompt("New secret (empty keeps current): ") if args.secret else None
        item = await ctx.store.edit(ctx.resolve(args.id), fields, secret)
        print(_format_item(item))
    return 0


def _transition(method: str, message: str):
    async def run(args, prompt: PasswordPrompt) -> int:
        async with open_context(args, prompt) as ctx:
            await getattr(ctx.store, method)(ctx.resolve(args.id))
            print(message)
        return 0

    return run


async def cmd_config(args, prompt: PasswordPrompt) -> int:
    from zkvault.config import write_config

    current = Config.load(args.data_dir)
    changes = {
        name: value
        for name, value in (
            ("idle_timeout", args.idle_timeout),
            ("max_unlock_attempts", args.max_attempts),
            ("unlock_delay_base", args.delay_base),
        )
        if value is not None
    }
    settings = replace(current, **changes).clamped()
    if changes:
        write_config(args.data_dir, settings)
    for name, value in asdict(settings).items():
        print(f"{name} = {value}")
    return 0


async def cmd_export(args, prompt: PasswordPrompt) -> int:
    from zkvault.vault.transfer import dumps_export, export_filename

    async with open_context(args, prompt) as ctx:
        target = Path(args.path) if args.path else Path(export_filename())
        target.write_bytes(dumps_export(ctx.store.export()))
        print(f"Exported {len(ctx.store.items)} item(s) to {target}")
    return 0


async def cmd_import(args, prompt: PasswordPrompt) -> int:
    data = Path(args.path).read_bytes()
    async with open_context(args, prompt) as ctx:
        count = await ctx.store.import_document(data, ctx.owner)
        print(f"{count} items imported.")
    return 0


COMMANDS = {
    "init": cmd_init,
    "unlock": cmd_unlock,
    "list": cmd_list,
    "trash": cmd_trash,
    "add": cmd_add,
    "show": cmd_show,
    "edit": cmd_edit,
    "fav": _transition("toggle_favorite", "Favorite toggled"),
    "rm": _transition("soft_delete", "Moved to trash"),
    "restore": _transition("restore", "Restored from trash"),
    "purge": _transition("purge", "Deleted permanently"),
    "export": cmd_export,
    "import": cmd_import,
    "config": cmd_config,
}


# ============================================================================
#  Argument parsing
# ============================================================================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="zkvault", description="Zero-knowledge secret vault")
    parser.add_argument("--data-dir", type=Path, default=None, help="data directory")
    parser.add_argument("--owner", default=None, help="vault owner id (default: OS user)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="create the vault security record")
    sub.add_parser("unlock", help="check the password and show item counts")

    p = sub.add_parser("list", help="list active items")
    p.add_argument("-q", "--query", default="")
    p.add_argument("-t", "--type", default=None)
    p.add_argument("-f", "--favorites", action="store_true")

    p = sub.add_parser("trash", help="list items in the trash")
    p.add_argument("-q", "--query", default="")
    p.add_argument("-t", "--type", default=None)

    p = sub.add_parser("add", help="add an item (secret is prompted)")
    p.add_argument("type")
    p.add_argument("name")
    p.add_argument("--note", default=None)
    p.add_argument("--field", action="append", metavar="KEY=VALUE")

    p = sub.add_parser("edit", help="edit name/note, optionally replace the secret")
    p.add_argument("id")
    p.add_argument("--name", default=None)
    p.add_argument("--note", default=None)
    p.add_argument("--field", action="append", metavar="KEY=VALUE")
    p.add_argument("--secret", action="store_true", help="prompt for a new secret")

    for name, help_text in (
        ("show", "decrypt and print a secret"),
        ("fav", "toggle favorite"),
        ("rm", "move to trash"),
        ("restore", "restore from trash"),
        ("purge", "delete permanently (trash only)"),
    ):
        sub.add_parser(name, help=help_text).add_argument("id")

    p = sub.add_parser("export", help="write an encrypted export document")
    p.add_argument("path", nargs="?")

    p = sub.add_parser("import", help="import an export document")
    p.add_argument("path")

    p = sub.add_parser("config", help="show or change settings")
    p.add_argument("--idle-timeout", type=int, default=None, help="seconds, 0 disables")
    p.add_argument("--max-attempts", type=int, default=None)
    p.add_argument("--delay-base", type=int, default=None)

    return parser


def main(argv: Optional[List[str]] = None, prompt: PasswordPrompt = getpass.getpass) -> int:
    """Application entry point."""
    from zkvault import check_dependencies
    from zkvault.paths import get_data_dir

    check_dependencies()

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.data_dir is None:
        args.data_dir = get_data_dir()
    if args.owner is None:
        args.owner = getpass.getuser()

    from zkvault.logging_setup import setup_secure_logging
    from zkvault.paths import ensure_data_dir, get_log_dir

    ensure_data_dir(args.data_dir)
    setup_secure_logging(
        get_log_dir(args.data_dir), logging.DEBUG if args.verbose else logging.INFO
    )

    try:
        return asyncio.run(COMMANDS[args.command](args, prompt))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (VaultError, ValueError, OSError) as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Command line interface for cloudstash."""
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from rich.logging import RichHandler

from . import __version__
from .errors import CloudStashError
from .models import (
    MiB,
    DeleteTarget,
    ExplorerConfig,
    Failed,
    JobKind,
    JobState,
    Outcome,
    Proceeded,
    UploadSource,
    UploadStatus,
)
from .orchestrator.job_status import human_size
from .orchestrator import ExplorerSession
from .use_cases.folders import validate_passphrase
from .utils.paths import folder_name, normalize_folder_path, parent_path
from .cli_progress import (
    JobProgressDisplay,
    UploadProgressDisplay,
    render_configuration_summary,
    render_listing,
)

API_URL_ENV = "CLOUDSTASH_API_URL"
ACCESS_TOKEN_ENV = "CLOUDSTASH_ACCESS_TOKEN"
CHUNK_SIZE_ENV = "CLOUDSTASH_CHUNK_SIZE_MB"
LOG_LEVEL_ENV = "LOG_LEVEL"


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug or --log-level is provided.
    Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    if silent or (not debug and not log_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    # Request lines from httpx are noise below DEBUG
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
    return logging.getLevelName(level)


def _normalize_dest(dest: Optional[str]) -> Optional[str]:
    if dest is None:
        return None
    value = dest.strip()
    if value in {"", "/"}:
        return None
    return normalize_folder_path(value)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _build_config(chunk_size_mb: Optional[str]) -> ExplorerConfig:
    if not chunk_size_mb:
        return ExplorerConfig()
    try:
        megabytes = float(chunk_size_mb)
    except ValueError as exc:
        raise CLIError(f"invalid chunk size: {chunk_size_mb!r}") from exc
    if megabytes <= 0:
        raise CLIError("chunk size must be positive")
    return ExplorerConfig(chunk_size=int(megabytes * MiB))


# ----------------------------------------------------------------------
# Passphrase prompts
# ----------------------------------------------------------------------

def _read_secret(prompt: str) -> Optional[str]:
    try:
        return getpass.getpass(prompt)
    except (EOFError, KeyboardInterrupt):
        return None


async def _ask_passphrase(path: str, label: str, error: Optional[str]) -> Optional[str]:
    """Passphrase provider for the explorer session. Empty input cancels."""
    if error:
        print(f"ERROR: {error}", file=sys.stderr)
    value = await asyncio.to_thread(_read_secret, f"Passphrase for {label or path}: ")
    return value or None


async def _ask_new_passphrase(label: str) -> str:
    first = await asyncio.to_thread(_read_secret, f"New passphrase for {label}: ")
    if not first:
        raise CLIError("a passphrase is required")
    validate_passphrase(first)
    second = await asyncio.to_thread(_read_secret, "Repeat passphrase: ")
    if first != second:
        raise CLIError("passphrases do not match")
    return first


def _expect(outcome: Outcome):
    if isinstance(outcome, Failed):
        raise CLIError(outcome.error)
    if isinstance(outcome, Proceeded):
        return outcome.value
    # Blocked only escapes when no passphrase provider is configured
    raise CLIError(f"folder {outcome.path} is locked")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

async def _cmd_ls(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    path = _normalize_dest(args.path) or ""
    listing = _expect(await explorer.run(lambda: explorer.list_folder(path)))
    render_listing(listing)
    if args.usage:
        usage = await explorer.storage_usage()
        render_configuration_summary({
            "Used": human_size(usage.used_bytes),
            "Total": human_size(usage.total_bytes) if usage.total_bytes is not None else "-",
        }, title="storage")
    return 0


async def _cmd_upload(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    sources: List[UploadSource] = []
    for raw in args.files:
        path = Path(raw).expanduser()
        if not path.is_file():
            raise CLIError(f"not a file: {path}")
        sources.append(UploadSource.from_path(path))

    dest = _normalize_dest(args.dest) or ""
    display = UploadProgressDisplay()
    explorer.uploads.on_progress(display.on_progress)
    explorer.uploads.on_finished(display.on_finished)

    items = _expect(await explorer.run(lambda: explorer.upload(sources, dest)))
    display.start(items)
    try:
        finished = await explorer.uploads.wait()
    finally:
        display.stop()
    return 0 if all(item.status is UploadStatus.COMPLETED for item in finished) else 1


async def _cmd_mkdir(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    path = normalize_folder_path(args.path)
    if not path:
        raise CLIError("a folder path is required")
    passphrase = await _ask_new_passphrase(folder_name(path)) if args.encrypted else None
    created = _expect(await explorer.run(
        lambda: explorer.create_folder(folder_name(path), parent_path(path), passphrase)
    ))
    print(f"Created {created}")
    return 0


async def _cmd_rename(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    renamed = _expect(await explorer.run(
        lambda: explorer.rename_folder(args.path, args.name, is_encrypted=args.encrypted)
    ))
    print(f"Renamed to {renamed}")
    return 0


async def _cmd_encrypt(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    path = normalize_folder_path(args.path)
    passphrase = await _ask_new_passphrase(folder_name(path) or path)
    _expect(await explorer.convert_folder(path, passphrase))
    print(f"Encrypted {path}")
    return 0


async def _cmd_unlock(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    path = normalize_folder_path(args.path)
    explorer.sessions.register_encrypted_path(path)
    token = await explorer.request_unlock(path, force=True)
    if token is None:
        raise CLIError("unlock cancelled")
    print(f"Passphrase accepted for {path}")
    return 0


async def _cmd_mv(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    moved = _expect(await explorer.run(lambda: explorer.move_items(args.sources, _normalize_dest(args.dest))))
    print(f"Moved {len(moved)} item(s)")
    return 0


async def _cmd_rm(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    targets = [
        DeleteTarget(key=normalize_folder_path(key), is_directory=key.endswith("/"))
        for key in args.keys
    ]
    current = parent_path(targets[0].key)
    if any(target.is_directory for target in targets):
        # Listing the parent registers which of the folders are encrypted
        _expect(await explorer.run(lambda: explorer.list_folder(current)))
    explorer.navigate(current)
    deleted = _expect(await explorer.run(lambda: explorer.delete_selection(targets)))
    print(f"Deleted {len(deleted)} item(s)")
    return 0


async def _follow_job(explorer: ExplorerSession, kind: JobKind, key: str, start: Callable[[], Awaitable]) -> int:
    display = JobProgressDisplay(key)
    explorer.jobs[kind].on_update(display.on_update)
    display.start()
    try:
        await start()
        job = await explorer.wait_for_job(kind, key)
    finally:
        display.stop()
    if job is None:
        raise CLIError(f"job for {key} is no longer tracked")
    display.finish(job)
    return 0 if job.state is JobState.COMPLETED else 1


async def _cmd_extract(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    key = args.key.strip("/")
    if args.zip:
        return await _follow_job(explorer, JobKind.ZIP_EXTRACT, key, lambda: explorer.extract_zip(key))
    return await _follow_job(
        explorer,
        JobKind.ARCHIVE_EXTRACT,
        key,
        lambda: explorer.extract_archive(key, args.entries or None),
    )


async def _cmd_archive(explorer: ExplorerSession, args: argparse.Namespace) -> int:
    keys = [key.strip("/") for key in args.keys]
    return await _follow_job(
        explorer,
        JobKind.ARCHIVE_CREATE,
        ",".join(keys),
        lambda: explorer.create_archive(keys, args.format, args.name),
    )


_COMMANDS: Dict[str, Callable[[ExplorerSession, argparse.Namespace], Awaitable[int]]] = {
    "ls": _cmd_ls,
    "upload": _cmd_upload,
    "mkdir": _cmd_mkdir,
    "rename": _cmd_rename,
    "encrypt": _cmd_encrypt,
    "unlock": _cmd_unlock,
    "mv": _cmd_mv,
    "rm": _cmd_rm,
    "extract": _cmd_extract,
    "archive": _cmd_archive,
}


async def _run_command(args: argparse.Namespace, api_url: str, access_token: Optional[str], config: ExplorerConfig) -> int:
    async with ExplorerSession(
        api_url,
        access_token,
        config=config,
        passphrase_provider=_ask_passphrase,
    ) as explorer:
        return await _COMMANDS[args.command](explorer, args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudstash",
        description="Browse and manage a cloudstash object store with encrypted folders.",
    )
    parser.add_argument(
        "--api-url",
        default=None,
        help=f"Storage API base URL (default from {API_URL_ENV})",
    )
    parser.add_argument(
        "--token",
        default=None,
        help=f"Bearer access token (default from {ACCESS_TOKEN_ENV})",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Explicit log level (DEBUG/INFO/WARNING/ERROR, default from {LOG_LEVEL_ENV})",
    )
    parser.add_argument("--version", action="version", version=f"cloudstash {__version__}")

    commands = parser.add_subparsers(dest="command")

    ls = commands.add_parser("ls", help="List a folder")
    ls.add_argument("path", nargs="?", default="", help="Folder path (default: root)")
    ls.add_argument("--usage", action="store_true", help="Also show storage usage")

    upload = commands.add_parser("upload", help="Upload files into a folder")
    upload.add_argument("files", nargs="+", help="Local files to upload")
    upload.add_argument("-g", "--dest", default=None, help="Destination folder (default: root)")

    mkdir = commands.add_parser("mkdir", help="Create a folder")
    mkdir.add_argument("path", help="Folder path, e.g. Docs/Private")
    mkdir.add_argument("--encrypted", action="store_true", help="Protect the folder with a passphrase")

    rename = commands.add_parser("rename", help="Rename a folder")
    rename.add_argument("path", help="Folder to rename")
    rename.add_argument("name", help="New folder name")
    rename.add_argument("--encrypted", action="store_true", help="The folder is encrypted")

    encrypt = commands.add_parser("encrypt", help="Convert a plain folder to an encrypted one")
    encrypt.add_argument("path", help="Folder to encrypt")

    unlock = commands.add_parser("unlock", help="Check the passphrase of an encrypted folder")
    unlock.add_argument("path", help="Encrypted folder")

    mv = commands.add_parser("mv", help="Move files or folders")
    mv.add_argument("sources", nargs="+", help="Keys to move (folders end with '/')")
    mv.add_argument("dest", help="Destination folder ('/' for root)")

    rm = commands.add_parser("rm", help="Delete files or folders")
    rm.add_argument("keys", nargs="+", help="Keys to delete (folders end with '/')")

    extract = commands.add_parser("extract", help="Extract an archive on the server")
    extract.add_argument("key", help="Archive key")
    extract.add_argument("--zip", action="store_true", help="Use the zip-only extractor")
    extract.add_argument(
        "--entry",
        dest="entries",
        action="append",
        default=None,
        help="Extract only this entry (repeatable)",
    )

    archive = commands.add_parser("archive", help="Create an archive from keys on the server")
    archive.add_argument("keys", nargs="+", help="Keys to include")
    archive.add_argument("--format", default=None, help="Archive format, e.g. zip or tar.gz")
    archive.add_argument("--name", default=None, help="Output archive name")
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level or os.getenv(LOG_LEVEL_ENV),
    )

    if args.command is None:
        parser.print_help()
        return 0

    api_url = args.api_url or os.getenv(API_URL_ENV)
    if not api_url:
        print(f"ERROR: {API_URL_ENV} environment variable is not set", file=sys.stderr)
        return 1
    access_token = args.token or os.getenv(ACCESS_TOKEN_ENV)

    try:
        config = _build_config(os.getenv(CHUNK_SIZE_ENV))
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    if effective_log_mode != "silent":
        render_configuration_summary(
            {
                "Command": args.command,
                "API": api_url,
                "Token": "set" if access_token else "(none)",
                "Chunk Size": f"{config.chunk_size // 1024} KB",
                "Env File": str(used_env_file) if used_env_file else "-",
                "Logging": effective_log_mode,
            }
        )

    try:
        return asyncio.run(_run_command(args, api_url, access_token, config))
    except (CLIError, CloudStashError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()

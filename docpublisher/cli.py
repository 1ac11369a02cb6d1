"""Command line interface for docpublisher package."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from . import __version__
from .cli_progress import (
    BatchProgressDisplay,
    render_batch_summary,
    render_configuration_summary,
    render_connection_report,
    render_device_challenge,
    render_validation,
)
from .config import DEFAULT_CONFIG_FILE, ConfigResolver, with_overrides
from .errors import AuthenticationError, ConfigurationError, PublishError
from .models import AuthMethod, RepositoryConnection
from .orchestrator import DocumentCollector, DocumentPublisher
from .services.auth import AuthSessionManager
from .services.identity import MsalIdentityProvider
from .services.token_cache import TokenCacheFile

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DOCUMENT_FAILURES = 1
EXIT_CONFIGURATION = 2
EXIT_AUTHENTICATION = 3
EXIT_INTERRUPTED = 130

CONFIG_PATH_ENV = "DOCPUBLISHER_CONFIG"

T = TypeVar("T")


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug, --log-level or LOG_LEVEL is
    provided. Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    env_level = os.getenv("LOG_LEVEL")
    if silent or (not debug and not log_level and not env_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, (log_level or env_level or "INFO").upper(), logging.INFO)

    from rich.logging import RichHandler

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return logging.getLevelName(level)


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


def _config_path(args: argparse.Namespace) -> Path:
    return Path(args.config or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_FILE).expanduser()


def build_session_manager(
    connection: RepositoryConnection,
    cache_path: Optional[Path] = None,
) -> AuthSessionManager:
    """The process-wide auth session, shared by every command."""
    return AuthSessionManager(
        connection,
        MsalIdentityProvider.from_connection(connection),
        cache_file=TokenCacheFile(cache_path),
        on_challenge=render_device_challenge,
    )


async def _with_session(
    connection: RepositoryConnection,
    args: argparse.Namespace,
    action: Callable[[AuthSessionManager], Awaitable[T]],
) -> T:
    """Load the cached session, run `action`, persist the session at exit."""
    auth = build_session_manager(connection, args.token_cache)
    await auth.load()
    try:
        return await action(auth)
    finally:
        auth.flush()


# ---------------------------------------------------------------- commands


def _cmd_init(args: argparse.Namespace, resolver: ConfigResolver) -> int:
    path = _config_path(args)
    if path.exists() and not args.force:
        _echo_err(f"Configuration already exists: {path} (use --force to overwrite)")
        return EXIT_OK

    record = resolver.template()
    resolver.write_file(path, record)
    print(f"Configuration template written to {path}. Update it with your SharePoint details.")
    render_validation(resolver.validate(resolver.apply_environment(record)))
    return EXIT_OK


def _cmd_test(args: argparse.Namespace, resolver: ConfigResolver) -> int:
    connection = resolver.load(_config_path(args))

    async def action(auth: AuthSessionManager) -> int:
        async with DocumentPublisher(connection, auth) as publisher:
            report = await publisher.test_connection()
        render_connection_report(report)
        return EXIT_OK

    return asyncio.run(_with_session(connection, args, action))


def _cmd_login(args: argparse.Namespace, resolver: ConfigResolver) -> int:
    connection = resolver.load(_config_path(args))

    async def action(auth: AuthSessionManager) -> int:
        if connection.auth_method == AuthMethod.OAUTH2:
            await auth.start_device_flow()
        else:
            # Client credentials: acquiring a token proves the secret/certificate works
            await auth.get_valid_access_token()
        print(f"Authenticated as {auth.current_account()}")
        return EXIT_OK

    return asyncio.run(_with_session(connection, args, action))


def _cmd_logout(args: argparse.Namespace, resolver: ConfigResolver) -> int:
    connection = resolver.load(_config_path(args))

    async def action(auth: AuthSessionManager) -> int:
        account = auth.current_account()
        await auth.sign_out()
        print(f"Signed out {account}" if account else "No cached session")
        return EXIT_OK

    return asyncio.run(_with_session(connection, args, action))


def _cmd_status(args: argparse.Namespace, resolver: ConfigResolver) -> int:
    path = _config_path(args)
    record = resolver.apply_environment(resolver.load_file(path))
    report = resolver.validate(record)

    env_status = resolver.environment_status()
    render_configuration_summary(
        {
            "Config File": f"{path}" if path.exists() else f"{path} (missing)",
            "Auth Method": report.auth_method.value if report.auth_method else "-",
            "Site": record.get("repositoryAddress") or "-",
            "Library": record.get("libraryName") or "-",
            "Env Vars Set": ", ".join(k for k, v in env_status.items() if v) or "-",
            "Recommended Scopes": ", ".join(resolver.recommended_scopes(record)),
        }
    )
    render_validation(report)
    if not report.valid:
        return EXIT_CONFIGURATION

    connection = resolver.resolve(record)

    async def action(auth: AuthSessionManager) -> int:
        if auth.is_authenticated():
            print(f"Signed in as {auth.current_account()}")
        elif connection.auth_method == AuthMethod.OAUTH2:
            print("Not signed in. Run 'docpublisher login'.")
            return EXIT_OK
        if args.no_connect:
            return EXIT_OK
        async with DocumentPublisher(connection, auth) as publisher:
            render_connection_report(await publisher.test_connection())
        return EXIT_OK

    return asyncio.run(_with_session(connection, args, action))


def _cmd_publish(args: argparse.Namespace, resolver: ConfigResolver) -> int:
    source = Path(args.path).expanduser()
    if not source.exists():
        raise CLIError(f"source does not exist: {source}")

    connection = resolver.load(_config_path(args))
    if args.concurrency is not None and args.concurrency < 1:
        raise CLIError("--concurrency must be at least 1")
    options = with_overrides(
        connection,
        max_concurrency=args.concurrency,
        overwrite_existing=False if args.no_overwrite else None,
        add_metadata=False if args.no_metadata else None,
    )

    render_configuration_summary(
        {
            "Source": str(source),
            "Site": connection.repository_address,
            "Library": connection.library_name,
            "Folder": "/".join(p for p in (connection.root_folder_path, args.folder) if p) or "/",
            "Concurrency": options.max_concurrency,
            "Overwrite": "yes" if options.overwrite_existing else "no (rename)",
            "Metadata": "yes" if options.add_metadata else "no",
            "Mode": "dry run" if args.dry_run else "publish",
        }
    )

    async def action(auth: AuthSessionManager) -> int:
        display = BatchProgressDisplay(label="Dry run" if args.dry_run else "Publishing")
        async with DocumentPublisher(
            connection,
            auth,
            collector=DocumentCollector(tag_prefix=args.tag_prefix),
        ) as publisher:
            try:
                summary = await publisher.publish_directory(
                    source,
                    options,
                    dry_run=args.dry_run,
                    progress_callback=display.get_callback(),
                    folder_path=args.folder or "",
                )
            finally:
                display.stop()
        render_batch_summary(summary, display.elapsed)
        return EXIT_OK if summary.all_success else EXIT_DOCUMENT_FAILURES

    return asyncio.run(_with_session(connection, args, action))


COMMANDS = {
    "init": _cmd_init,
    "test": _cmd_test,
    "login": _cmd_login,
    "logout": _cmd_logout,
    "status": _cmd_status,
    "publish": _cmd_publish,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docpublisher",
        description="Publish generated documents to a SharePoint document library.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Configuration file (default from {CONFIG_PATH_ENV} or ./{DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument(
        "--token-cache",
        type=Path,
        default=None,
        help="Token cache file (default from DOCPUBLISHER_TOKEN_CACHE or ~/.docpublisher)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"docpublisher {__version__}",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    init = commands.add_parser("init", help="Write a configuration template")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    commands.add_parser("test", help="Resolve the site and library and read the library root")
    commands.add_parser("login", help="Sign in with the device-code flow")
    commands.add_parser("logout", help="Forget the cached session")

    status = commands.add_parser("status", help="Show configuration, sign-in and connection state")
    status.add_argument(
        "--no-connect",
        action="store_true",
        help="Skip the connectivity check",
    )

    publish = commands.add_parser("publish", help="Publish a file or every document in a folder")
    publish.add_argument("path", type=Path, help="Source file or folder")
    publish.add_argument(
        "-f",
        "--folder",
        default=None,
        help="Target folder under the configured root folder",
    )
    publish.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Validate paths and check folders without uploading",
    )
    publish.add_argument(
        "-c",
        "--concurrency",
        type=int,
        default=None,
        help="Parallel uploads (default from publishingOptions.maxConcurrency)",
    )
    publish.add_argument(
        "--no-overwrite",
        action="store_true",
        help="Rename instead of replacing existing files",
    )
    publish.add_argument(
        "--no-metadata",
        action="store_true",
        help="Do not set list-item metadata",
    )
    publish.add_argument(
        "--tag-prefix",
        default=None,
        help="Tag documents as '<prefix>-generated'",
    )
    return parser


def _echo_err(message: str) -> None:
    print(message, file=sys.stderr)


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            _echo_err(f"ERROR: {exc}")
            return EXIT_CONFIGURATION

    _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    resolver = ConfigResolver()
    try:
        return COMMANDS[args.command](args, resolver)
    except ConfigurationError as exc:
        _echo_err(f"ERROR: {exc.message}")
        for error in exc.errors:
            _echo_err(f"  - {error}")
        return EXIT_CONFIGURATION
    except AuthenticationError as exc:
        _echo_err(f"ERROR: authentication failed: {exc.message}")
        return EXIT_AUTHENTICATION
    except PublishError as exc:
        _echo_err(f"ERROR: {exc.message}")
        return EXIT_DOCUMENT_FAILURES
    except CLIError as exc:
        _echo_err(f"ERROR: {exc}")
        return EXIT_CONFIGURATION
    except KeyboardInterrupt:
        _echo_err("Cancelled.")
        return EXIT_INTERRUPTED


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()

"""
Main CLI module for the batch upsert engine.

Runs one upsert, delete or fetch call against an allow-listed table and
prints the resulting rows as JSON.

Examples:
    python -m services.batch_upsert upsert --table users --payload '{"name": "x"}'
    python -m services.batch_upsert delete --table users --file rows.json
    python -m services.batch_upsert fetch --table users 77 78
"""

import argparse
import json
import sys
from typing import List, Optional, Sequence

from sqlalchemy import Engine

from . import __version__
from .db.connector import get_engine, normalize_dsn
from .engine import BatchEngine
from .errors import BatchUpsertError, RoutingError
from .log_config import configure_logging, get_logger
from .routing import TableRegistry
from .settings import Settings, settings

logger = get_logger(__name__)


def read_payload(args: argparse.Namespace) -> str:
    """
    Read the JSON payload from --payload, --file or stdin.

    Args:
        args: Parsed command line arguments

    Returns:
        Raw JSON text
    """
    if args.payload is not None:
        return args.payload

    if args.file and args.file != "-":
        with open(args.file, "r", encoding="utf-8") as f:
            return f.read()

    return sys.stdin.read()


def build_registry(engine: Engine, config: Settings) -> TableRegistry:
    """
    Register the allow-listed tables by reflecting them from the database.

    Raises:
        RoutingError: If no table is allow-listed or a table cannot be loaded
    """
    if not config.allowed_tables:
        raise RoutingError("no tables are allow-listed (set ALLOWED_TABLES)")

    registry = TableRegistry(default_table=config.default_table)
    registry.reflect(
        engine,
        config.allowed_tables,
        id_column=config.id_column,
        defaults=config.table_defaults,
    )
    return registry


def run_command(args: argparse.Namespace, engine: Engine, config: Settings) -> List[dict]:
    """Execute the requested engine call and return its rows."""
    registry = build_registry(engine, config)
    batch = BatchEngine.from_settings(engine, registry, config)
    options = {"table_name": args.table}

    if args.command == "fetch":
        return batch.fetch(list(args.ids), options)

    payload = read_payload(args)
    if args.command == "delete":
        return batch.delete(payload, options)
    return batch.upsert(payload, options)


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="LobbyLeaks Batch Upsert Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m services.batch_upsert upsert --table users --payload '[{"name": "x"}, {"id": 7, "name": "y"}]'
  python -m services.batch_upsert delete --table users --payload '{"id": 7}'
  python -m services.batch_upsert fetch --table users 7 8
        """
    )

    parser.add_argument(
        "--dsn",
        help="Database connection string (overrides DB_DSN)"
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration"
    )

    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Override log format from configuration"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"LobbyLeaks Batch Upsert {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    for command, help_text in (
        ("upsert", "Insert rows without an identifier, update rows with one"),
        ("delete", "Delete rows by identifier"),
    ):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("--table", help="Target table (defaults to DEFAULT_TABLE)")
        source = sub.add_mutually_exclusive_group()
        source.add_argument("--payload", help="JSON object or array of objects")
        source.add_argument("--file", help="Read the JSON payload from a file ('-' for stdin)")

    fetch = subparsers.add_parser("fetch", help="Read rows by identifier")
    fetch.add_argument("--table", help="Target table (defaults to DEFAULT_TABLE)")
    fetch.add_argument("ids", nargs="+", help="Identifiers to read")

    return parser


def dump_rows(rows: List[dict]) -> str:
    """Serialize rows for stdout; dates, decimals and UUIDs become strings."""
    return json.dumps(rows, default=str, ensure_ascii=False, indent=2)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point for the CLI application.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level, args.log_format)

    config = settings()
    dsn = args.dsn or config.db_dsn
    if not dsn:
        parser.error("no database configured (use --dsn or set DB_DSN)")

    logger.info(
        "Service starting",
        service_name=config.service_name,
        version=__version__,
        environment=config.environment,
        command=args.command,
    )

    engine_kwargs = {}
    if normalize_dsn(dsn).startswith("postgresql"):
        engine_kwargs["pool_size"] = config.db_pool_size

    engine = get_engine(dsn, **engine_kwargs)
    try:
        rows = run_command(args, engine, config)
    except BatchUpsertError as e:
        print(json.dumps(e.to_dict(), default=str), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.warning("Service interrupted by user")
        return 1
    except Exception as e:
        logger.error(
            "Service failed with unexpected error",
            error=str(e),
            error_type=type(e).__name__
        )
        print(json.dumps({"error": "unexpected_error", "message": str(e)}), file=sys.stderr)
        return 1
    finally:
        engine.dispose()

    print(dump_rows(rows))
    logger.info("Service completed successfully", rows=len(rows))
    return 0


def cli_main() -> int:
    """Synchronous entry point for setuptools console scripts."""
    return main()


if __name__ == "__main__":
    sys.exit(main())

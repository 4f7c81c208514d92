"""Command line entrypoint: connection test and ad hoc queries."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Sequence

from .config import ENV_FILE
from .lifecycle import EXIT_FAILURE, EXIT_OK, run
from .query import Database

TABLES_SQL = {
    "mysql": "SHOW TABLES",
    "postgres": (
        "SELECT schemaname || '.' || tablename AS table_name FROM pg_catalog.pg_tables "
        "WHERE schemaname NOT IN ('pg_catalog', 'information_schema') ORDER BY 1"
    ),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tunnelpool", description=__doc__)
    parser.add_argument("--env-file", default=str(ENV_FILE), help="dotenv file with TUNNELPOOL_* settings")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("check", help="open the tunnel, connect and list tables")
    query = commands.add_parser("query", help="run one statement and print its rows as JSON")
    query.add_argument("sql")
    query.add_argument("params", nargs="*", help="positional statement parameters")
    return parser


async def check(database: Database) -> int:
    driver = database.settings.target.driver
    result = await database.query(TABLES_SQL[driver], use_cache=False)
    tables = [next(iter(row.values())) for row in result]
    print(f"Connected. {len(tables)} table(s) available:")
    for table in tables:
        print(f"  {table}")
    return EXIT_OK


def query_command(sql: str, params: Sequence[str]):
    async def _query(database: Database) -> int:
        result = await database.query(sql, params, use_cache=False)
        if result.columns or result.rows:
            print(json.dumps([dict(row) for row in result], default=str, indent=2))
        else:
            print(json.dumps({"row_count": result.row_count, "last_insert_id": result.last_insert_id}))
        return EXIT_OK

    return _query


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "check":
        code = run(check, env_file=args.env_file)
        print("Test completed successfully" if code == EXIT_OK else "Test failed", file=sys.stderr)
        return code
    if args.command == "query":
        return run(query_command(args.sql, args.params), env_file=args.env_file)
    return EXIT_FAILURE  # pragma: no cover - argparse enforces a command


__all__ = ["build_parser", "check", "main", "query_command"]

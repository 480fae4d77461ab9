#!/usr/bin/env python3
"""Print or apply the podping-ingest Postgres schema."""

from __future__ import annotations

import argparse
import asyncio
import os

from podping_ingest.services.repository import PostgresRepository
from podping_ingest.services.schema import SCHEMA_STATEMENTS


def render_sql() -> str:
    statements = [statement.strip().rstrip(";") + ";" for statement in SCHEMA_STATEMENTS]
    return "-- podping-ingest schema\n\n" + "\n\n".join(statements) + "\n"


async def apply_schema(database_url: str) -> None:
    repository = PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=1,
        parse_max_attempts=1,
        parse_retry_base_seconds=0,
        parse_retry_max_seconds=0,
    )
    try:
        await repository.ensure_schema()
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Print or apply the podping-ingest Postgres schema.")
    parser.add_argument(
        "--database-url",
        default=os.getenv("PPI_DATABASE_URL"),
        help="Postgres DSN (defaults to PPI_DATABASE_URL)",
    )
    parser.add_argument(
        "--print",
        dest="print_only",
        action="store_true",
        help="Emit the DDL to stdout instead of applying it",
    )
    args = parser.parse_args()

    if args.print_only:
        print(render_sql(), end="")
        return
    if not args.database_url:
        parser.error("--database-url or PPI_DATABASE_URL is required unless --print is given")
    asyncio.run(apply_schema(args.database_url))
    print("schema applied")


if __name__ == "__main__":
    main()

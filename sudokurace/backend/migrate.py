"""Apply db_schema.sql to the PostgreSQL database behind the session service."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from sudokurace.backend.config import load_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


def apply_schema(database_url: str, schema_path: Path = SCHEMA_PATH) -> None:
    """Run the schema script in one transaction; every statement is idempotent."""
    if not database_url:
        raise RuntimeError("SUDOKURACE_DATABASE_URL is required for migration")

    import psycopg

    schema_sql = schema_path.read_text(encoding="utf-8")
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
        conn.commit()
    logger.info("Applied %s to the session database", schema_path.name)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Create the Sudoku Race session tables")
    parser.add_argument("--database-url", default=None, help="defaults to SUDOKURACE_DATABASE_URL")
    parser.add_argument("--schema", type=Path, default=SCHEMA_PATH)
    args = parser.parse_args(argv)
    apply_schema(args.database_url or load_settings().database_url, args.schema)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()

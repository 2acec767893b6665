"""Command-line entry point running the session API under uvicorn."""

from __future__ import annotations

import argparse
import logging

from .config import load_settings

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Sudoku Race session service")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--migrate", action="store_true", help="apply db_schema.sql before serving")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.migrate:
        from .migrate import apply_schema

        apply_schema(load_settings().database_url)

    import uvicorn

    logger.info("Serving session API on %s:%s", args.host, args.port)
    uvicorn.run(
        "sudokurace.backend.api:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        reload=args.reload,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

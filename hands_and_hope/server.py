"""
Hands and Hope — Caregiver access API server entrypoint.

Configures structured logging, then serves the caregiver access API with
uvicorn.

Usage:
    python -m hands_and_hope.server
    python -m hands_and_hope.server --port 8080 --reload
"""

from __future__ import annotations

import argparse
import logging

import structlog
import uvicorn

from hands_and_hope.config import settings


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=logging.getLevelName(settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Hands and Hope caregiver access API")
    parser.add_argument("--host", default=settings.api_host)
    parser.add_argument("--port", type=int, default=settings.api_port)
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    configure_logging()
    log = structlog.get_logger()
    log.info(
        "hands_and_hope.server.starting",
        host=args.host,
        port=args.port,
        log_format=settings.log_format,
        activity_log_retries=settings.activity_log_retries,
    )

    uvicorn.run(
        "hands_and_hope.api.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
    log.info("hands_and_hope.server.shutdown")


if __name__ == "__main__":
    main()

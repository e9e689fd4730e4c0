# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import hashlib
import logging
import os
import sys
from typing import Any

from loguru import logger
from opentelemetry import trace

__all__ = ["logger", "configure_logging", "fingerprint"]

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """
    Routes standard logging records (httpx, httpcore, authlib) into Loguru.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so Loguru reports the real caller
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename in (logging.__file__, __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def trace_id_injector(record: dict[str, Any]) -> None:
    """
    Loguru patcher adding the active OpenTelemetry trace and span ids to ``record["extra"]``.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")


def fingerprint(value: str) -> str:
    """
    Short, non-reversible digest of a sensitive value (subject, device code) for log correlation.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def configure_logging() -> None:
    """
    Configures the logger from environment variables.

    ``COREASON_OIDC_LOG_LEVEL`` selects the level (default INFO) and ``COREASON_OIDC_LOG_JSON=true``
    switches to serialized JSON records on stdout. Call again to reload after the environment changes.
    """
    log_level = os.getenv("COREASON_OIDC_LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("COREASON_OIDC_LOG_JSON", "false").lower() == "true"

    try:
        logger.level(log_level)
    except ValueError:
        log_level = "INFO"

    logger.configure(handlers=[], patcher=trace_id_injector)  # type: ignore[arg-type]

    if log_json:
        logger.add(sys.stdout, level=log_level, serialize=True)
    else:
        logger.add(sys.stderr, level=log_level, format=_TEXT_FORMAT)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    numeric_level = logging.getLevelName(log_level)
    logging.getLogger().setLevel(numeric_level if isinstance(numeric_level, int) else logging.INFO)


# Initialize on import
configure_logging()

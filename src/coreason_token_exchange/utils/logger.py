# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_token_exchange

"""
Logging for the service: loguru on stderr, with standard logging (uvicorn, httpx) routed
into it and the active trace id attached to every record.

Environment:
    COREASON_LOG_LEVEL: Minimum level (default INFO). Unknown names fall back to INFO.
    COREASON_LOG_JSON: "true" for one JSON object per line.
"""

import logging
import os
import sys
from typing import Any

from loguru import logger
from opentelemetry import trace

__all__ = ["logger", "configure_logging"]

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """
    Forwards standard logging records to loguru, keeping the original caller.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename in (logging.__file__, __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def trace_id_injector(record: dict[str, Any]) -> None:
    """
    Loguru patcher adding `trace_id` and `span_id` when a span is active.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")


def _resolve_level() -> str:
    level = os.getenv("COREASON_LOG_LEVEL", "INFO").upper()
    try:
        logger.level(level)
    except ValueError:
        return "INFO"
    return level


def configure_logging() -> None:
    """
    (Re)configures logging from the environment. Nothing is written to disk.
    """
    level = _resolve_level()
    as_json = os.getenv("COREASON_LOG_JSON", "false").lower() == "true"

    logger.configure(handlers=[], patcher=trace_id_injector)
    if as_json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=TEXT_FORMAT)

    logging.basicConfig(handlers=[InterceptHandler()], level=logger.level(level).no, force=True)


configure_logging()

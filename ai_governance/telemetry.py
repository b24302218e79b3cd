"""Logging and telemetry for the AI governance core.

Emits structured log records to stdout and, when a log file is configured,
appends them to an append-only file for local review. Dispatch outcomes are
logged as one JSON object per line; prompt and response text never appear
in the log.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("ai_governance")


def setup_logging(log_file: Optional[str] = None) -> None:
    """Configure the ai_governance logger with stdout and file handlers.

    Args:
        log_file: Optional path to the append-only log file.
    """
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        # Stdout handler
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        if log_file:
            log_path = Path(log_file)
            os.makedirs(log_path.parent, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="a")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(stdout_fmt)
            logger.addHandler(file_handler)


def log_dispatch(
    *,
    caller: str,
    operation: str,
    requested_model: str,
    effective_model: Optional[str],
    provider: Optional[str],
    outcome: str,
    was_fallback: bool = False,
    error: Optional[str] = None,
    op_id: Optional[str] = None,
) -> None:
    """Log a single dispatch event.

    Writes a structured JSON line; failures are logged at WARNING, all other
    outcomes at INFO.

    Args:
        caller: Origin tag of the request.
        operation: Operation tag (e.g. "stream_chat", "vision_analysis").
        requested_model: Model id the caller asked for.
        effective_model: Model id actually used (None if denied).
        provider: Effective provider tag (None if denied).
        outcome: Short outcome label ("success", "policy_denied", "error").
        was_fallback: Whether the policy engine substituted the model.
        error: Error message if the dispatch failed.
        op_id: Operation tracker id, when one was started.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "op_id": op_id,
        "caller": caller,
        "operation": operation,
        "requested_model": requested_model,
        "effective_model": effective_model,
        "provider": provider,
        "outcome": outcome,
        "was_fallback": was_fallback,
    }

    if error:
        record["error"] = error

    level = logging.WARNING if outcome == "error" else logging.INFO
    logger.log(level, json.dumps(record))

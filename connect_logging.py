"""
connect_logging.py — process logging and the security audit trail.

Operational messages go through ordinary module loggers. Security events
(codes issued, replays, client authentication failures, consent decisions)
go to the ``connect-audit`` logger as one JSON object per line.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any

audit_logger = logging.getLogger("connect-audit")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


def redact(value: str | None, keep: int = 8) -> str:
    """Short prefix of a secret value, safe to log."""
    if not value:
        return "none"
    return value[:keep] + "..."


def configure_logging(level: int = logging.INFO, audit_log_path: Path | None = None) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if audit_log_path is None:
        return
    # Audit logger: JSON-lines file, kept out of the console stream.
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_log_path)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

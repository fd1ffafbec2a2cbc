"""Human-readable tracking codes for anonymous complaints."""
from __future__ import annotations

import hashlib
import re
import secrets

from flask import current_app, has_app_context
from sqlalchemy import select

TRACKING_CODE_PREFIX = "CW"
TRACKING_CODE_PATTERN = re.compile(r"^CW-[A-Z0-9]{4}-[A-Z0-9]{4}$", re.IGNORECASE)
DEFAULT_MAX_ATTEMPTS = 10


class TrackingCodeExhaustedError(RuntimeError):
    """Raised when no free tracking code was found within the attempt budget."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Could not issue a unique tracking code after {attempts} attempts")
        self.attempts = attempts


def _segment() -> str:
    # One independent draw per group.
    return hashlib.md5(secrets.token_hex(16).encode("utf-8")).hexdigest()[:4].upper()


def generate_candidate() -> str:
    return f"{TRACKING_CODE_PREFIX}-{_segment()}-{_segment()}"


def is_tracking_code(value: str | None) -> bool:
    return bool(value) and bool(TRACKING_CODE_PATTERN.match(value.strip()))


def normalize_tracking_code(value: str | None) -> str:
    return (value or "").strip().upper()


def max_attempts() -> int:
    if has_app_context():
        return int(current_app.config.get("TRACKING_CODE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))
    return DEFAULT_MAX_ATTEMPTS


def issue_tracking_code(connection, table, attempts: int | None = None) -> str:
    """Return a code not yet present in ``table``.

    Runs on the inserting connection so the lookup sees the same transaction as
    the row about to be written. The column's UNIQUE constraint still has the
    final word when two transactions race for the same candidate.
    """
    limit = attempts or max_attempts()
    for attempt in range(1, limit + 1):
        candidate = generate_candidate()
        taken = connection.execute(
            select(table.c.id).where(table.c.tracking_code == candidate).limit(1)
        ).first()
        if taken is None:
            return candidate
        if has_app_context():
            current_app.logger.warning(
                "Tracking code collision",
                extra={"attempt": attempt, "max_attempts": limit},
            )
    raise TrackingCodeExhaustedError(limit)

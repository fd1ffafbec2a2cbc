"""Security helpers for headers, input sanitation, hashing and auth utilities."""
import hashlib
import html
import threading
from typing import Mapping

from flask import request


def sanitize_input(data: Mapping) -> dict:
    """Return an escaped copy of query/form values for logging and filtering."""
    sanitized = {}
    for key, value in data.items():
        sanitized[html.escape(str(key))] = html.escape(str(value))
    return sanitized


def apply_security_headers(response, force_https: bool = False):
    """Apply API-appropriate security headers without clobbering per-route values."""
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(self), microphone=(), camera=()")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def compute_hash(content: bytes) -> str:
    """SHA-256 hex digest used as the tamper-evidence marker for evidence files."""
    return hashlib.sha256(content).hexdigest()


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    if len(password) < 12:
        return False, "Password must be at least 12 characters long."
    if password.lower() == password or password.upper() == password:
        return False, "Use a mix of upper and lower case characters."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    if not any(c in "!@#$%^&*()-_=+[]{}|;:,.<>?/" for c in password):
        return False, "Include at least one symbol."
    return True, None


# Process-local counters; swap for a shared store when running several workers.
_attempts: dict[str, int] = {}
_attempts_lock = threading.Lock()


def track_attempt(key: str, limit: int = 10) -> bool:
    """Count an attempt for ``key`` and report whether it is still within ``limit``."""
    with _attempts_lock:
        count = _attempts.get(key, 0) + 1
        _attempts[key] = count
    return count <= limit


def reset_attempts() -> None:
    with _attempts_lock:
        _attempts.clear()

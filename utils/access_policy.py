"""Per-operation access rules over complaints, evidence and official notes.

Every check takes the acting identity (possibly anonymous) and answers a
plain boolean; the service layer turns a ``False`` into ``AccessDeniedError``.
"""
from __future__ import annotations

from models import PRIVILEGED_ROLES, Complaint, User
from utils.tracking_code import normalize_tracking_code


def is_authenticated(user: User | None) -> bool:
    return bool(user is not None and getattr(user, "is_authenticated", False))


def role_name(user: User | None) -> str:
    if not is_authenticated(user):
        return ""
    return (user.role.name if user.role else "").lower()


def has_role(user: User | None, role: str) -> bool:
    return role_name(user) == (role or "").lower()


def is_privileged(user: User | None) -> bool:
    return role_name(user) in PRIVILEGED_ROLES


def is_owner(complaint: Complaint, user: User | None) -> bool:
    if not is_authenticated(user) or complaint.is_anonymous:
        return False
    return complaint.user_id == user.id


def can_read_complaint(complaint: Complaint, user: User | None) -> bool:
    # Anonymous complaints have no owner to protect.
    if complaint.is_anonymous:
        return True
    return is_privileged(user) or is_owner(complaint, user)


def can_update_status(user: User | None) -> bool:
    return is_privileged(user)


def can_add_note(user: User | None) -> bool:
    return is_privileged(user)


def can_attach_evidence(complaint: Complaint, user: User | None, tracking_code: str | None = None) -> bool:
    if complaint.is_anonymous:
        supplied = normalize_tracking_code(tracking_code)
        return bool(supplied) and supplied == complaint.tracking_code
    return is_owner(complaint, user)


def visible_complaints_query(user: User | None):
    """Base query of complaints the caller may list."""
    if is_privileged(user):
        return Complaint.query
    if is_authenticated(user):
        return Complaint.query.filter(Complaint.user_id == user.id)
    return Complaint.query.filter(Complaint.id.is_(None))


def stream_predicate(user: User | None):
    """Filter applied to change-feed records before they reach ``user``."""
    if is_privileged(user):
        return lambda record: True
    user_id = user.id if is_authenticated(user) else None
    return lambda record: user_id is not None and record.get("user_id") == user_id

"""Append-only public audit trail for complaints."""
from __future__ import annotations

from flask import current_app

from extensions import db
from models import AuditLogEntry, Complaint


def metadata_hash_for(complaint: Complaint) -> str:
    """Comma join of the complaint's evidence hashes in submission order; empty when none."""
    return ",".join(complaint.evidence_hashes or [])


def append_entry(complaint: Complaint, action: str, commit: bool = True) -> AuditLogEntry:
    entry = AuditLogEntry(
        complaint_id=complaint.id,
        action=action,
        metadata_hash=metadata_hash_for(complaint),
    )
    db.session.add(entry)
    if commit:
        db.session.commit()
    current_app.logger.info(
        "Audit entry appended",
        extra={"complaint_id": complaint.id, "action": action, "evidence_count": len(complaint.evidence_hashes or [])},
    )
    return entry


def entries_for(complaint_id: str) -> list[AuditLogEntry]:
    return (
        AuditLogEntry.query.filter_by(complaint_id=complaint_id)
        .order_by(AuditLogEntry.timestamp.asc(), AuditLogEntry.id.asc())
        .all()
    )

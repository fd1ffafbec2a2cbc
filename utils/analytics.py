"""Aggregate complaint statistics and the officials' CSV export."""
from __future__ import annotations

import csv
import io
from typing import Dict, Iterable

from sqlalchemy import func

from extensions import db
from models import COMPLAINT_CATEGORIES, COMPLAINT_STATUSES, Complaint, EvidenceFile

EXPORT_COLUMNS = (
    "ID",
    "Title",
    "Category",
    "Status",
    "Location",
    "Latitude",
    "Longitude",
    "Urgency Score",
    "Created At",
    "Tracking Code",
    "Is Anonymous",
)


def _grouped_counts(column, keys: Iterable[str]) -> Dict[str, int]:
    counts = {key: 0 for key in keys}
    for value, total in db.session.query(column, func.count(Complaint.id)).group_by(column).all():
        counts[value] = total
    return counts


def complaint_statistics() -> dict:
    total = db.session.query(func.count(Complaint.id)).scalar() or 0
    anonymous = db.session.query(func.count(Complaint.id)).filter(Complaint.is_anonymous.is_(True)).scalar() or 0
    average_urgency = db.session.query(func.avg(Complaint.urgency_score)).scalar()
    return {
        "total": total,
        "by_status": _grouped_counts(Complaint.status, COMPLAINT_STATUSES),
        "by_category": _grouped_counts(Complaint.category, COMPLAINT_CATEGORIES),
        "anonymous": anonymous,
        "anonymous_share": round(anonymous / total, 4) if total else 0.0,
        "evidence_files": db.session.query(func.count(EvidenceFile.id)).scalar() or 0,
        "average_urgency": round(float(average_urgency), 2) if average_urgency is not None else None,
    }


def _export_row(complaint: Complaint) -> list:
    return [
        complaint.id,
        complaint.title,
        complaint.category,
        complaint.status,
        complaint.location or "",
        "" if complaint.latitude is None else complaint.latitude,
        "" if complaint.longitude is None else complaint.longitude,
        complaint.urgency_score,
        complaint.created_at.isoformat() if complaint.created_at else "",
        complaint.tracking_code or "",
        "Yes" if complaint.is_anonymous else "No",
    ]


def export_complaints_csv(complaints: Iterable[Complaint]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for complaint in complaints:
        writer.writerow(_export_row(complaint))
    return buffer.getvalue()

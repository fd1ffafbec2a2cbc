"""Complaint lifecycle: intake, evidence, status, official notes and policy-checked reads."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.utils import secure_filename

from extensions import db
from models import (
    COMPLAINT_CATEGORIES,
    COMPLAINT_STATUSES,
    DESCRIPTION_MAX_LENGTH,
    DESCRIPTION_MIN_LENGTH,
    LOCATION_MIN_LENGTH,
    NOTE_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
    URGENCY_MAX,
    URGENCY_MIN,
    Complaint,
    EvidenceFile,
    OfficialNote,
    User,
)
from utils import access_policy
from utils.ai_gateway import is_fallback_analysis
from utils.audit_trail import append_entry
from utils.evidence_storage import EvidenceUpload, StorageError, evidence_path, get_storage
from utils.tracking_code import (
    TrackingCodeExhaustedError,
    is_tracking_code,
    max_attempts,
    normalize_tracking_code,
)


class ComplaintValidationError(ValueError):
    """Submission or update rejected before anything was written."""

    def __init__(self, message: str, errors: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class AccessDeniedError(PermissionError):
    pass


class ComplaintNotFoundError(LookupError):
    def __init__(self, message: str = "Complaint not found") -> None:
        super().__init__(message)
        self.message = message


class EvidenceUploadError(RuntimeError):
    """An evidence item failed after the complaint itself was committed.

    Earlier files stay stored and recorded; the caller still gets the
    reference it needs to come back with the rest.
    """

    def __init__(self, complaint_id: str, tracking_code: Optional[str], file_name: str, stored: int) -> None:
        super().__init__(f"Evidence upload failed for {file_name}")
        self.complaint_id = complaint_id
        self.tracking_code = tracking_code
        self.file_name = file_name
        self.stored = stored

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "complaint_id": self.complaint_id,
            "tracking_code": self.tracking_code,
            "stored_files": self.stored,
        }


@dataclass
class ComplaintSubmission:
    title: str
    description: str
    category: str
    location: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_anonymous: bool = False
    evidence: list[EvidenceUpload] = field(default_factory=list)


def _max_files() -> int:
    return int(current_app.config.get("MAX_EVIDENCE_FILES", 5))


def _duplicate_file_name(uploads: Iterable[EvidenceUpload], existing: Iterable[str] = ()) -> Optional[str]:
    # Objects are keyed by file name under the complaint, so names must be unique per complaint.
    seen = {secure_filename(name) for name in existing}
    for upload in uploads:
        name = secure_filename(upload.file_name)
        if name in seen:
            return upload.file_name
        seen.add(name)
    return None


def _coordinate(value, low: float, high: float, label: str, errors: dict) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors[label.lower()] = f"{label} must be a number"
        return None
    if not low <= number <= high:
        errors[label.lower()] = f"{label} must be between {low:g} and {high:g}"
    return number


def validate_submission(submission: ComplaintSubmission, user: Optional[User]) -> ComplaintSubmission:
    """Normalize ``submission`` in place or raise with every problem found."""
    if not submission.is_anonymous and not access_policy.is_authenticated(user):
        raise ComplaintValidationError("Please sign in to submit a complaint")

    errors: dict[str, str] = {}
    submission.title = (submission.title or "").strip()
    submission.description = (submission.description or "").strip()
    submission.location = (submission.location or "").strip()
    submission.category = (submission.category or "").strip().lower()

    if len(submission.title) < TITLE_MIN_LENGTH:
        errors["title"] = f"Title must be at least {TITLE_MIN_LENGTH} characters"
    elif len(submission.title) > TITLE_MAX_LENGTH:
        errors["title"] = f"Title must be less than {TITLE_MAX_LENGTH} characters"

    if len(submission.description) < DESCRIPTION_MIN_LENGTH:
        errors["description"] = f"Description must be at least {DESCRIPTION_MIN_LENGTH} characters"
    elif len(submission.description) > DESCRIPTION_MAX_LENGTH:
        errors["description"] = f"Description must be less than {DESCRIPTION_MAX_LENGTH} characters"

    if submission.category not in COMPLAINT_CATEGORIES:
        errors["category"] = "Invalid category"

    if len(submission.location) < LOCATION_MIN_LENGTH:
        errors["location"] = "Location is required"

    submission.latitude = _coordinate(submission.latitude, -90, 90, "Latitude", errors)
    submission.longitude = _coordinate(submission.longitude, -180, 180, "Longitude", errors)

    limit = _max_files()
    if len(submission.evidence) > limit:
        errors["evidence"] = f"Maximum {limit} files allowed"
    else:
        duplicate = _duplicate_file_name(submission.evidence)
        if duplicate:
            errors["evidence"] = f"A file named {duplicate} is already attached"

    if errors:
        raise ComplaintValidationError(next(iter(errors.values())), errors)
    return submission


def _insert_complaint(submission: ComplaintSubmission, user: Optional[User]) -> Complaint:
    default_urgency = int(current_app.config.get("DEFAULT_URGENCY_SCORE", 5))
    limit = max_attempts()
    for attempt in range(1, limit + 1):
        complaint = Complaint(
            title=submission.title,
            description=submission.description,
            category=submission.category,
            location=submission.location,
            latitude=submission.latitude,
            longitude=submission.longitude,
            is_anonymous=submission.is_anonymous,
            user_id=None if submission.is_anonymous else user.id,
            status="pending",
            urgency_score=default_urgency,
            ai_metadata={},
            evidence_hashes=[],
        )
        db.session.add(complaint)
        try:
            db.session.commit()
            return complaint
        except TrackingCodeExhaustedError:
            db.session.rollback()
            current_app.logger.error("Tracking code space exhausted", extra={"max_attempts": limit})
            raise
        except IntegrityError as exc:
            db.session.rollback()
            # Another transaction took the same code between our check and insert.
            if not submission.is_anonymous or "tracking_code" not in str(exc.orig):
                raise
            current_app.logger.warning(
                "Tracking code taken concurrently; retrying insert",
                extra={"attempt": attempt, "max_attempts": limit},
            )
    raise TrackingCodeExhaustedError(limit)


def _store_evidence(complaint: Complaint, uploads: Iterable[EvidenceUpload]) -> list[EvidenceFile]:
    storage = get_storage()
    bucket = current_app.config.get("EVIDENCE_BUCKET", "evidence")
    complaint_id = complaint.id
    tracking_code = complaint.tracking_code
    owner_reference = complaint.owner_reference
    stored: list[EvidenceFile] = []

    for upload in uploads:
        digest = upload.content_hash
        path = evidence_path(owner_reference, complaint_id, upload.file_name)
        try:
            url = storage.upload(bucket, path, upload.data, upload.content_type)
            evidence = EvidenceFile(
                complaint_id=complaint_id,
                file_url=url,
                file_name=upload.file_name,
                file_type=upload.content_type,
                file_size=upload.size,
                file_hash=digest,
            )
            db.session.add(evidence)
            # Reassign so the JSON column is flagged dirty.
            complaint.evidence_hashes = [*(complaint.evidence_hashes or []), digest]
            db.session.commit()
        except (StorageError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.exception(
                "Evidence upload failed",
                extra={"complaint_id": complaint_id, "file_name": upload.file_name, "stored_files": len(stored)},
            )
            raise EvidenceUploadError(complaint_id, tracking_code, upload.file_name, len(stored)) from exc
        stored.append(evidence)
        current_app.logger.info(
            "Evidence stored",
            extra={"complaint_id": complaint_id, "file_hash": digest, "bytes": upload.size},
        )
    return stored


def create_complaint(submission: ComplaintSubmission, user: Optional[User] = None) -> Complaint:
    validate_submission(submission, user)
    complaint = _insert_complaint(submission, user)
    current_app.logger.info(
        "Complaint created",
        extra={
            "complaint_id": complaint.id,
            "category": complaint.category,
            "is_anonymous": complaint.is_anonymous,
            "evidence_count": len(submission.evidence),
        },
    )
    if submission.evidence:
        _store_evidence(complaint, submission.evidence)
    append_entry(complaint, "complaint_created")
    return complaint


def attach_evidence(
    complaint: Complaint,
    uploads: list[EvidenceUpload],
    user: Optional[User] = None,
    tracking_code: Optional[str] = None,
) -> list[EvidenceFile]:
    if not access_policy.can_attach_evidence(complaint, user, tracking_code):
        raise AccessDeniedError("You cannot add evidence to this complaint")
    if not uploads:
        raise ComplaintValidationError("No evidence files provided")
    limit = _max_files()
    if len(complaint.evidence_files) + len(uploads) > limit:
        raise ComplaintValidationError(f"Maximum {limit} files allowed")
    duplicate = _duplicate_file_name(uploads, (item.file_name for item in complaint.evidence_files))
    if duplicate:
        message = f"A file named {duplicate} is already attached"
        raise ComplaintValidationError(message, {"evidence": message})

    stored = _store_evidence(complaint, uploads)
    append_entry(complaint, "evidence_attached")
    return stored


def update_status(complaint: Complaint, status: str, user: Optional[User]) -> Complaint:
    if not access_policy.can_update_status(user):
        raise AccessDeniedError("Only officials can change complaint status")
    status = (status or "").strip().lower()
    if status not in COMPLAINT_STATUSES:
        raise ComplaintValidationError("Invalid status")
    previous = complaint.status
    complaint.status = status
    db.session.commit()
    current_app.logger.info(
        "Complaint status updated",
        extra={"complaint_id": complaint.id, "from_status": previous, "to_status": status, "actor_id": user.id},
    )
    return complaint


def add_official_note(complaint: Complaint, note: str, user: Optional[User]) -> OfficialNote:
    if not access_policy.can_add_note(user):
        raise AccessDeniedError("Only officials can add notes")
    text = (note or "").strip()
    if not text:
        raise ComplaintValidationError("Note cannot be empty")
    if len(text) > NOTE_MAX_LENGTH:
        raise ComplaintValidationError(f"Note must be less than {NOTE_MAX_LENGTH} characters")
    entry = OfficialNote(complaint_id=complaint.id, official_id=user.id, note=text)
    db.session.add(entry)
    db.session.commit()
    current_app.logger.info("Official note added", extra={"complaint_id": complaint.id, "actor_id": user.id})
    return entry


def apply_analysis(complaint: Complaint, analysis: dict) -> Complaint:
    """Store an AI analysis on the complaint; the fallback placeholder is never persisted."""
    if is_fallback_analysis(analysis):
        return complaint
    try:
        raw_score = float(analysis.get("urgency_score", complaint.urgency_score))
    except (TypeError, ValueError):
        raw_score = None
    if raw_score is None or not math.isfinite(raw_score):
        score = complaint.urgency_score
        analysis = dict(analysis, urgency_score=score)
    else:
        score = int(round(raw_score))
    metadata = dict(complaint.ai_metadata or {})
    metadata["analysis"] = analysis
    complaint.ai_metadata = metadata
    complaint.urgency_score = max(URGENCY_MIN, min(URGENCY_MAX, score))
    db.session.commit()
    return complaint


def get_complaint_for(complaint_id: str, user: Optional[User]) -> Complaint:
    complaint = db.session.get(Complaint, str(complaint_id)) if complaint_id else None
    # Unreadable complaints look exactly like missing ones.
    if complaint is None or not access_policy.can_read_complaint(complaint, user):
        raise ComplaintNotFoundError()
    return complaint


def find_by_tracking_code(code: Optional[str]) -> Complaint:
    normalized = normalize_tracking_code(code)
    if not is_tracking_code(normalized):
        raise ComplaintNotFoundError()
    complaint = Complaint.query.filter_by(tracking_code=normalized).first()
    if complaint is None:
        raise ComplaintNotFoundError()
    return complaint


def tracking_payload(complaint: Complaint) -> dict:
    payload = complaint.public_payload()
    payload["evidence_files"] = [item.to_dict() for item in complaint.evidence_files]
    payload["notes"] = [note.to_dict() for note in complaint.notes]
    return payload


def lookup_by_tracking_code(code: Optional[str]) -> dict:
    """Public status view for a tracking-code holder; carries no owner information."""
    return tracking_payload(find_by_tracking_code(code))


def resolve_reference(value: Optional[str], user: Optional[User]) -> Complaint:
    reference = (value or "").strip()
    if not reference:
        raise ComplaintNotFoundError()
    if is_tracking_code(reference):
        return find_by_tracking_code(reference)
    return get_complaint_for(reference, user)


def visible_complaints(
    user: Optional[User],
    search: Optional[str] = None,
    status: Optional[str] = None,
    category: Optional[str] = None,
):
    query = access_policy.visible_complaints_query(user)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Complaint.title.ilike(pattern),
                Complaint.description.ilike(pattern),
                Complaint.location.ilike(pattern),
                Complaint.tracking_code.ilike(pattern),
            )
        )
    if status and status in COMPLAINT_STATUSES:
        query = query.filter(Complaint.status == status)
    if category and category in COMPLAINT_CATEGORIES:
        query = query.filter(Complaint.category == category)
    return query.order_by(Complaint.created_at.desc())

"""Complaint intake, evidence, tracking lookups and the live complaint stream."""
from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from flask_login import current_user, login_required
from flask_wtf import FlaskForm
from wtforms import BooleanField, StringField, TextAreaField
from wtforms.validators import Length, Optional

from extensions import csrf, db
from models import Complaint
from utils import access_policy
from utils.audit_trail import entries_for
from utils.change_feed import LiveComplaintView, get_feed, stream_events
from utils.complaint_service import (
    ComplaintNotFoundError,
    ComplaintSubmission,
    ComplaintValidationError,
    attach_evidence,
    create_complaint,
    get_complaint_for,
    lookup_by_tracking_code,
    resolve_reference,
    tracking_payload,
    visible_complaints,
)
from utils.evidence_storage import read_upload
from utils.security import sanitize_input, track_attempt

complaints_bp = Blueprint("complaints", __name__, url_prefix="/complaints")


class ComplaintForm(FlaskForm):
    # Content rules live in the service so JSON and multipart callers get the same messages.
    title = StringField("Title", validators=[Optional()])
    description = TextAreaField("Description", validators=[Optional()])
    category = StringField("Category", validators=[Optional()])
    location = StringField("Location", validators=[Optional()])
    latitude = StringField("Latitude", validators=[Optional()])
    longitude = StringField("Longitude", validators=[Optional()])
    is_anonymous = BooleanField("Submit anonymously")


class EvidenceForm(FlaskForm):
    tracking_code = StringField("Tracking code", validators=[Optional(), Length(max=16)])


def _uploads_from_request() -> list:
    max_bytes = int(current_app.config.get("MAX_EVIDENCE_BYTES", 20 * 1024 * 1024))
    files = [f for f in request.files.getlist("evidence") if f and f.filename]
    limit = int(current_app.config.get("MAX_EVIDENCE_FILES", 5))
    if len(files) > limit:
        raise ComplaintValidationError(f"Maximum {limit} files allowed", {"evidence": f"Maximum {limit} files allowed"})
    uploads = []
    for file in files:
        try:
            uploads.append(read_upload(file, max_bytes=max_bytes))
        except ValueError as exc:
            raise ComplaintValidationError(str(exc), {"evidence": str(exc)}) from exc
    return uploads


def detail_payload(complaint: Complaint) -> dict:
    payload = complaint.to_dict()
    payload["evidence_files"] = [item.to_dict() for item in complaint.evidence_files]
    payload["notes"] = [note.to_dict() for note in complaint.notes]
    return payload


def page_payload(pagination) -> dict:
    return {
        "complaints": [c.to_dict() for c in pagination.items],
        "page": pagination.page,
        "pages": pagination.pages,
        "per_page": pagination.per_page,
        "total": pagination.total,
    }


def current_page() -> int:
    try:
        page = int(request.args.get("page", 1))
    except (TypeError, ValueError):
        page = 1
    return 1 if page < 1 else page


@complaints_bp.route("/", methods=["POST"])
def submit_complaint():
    form = ComplaintForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    is_anonymous = bool(form.is_anonymous.data)
    if is_anonymous:
        limit = int(current_app.config.get("ANONYMOUS_SUBMISSION_LIMIT", 20))
        if not track_attempt(f"anonymous-submit:{request.remote_addr}", limit=limit):
            current_app.logger.warning("Anonymous submission limit reached", extra={"ip_address": request.remote_addr})
            return jsonify({"error": "Too many anonymous submissions. Please try again later."}), 429

    submission = ComplaintSubmission(
        title=form.title.data,
        description=form.description.data,
        category=form.category.data,
        location=form.location.data,
        latitude=form.latitude.data,
        longitude=form.longitude.data,
        is_anonymous=is_anonymous,
        evidence=_uploads_from_request(),
    )
    user = current_user if current_user.is_authenticated else None
    complaint = create_complaint(submission, user)
    return (
        jsonify(
            {
                "complaint": detail_payload(complaint),
                "tracking_code": complaint.tracking_code,
            }
        ),
        201,
    )


@complaints_bp.route("/", methods=["GET"])
@login_required
def list_complaints():
    filters = sanitize_input(request.args)
    per_page = max(1, min(int(current_app.config.get("COMPLAINTS_PER_PAGE", 20)), 100))
    query = visible_complaints(
        current_user,
        search=filters.get("q"),
        status=filters.get("status"),
        category=filters.get("category"),
    )
    pagination = query.paginate(page=current_page(), per_page=per_page, error_out=False)
    return jsonify(page_payload(pagination))


@complaints_bp.route("/verify", methods=["GET"])
def verify_reference():
    reference = (request.args.get("q") or "").strip()
    if not reference:
        return jsonify({"error": "Enter a complaint ID or tracking code"}), 400
    complaint = resolve_reference(reference, current_user)
    if complaint.is_anonymous:
        return jsonify({"complaint": tracking_payload(complaint)})
    return jsonify({"complaint": detail_payload(complaint)})


@complaints_bp.route("/verify-tracking", methods=["POST"])
@csrf.exempt
def verify_tracking():
    body = request.get_json(silent=True) or {}
    code = (body.get("trackingCode") or "").strip()
    if not code:
        return jsonify({"error": "Tracking code is required"}), 400
    try:
        payload = lookup_by_tracking_code(code)
    except ComplaintNotFoundError as exc:
        return jsonify({"error": exc.message}), 404
    current_app.logger.info("Tracking code verified", extra={"complaint_id": payload["id"]})
    return jsonify({"success": True, "complaint": payload})


@complaints_bp.route("/stream", methods=["GET"])
@login_required
def stream():
    user = current_user._get_current_object()
    # Subscribe before the snapshot query so nothing committed in between is lost.
    subscription = get_feed().subscribe(access_policy.stream_predicate(user))
    try:
        view = LiveComplaintView(c.to_dict() for c in visible_complaints(user).all())
    except Exception:
        subscription.close()
        raise
    keepalive = float(current_app.config.get("CHANGE_FEED_KEEPALIVE_SECONDS", 15))
    current_app.logger.info("Change stream opened", extra={"user_id": user.id, "initial": len(view.complaints)})
    response = Response(
        stream_with_context(stream_events(subscription, view.snapshot(), keepalive)),
        mimetype="text/event-stream",
    )
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@complaints_bp.route("/<string:complaint_id>", methods=["GET"])
def complaint_detail(complaint_id):
    complaint = get_complaint_for(complaint_id, current_user)
    return jsonify({"complaint": detail_payload(complaint)})


@complaints_bp.route("/<string:complaint_id>/evidence", methods=["POST"])
def add_evidence(complaint_id):
    form = EvidenceForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400
    complaint = db.session.get(Complaint, complaint_id)
    if complaint is None:
        raise ComplaintNotFoundError()
    user = current_user if current_user.is_authenticated else None
    stored = attach_evidence(complaint, _uploads_from_request(), user, tracking_code=form.tracking_code.data)
    return (
        jsonify(
            {
                "evidence_files": [item.to_dict() for item in stored],
                "evidence_hashes": list(complaint.evidence_hashes or []),
            }
        ),
        201,
    )


@complaints_bp.route("/<string:complaint_id>/audit-log", methods=["GET"])
def audit_log(complaint_id):
    if db.session.get(Complaint, complaint_id) is None:
        raise ComplaintNotFoundError()
    return jsonify({"entries": [entry.to_dict() for entry in entries_for(complaint_id)]})

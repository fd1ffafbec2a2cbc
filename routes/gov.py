"""Officials' portal: review queue, status changes, notes, AI assistance and export."""
from datetime import datetime

from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import current_user
from flask_wtf import FlaskForm
from wtforms import StringField, TextAreaField
from wtforms.validators import DataRequired, Length

from models import NOTE_MAX_LENGTH
from utils.ai_gateway import analyze_complaint, draft_note, is_fallback_analysis, suggest_status
from utils.ai_markdown_formatter import format_analysis_markdown, markdown_to_html
from utils.analytics import export_complaints_csv
from utils.complaint_service import (
    add_official_note,
    apply_analysis,
    get_complaint_for,
    update_status,
    visible_complaints,
)
from utils.decorators import roles_required
from utils.security import sanitize_input

from .complaints import current_page, detail_payload, page_payload

gov_bp = Blueprint("gov", __name__, url_prefix="/gov")

OFFICIAL_ROLES = ("government", "admin")


class StatusForm(FlaskForm):
    status = StringField("Status", validators=[DataRequired()])


class NoteForm(FlaskForm):
    note = TextAreaField("Note", validators=[DataRequired(), Length(max=NOTE_MAX_LENGTH)])


def _filtered_complaints():
    filters = sanitize_input(request.args)
    return visible_complaints(
        current_user,
        search=filters.get("q"),
        status=filters.get("status"),
        category=filters.get("category"),
    )


@gov_bp.route("/complaints", methods=["GET"])
@roles_required(*OFFICIAL_ROLES)
def review_queue():
    per_page = max(1, min(int(current_app.config.get("COMPLAINTS_PER_PAGE", 20)), 100))
    pagination = _filtered_complaints().paginate(page=current_page(), per_page=per_page, error_out=False)
    return jsonify(page_payload(pagination))


@gov_bp.route("/complaints/export.csv", methods=["GET"])
@roles_required(*OFFICIAL_ROLES)
def export_csv():
    complaints = _filtered_complaints().all()
    filename = f"complaints-{datetime.utcnow().strftime('%Y-%m-%d')}.csv"
    current_app.logger.info("Complaints exported", extra={"count": len(complaints), "actor_id": current_user.id})
    return Response(
        export_complaints_csv(complaints),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@gov_bp.route("/complaints/<string:complaint_id>/status", methods=["PATCH"])
@roles_required(*OFFICIAL_ROLES)
def change_status(complaint_id):
    form = StatusForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400
    complaint = get_complaint_for(complaint_id, current_user)
    update_status(complaint, form.status.data, current_user)
    return jsonify({"complaint": complaint.to_dict()})


@gov_bp.route("/complaints/<string:complaint_id>/notes", methods=["POST"])
@roles_required(*OFFICIAL_ROLES)
def add_note(complaint_id):
    form = NoteForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400
    complaint = get_complaint_for(complaint_id, current_user)
    note = add_official_note(complaint, form.note.data, current_user)
    return jsonify({"note": note.to_dict()}), 201


@gov_bp.route("/complaints/<string:complaint_id>/analyze", methods=["POST"])
@roles_required(*OFFICIAL_ROLES)
def analyze(complaint_id):
    complaint = get_complaint_for(complaint_id, current_user)
    analysis = analyze_complaint(complaint)
    apply_analysis(complaint, analysis)
    if not is_fallback_analysis(analysis):
        analysis = complaint.ai_metadata["analysis"]
    markdown = format_analysis_markdown(complaint.to_dict(), analysis)
    current_app.logger.info(
        "Complaint analyzed",
        extra={"complaint_id": complaint.id, "fallback": is_fallback_analysis(analysis), "urgency": complaint.urgency_score},
    )
    return jsonify(
        {
            "analysis": analysis,
            "analysis_html": markdown_to_html(markdown),
            "complaint": detail_payload(complaint),
        }
    )


@gov_bp.route("/complaints/<string:complaint_id>/draft-note", methods=["POST"])
@roles_required(*OFFICIAL_ROLES)
def draft(complaint_id):
    complaint = get_complaint_for(complaint_id, current_user)
    return jsonify(draft_note(complaint))


@gov_bp.route("/complaints/<string:complaint_id>/suggest-status", methods=["POST"])
@roles_required(*OFFICIAL_ROLES)
def suggest(complaint_id):
    complaint = get_complaint_for(complaint_id, current_user)
    return jsonify(suggest_status(complaint))

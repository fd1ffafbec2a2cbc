"""Tests for the complaint record store, evidence aggregation and the audit trail."""
import hashlib
import os

import pytest

from conftest import VALID_COMPLAINT
from extensions import db
from models import (
    AuditLogEntry,
    AuditLogImmutableError,
    Complaint,
    EvidenceFile,
    ImmutableFieldError,
    OfficialNote,
)
from utils.ai_gateway import fallback_analysis
from utils.audit_trail import entries_for, metadata_hash_for
from utils.complaint_service import (
    AccessDeniedError,
    ComplaintNotFoundError,
    ComplaintSubmission,
    ComplaintValidationError,
    EvidenceUploadError,
    add_official_note,
    apply_analysis,
    attach_evidence,
    create_complaint,
    get_complaint_for,
    lookup_by_tracking_code,
    resolve_reference,
    update_status,
    visible_complaints,
)
from utils.evidence_storage import EvidenceUpload, LocalObjectStorage, StorageError


def _submission(**overrides):
    data = dict(VALID_COMPLAINT)
    data.update(overrides)
    return ComplaintSubmission(**data)


def _upload(content: bytes, name: str) -> EvidenceUpload:
    return EvidenceUpload(file_name=name, content_type="application/pdf", data=content)


class FlakyStorage(LocalObjectStorage):
    """Fails every upload after the first ``succeed`` ones."""

    def __init__(self, root, succeed):
        super().__init__(root)
        self.remaining = succeed

    def upload(self, bucket, path, data, content_type):
        if self.remaining <= 0:
            raise StorageError("bucket unavailable")
        self.remaining -= 1
        return super().upload(bucket, path, data, content_type)


class TestCreate:
    def test_defaults(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        assert complaint.status == "pending"
        assert complaint.urgency_score == 5
        assert complaint.evidence_hashes == []
        assert complaint.ai_metadata == {}

    def test_inputs_are_trimmed(self, ctx, citizen):
        complaint = create_complaint(_submission(title="   " + VALID_COMPLAINT["title"] + "  "), citizen)
        assert complaint.title == VALID_COMPLAINT["title"]

    def test_evidence_hashes_in_submission_order(self, ctx):
        first, second = b"first document", b"second document"
        complaint = create_complaint(
            _submission(is_anonymous=True, evidence=[_upload(first, "a.pdf"), _upload(second, "b.pdf")])
        )
        expected = [hashlib.sha256(first).hexdigest(), hashlib.sha256(second).hexdigest()]
        assert complaint.evidence_hashes == expected
        rows = EvidenceFile.query.filter_by(complaint_id=complaint.id).order_by(EvidenceFile.created_at).all()
        assert [r.file_hash for r in rows] == expected
        assert all(r.file_type == "application/pdf" for r in rows)

    def test_evidence_written_under_owner_prefix(self, ctx, citizen):
        complaint = create_complaint(_submission(evidence=[_upload(b"pdf bytes", "scan.pdf")]), citizen)
        root = ctx.config["EVIDENCE_STORAGE_ROOT"]
        stored = os.path.join(root, "evidence", citizen.id, complaint.id, "scan.pdf")
        with open(stored, "rb") as handle:
            assert handle.read() == b"pdf bytes"
        assert complaint.evidence_files[0].file_url.endswith(f"/evidence/evidence/{citizen.id}/{complaint.id}/scan.pdf")

    def test_anonymous_evidence_prefix(self, ctx):
        complaint = create_complaint(_submission(is_anonymous=True, evidence=[_upload(b"x", "photo.pdf")]))
        assert f"/anonymous/{complaint.id}/photo.pdf" in complaint.evidence_files[0].file_url

    def test_single_created_audit_entry(self, ctx):
        complaint = create_complaint(
            _submission(is_anonymous=True, evidence=[_upload(b"one", "1.pdf"), _upload(b"two", "2.pdf")])
        )
        entries = entries_for(complaint.id)
        assert [e.action for e in entries] == ["complaint_created"]
        assert entries[0].metadata_hash == ",".join(complaint.evidence_hashes)

    def test_audit_entry_without_evidence_is_empty(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        (entry,) = entries_for(complaint.id)
        assert entry.metadata_hash == ""
        assert metadata_hash_for(complaint) == ""


class TestValidation:
    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"title": "Too short"}, "Title must be at least 10 characters"),
            ({"title": "x" * 201}, "Title must be less than 200 characters"),
            ({"description": "Not nearly enough detail."}, "Description must be at least 50 characters"),
            ({"description": "y" * 5001}, "Description must be less than 5000 characters"),
            ({"category": "gossip"}, "Invalid category"),
            ({"location": "  "}, "Location is required"),
            ({"latitude": "91"}, "Latitude must be between -90 and 90"),
            ({"longitude": "-181"}, "Longitude must be between -180 and 180"),
        ],
    )
    def test_rejected_before_any_write(self, ctx, citizen, overrides, message):
        with pytest.raises(ComplaintValidationError) as excinfo:
            create_complaint(_submission(**overrides), citizen)
        assert message in excinfo.value.errors.values()
        assert Complaint.query.count() == 0
        assert AuditLogEntry.query.count() == 0

    def test_file_cap(self, ctx, citizen):
        uploads = [_upload(bytes([i]), f"{i}.pdf") for i in range(6)]
        with pytest.raises(ComplaintValidationError) as excinfo:
            create_complaint(_submission(evidence=uploads), citizen)
        assert excinfo.value.errors["evidence"] == "Maximum 5 files allowed"

    def test_identified_submission_requires_user(self, ctx):
        with pytest.raises(ComplaintValidationError, match="Please sign in to submit a complaint"):
            create_complaint(_submission(is_anonymous=False), None)

    def test_coordinates_are_optional(self, ctx, citizen):
        complaint = create_complaint(_submission(latitude="-1.2921", longitude="36.8219"), citizen)
        assert complaint.latitude == pytest.approx(-1.2921)
        assert complaint.longitude == pytest.approx(36.8219)


class TestPartialFailure:
    def test_earlier_files_survive(self, ctx):
        ctx.extensions["evidence_storage"] = FlakyStorage(ctx.config["EVIDENCE_STORAGE_ROOT"], succeed=1)
        uploads = [_upload(b"kept", "1.pdf"), _upload(b"lost", "2.pdf"), _upload(b"never", "3.pdf")]

        with pytest.raises(EvidenceUploadError) as excinfo:
            create_complaint(_submission(is_anonymous=True, evidence=uploads))

        error = excinfo.value
        assert error.stored == 1
        assert error.file_name == "2.pdf"
        complaint = db.session.get(Complaint, error.complaint_id)
        assert complaint.tracking_code == error.tracking_code
        assert complaint.evidence_hashes == [hashlib.sha256(b"kept").hexdigest()]
        assert EvidenceFile.query.filter_by(complaint_id=complaint.id).count() == 1
        assert entries_for(complaint.id) == []

    def test_existing_object_is_not_overwritten(self, ctx):
        storage = LocalObjectStorage(ctx.config["EVIDENCE_STORAGE_ROOT"])
        storage.upload("evidence", "anonymous/c-1/same.pdf", b"one", "application/pdf")
        with pytest.raises(StorageError, match="already exists"):
            storage.upload("evidence", "anonymous/c-1/same.pdf", b"two", "application/pdf")
        with open(storage.open_path("evidence", "anonymous/c-1/same.pdf"), "rb") as handle:
            assert handle.read() == b"one"

    def test_duplicate_names_rejected_before_insert(self, ctx):
        uploads = [_upload(b"one", "same.pdf"), _upload(b"two", "same.pdf")]
        with pytest.raises(ComplaintValidationError, match="A file named same.pdf is already attached"):
            create_complaint(_submission(is_anonymous=True, evidence=uploads))
        assert Complaint.query.count() == 0


class TestAttachEvidence:
    def test_owner_appends(self, ctx, citizen):
        complaint = create_complaint(_submission(evidence=[_upload(b"first", "1.pdf")]), citizen)
        attach_evidence(complaint, [_upload(b"second", "2.pdf")], citizen)

        assert complaint.evidence_hashes == [
            hashlib.sha256(b"first").hexdigest(),
            hashlib.sha256(b"second").hexdigest(),
        ]
        entries = entries_for(complaint.id)
        assert [e.action for e in entries] == ["complaint_created", "evidence_attached"]
        assert entries[-1].metadata_hash == ",".join(complaint.evidence_hashes)

    def test_stranger_denied(self, ctx, citizen, make_user):
        complaint = create_complaint(_submission(), citizen)
        with pytest.raises(AccessDeniedError):
            attach_evidence(complaint, [_upload(b"x", "x.pdf")], make_user())

    def test_tracking_code_holder(self, ctx):
        complaint = create_complaint(_submission(is_anonymous=True))
        attach_evidence(complaint, [_upload(b"late", "late.pdf")], None, tracking_code=complaint.tracking_code.lower())
        assert len(complaint.evidence_hashes) == 1

    def test_wrong_tracking_code(self, ctx):
        complaint = create_complaint(_submission(is_anonymous=True))
        with pytest.raises(AccessDeniedError):
            attach_evidence(complaint, [_upload(b"late", "late.pdf")], None, tracking_code="CW-0000-0000")

    def test_total_cap(self, ctx, citizen):
        uploads = [_upload(bytes([i]), f"{i}.pdf") for i in range(5)]
        complaint = create_complaint(_submission(evidence=uploads), citizen)
        with pytest.raises(ComplaintValidationError, match="Maximum 5 files allowed"):
            attach_evidence(complaint, [_upload(b"sixth", "6.pdf")], citizen)

    def test_reattaching_same_name(self, ctx, citizen):
        complaint = create_complaint(_submission(evidence=[_upload(b"first", "receipt.pdf")]), citizen)
        with pytest.raises(ComplaintValidationError, match="A file named receipt.pdf is already attached") as excinfo:
            attach_evidence(complaint, [_upload(b"second", "receipt.pdf")], citizen)
        assert excinfo.value.errors == {"evidence": "A file named receipt.pdf is already attached"}
        assert complaint.evidence_hashes == [hashlib.sha256(b"first").hexdigest()]
        assert [e.action for e in entries_for(complaint.id)] == ["complaint_created"]


class TestStatusAndNotes:
    def test_citizen_cannot_change_status(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        with pytest.raises(AccessDeniedError):
            update_status(complaint, "resolved", citizen)

    def test_any_transition_allowed(self, ctx, citizen, official):
        complaint = create_complaint(_submission(), citizen)
        for status in ("resolved", "pending", "rejected", "verified", "in_review"):
            update_status(complaint, status, official)
            assert complaint.status == status

    def test_unknown_status(self, ctx, citizen, official):
        complaint = create_complaint(_submission(), citizen)
        with pytest.raises(ComplaintValidationError, match="Invalid status"):
            update_status(complaint, "closed", official)
        assert complaint.status == "pending"

    def test_official_note(self, ctx, citizen, official):
        complaint = create_complaint(_submission(), citizen)
        note = add_official_note(complaint, "  We have opened an inquiry.  ", official)
        assert note.note == "We have opened an inquiry."
        assert OfficialNote.query.filter_by(complaint_id=complaint.id).count() == 1

    def test_note_rules(self, ctx, citizen, official):
        complaint = create_complaint(_submission(), citizen)
        with pytest.raises(ComplaintValidationError):
            add_official_note(complaint, "   ", official)
        with pytest.raises(AccessDeniedError):
            add_official_note(complaint, "I am not an official", citizen)


class TestImmutability:
    def test_category_is_write_once(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        complaint.category = "negligence"
        with pytest.raises(ImmutableFieldError):
            db.session.commit()
        db.session.rollback()
        assert db.session.get(Complaint, complaint.id).category == "bribery"

    def test_anonymity_is_write_once(self, ctx):
        complaint = create_complaint(_submission(is_anonymous=True))
        complaint.tracking_code = "CW-0000-0000"
        with pytest.raises(ImmutableFieldError):
            db.session.commit()
        db.session.rollback()

    def test_audit_entries_are_append_only(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        (entry,) = entries_for(complaint.id)
        entry.action = "rewritten"
        with pytest.raises(AuditLogImmutableError):
            db.session.commit()
        db.session.rollback()

        db.session.delete(entries_for(complaint.id)[0])
        with pytest.raises(AuditLogImmutableError):
            db.session.commit()
        db.session.rollback()
        assert len(entries_for(complaint.id)) == 1


class TestReads:
    def test_owner_and_officials_read(self, ctx, citizen, official, admin):
        complaint = create_complaint(_submission(), citizen)
        for user in (citizen, official, admin):
            assert get_complaint_for(complaint.id, user).id == complaint.id

    def test_other_citizen_sees_not_found(self, ctx, citizen, make_user):
        complaint = create_complaint(_submission(), citizen)
        with pytest.raises(ComplaintNotFoundError, match="Complaint not found"):
            get_complaint_for(complaint.id, make_user())
        with pytest.raises(ComplaintNotFoundError):
            get_complaint_for(complaint.id, None)

    def test_anonymous_complaint_readable_by_anyone(self, ctx):
        complaint = create_complaint(_submission(is_anonymous=True))
        assert get_complaint_for(complaint.id, None).id == complaint.id

    def test_tracking_lookup_has_no_owner(self, ctx, official):
        complaint = create_complaint(_submission(is_anonymous=True, evidence=[_upload(b"doc", "doc.pdf")]))
        add_official_note(complaint, "Investigator assigned.", official)

        payload = lookup_by_tracking_code(complaint.tracking_code.lower())
        assert payload["id"] == complaint.id
        assert "user_id" not in payload
        assert len(payload["evidence_files"]) == 1
        assert payload["notes"][0]["note"] == "Investigator assigned."

    def test_tracking_lookup_unknown(self, ctx):
        with pytest.raises(ComplaintNotFoundError):
            lookup_by_tracking_code("CW-FFFF-FFFF")

    def test_resolve_reference(self, ctx, citizen):
        anonymous = create_complaint(_submission(is_anonymous=True))
        identified = create_complaint(_submission(), citizen)
        assert resolve_reference(anonymous.tracking_code.lower(), None).id == anonymous.id
        assert resolve_reference(identified.id, citizen).id == identified.id
        with pytest.raises(ComplaintNotFoundError):
            resolve_reference(identified.id, None)
        with pytest.raises(ComplaintNotFoundError):
            resolve_reference("nonsense", citizen)

    def test_visible_complaints(self, ctx, citizen, official, make_user):
        mine = create_complaint(_submission(), citizen)
        create_complaint(_submission(), make_user())
        create_complaint(_submission(is_anonymous=True))

        assert [c.id for c in visible_complaints(citizen)] == [mine.id]
        assert visible_complaints(official).count() == 3
        assert visible_complaints(None).count() == 0

    def test_visible_complaints_filters(self, ctx, official, citizen):
        create_complaint(_submission(title="Road contract inflated by a third", category="misuse_of_funds"), citizen)
        target = create_complaint(_submission(location="Harbour customs post"), citizen)
        update_status(target, "in_review", official)

        assert [c.id for c in visible_complaints(official, search="harbour")] == [target.id]
        assert [c.id for c in visible_complaints(official, status="in_review")] == [target.id]
        assert visible_complaints(official, category="misuse_of_funds").count() == 1


class TestAnalysis:
    def test_analysis_overwrites_urgency(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        apply_analysis(complaint, {"urgency_score": 14, "risk_level": "critical", "summary": "Serious"})
        assert complaint.urgency_score == 10
        assert complaint.ai_metadata["analysis"]["risk_level"] == "critical"

    def test_fallback_is_not_stored(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        apply_analysis(complaint, fallback_analysis("not json"))
        assert complaint.urgency_score == 5
        assert complaint.ai_metadata == {}

    def test_non_finite_urgency_keeps_score(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        apply_analysis(complaint, {"urgency_score": float("inf"), "risk_level": "high", "summary": "Odd"})
        assert complaint.urgency_score == 5
        assert complaint.ai_metadata["analysis"]["urgency_score"] == 5
        assert complaint.ai_metadata["analysis"]["risk_level"] == "high"

    def test_model_reply_with_raw_response_key_is_stored(self, ctx, citizen):
        complaint = create_complaint(_submission(), citizen)
        apply_analysis(complaint, {"urgency_score": 7, "raw_response": "echoed by the model"})
        assert complaint.urgency_score == 7
        assert complaint.ai_metadata["analysis"]["raw_response"] == "echoed by the model"

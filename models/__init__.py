"""Core data models for identity, complaints, evidence, official notes and the public audit trail."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import event, inspect
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from utils.tracking_code import issue_tracking_code


def generate_uuid() -> str:
	return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
	return value.isoformat() if value else None


ROLE_NAMES: tuple[str, ...] = (
	"citizen",
	"government",
	"admin",
)

PRIVILEGED_ROLES: frozenset[str] = frozenset({"government", "admin"})

COMPLAINT_CATEGORIES: tuple[str, ...] = (
	"bribery",
	"misconduct",
	"misuse_of_funds",
	"negligence",
	"infrastructure",
	"other",
)

COMPLAINT_STATUSES: tuple[str, ...] = (
	"pending",
	"in_review",
	"verified",
	"resolved",
	"rejected",
)

URGENCY_MIN = 0
URGENCY_MAX = 10

TITLE_MIN_LENGTH = 10
TITLE_MAX_LENGTH = 200
DESCRIPTION_MIN_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 5000
LOCATION_MIN_LENGTH = 3
NOTE_MAX_LENGTH = 5000

ACCESS_LOG_ACTIONS: tuple[str, ...] = (
	"REGISTER",
	"LOGIN",
	"LOGIN_FAILED",
	"LOGOUT",
	"ROLE_GRANTED",
	"UNAUTHORIZED_ACCESS",
)


class ImmutableFieldError(ValueError):
	"""Raised when a write-once complaint column is modified."""

	def __init__(self, field: str) -> None:
		super().__init__(f"Complaint field '{field}' cannot be changed after creation")
		self.field = field


class AuditLogImmutableError(RuntimeError):
	"""Raised on any attempt to rewrite or remove a public audit entry."""


def _in_clause(values) -> str:
	return ",".join(f"'{v}'" for v in values)


class Role(db.Model):
	__tablename__ = "roles"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(50), unique=True, nullable=False, index=True)
	description = db.Column(db.String(255), nullable=True)

	users = db.relationship("User", back_populates="role", lazy="dynamic")

	__table_args__ = (
		db.CheckConstraint(f"name IN ({_in_clause(ROLE_NAMES)})", name="ck_role_name_valid"),
	)

	@staticmethod
	def get_or_create(name: str, description: str = ""):
		role = Role.query.filter_by(name=name).first()
		if role:
			return role
		role = Role(name=name, description=description)
		db.session.add(role)
		db.session.commit()
		return role


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	full_name = db.Column(db.String(150), nullable=True)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	phone = db.Column(db.String(32), nullable=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	role = db.relationship("Role", back_populates="users")
	access_logs = db.relationship("AccessLog", back_populates="user", lazy="dynamic")
	complaints = db.relationship("Complaint", back_populates="user", lazy="dynamic")

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def role_name(self) -> str:
		return (self.role.name if self.role else "").lower()

	def has_role(self, name: str) -> bool:
		return self.role_name == (name or "").lower()

	@property
	def is_privileged(self) -> bool:
		return self.role_name in PRIVILEGED_ROLES

	@property
	def is_admin(self) -> bool:
		return self.has_role("admin")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"email": self.email,
			"full_name": self.full_name,
			"phone": self.phone,
			"role": self.role_name,
			"created_at": _iso(self.created_at),
		}


class AccessLog(db.Model):
	__tablename__ = "access_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	action_type = db.Column(db.String(50), nullable=False, index=True)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context = db.Column(db.String(255), nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(f"action_type IN ({_in_clause(ACCESS_LOG_ACTIONS)})", name="ck_access_log_action"),
	)

	user = db.relationship("User", back_populates="access_logs")


class Complaint(db.Model):
	__tablename__ = "complaints"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	is_anonymous = db.Column(db.Boolean, nullable=False, default=False, index=True)
	tracking_code = db.Column(db.String(16), nullable=True)
	title = db.Column(db.String(TITLE_MAX_LENGTH), nullable=False)
	description = db.Column(db.Text, nullable=False)
	category = db.Column(db.String(32), nullable=False, index=True)
	urgency_score = db.Column(db.Integer, nullable=False, default=URGENCY_MIN)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	location = db.Column(db.String(255), nullable=True)
	latitude = db.Column(db.Float, nullable=True)
	longitude = db.Column(db.Float, nullable=True)
	ai_metadata = db.Column(db.JSON, nullable=False, default=dict)
	evidence_hashes = db.Column(db.JSON, nullable=False, default=list)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(
		db.DateTime,
		default=datetime.utcnow,
		onupdate=datetime.utcnow,
		nullable=False,
		index=True,
	)

	__table_args__ = (
		db.UniqueConstraint("tracking_code", name="uq_complaints_tracking_code"),
		db.CheckConstraint(
			f"category IN ({_in_clause(COMPLAINT_CATEGORIES)})",
			name="ck_complaint_category_valid",
		),
		db.CheckConstraint(
			f"status IN ({_in_clause(COMPLAINT_STATUSES)})",
			name="ck_complaint_status_valid",
		),
		db.CheckConstraint(
			f"urgency_score >= {URGENCY_MIN} AND urgency_score <= {URGENCY_MAX}",
			name="ck_complaint_urgency_range",
		),
		db.CheckConstraint(
			"(is_anonymous AND tracking_code IS NOT NULL) OR (NOT is_anonymous AND tracking_code IS NULL)",
			name="ck_complaint_tracking_code_iff_anonymous",
		),
		db.CheckConstraint(
			"(is_anonymous AND user_id IS NULL) OR (NOT is_anonymous AND user_id IS NOT NULL)",
			name="ck_complaint_owner_iff_identified",
		),
		db.Index("ix_complaints_user_created", "user_id", "created_at"),
	)

	user = db.relationship("User", back_populates="complaints")
	evidence_files = db.relationship(
		"EvidenceFile",
		back_populates="complaint",
		order_by="EvidenceFile.created_at",
		passive_deletes=True,
	)
	audit_entries = db.relationship(
		"AuditLogEntry",
		back_populates="complaint",
		order_by="AuditLogEntry.timestamp",
		passive_deletes=True,
	)
	notes = db.relationship(
		"OfficialNote",
		back_populates="complaint",
		order_by="OfficialNote.created_at.desc()",
		passive_deletes=True,
	)

	@property
	def immutable_fields(self) -> set[str]:
		return {"is_anonymous", "category", "user_id", "tracking_code", "created_at"}

	@property
	def owner_reference(self) -> str:
		return "anonymous" if self.is_anonymous else str(self.user_id)

	def to_dict(self, include_owner: bool = True) -> dict:
		payload = {
			"id": self.id,
			"tracking_code": self.tracking_code,
			"is_anonymous": bool(self.is_anonymous),
			"title": self.title,
			"description": self.description,
			"category": self.category,
			"status": self.status,
			"urgency_score": self.urgency_score,
			"location": self.location,
			"latitude": self.latitude,
			"longitude": self.longitude,
			"evidence_hashes": list(self.evidence_hashes or []),
			"ai_metadata": dict(self.ai_metadata or {}),
			"created_at": _iso(self.created_at),
			"updated_at": _iso(self.updated_at),
		}
		if include_owner and not self.is_anonymous:
			payload["user_id"] = self.user_id
		return payload

	def public_payload(self) -> dict:
		"""Fields safe to hand to anyone holding the tracking code."""
		return {
			"id": self.id,
			"title": self.title,
			"description": self.description,
			"category": self.category,
			"status": self.status,
			"location": self.location,
			"latitude": self.latitude,
			"longitude": self.longitude,
			"urgency_score": self.urgency_score,
			"created_at": _iso(self.created_at),
			"updated_at": _iso(self.updated_at),
			"tracking_code": self.tracking_code,
		}


class EvidenceFile(db.Model):
	__tablename__ = "evidence_files"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	complaint_id = db.Column(
		db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True
	)
	file_url = db.Column(db.String(1024), nullable=False)
	file_name = db.Column(db.String(255), nullable=False)
	file_type = db.Column(db.String(120), nullable=False)
	file_size = db.Column(db.Integer, nullable=True)
	file_hash = db.Column(db.String(128), nullable=False, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	complaint = db.relationship("Complaint", back_populates="evidence_files")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"complaint_id": self.complaint_id,
			"file_name": self.file_name,
			"file_url": self.file_url,
			"file_type": self.file_type,
			"file_size": self.file_size,
			"file_hash": self.file_hash,
			"created_at": _iso(self.created_at),
		}


class AuditLogEntry(db.Model):
	__tablename__ = "public_logs"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	complaint_id = db.Column(
		db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True
	)
	metadata_hash = db.Column(db.Text, nullable=False, default="")
	action = db.Column(db.String(80), nullable=False, index=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.Index("ix_public_logs_complaint_time", "complaint_id", "timestamp"),
	)

	complaint = db.relationship("Complaint", back_populates="audit_entries")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"complaint_id": self.complaint_id,
			"action": self.action,
			"metadata_hash": self.metadata_hash,
			"timestamp": _iso(self.timestamp),
		}


class OfficialNote(db.Model):
	__tablename__ = "gov_notes"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	complaint_id = db.Column(
		db.String(36), db.ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True
	)
	official_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
	note = db.Column(db.Text, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	complaint = db.relationship("Complaint", back_populates="notes")
	official = db.relationship("User")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"complaint_id": self.complaint_id,
			"note": self.note,
			"created_at": _iso(self.created_at),
		}


@event.listens_for(Complaint, "before_insert")
def assign_tracking_code(mapper, connection, target):
	"""Issue a tracking code for anonymous complaints inside the inserting transaction."""
	if target.is_anonymous and not target.tracking_code:
		target.tracking_code = issue_tracking_code(connection, Complaint.__table__)


@event.listens_for(Complaint, "before_update")
def guard_immutable_fields(mapper, connection, target):
	state = inspect(target)
	for name in sorted(target.immutable_fields):
		if state.attrs[name].history.has_changes():
			raise ImmutableFieldError(name)


@event.listens_for(AuditLogEntry, "before_update")
def reject_audit_update(mapper, connection, target):
	raise AuditLogImmutableError(f"Audit entry {target.id} is append-only")


@event.listens_for(AuditLogEntry, "before_delete")
def reject_audit_delete(mapper, connection, target):
	raise AuditLogImmutableError(f"Audit entry {target.id} is append-only")

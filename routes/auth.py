"""Authentication blueprint: registration, sessions and role grants."""
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from flask_wtf.csrf import generate_csrf
from sqlalchemy.exc import IntegrityError
from wtforms import BooleanField, PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional, ValidationError

from extensions import db
from models import ROLE_NAMES, AccessLog, Role, User
from utils.decorators import roles_required
from utils.security import password_meets_policy, track_attempt

auth_bp = Blueprint("auth", __name__)

ROLE_DESCRIPTIONS: dict[str, str] = {
    "citizen": "Default role for citizens",
    "government": "Government officials reviewing complaints",
    "admin": "Platform administrators",
}


class RegistrationForm(FlaskForm):
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    phone = StringField("Phone", validators=[Optional(), Length(max=32)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12)])

    def validate_email(self, field):
        if User.query.filter_by(email=field.data.lower().strip()).first():
            raise ValidationError("An account with this email already exists.")

    def validate_password(self, field):
        ok, reason = password_meets_policy(field.data or "")
        if not ok:
            raise ValidationError(reason)


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])
    remember_me = BooleanField("Remember me")


class RoleGrantForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    role = SelectField("Role", choices=[(r, r) for r in ROLE_NAMES], validators=[DataRequired()])


def log_action(action: str, user: User | None, context: str | None = None) -> None:
    entry = AccessLog(
        user_id=user.id if user else None,
        action_type=action,
        ip_address=request.remote_addr,
        user_agent=(request.headers.get("User-Agent") or "unknown")[:255],
        context=context,
    )
    db.session.add(entry)


def grant_role(user: User, role_name: str) -> User:
    user.role = Role.get_or_create(role_name, description=ROLE_DESCRIPTIONS.get(role_name, ""))
    db.session.add(user)
    return user


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@auth_bp.route("/register", methods=["POST"])
def register():
    if current_user.is_authenticated:
        return jsonify({"error": "Already signed in"}), 400

    form = RegistrationForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    try:
        role = Role.get_or_create("citizen", description=ROLE_DESCRIPTIONS["citizen"])
        user = User(
            full_name=form.full_name.data.strip(),
            email=form.email.data.lower().strip(),
            phone=(form.phone.data or "").strip() or None,
            role=role,
            is_active=True,
        )
        user.set_password(form.password.data)
        db.session.add(user)
        db.session.flush()
        log_action("REGISTER", user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "Unable to register with the provided details."}), 400

    current_app.logger.info("User registered", extra={"user_id": user.id})
    login_user(user)
    return jsonify({"user": user.to_dict()}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    if not track_attempt(f"login:{request.remote_addr}", limit=int(current_app.config.get("LOGIN_ATTEMPT_LIMIT", 50))):
        return jsonify({"error": "Too many login attempts. Please try again later."}), 429

    user = User.query.filter_by(email=form.email.data.lower().strip()).first()
    if not user or not user.check_password(form.password.data):
        log_action("LOGIN_FAILED", user)
        db.session.commit()
        return jsonify({"error": "Invalid credentials provided."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account is inactive. Please contact support."}), 403

    login_user(user, remember=bool(form.remember_me.data))
    session.permanent = True
    user.last_login_at = datetime.utcnow()
    log_action("LOGIN", user)
    db.session.commit()
    return jsonify({"user": user.to_dict()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user = current_user._get_current_object()
    logout_user()
    session.clear()
    log_action("LOGOUT", user)
    db.session.commit()
    return jsonify({"success": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})


@auth_bp.route("/roles", methods=["POST"])
@roles_required("admin")
def assign_role():
    form = RoleGrantForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    user = User.query.filter_by(email=form.email.data.lower().strip()).first()
    if not user:
        return jsonify({"error": "User not found"}), 404

    grant_role(user, form.role.data)
    log_action("ROLE_GRANTED", current_user, context=f"{user.id}:{form.role.data}")
    db.session.commit()
    current_app.logger.info(
        "Role granted",
        extra={"user_id": user.id, "role": form.role.data, "granted_by": current_user.id},
    )
    return jsonify({"user": user.to_dict()})

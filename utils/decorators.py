"""Authorization decorators for role-based access control."""
from functools import wraps

from flask import current_app, jsonify, request
from flask_login import current_user, login_required

from extensions import db
from models import AccessLog
from utils import access_policy


def roles_required(*roles):
    allowed = {r.lower() for r in roles}

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            if any(access_policy.has_role(current_user, role) for role in allowed):
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": current_user.role_name or None, "required": sorted(allowed)},
            )
            db.session.add(
                AccessLog(
                    user_id=current_user.id,
                    action_type="UNAUTHORIZED_ACCESS",
                    ip_address=request.remote_addr,
                    user_agent=(request.headers.get("User-Agent") or "unknown")[:255],
                    context=request.path[:255],
                )
            )
            db.session.commit()
            return jsonify({"error": "You do not have permission to perform this action"}), 403

        return wrapped

    return decorator

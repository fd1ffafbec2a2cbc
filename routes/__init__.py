"""Blueprint registration and public service routes."""
from flask import Blueprint, abort, current_app, jsonify, send_file
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from utils.analytics import complaint_statistics
from utils.evidence_storage import LocalObjectStorage, StorageError, get_storage
from .auth import auth_bp
from .complaints import complaints_bp
from .gov import gov_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/")
def index():
    return jsonify(
        {
            "service": "CivicWatch",
            "description": "Report corruption, anonymously or signed in, and follow its progress.",
            "endpoints": {
                "submit": "/complaints/",
                "verify": "/complaints/verify?q=<id or tracking code>",
                "stats": "/stats",
            },
        }
    )


@main_bp.route("/health")
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        current_app.logger.exception("Health check failed")
        return jsonify({"status": "degraded", "database": "unreachable"}), 503
    return jsonify({"status": "ok", "database": "ok"})


@main_bp.route("/stats")
def stats():
    return jsonify(complaint_statistics())


@main_bp.route("/evidence/<string:bucket>/<path:object_path>")
def evidence_object(bucket, object_path):
    storage = get_storage()
    if not isinstance(storage, LocalObjectStorage):
        abort(404)
    try:
        path = storage.open_path(bucket, object_path)
    except (FileNotFoundError, StorageError):
        abort(404)
    return send_file(path, conditional=True)


__all__ = ["main_bp", "auth_bp", "complaints_bp", "gov_bp"]

"""Entitlements blueprint — /api/entitlements

Read-only views over the entitlement store for the signed-in user.
"""

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from app.services import entitlement_service

entitlements_bp = Blueprint("entitlements", __name__, url_prefix="/api/entitlements")


@entitlements_bp.route("", methods=["GET"])
@login_required
def get_entitlements():
    """{isActive, tierName, status, current_period_end, cancel_at_period_end}"""
    return jsonify(entitlement_service.entitlement_snapshot(current_user.id)), 200


@entitlements_bp.route("/courses/<course_id>", methods=["GET"])
@login_required
def get_course_access(course_id):
    enrollment = entitlement_service.get_enrollment(current_user.id, course_id)
    has_access = entitlement_service.enrollment_is_active(enrollment)
    expires_at = entitlement_service.as_utc(enrollment.expires_at) if enrollment else None
    return jsonify({
        "courseId": course_id,
        "hasAccess": has_access,
        "expires_at": expires_at.isoformat() if expires_at else None,
    }), 200

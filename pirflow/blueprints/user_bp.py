"""
User Blueprint - signup records and profiles.

The identity itself comes from the external provider; signup stores the
profile (display name, role, department) for the authenticated id.

Endpoints:
    POST  /api/v1/users        - register the caller's profile
    GET   /api/v1/users/me
    PATCH /api/v1/users/me     - display_name, email, department
    GET   /api/v1/users/<id>
    GET   /api/v1/users        - ?role= filter
"""

from flask import Blueprint, jsonify, request

from pirflow.middleware.identity import current_user, current_user_id
from pirflow.services.workflow import get_workflow

user_bp = Blueprint("user", __name__, url_prefix="/api/v1/users")


@user_bp.route("", methods=["POST"])
def register():
    user_id = current_user_id()
    data = request.get_json(silent=True) or {}
    user = get_workflow().users.register_user(
        user_id,
        email=data.get("email"),
        display_name=data.get("display_name"),
        role=data.get("role"),
        department=data.get("department"),
    )
    return jsonify(user.to_dict()), 201


@user_bp.route("", methods=["GET"])
def list_users():
    current_user()
    users = get_workflow().users.list_users(role=request.args.get("role"))
    return jsonify({"items": [u.to_dict() for u in users], "total": len(users)})


@user_bp.route("/me", methods=["GET"])
def me():
    return jsonify(current_user().to_dict())


@user_bp.route("/me", methods=["PATCH"])
def update_me():
    user = current_user()
    data = request.get_json(silent=True) or {}
    return jsonify(get_workflow().users.update_profile(user.id, data).to_dict())


@user_bp.route("/<user_id>", methods=["GET"])
def get_user(user_id):
    current_user()
    return jsonify(get_workflow().users.get_user(user_id).to_dict())

"""
Tag Blueprint.

Endpoints:
    GET  /api/v1/tags                 - all tags (?category=, ?q= substring search)
    POST /api/v1/tags                 - create (idempotent by case-insensitive name)
    GET/PATCH/DELETE /api/v1/tags/<id>
"""

from flask import Blueprint, jsonify, request

from pirflow.middleware.identity import current_user
from pirflow.services.workflow import get_workflow

tag_bp = Blueprint("tag", __name__, url_prefix="/api/v1/tags")


@tag_bp.route("", methods=["GET"])
def list_tags():
    current_user()
    tags = get_workflow().tags
    category = request.args.get("category")
    term = request.args.get("q")
    if term:
        items = tags.search_tags(term)
        if category:
            items = [t for t in items if t.category == category]
    elif category:
        items = tags.list_tags_by_category(category)
    else:
        items = tags.list_tags()
    return jsonify({"items": [t.to_dict() for t in items], "total": len(items)})


@tag_bp.route("", methods=["POST"])
def create_tag():
    current_user()
    data = request.get_json(silent=True) or {}
    tag, created = get_workflow().tags.create_tag(
        data.get("name"), category=data.get("category"), color=data.get("color"),
    )
    return jsonify(tag.to_dict()), 201 if created else 200


@tag_bp.route("/<tag_id>", methods=["GET"])
def get_tag(tag_id):
    current_user()
    return jsonify(get_workflow().tags.get_tag(tag_id).to_dict())


@tag_bp.route("/<tag_id>", methods=["PATCH"])
def update_tag(tag_id):
    current_user()
    data = request.get_json(silent=True) or {}
    return jsonify(get_workflow().tags.update_tag(tag_id, data).to_dict())


@tag_bp.route("/<tag_id>", methods=["DELETE"])
def delete_tag(tag_id):
    current_user()
    get_workflow().tags.delete_tag(tag_id)
    return jsonify({"id": tag_id, "deleted": True})

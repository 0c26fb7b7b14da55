"""
PIR Blueprint - PIR lifecycle, questions, answers and attachments.

Endpoints:
  PIR:         GET/POST /pirs, GET/PATCH /pirs/<id>
               GET  /pirs/<id>/actions
               POST /pirs/<id>/transition
               POST /pirs/<id>/assign
               POST/DELETE /pirs/<id>/tags
               POST /pirs/<id>/reconcile          (admin)
  Question:    GET/POST /pirs/<id>/questions, GET/PATCH /questions/<id>
  Answer:      GET /pirs/<id>/answers, GET/POST /questions/<id>/answers
               GET /answers?responder_id=, PATCH /answers/<id>
  Attachment:  POST /attachments (multipart), GET /attachments?parent_type=&parent_id=
               GET/DELETE /attachments/<id>, GET /attachments/<id>/content
"""

from flask import Blueprint, Response, jsonify, request

from pirflow.blueprints import paginate_list
from pirflow.core.exceptions import ValidationError
from pirflow.middleware.identity import current_user
from pirflow.services.permission import permission_flags, resolve_actions
from pirflow.services.workflow import get_workflow

pir_bp = Blueprint("pir", __name__, url_prefix="/api/v1")


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _optional_int(data, field):
    value = data.get(field)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: "invalid"}) from exc


# ═════════════════════════════════════════════════════════════════════════════
# PIR
# ═════════════════════════════════════════════════════════════════════════════

@pir_bp.route("/pirs", methods=["GET"])
def list_pirs():
    """PIRs visible to the caller. ``?scope=all`` (admin) lists everything with filters."""
    user = current_user()
    wf = get_workflow()
    status = request.args.get("status")
    if user.is_admin and request.args.get("scope") == "all":
        pirs = wf.pirs.list_pirs(
            status=status,
            requester_id=request.args.get("requester_id"),
            responder_id=request.args.get("responder_id"),
            reviewer_id=request.args.get("reviewer_id"),
        )
    else:
        pirs = wf.pirs.list_visible_pirs(user, status=status)
    page, total = paginate_list(pirs)
    return jsonify({"items": [p.to_dict() for p in page], "total": total})


@pir_bp.route("/pirs", methods=["POST"])
def create_pir():
    user = current_user()
    pir = get_workflow().pirs.create_pir(user, _json_body())
    return jsonify(pir.to_dict()), 201


@pir_bp.route("/pirs/<pir_id>", methods=["GET"])
def get_pir(pir_id):
    """PIR detail: questions with answers, attachments, permitted actions."""
    user = current_user()
    return jsonify(get_workflow().pirs.get_pir_detail(pir_id, user))


@pir_bp.route("/pirs/<pir_id>", methods=["PATCH"])
def update_pir(pir_id):
    user = current_user()
    data = _json_body()
    expected_version = _optional_int(data, "expected_version")
    patch = {k: v for k, v in data.items() if k != "expected_version"}
    pir = get_workflow().pirs.update_pir(pir_id, user, patch, expected_version=expected_version)
    return jsonify(pir.to_dict())


@pir_bp.route("/pirs/<pir_id>/actions", methods=["GET"])
def pir_actions(pir_id):
    user = current_user()
    wf = get_workflow()
    pir = wf.pirs.get_pir(pir_id)
    return jsonify({
        "pir_id": pir.id,
        "status": pir.status,
        "actions": sorted(resolve_actions(user, pir)),
        "permissions": permission_flags(user, pir),
        "available_transitions": wf.lifecycle.available_transitions(user, pir),
    })


@pir_bp.route("/pirs/<pir_id>/transition", methods=["POST"])
def transition_pir(pir_id):
    """
    Body: {"status": "...", "reviewer_id"?, "reviewer_name"?,
           "review_notes"?, "expected_version"?}
    """
    user = current_user()
    data = _json_body()
    target = data.get("status")
    if not target:
        raise ValidationError("status is required", details={"status": "required"})
    result = get_workflow().lifecycle.apply_transition(
        pir_id, target, user,
        reviewer_id=data.get("reviewer_id"),
        reviewer_name=data.get("reviewer_name"),
        review_notes=data.get("review_notes"),
        expected_version=_optional_int(data, "expected_version"),
    )
    return jsonify(result)


@pir_bp.route("/pirs/<pir_id>/assign", methods=["POST"])
def assign_responder(pir_id):
    user = current_user()
    data = _json_body()
    responder_id = data.get("responder_id")
    if not responder_id:
        raise ValidationError("responder_id is required", details={"responder_id": "required"})
    pir = get_workflow().pirs.assign_responder(pir_id, user, responder_id)
    return jsonify(pir.to_dict())


@pir_bp.route("/pirs/<pir_id>/tags", methods=["POST"])
def add_pir_tag(pir_id):
    user = current_user()
    pir = get_workflow().pirs.add_tag(pir_id, user, _json_body().get("tag"))
    return jsonify(pir.to_dict())


@pir_bp.route("/pirs/<pir_id>/tags", methods=["DELETE"])
def remove_pir_tag(pir_id):
    user = current_user()
    tag = request.args.get("tag") or _json_body().get("tag")
    pir = get_workflow().pirs.remove_tag(pir_id, user, tag)
    return jsonify(pir.to_dict())


@pir_bp.route("/pirs/<pir_id>/reconcile", methods=["POST"])
def reconcile_pir(pir_id):
    user = current_user()
    return jsonify(get_workflow().aggregate.reconcile_pir(pir_id, actor=user))


# ═════════════════════════════════════════════════════════════════════════════
# Questions / Answers
# ═════════════════════════════════════════════════════════════════════════════

@pir_bp.route("/pirs/<pir_id>/questions", methods=["GET"])
def list_questions(pir_id):
    current_user()
    wf = get_workflow()
    wf.pirs.get_pir(pir_id)
    items = wf.aggregate.list_questions(pir_id)
    return jsonify({"items": [q.to_dict() for q in items], "total": len(items)})


@pir_bp.route("/pirs/<pir_id>/questions", methods=["POST"])
def create_questions(pir_id):
    """Body: a single question object, or {"questions": [...]} for bulk creation."""
    user = current_user()
    data = _json_body()
    aggregate = get_workflow().aggregate
    if "questions" in data:
        questions = aggregate.create_questions(pir_id, user, data["questions"])
        return jsonify({"items": [q.to_dict() for q in questions], "total": len(questions)}), 201

    question = aggregate.create_question(
        pir_id, user,
        text=data.get("text"),
        category=data.get("category"),
        required=bool(data.get("required", False)),
        question_id=data.get("id"),
    )
    return jsonify(question.to_dict()), 201


@pir_bp.route("/pirs/<pir_id>/answers", methods=["GET"])
def list_pir_answers(pir_id):
    current_user()
    wf = get_workflow()
    wf.pirs.get_pir(pir_id)
    items = wf.aggregate.list_answers_for_pir(pir_id)
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)})


@pir_bp.route("/questions/<question_id>", methods=["GET"])
def get_question(question_id):
    current_user()
    wf = get_workflow()
    question = wf.store.get_or_404("questions", question_id)
    result = question.to_dict()
    result["answers"] = [a.to_dict() for a in wf.aggregate.list_answers_for_question(question_id)]
    result["attachments"] = [a.to_dict() for a in wf.aggregate.resolve_attachments(question)]
    return jsonify(result)


@pir_bp.route("/questions/<question_id>", methods=["PATCH"])
def update_question(question_id):
    """Body: any of text, category, required; optional expected_version."""
    user = current_user()
    data = _json_body()
    expected_version = _optional_int(data, "expected_version")
    data.pop("expected_version", None)
    question = get_workflow().aggregate.update_question(
        question_id, user, data, expected_version=expected_version,
    )
    return jsonify(question.to_dict())


@pir_bp.route("/questions/<question_id>/answers", methods=["GET"])
def list_answers(question_id):
    current_user()
    wf = get_workflow()
    wf.store.get_or_404("questions", question_id)
    items = wf.aggregate.list_answers_for_question(question_id)
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)})


@pir_bp.route("/questions/<question_id>/answers", methods=["POST"])
def create_answer(question_id):
    user = current_user()
    answer = get_workflow().aggregate.create_answer(
        question_id, user, text=_json_body().get("text"),
    )
    return jsonify(answer.to_dict()), 201


@pir_bp.route("/answers", methods=["GET"])
def list_answers_by_responder():
    """Answers written by ``?responder_id=`` (default: the caller), newest first."""
    user = current_user()
    responder_id = request.args.get("responder_id") or user.id
    items = get_workflow().aggregate.list_answers_by_responder(responder_id)
    page, total = paginate_list(items)
    return jsonify({"items": [a.to_dict() for a in page], "total": total})


@pir_bp.route("/answers/<answer_id>", methods=["PATCH"])
def update_answer(answer_id):
    """Body: {"text": "...", "expected_version"?}"""
    user = current_user()
    data = _json_body()
    expected_version = _optional_int(data, "expected_version")
    data.pop("expected_version", None)
    answer = get_workflow().aggregate.update_answer(
        answer_id, user, data, expected_version=expected_version,
    )
    return jsonify(answer.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# Attachments
# ═════════════════════════════════════════════════════════════════════════════

@pir_bp.route("/attachments", methods=["POST"])
def upload_attachment():
    """Multipart form: file, parent_type, parent_id."""
    user = current_user()
    upload = request.files.get("file")
    if upload is None:
        raise ValidationError("file is required", details={"file": "required"})
    parent_type = request.form.get("parent_type")
    parent_id = request.form.get("parent_id")
    if not parent_type or not parent_id:
        raise ValidationError(
            "parent_type and parent_id are required",
            details={"parent_type": "required", "parent_id": "required"},
        )

    attachment = get_workflow().aggregate.upload_attachment(
        parent_type, parent_id, user,
        file_name=upload.filename,
        data=upload.read(),
        file_type=upload.mimetype,
    )
    return jsonify(attachment.to_dict()), 201


@pir_bp.route("/attachments", methods=["GET"])
def list_attachments():
    current_user()
    parent_type = request.args.get("parent_type")
    parent_id = request.args.get("parent_id")
    if not parent_type or not parent_id:
        raise ValidationError(
            "parent_type and parent_id are required",
            details={"parent_type": "required", "parent_id": "required"},
        )
    items = get_workflow().aggregate.list_attachments(parent_type, parent_id)
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)})


@pir_bp.route("/attachments/<attachment_id>", methods=["GET"])
def get_attachment(attachment_id):
    current_user()
    return jsonify(get_workflow().store.get_or_404("attachments", attachment_id).to_dict())


@pir_bp.route("/attachments/<attachment_id>/content", methods=["GET"])
def attachment_content(attachment_id):
    current_user()
    attachment, content = get_workflow().aggregate.read_attachment(attachment_id)
    return Response(
        content,
        mimetype=attachment.file_type,
        headers={"Content-Disposition": f'attachment; filename="{attachment.file_name}"'},
    )


@pir_bp.route("/attachments/<attachment_id>", methods=["DELETE"])
def delete_attachment(attachment_id):
    user = current_user()
    return jsonify(get_workflow().aggregate.delete_attachment(attachment_id, user))

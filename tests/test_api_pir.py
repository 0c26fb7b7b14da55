"""
API tests for the PIR workflow blueprints.

Callers identify themselves with the X-User-Id header (trusted under
TestingConfig) or a bearer token signed with the test JWT secret.
"""

import io

import jwt as pyjwt

BASE = "/api/v1"

PIR_BODY = {
    "title": "Nutrition panel for Granola",
    "description": "Per-100g nutrition values.",
    "product_name": "Granola 500g",
    "product_category": "Cereals",
}


def _h(user):
    return {"X-User-Id": getattr(user, "id", user)}


def _create_pir(client, requester, **overrides):
    res = client.post(f"{BASE}/pirs", json=dict(PIR_BODY, **overrides), headers=_h(requester))
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _transition(client, user, pir_id, status, **extra):
    return client.post(
        f"{BASE}/pirs/{pir_id}/transition", json=dict(extra, status=status), headers=_h(user),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Identity & users
# ═════════════════════════════════════════════════════════════════════════════


class TestIdentity:
    def test_anonymous_rejected(self, client):
        res = client.get(f"{BASE}/pirs")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_unregistered_rejected(self, client):
        res = client.get(f"{BASE}/pirs", headers=_h("stranger"))
        assert res.status_code == 401

    def test_bearer_token(self, client, requester):
        token = pyjwt.encode({"sub": requester.id}, "test-jwt-secret", algorithm="HS256")
        res = client.get(f"{BASE}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 200
        assert res.get_json()["id"] == requester.id

    def test_bad_token_rejected(self, client, requester):
        token = pyjwt.encode({"sub": requester.id}, "wrong-secret", algorithm="HS256")
        res = client.get(f"{BASE}/users/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    def test_health_needs_no_identity(self, client):
        assert client.get(f"{BASE}/health/ready").status_code == 200
        res = client.get(f"{BASE}/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"]["database"]["status"] == "ok"


class TestUsersApi:
    def test_signup_and_profile(self, client):
        res = client.post(f"{BASE}/users", headers=_h("sub-42"), json={
            "email": "new@example.com", "display_name": "New Person", "role": "reviewer",
        })
        assert res.status_code == 201
        assert res.get_json()["role"] == "reviewer"

        res = client.patch(f"{BASE}/users/me", headers=_h("sub-42"), json={"department": "QA"})
        assert res.status_code == 200
        assert res.get_json()["department"] == "QA"

    def test_signup_twice_conflicts(self, client, requester):
        res = client.post(f"{BASE}/users", headers=_h(requester), json={
            "email": "x@example.com", "display_name": "X", "role": "requester",
        })
        assert res.status_code == 409

    def test_role_change_rejected(self, client, requester):
        res = client.patch(f"{BASE}/users/me", headers=_h(requester), json={"role": "admin"})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"role": "immutable"}

    def test_list_by_role(self, client, admin, responder):
        res = client.get(f"{BASE}/users?role=responder", headers=_h(admin))
        assert [u["id"] for u in res.get_json()["items"]] == [responder.id]


# ═════════════════════════════════════════════════════════════════════════════
# PIRs
# ═════════════════════════════════════════════════════════════════════════════


class TestPirApi:
    def test_create(self, client, requester):
        pir = _create_pir(client, requester, tags=["Urgent", "Urgent"], completion_deadline="2030-01-31")
        assert pir["status"] == "draft"
        assert pir["requester_id"] == requester.id
        assert pir["requester_name"] == requester.display_name
        assert pir["tags"] == ["Urgent"]
        assert pir["completion_deadline"].startswith("2030-01-31")
        assert pir["version"] == 1

    def test_create_missing_fields(self, client, requester):
        res = client.post(f"{BASE}/pirs", json={"title": "  "}, headers=_h(requester))
        assert res.status_code == 400
        details = res.get_json()["details"]
        assert set(details) == {"title", "description", "product_name", "product_category"}

    def test_responder_cannot_create(self, client, responder):
        res = client.post(f"{BASE}/pirs", json=PIR_BODY, headers=_h(responder))
        assert res.status_code == 403

    def test_detail_includes_permissions(self, client, requester):
        pir = _create_pir(client, requester)
        res = client.get(f"{BASE}/pirs/{pir['id']}", headers=_h(requester))
        body = res.get_json()
        assert body["actions"] == ["edit", "request"]
        assert body["available_transitions"] == ["requested"]
        assert body["permissions"]["can_add_questions"] is True
        assert body["questions"] == []

    def test_missing_pir(self, client, requester):
        res = client.get(f"{BASE}/pirs/nope", headers=_h(requester))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_update(self, client, requester):
        pir = _create_pir(client, requester)
        res = client.patch(
            f"{BASE}/pirs/{pir['id']}", headers=_h(requester),
            json={"title": "Renamed", "expected_version": 1},
        )
        assert res.status_code == 200
        assert res.get_json()["title"] == "Renamed"

        res = client.patch(
            f"{BASE}/pirs/{pir['id']}", headers=_h(requester),
            json={"title": "Stale", "expected_version": 1},
        )
        assert res.status_code == 409

    def test_update_status_not_editable(self, client, requester):
        pir = _create_pir(client, requester)
        res = client.patch(f"{BASE}/pirs/{pir['id']}", headers=_h(requester), json={"status": "accepted"})
        assert res.status_code == 400

    def test_invalid_transition(self, client, requester):
        pir = _create_pir(client, requester)
        res = _transition(client, requester, pir["id"], "accepted")
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"] == {"current_status": "draft", "target_status": "accepted"}

    def test_transition_permission_denied(self, client, requester, responder):
        pir = _create_pir(client, requester)
        res = _transition(client, responder, pir["id"], "requested")
        assert res.status_code == 403

    def test_review_with_non_text_reviewer_name(self, client, admin, requester):
        pir = _create_pir(client, requester)
        assert _transition(client, requester, pir["id"], "requested").status_code == 200
        assert _transition(client, admin, pir["id"], "submitted").status_code == 200
        res = _transition(client, admin, pir["id"], "reviewed", reviewer_id=admin.id, reviewer_name=123)
        assert res.status_code == 400
        assert res.get_json()["details"] == {"reviewer_name": "required"}

    def test_transition_requires_status(self, client, requester):
        pir = _create_pir(client, requester)
        res = client.post(f"{BASE}/pirs/{pir['id']}/transition", json={}, headers=_h(requester))
        assert res.status_code == 400

    def test_assign_non_responder_rejected(self, client, requester, reviewer):
        pir = _create_pir(client, requester)
        res = client.post(
            f"{BASE}/pirs/{pir['id']}/assign", json={"responder_id": reviewer.id}, headers=_h(requester),
        )
        assert res.status_code == 400

    def test_tags(self, client, requester):
        pir = _create_pir(client, requester)
        res = client.post(f"{BASE}/pirs/{pir['id']}/tags", json={"tag": "Vegan"}, headers=_h(requester))
        assert res.get_json()["tags"] == ["Vegan"]
        res = client.delete(f"{BASE}/pirs/{pir['id']}/tags?tag=Vegan", headers=_h(requester))
        assert res.get_json()["tags"] == []

    def test_visibility(self, client, requester, responder, admin):
        _create_pir(client, requester)
        assert client.get(f"{BASE}/pirs", headers=_h(requester)).get_json()["total"] == 1
        assert client.get(f"{BASE}/pirs", headers=_h(responder)).get_json()["total"] == 0
        assert client.get(f"{BASE}/pirs?scope=all", headers=_h(admin)).get_json()["total"] == 1

    def test_reconcile_admin_only(self, client, requester, admin):
        pir = _create_pir(client, requester)
        assert client.post(f"{BASE}/pirs/{pir['id']}/reconcile", headers=_h(requester)).status_code == 403
        res = client.post(f"{BASE}/pirs/{pir['id']}/reconcile", headers=_h(admin))
        assert res.status_code == 200
        assert res.get_json()["pir_id"] == pir["id"]


# ═════════════════════════════════════════════════════════════════════════════
# Questions, answers, attachments
# ═════════════════════════════════════════════════════════════════════════════


class TestChildrenApi:
    def test_questions_single_and_bulk(self, client, requester):
        pir = _create_pir(client, requester)
        url = f"{BASE}/pirs/{pir['id']}/questions"
        res = client.post(url, json={"text": "Shelf life?", "category": "spec"}, headers=_h(requester))
        assert res.status_code == 201
        res = client.post(url, headers=_h(requester), json={"questions": [
            {"text": "Origin?", "category": "sourcing"},
            {"text": "Allergens?", "category": "safety", "required": True},
        ]})
        assert res.status_code == 201
        assert res.get_json()["total"] == 2

        listed = client.get(url, headers=_h(requester)).get_json()
        assert listed["total"] == 3
        detail = client.get(f"{BASE}/pirs/{pir['id']}", headers=_h(requester)).get_json()
        assert {q["id"] for q in detail["questions"]} == {q["id"] for q in listed["items"]}

    def test_answer_flow(self, client, requester, responder, admin):
        pir = _create_pir(client, requester)
        question = client.post(
            f"{BASE}/pirs/{pir['id']}/questions",
            json={"text": "Shelf life?", "category": "spec"}, headers=_h(requester),
        ).get_json()
        client.post(f"{BASE}/pirs/{pir['id']}/assign", json={"responder_id": responder.id}, headers=_h(admin))
        assert _transition(client, requester, pir["id"], "requested").status_code == 200

        res = client.post(
            f"{BASE}/questions/{question['id']}/answers", json={"text": "12 months"}, headers=_h(responder),
        )
        assert res.status_code == 201
        answers = client.get(f"{BASE}/questions/{question['id']}/answers", headers=_h(requester)).get_json()
        assert [a["text"] for a in answers["items"]] == ["12 months"]
        by_pir = client.get(f"{BASE}/pirs/{pir['id']}/answers", headers=_h(requester)).get_json()
        assert by_pir["total"] == 1

        unread = client.get(f"{BASE}/notifications/unread-count", headers=_h(requester)).get_json()
        assert unread["unread_count"] == 1

    def test_edit_question_and_answer(self, client, requester, responder, admin):
        pir = _create_pir(client, requester)
        question = client.post(
            f"{BASE}/pirs/{pir['id']}/questions",
            json={"text": "Shelf life?", "category": "spec"}, headers=_h(requester),
        ).get_json()
        res = client.patch(
            f"{BASE}/questions/{question['id']}", headers=_h(requester),
            json={"text": "Shelf life unopened?", "expected_version": question["version"]},
        )
        assert res.status_code == 200
        assert res.get_json()["text"] == "Shelf life unopened?"
        stale = client.patch(
            f"{BASE}/questions/{question['id']}", headers=_h(requester),
            json={"text": "again", "expected_version": question["version"]},
        )
        assert stale.status_code == 409
        assert client.patch(
            f"{BASE}/questions/{question['id']}", headers=_h(requester), json={"pir_id": "x"},
        ).status_code == 400

        client.post(f"{BASE}/pirs/{pir['id']}/assign", json={"responder_id": responder.id}, headers=_h(admin))
        _transition(client, requester, pir["id"], "requested")
        answer = client.post(
            f"{BASE}/questions/{question['id']}/answers", json={"text": "12 months"}, headers=_h(responder),
        ).get_json()

        denied = client.patch(f"{BASE}/answers/{answer['id']}", json={"text": "no"}, headers=_h(requester))
        assert denied.status_code == 403
        res = client.patch(f"{BASE}/answers/{answer['id']}", json={"text": "18 months"}, headers=_h(responder))
        assert res.status_code == 200
        assert res.get_json()["text"] == "18 months"

        mine = client.get(f"{BASE}/answers", headers=_h(responder)).get_json()
        assert [a["id"] for a in mine["items"]] == [answer["id"]]
        theirs = client.get(f"{BASE}/answers?responder_id={responder.id}", headers=_h(admin)).get_json()
        assert theirs["total"] == 1
        assert client.get(f"{BASE}/answers", headers=_h(requester)).get_json()["total"] == 0

    def test_attachment_roundtrip(self, client, requester):
        pir = _create_pir(client, requester)
        res = client.post(
            f"{BASE}/attachments", headers=_h(requester),
            data={
                "file": (io.BytesIO(b"col1,col2\n"), "spec.csv", "text/csv"),
                "parent_type": "pir",
                "parent_id": pir["id"],
            },
            content_type="multipart/form-data",
        )
        assert res.status_code == 201
        attachment = res.get_json()
        assert attachment["file_name"] == "spec.csv"
        assert attachment["file_type"] == "text/csv"

        content = client.get(f"{BASE}/attachments/{attachment['id']}/content", headers=_h(requester))
        assert content.data == b"col1,col2\n"

        listed = client.get(
            f"{BASE}/attachments?parent_type=pir&parent_id={pir['id']}", headers=_h(requester),
        ).get_json()
        assert listed["total"] == 1

        res = client.delete(f"{BASE}/attachments/{attachment['id']}", headers=_h(requester))
        assert res.get_json()["deleted"] is True
        assert client.get(f"{BASE}/attachments/{attachment['id']}", headers=_h(requester)).status_code == 404

    def test_upload_without_file(self, client, requester):
        pir = _create_pir(client, requester)
        res = client.post(
            f"{BASE}/attachments", headers=_h(requester),
            data={"parent_type": "pir", "parent_id": pir["id"]},
            content_type="multipart/form-data",
        )
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# Tags & notifications
# ═════════════════════════════════════════════════════════════════════════════


class TestTagAndNotificationApi:
    def test_tag_create_idempotent(self, client, requester):
        first = client.post(f"{BASE}/tags", json={"name": "Urgent"}, headers=_h(requester))
        again = client.post(f"{BASE}/tags", json={"name": "URGENT"}, headers=_h(requester))
        assert first.status_code == 201
        assert again.status_code == 200
        assert again.get_json()["id"] == first.get_json()["id"]
        listed = client.get(f"{BASE}/tags?q=urg", headers=_h(requester)).get_json()
        assert listed["total"] == 1

    def test_notifications_read(self, client, requester, admin):
        pir = _create_pir(client, requester)
        _transition(client, requester, pir["id"], "requested")

        listed = client.get(f"{BASE}/notifications", headers=_h(admin)).get_json()
        assert listed["total"] == 1
        note = listed["items"][0]
        assert note["kind"] == "pir_status_update"

        assert client.post(f"{BASE}/notifications/{note['id']}/read", headers=_h(requester)).status_code == 403
        res = client.post(f"{BASE}/notifications/{note['id']}/read", headers=_h(admin))
        assert res.get_json()["is_read"] is True
        res = client.post(f"{BASE}/notifications/read-all", headers=_h(admin))
        assert res.get_json() == {"marked_read": 0}


# ═════════════════════════════════════════════════════════════════════════════
# End to end
# ═════════════════════════════════════════════════════════════════════════════


class TestEndToEndApi:
    def test_request_to_acceptance(self, client, admin, requester, responder, reviewer):
        pir = _create_pir(client, requester)
        pir_id = pir["id"]

        res = _transition(client, requester, pir_id, "requested")
        assert res.status_code == 200
        assert res.get_json()["pir"]["submitted_at"] is None

        res = client.post(f"{BASE}/pirs/{pir_id}/assign", json={"responder_id": responder.id}, headers=_h(admin))
        assert res.get_json()["assigned_responder_id"] == responder.id

        res = _transition(client, responder, pir_id, "submitted")
        assert res.status_code == 200
        assert res.get_json()["pir"]["submitted_at"] is not None

        res = _transition(
            client, reviewer, pir_id, "reviewed",
            reviewer_id=reviewer.id, reviewer_name=reviewer.display_name,
        )
        assert res.status_code == 200
        assert res.get_json()["pir"]["reviewer_id"] == reviewer.id
        assert res.get_json()["pir"]["reviewed_at"] is not None

        res = _transition(client, reviewer, pir_id, "accepted")
        assert res.status_code == 200
        assert res.get_json()["pir"]["accepted_at"] is not None

        res = _transition(client, responder, pir_id, "rejected")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_INVALID_TRANSITION"

        final = client.get(f"{BASE}/pirs/{pir_id}", headers=_h(requester)).get_json()
        assert final["pir"]["status"] == "accepted"
        assert final["available_transitions"] == []
